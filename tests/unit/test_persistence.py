"""Unit tests for compass.persistence: versioned session records."""

import json
from dataclasses import replace

import pytest

from compass.persistence import (
    CURRENT_SCHEMA_VERSION,
    PersistenceConflict,
    PersistenceError,
    SessionNotFound,
    SessionRecord,
    SessionStore,
)
from compass.state import InvalidStateError, Phase
from tests.conftest import _fresh_state


class TestCreateAndLoad:
    def test_create_writes_version_one(self, session_store):
        record = session_store.create(_fresh_state(), [{"role": "assistant", "content": "Hi"}])
        assert record.version == 1

        path = session_store.root / f"{record.session_id}.json"
        data = json.loads(path.read_text())
        assert data["schema_version"] == CURRENT_SCHEMA_VERSION
        assert data["version"] == 1
        assert data["state"]["phase"] == "intake"
        assert "last_saved" in data

    def test_load_round_trip(self, session_store):
        state = _fresh_state(phase=Phase.DIAGNOSTIC, turns_total=3)
        record = session_store.create(state, [{"role": "assistant", "content": "Hi"}])
        loaded = session_store.load(record.session_id)
        assert loaded.state == state
        assert loaded.messages == [{"role": "assistant", "content": "Hi"}]
        assert loaded.version == 1

    def test_ensure_workspace_exists(self, tmp_path):
        store = SessionStore(root=tmp_path / "a" / "b")
        assert store.ensure_workspace_exists().is_dir()

    def test_missing_session(self, session_store):
        session_store.ensure_workspace_exists()
        with pytest.raises(SessionNotFound):
            session_store.load("doesnotexist")

    @pytest.mark.parametrize("session_id", ["../etc/passwd", "", "a/b", None])
    def test_invalid_session_id(self, session_store, session_id):
        with pytest.raises(PersistenceError, match="Invalid session id"):
            session_store.load(session_id)

    def test_corrupt_file(self, session_store):
        session_store.ensure_workspace_exists()
        (session_store.root / "broken.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            session_store.load("broken")

    def test_non_object_file(self, session_store):
        session_store.ensure_workspace_exists()
        (session_store.root / "listy.json").write_text("[1, 2]")
        with pytest.raises(PersistenceError, match="not a session record"):
            session_store.load("listy")

    def test_invalid_state_propagates(self, session_store):
        session_store.ensure_workspace_exists()
        (session_store.root / "odd.json").write_text(
            json.dumps({"schema_version": CURRENT_SCHEMA_VERSION, "version": 2, "state": {"phase": "celebration"}})
        )
        with pytest.raises(InvalidStateError):
            session_store.load("odd")

    def test_old_schema_version_still_loads(self, session_store, caplog):
        session_store.ensure_workspace_exists()
        (session_store.root / "old.json").write_text(
            json.dumps({"schema_version": "0.9", "version": 4, "state": {"phase": "hypothesis"}})
        )
        with caplog.at_level("WARNING", logger="compass.persistence"):
            record = session_store.load("old")
        assert record.state.phase == Phase.HYPOTHESIS
        assert record.version == 4
        assert "schema version 0.9" in caplog.text


class TestCommit:
    def test_commit_bumps_version(self, session_store):
        record = session_store.create(_fresh_state())
        updated = SessionRecord(record.session_id, replace(record.state, turns_total=1), [], record.version)
        committed = session_store.commit(updated, expected_version=1)
        assert committed.version == 2
        assert session_store.load(record.session_id).state.turns_total == 1

    def test_stale_commit_conflicts(self, session_store):
        record = session_store.create(_fresh_state())
        session_store.commit(record, expected_version=1)
        with pytest.raises(PersistenceConflict, match="version 2, expected 1"):
            session_store.commit(record, expected_version=1)
        assert session_store.load(record.session_id).version == 2

    def test_conflict_is_a_persistence_error(self):
        assert issubclass(PersistenceConflict, PersistenceError)

    def test_no_temp_file_left_behind(self, session_store):
        record = session_store.create(_fresh_state())
        session_store.commit(record, expected_version=1)
        assert list(session_store.root.glob("*.tmp")) == []
