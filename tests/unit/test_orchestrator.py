"""Unit tests for compass.orchestrator: the async turn coordinator."""

import asyncio
import json

import pytest

from compass import config
from compass.components import TriggerPoint
from compass.orchestrator import GENERATION_FALLBACK, RETRY_MESSAGE, TurnCoordinator, build_coordinator
from compass.persistence import PersistenceConflict, PersistenceError
from compass.prompts import OPENING_MESSAGE
from compass.state import ConstraintCategory, InvalidStateError, Phase
from tests.conftest import _fresh_state
from tests.unit.conftest import _analysis_response, _make_anthropic_response


# ===================================================================
# Helpers
# ===================================================================


@pytest.fixture
def coordinator(mock_anthropic_client, session_store, component_engine):
    return TurnCoordinator(mock_anthropic_client, session_store, component_engine)


def _start(coordinator, module0_context=None) -> str:
    return asyncio.run(coordinator.start_session(module0_context or {"business": "Design studio"}))


def _turn(coordinator, session_id, message="We keep missing deadlines"):
    return asyncio.run(coordinator.process_turn(session_id, message))


# ===================================================================
# Session start
# ===================================================================


class TestStartSession:
    def test_persists_opening_message(self, coordinator, session_store):
        session_id = _start(coordinator, {"business": "Bakery", "stated_constraint": "energy"})
        record = session_store.load(session_id)
        assert record.version == 1
        assert record.messages == [{"role": "assistant", "content": OPENING_MESSAGE}]
        assert record.state.phase == Phase.INTAKE
        assert record.state.module0_context["business"] == "Bakery"

    def test_no_model_call(self, coordinator, mock_anthropic_client):
        _start(coordinator)
        mock_anthropic_client.messages.create.assert_not_awaited()


# ===================================================================
# Happy path
# ===================================================================


class TestProcessTurn:
    def test_full_turn_is_committed(self, coordinator, session_store, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(clarity_delta=0.1),
            _make_anthropic_response("What does a normal week look like?"),
        ]

        result = _turn(coordinator, session_id, "We run a small design studio")

        assert result == {
            "ok": True,
            "session_id": session_id,
            "message": "What does a normal week look like?",
            "components": [],
            "phase": "intake",
            "action": "gather_context",
            "turn": 1,
        }
        record = session_store.load(session_id)
        assert record.version == 2
        assert record.state.turns_total == 1
        assert record.state.scores.clarity == pytest.approx(0.1)
        assert [m["role"] for m in record.messages] == ["assistant", "user", "assistant"]

    def test_analysis_runs_once_then_generation(self, coordinator, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(),
            _make_anthropic_response("Reply"),
        ]
        _turn(coordinator, session_id)

        calls = mock_anthropic_client.messages.create.await_args_list
        assert len(calls) == 2
        analysis_prompt = calls[0].kwargs["messages"][0]["content"]
        assert "Current phase: intake" in analysis_prompt
        assert "We keep missing deadlines" in analysis_prompt

        generation = calls[1].kwargs
        assert generation["messages"][0]["role"] == "user"
        assert generation["messages"][-1] == {"role": "user", "content": "We keep missing deadlines"}
        assert "business diagnostic advisor" in generation["system"]

    def test_fenced_analysis_json(self, coordinator, session_store, mock_anthropic_client):
        session_id = _start(coordinator)
        fenced = "```json\n" + json.dumps({"constraint_category": "energy", "constraint_confidence": 0.7}) + "\n```"
        mock_anthropic_client.messages.create.side_effect = [
            _make_anthropic_response(fenced),
            _make_anthropic_response("Reply"),
        ]
        _turn(coordinator, session_id)

        state = session_store.load(session_id).state
        assert state.hypothesis == ConstraintCategory.ENERGY
        assert state.hypothesis_confidence == pytest.approx(0.7)

    def test_components_are_returned_and_flag_persisted(self, coordinator, session_store, mock_anthropic_client):
        state = _fresh_state(
            phase=Phase.DIAGNOSTIC,
            turns_total=9,
            hypothesis=ConstraintCategory.EXECUTION,
            hypothesis_confidence=0.7,
        )
        session_id = session_store.create(state, []).session_id
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(),
            _make_anthropic_response("Reply"),
        ]

        result = _turn(coordinator, session_id)

        assert result["turn"] == 10
        assert result["components"] == [{"type": "collect_email", "text": "", "metadata": {"turn": 10}}]
        assert session_store.load(session_id).state.component_flags == {"email_capture_shown": True}

    def test_concurrent_turns_are_serialized(self, coordinator, session_store):
        session_id = _start(coordinator)

        async def both():
            return await asyncio.gather(
                coordinator.process_turn(session_id, "first"),
                coordinator.process_turn(session_id, "second"),
            )

        results = asyncio.run(both())

        assert all(r["ok"] for r in results)
        assert sorted(r["turn"] for r in results) == [1, 2]
        record = session_store.load(session_id)
        assert record.version == 3
        assert record.state.turns_total == 2
        assert len(record.messages) == 5
        assert coordinator._locks == {}

    def test_session_lock_is_released_after_turn(self, coordinator):
        session_id = _start(coordinator)
        _turn(coordinator, session_id)
        assert coordinator._locks == {}
        assert coordinator._lock_users == {}


# ===================================================================
# Failure handling
# ===================================================================


class TestFailures:
    def test_analysis_failure_uses_neutral_signals(self, coordinator, session_store, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            RuntimeError("analysis down"),
            _make_anthropic_response("Still here"),
        ]

        result = _turn(coordinator, session_id)

        assert result["ok"] is True
        assert result["message"] == "Still here"
        assert session_store.load(session_id).state.scores == _fresh_state().scores

    def test_unparseable_analysis(self, coordinator, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            _make_anthropic_response("I think the user is frustrated"),
            _make_anthropic_response("Reply"),
        ]
        assert _turn(coordinator, session_id)["ok"] is True

    def test_generation_failure_uses_fallback_reply(self, coordinator, session_store, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(),
            RuntimeError("overloaded"),
        ]

        result = _turn(coordinator, session_id)

        assert result["ok"] is True
        assert result["message"] == GENERATION_FALLBACK
        record = session_store.load(session_id)
        assert record.state.turns_total == 1
        assert record.messages[-1] == {"role": "assistant", "content": GENERATION_FALLBACK}

    def test_empty_generation_uses_fallback_reply(self, coordinator, mock_anthropic_client):
        session_id = _start(coordinator)
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(),
            _make_anthropic_response(""),
        ]
        assert _turn(coordinator, session_id)["message"] == GENERATION_FALLBACK

    def test_unknown_session_returns_retry_payload(self, coordinator, session_store, mock_anthropic_client):
        session_store.ensure_workspace_exists()
        result = _turn(coordinator, "nosuchsession")
        assert result["ok"] is False
        assert result["message"] == RETRY_MESSAGE
        mock_anthropic_client.messages.create.assert_not_awaited()

    def test_invalid_state_is_not_masked(self, coordinator, session_store):
        session_store.ensure_workspace_exists()
        (session_store.root / "bad.json").write_text(json.dumps({"version": 1, "state": {"phase": "celebration"}}))
        with pytest.raises(InvalidStateError):
            _turn(coordinator, "bad")

    def test_conflict_is_retried_with_fresh_state(self, coordinator, session_store, mock_anthropic_client, monkeypatch):
        session_id = _start(coordinator)
        real_commit = session_store.commit
        attempts = []

        def flaky_commit(record, expected_version):
            attempts.append(expected_version)
            if len(attempts) == 1:
                raise PersistenceConflict("someone else wrote")
            return real_commit(record, expected_version)

        monkeypatch.setattr(session_store, "commit", flaky_commit)
        mock_anthropic_client.messages.create.side_effect = [
            _analysis_response(),
            _make_anthropic_response("First draft"),
            _make_anthropic_response("Second draft"),
        ]

        result = _turn(coordinator, session_id)

        assert result["ok"] is True
        assert result["message"] == "Second draft"
        assert len(attempts) == 2
        # analysis once, generation per attempt
        assert mock_anthropic_client.messages.create.await_count == 3
        assert session_store.load(session_id).version == 2

    def test_persistent_conflict_gives_up(self, coordinator, session_store, monkeypatch):
        session_id = _start(coordinator)

        attempts = []

        def always_conflict(record, expected_version):
            attempts.append(expected_version)
            raise PersistenceConflict("busy")

        monkeypatch.setattr(session_store, "commit", always_conflict)

        result = _turn(coordinator, session_id)

        assert result["ok"] is False
        assert len(attempts) == config.MAX_COMMIT_ATTEMPTS
        assert result["message"] == RETRY_MESSAGE
        record = session_store.load(session_id)
        assert record.version == 1
        assert record.state.turns_total == 0

    def test_write_failure_returns_retry_payload(self, coordinator, session_store, monkeypatch):
        session_id = _start(coordinator)

        def broken_commit(record, expected_version):
            raise PersistenceError("disk full")

        monkeypatch.setattr(session_store, "commit", broken_commit)

        result = _turn(coordinator, session_id)

        assert result["ok"] is False
        record = session_store.load(session_id)
        assert record.version == 1
        assert record.state.turns_total == 0


class TestBuildCoordinator:
    def test_wires_given_collaborators(self, mock_anthropic_client, session_store):
        coordinator = build_coordinator(client=mock_anthropic_client, store=session_store)
        assert coordinator.client is mock_anthropic_client
        assert coordinator.store is session_store
        assert coordinator.component_engine.registry.rules_for(TriggerPoint.CLOSING_COMPLETE)
