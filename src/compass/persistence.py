"""Session persistence: one JSON record per session in the local workspace.

Every record carries a version number. A commit names the version it was
based on and is rejected with PersistenceConflict if someone else committed
in between, so a turn never silently overwrites another turn's update.
"""

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .config import WORKSPACE_DIR
from .state import ConversationState, state_from_dict, state_to_dict

logger = logging.getLogger("compass.persistence")

CURRENT_SCHEMA_VERSION = "1.0"

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class PersistenceError(Exception):
    """A session record could not be read or written."""


class PersistenceConflict(PersistenceError):
    """The record changed since it was read. Re-read and retry."""


class SessionNotFound(PersistenceError):
    pass


@dataclass
class SessionRecord:
    session_id: str
    state: ConversationState
    messages: list = field(default_factory=list)
    version: int = 0


class SessionStore:
    def __init__(self, root: Path | None = None):
        self.root = Path(root) if root is not None else WORKSPACE_DIR / "sessions"
        self._write_lock = threading.Lock()

    def ensure_workspace_exists(self) -> Path:
        """Create the sessions directory if it doesn't exist and return its path."""
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def _path(self, session_id: str) -> Path:
        if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
            raise PersistenceError(f"Invalid session id: {session_id!r}")
        return self.root / f"{session_id}.json"

    def create(self, state: ConversationState, messages: list | None = None) -> SessionRecord:
        """Persist a brand-new session and return its record (version 1)."""
        record = SessionRecord(
            session_id=uuid.uuid4().hex,
            state=state,
            messages=list(messages or []),
            version=1,
        )
        self.ensure_workspace_exists()
        with self._write_lock:
            path = self._path(record.session_id)
            if path.exists():
                raise PersistenceConflict(f"Session {record.session_id} already exists")
            self._write(path, record)
        logger.info("Session %s created", record.session_id)
        return record

    def load(self, session_id: str) -> SessionRecord:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(f"No session {session_id}")

        saved_data = self._read(path)
        saved_version = saved_data.get("schema_version", "unknown")
        if saved_version != CURRENT_SCHEMA_VERSION:
            logger.warning(
                "Session %s saved with schema version %s (current: %s)",
                session_id, saved_version, CURRENT_SCHEMA_VERSION,
            )

        # InvalidStateError propagates: a record we cannot interpret is not guessed at
        state = state_from_dict(saved_data.get("state") or {})
        return SessionRecord(
            session_id=session_id,
            state=state,
            messages=list(saved_data.get("messages") or []),
            version=int(saved_data.get("version", 0)),
        )

    def commit(self, record: SessionRecord, expected_version: int) -> SessionRecord:
        """Write `record` if the stored version is still `expected_version`."""
        path = self._path(record.session_id)
        with self._write_lock:
            current = int(self._read(path).get("version", 0)) if path.exists() else 0
            if current != expected_version:
                raise PersistenceConflict(
                    f"Session {record.session_id} is at version {current}, expected {expected_version}"
                )
            committed = SessionRecord(
                session_id=record.session_id,
                state=record.state,
                messages=list(record.messages),
                version=expected_version + 1,
            )
            self._write(path, committed)
        logger.info("Session %s committed at version %d", record.session_id, committed.version)
        return committed

    def _read(self, path: Path) -> dict:
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to read %s: %s", path, e)
            raise PersistenceError(f"Could not read {path.name}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"{path.name} is not a session record")
        return data

    def _write(self, path: Path, record: SessionRecord) -> None:
        data = {
            "schema_version": CURRENT_SCHEMA_VERSION,
            "session_id": record.session_id,
            "version": record.version,
            "last_saved": datetime.now().isoformat(),
            "state": state_to_dict(record.state),
            "messages": record.messages,
        }
        temp_file = path.with_suffix(".json.tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(path)
        except OSError as e:
            logger.error("Failed to write %s: %s", path, e)
            raise PersistenceError(f"Could not write {path.name}") from e
