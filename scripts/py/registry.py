from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from state_model import TrackedSession, is_done_status


CURRENT_VERSION = 2
DEFAULT_RETENTION = timedelta(days=7)


class DuplicateId(RuntimeError):
    pass


class RegistryIOError(RuntimeError):
    pass


@dataclass
class SessionRegistry:
    """In-memory registry document. Dict order is insertion order."""

    version: int = CURRENT_VERSION
    sessions: dict[str, TrackedSession] = field(default_factory=dict)

    def add(self, session: TrackedSession) -> None:
        if session.id in self.sessions:
            raise DuplicateId(f"session already registered: {session.id}")
        self.sessions[session.id] = session

    def remove(self, session_id: str) -> TrackedSession | None:
        return self.sessions.pop(session_id, None)

    def get(self, session_id: str) -> TrackedSession | None:
        return self.sessions.get(session_id)

    def update(self, session: TrackedSession) -> None:
        if session.id not in self.sessions:
            raise KeyError(session.id)
        self.sessions[session.id] = session

    def find_by_branch(self, branch: str) -> TrackedSession | None:
        # Ties resolve to the earliest inserted record.
        for session in self.sessions.values():
            if session.git_branch == branch:
                return session
        return None

    def find_by_issue(self, identifier: str) -> TrackedSession | None:
        want = identifier.strip().lower()
        for session in self.sessions.values():
            if session.issue_identifier and session.issue_identifier.lower() == want:
                return session
        return None

    def find_by_multiplexer_session(self, name: str) -> TrackedSession | None:
        for session in self.sessions.values():
            if session.multiplexer_session == name:
                return session
        return None

    def prune(self, now: datetime, max_age: timedelta = DEFAULT_RETENTION) -> list[TrackedSession]:
        cutoff = now - max_age
        pruned = [
            session
            for session in self.sessions.values()
            if is_done_status(session.status) and session.last_activity < cutoff
        ]
        for session in pruned:
            del self.sessions[session.id]
        return pruned

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sessions": {sid: session.to_dict() for sid, session in self.sessions.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> SessionRegistry:
        if not isinstance(data, dict):
            raise RegistryIOError("registry root must be a JSON object")

        version = data.get("version", 1)
        if not isinstance(version, int) or version < 1:
            raise RegistryIOError(f"invalid registry version: {version!r}")
        if version > CURRENT_VERSION:
            raise RegistryIOError(
                f"registry version {version} is newer than supported version {CURRENT_VERSION}"
            )
        if version < CURRENT_VERSION:
            data = _migrate(data, version)

        raw_sessions = data.get("sessions") or {}
        if not isinstance(raw_sessions, dict):
            raise RegistryIOError("registry 'sessions' must be an object")

        sessions: dict[str, TrackedSession] = {}
        for key, raw in raw_sessions.items():
            if not isinstance(raw, dict):
                raise RegistryIOError(f"registry entry {key!r} must be an object")
            try:
                session = TrackedSession.from_dict({**raw, "id": raw.get("id") or key})
            except (KeyError, TypeError, ValueError) as exc:
                raise RegistryIOError(f"invalid registry entry {key!r}: {exc}") from exc
            sessions[session.id] = session

        return cls(version=CURRENT_VERSION, sessions=sessions)


def _migrate(data: dict[str, Any], version: int) -> dict[str, Any]:
    migrated = dict(data)
    if version == 1:
        sessions = migrated.get("sessions") or {}
        if isinstance(sessions, list):
            sessions = {str(item.get("id")): item for item in sessions if isinstance(item, dict)}
        if isinstance(sessions, dict):
            migrated["sessions"] = {
                key: {"source": "spawned", **value} if isinstance(value, dict) else value
                for key, value in sessions.items()
            }
    logger.info("migrating session registry from version {} to {}", version, CURRENT_VERSION)
    migrated["version"] = CURRENT_VERSION
    return migrated


class RegistryStore:
    """JSON file holding the registry, guarded by flock on a sidecar lock file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")

    @contextmanager
    def _locked(self, mode: int) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = open(self.lock_path, "a")
        except OSError as exc:
            raise RegistryIOError(f"cannot open registry lock {self.lock_path}: {exc}") from exc
        try:
            try:
                fcntl.flock(fd, mode)
            except OSError as exc:
                raise RegistryIOError(f"cannot lock registry {self.path}: {exc}") from exc
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                fd.close()

    def _read(self) -> SessionRegistry:
        if not self.path.exists():
            return SessionRegistry()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RegistryIOError(f"cannot read registry {self.path}: {exc}") from exc
        if not text.strip():
            return SessionRegistry()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RegistryIOError(f"corrupt registry {self.path}: {exc}") from exc
        return SessionRegistry.from_dict(data)

    def _write(self, registry: SessionRegistry) -> None:
        try:
            tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        except OSError as exc:
            raise RegistryIOError(f"cannot write registry {self.path}: {exc}") from exc
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(registry.to_dict(), handle, ensure_ascii=False, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise RegistryIOError(f"cannot write registry {self.path}: {exc}") from exc
            raise

    def load(self) -> SessionRegistry:
        with self._locked(fcntl.LOCK_SH):
            return self._read()

    def save(self, registry: SessionRegistry) -> None:
        with self._locked(fcntl.LOCK_EX):
            self._write(registry)

    @contextmanager
    def transaction(self) -> Iterator[SessionRegistry]:
        """Load, yield for mutation, save. Nothing is written if the body raises.

        Usage:
            with store.transaction() as registry:
                registry.add(session)
        """
        with self._locked(fcntl.LOCK_EX):
            registry = self._read()
            yield registry
            self._write(registry)
