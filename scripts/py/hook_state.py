from __future__ import annotations

import fcntl
import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from state_model import AgentStatus, AgentType, SessionSource, TrackedSession


HOOK_STATUS_MAP: dict[str, AgentStatus] = {
    "running": AgentStatus.RUNNING,
    "active": AgentStatus.RUNNING,
    "idle": AgentStatus.IDLE,
    "done": AgentStatus.DONE,
    "stop": AgentStatus.DONE,
}

RUNNING_EVENTS = {
    "start",
    "prompt",
    "active",
    "tool_start",
    "tool_done",
    "tool_fail",
    "subagent_start",
    "subagent_stop",
}

DEFAULT_STALE_AFTER = timedelta(minutes=60)
DEFAULT_HOOK_RETENTION = timedelta(days=7)


class HookStateError(RuntimeError):
    pass


def map_hook_status(value: str) -> AgentStatus:
    return HOOK_STATUS_MAP.get(str(value or "").strip().lower(), AgentStatus.UNKNOWN)


def event_to_status(event: str) -> str:
    if event in RUNNING_EVENTS:
        return "running"
    if event == "stop":
        return "stop"
    return "idle"


@dataclass
class HookSessionState:
    path: str
    status: str
    last_active: int
    git_branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "git_branch": self.git_branch,
            "status": self.status,
            "last_active": self.last_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookSessionState:
        branch = data.get("git_branch")
        return cls(
            path=str(data.get("path") or ""),
            status=str(data.get("status") or ""),
            last_active=int(data.get("last_active") or 0),
            git_branch=str(branch) if branch else None,
        )


def _lock_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.lock")


def read_hook_state(path: str | Path) -> dict[str, HookSessionState]:
    state_path = Path(path)
    if not state_path.exists():
        return {}

    with open(_lock_path(state_path), "a") as lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_SH)
        try:
            text = state_path.read_text(encoding="utf-8")
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)

    if not text.strip():
        return {}
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise HookStateError(f"corrupt hook state {state_path}: {exc}") from exc

    return _parse_sessions(raw, state_path)


def _parse_sessions(raw: Any, state_path: Path) -> dict[str, HookSessionState]:
    sessions = raw.get("sessions") if isinstance(raw, dict) else None
    if not isinstance(sessions, dict):
        return {}

    parsed: dict[str, HookSessionState] = {}
    for sid, entry in sessions.items():
        if not isinstance(entry, dict):
            continue
        try:
            parsed[str(sid)] = HookSessionState.from_dict(entry)
        except (ValueError, TypeError, OverflowError) as exc:
            logger.warning("skipping malformed hook entry {} in {}: {}", sid, state_path, exc)
    return parsed


def _write_hook_state(state_path: Path, sessions: dict[str, HookSessionState]) -> None:
    tmp_fd, tmp_path = tempfile.mkstemp(dir=str(state_path.parent), suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump({"sessions": {sid: s.to_dict() for sid, s in sessions.items()}}, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, state_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def record_hook_event(
    path: str | Path,
    event: str,
    session_id: str,
    cwd: str,
    git_branch: str | None,
    now: datetime,
    retention: timedelta = DEFAULT_HOOK_RETENTION,
) -> None:
    """Apply one agent hook event to the shared hook state file."""
    state_path = Path(path)
    state_path.parent.mkdir(parents=True, exist_ok=True)
    status = event_to_status(event)
    stamp = int(now.timestamp())

    with open(_lock_path(state_path), "a") as lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_EX)
        try:
            sessions: dict[str, HookSessionState] = {}
            if state_path.exists():
                try:
                    raw = json.loads(state_path.read_text(encoding="utf-8") or "{}")
                except json.JSONDecodeError:
                    logger.warning("hook state {} is corrupt; starting fresh", state_path)
                    raw = {}
                if not isinstance(raw, dict):
                    logger.warning("hook state {} is not an object; starting fresh", state_path)
                    raw = {}
                sessions = _parse_sessions(raw, state_path)

            if status == "stop":
                existing = sessions.get(session_id)
                if existing is not None:
                    existing.status = "done"
                    existing.last_active = stamp
                    if git_branch:
                        existing.git_branch = git_branch
            else:
                sessions[session_id] = HookSessionState(
                    path=cwd,
                    status=status,
                    last_active=stamp,
                    git_branch=git_branch,
                )

            cutoff = stamp - int(retention.total_seconds())
            sessions = {sid: s for sid, s in sessions.items() if s.last_active > cutoff}
            _write_hook_state(state_path, sessions)
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)


def sessions_from_hook_state(
    sessions: dict[str, HookSessionState],
    now: datetime,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> list[TrackedSession]:
    # Keep only the most recent session per working directory.
    by_path: dict[str, tuple[str, HookSessionState]] = {}
    for sid, entry in sessions.items():
        if not entry.path:
            continue
        current = by_path.get(entry.path)
        if current is None or entry.last_active > current[1].last_active:
            by_path[entry.path] = (sid, entry)

    tracked: list[TrackedSession] = []
    for sid, entry in sorted(by_path.values(), key=lambda item: item[1].last_active, reverse=True):
        try:
            last_active = datetime.fromtimestamp(entry.last_active, tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as exc:
            logger.warning("skipping hook entry {} with bad timestamp {}: {}", sid, entry.last_active, exc)
            continue
        status = map_hook_status(entry.status)
        # Only running entries go stale.
        if status is AgentStatus.RUNNING and now - last_active > stale_after:
            status = AgentStatus.DONE
        tracked.append(
            TrackedSession(
                id=sid,
                agent_type=AgentType.CLAUDE,
                status=status,
                source=SessionSource.HOOK,
                working_directory=entry.path,
                git_branch=entry.git_branch,
                created_at=last_active,
                last_activity=last_active,
            )
        )
    return tracked


class HookSessionSource:
    """Externally reported sessions read from the hook state file."""

    def __init__(self, path: str | Path, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        self.path = Path(path)
        self.stale_after = stale_after

    def sessions(self, now: datetime) -> list[TrackedSession]:
        return sessions_from_hook_state(read_hook_state(self.path), now, self.stale_after)
