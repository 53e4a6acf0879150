from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


LAST_OUTPUT_LIMIT = 100


class AgentType(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    CLAWDBOT = "clawdbot"
    OTHER = "other"

    @property
    def label(self) -> str:
        return {
            AgentType.CLAUDE: "Claude",
            AgentType.CODEX: "Codex",
            AgentType.CLAWDBOT: "Clawdbot",
            AgentType.OTHER: "Other",
        }[self]


class AgentStatus(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    DONE = "done"
    ERROR = "error"
    UNKNOWN = "unknown"

    @property
    def icon(self) -> str:
        return {
            AgentStatus.RUNNING: "●",
            AgentStatus.IDLE: "◐",
            AgentStatus.DONE: "○",
            AgentStatus.ERROR: "✗",
            AgentStatus.UNKNOWN: "?",
        }[self]


class SessionSource(str, Enum):
    SPAWNED = "spawned"
    HOOK = "hook"
    EXTERNAL = "external"
    MANUAL = "manual"


ACTIVE_STATUSES = {AgentStatus.RUNNING, AgentStatus.IDLE}
TERMINAL_STATUSES = {AgentStatus.DONE}


def is_active_status(status: AgentStatus) -> bool:
    return status in ACTIVE_STATUSES


def is_done_status(status: AgentStatus) -> bool:
    return status in TERMINAL_STATUSES


def parse_agent_type(value: str) -> AgentType:
    try:
        return AgentType(str(value).strip().lower())
    except ValueError:
        return AgentType.OTHER


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: Any) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class TrackedSession:
    id: str
    agent_type: AgentType
    status: AgentStatus
    working_directory: str
    created_at: datetime
    last_activity: datetime
    source: SessionSource = SessionSource.SPAWNED
    multiplexer_session: str | None = None
    multiplexer_endpoint: str | None = None
    git_branch: str | None = None
    issue_id: str | None = None
    issue_identifier: str | None = None
    task: str | None = None
    last_output: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("session id must not be empty")
        if not self.working_directory:
            raise ValueError(f"session {self.id}: working_directory must not be empty")
        if bool(self.issue_id) != bool(self.issue_identifier):
            raise ValueError(f"session {self.id}: issue_id and issue_identifier must be set together")
        if self.last_activity < self.created_at:
            self.last_activity = self.created_at
        if self.last_output is not None and len(self.last_output) > LAST_OUTPUT_LIMIT:
            self.last_output = self.last_output[: LAST_OUTPUT_LIMIT - 3] + "..."

    def with_observation(
        self, status: AgentStatus, last_output: str | None, now: datetime
    ) -> TrackedSession:
        """Return a copy carrying the observation; unchanged observations keep last_activity."""
        if status == self.status and last_output == self.last_output:
            return self
        return replace(self, status=status, last_output=last_output, last_activity=max(now, self.created_at))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "agent_type": self.agent_type.value,
            "status": self.status.value,
            "source": self.source.value,
            "multiplexer_session": self.multiplexer_session,
            "multiplexer_endpoint": self.multiplexer_endpoint,
            "working_directory": self.working_directory,
            "git_branch": self.git_branch,
            "issue_id": self.issue_id,
            "issue_identifier": self.issue_identifier,
            "task": self.task,
            "created_at": _to_iso(self.created_at),
            "last_activity": _to_iso(self.last_activity),
            "last_output": self.last_output,
        }
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedSession:
        try:
            status = AgentStatus(str(data.get("status") or "unknown"))
        except ValueError:
            status = AgentStatus.UNKNOWN
        try:
            source = SessionSource(str(data.get("source") or "spawned"))
        except ValueError:
            source = SessionSource.MANUAL

        created_at = _from_iso(data["created_at"])
        last_activity = _from_iso(data.get("last_activity") or data["created_at"])
        extra = data.get("extra")

        return cls(
            id=str(data["id"]),
            agent_type=parse_agent_type(str(data.get("agent_type") or "other")),
            status=status,
            source=source,
            multiplexer_session=_opt_str(data.get("multiplexer_session")),
            multiplexer_endpoint=_opt_str(data.get("multiplexer_endpoint")),
            working_directory=str(data.get("working_directory") or ""),
            git_branch=_opt_str(data.get("git_branch")),
            issue_id=_opt_str(data.get("issue_id")),
            issue_identifier=_opt_str(data.get("issue_identifier")),
            task=_opt_str(data.get("task")),
            created_at=created_at,
            last_activity=last_activity,
            last_output=_opt_str(data.get("last_output")),
            extra=dict(extra) if isinstance(extra, dict) else {},
        )


def summarize(sessions: Iterable[TrackedSession]) -> dict[str, Any]:
    status_counts: dict[str, int] = {}
    source_counts: dict[str, int] = {}
    total = 0
    for session in sessions:
        total += 1
        status_counts[session.status.value] = status_counts.get(session.status.value, 0) + 1
        source_counts[session.source.value] = source_counts.get(session.source.value, 0) + 1

    return {
        "total": total,
        "status_counts": status_counts,
        "source_counts": source_counts,
    }
