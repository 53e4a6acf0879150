from __future__ import annotations

import shlex
from dataclasses import dataclass

from loguru import logger

from naming import generate_base, with_suffix
from platform_env import Clock
from registry import RegistryStore
from state_model import AgentStatus, AgentType, SessionSource, TrackedSession
from tmux_adapter import ProcessAdapter


DEFAULT_WIDTH = 220
DEFAULT_HEIGHT = 50

AGENT_COMMAND_TEMPLATES: dict[AgentType, str] = {
    AgentType.CLAUDE: "claude {flags}{task}",
    AgentType.CODEX: "codex {flags}{task}",
}


class ValidationError(RuntimeError):
    pass


class UnsupportedAgentType(RuntimeError):
    pass


@dataclass
class SpawnRequest:
    agent_type: AgentType
    working_directory: str
    task: str
    git_branch: str | None = None
    issue_id: str | None = None
    issue_identifier: str | None = None


def build_agent_command(agent_type: AgentType, task: str, flags: str = "") -> str:
    template = AGENT_COMMAND_TEMPLATES.get(agent_type)
    if template is None:
        raise UnsupportedAgentType(f"cannot spawn agent type: {agent_type.value}")
    flag_part = f"{flags.strip()} " if flags.strip() else ""
    return template.format(flags=flag_part, task=shlex.quote(task))


def validate_request(request: SpawnRequest) -> None:
    if not request.working_directory or not request.working_directory.strip():
        raise ValidationError("working directory must not be empty")
    if not request.task or not request.task.strip():
        raise ValidationError("task must not be empty")
    if bool(request.issue_id) != bool(request.issue_identifier):
        raise ValidationError("issue id and identifier must be given together")
    if request.agent_type not in AGENT_COMMAND_TEMPLATES:
        raise UnsupportedAgentType(f"cannot spawn agent type: {request.agent_type.value}")


class SpawnOrchestrator:
    def __init__(
        self,
        store: RegistryStore,
        adapter: ProcessAdapter,
        clock: Clock,
        agent_flags: dict[AgentType, str] | None = None,
        width: int = DEFAULT_WIDTH,
        height: int = DEFAULT_HEIGHT,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.clock = clock
        self.agent_flags = dict(agent_flags or {})
        self.width = width
        self.height = height

    def execute(self, request: SpawnRequest) -> TrackedSession:
        validate_request(request)
        command = build_agent_command(
            request.agent_type, request.task.strip(), self.agent_flags.get(request.agent_type, "")
        )

        registry = self.store.load()
        live = self.adapter.list_sessions()
        # Registry ids are included too so a finished record never shadows the new one.
        taken = live | set(registry.sessions)
        now = self.clock.now()
        session_id = with_suffix(
            generate_base(request.agent_type, request.issue_identifier), taken, now.timestamp()
        )

        self.adapter.create_session(session_id, request.working_directory, self.width, self.height)
        logger.info("created tmux session {} in {}", session_id, request.working_directory)
        # A failure from here on leaves an orphan session; the next poll pass adopts it.
        self.adapter.send_keys(session_id, command)

        session = TrackedSession(
            id=session_id,
            agent_type=request.agent_type,
            status=AgentStatus.RUNNING,
            source=SessionSource.SPAWNED,
            multiplexer_session=session_id,
            multiplexer_endpoint=self.adapter.endpoint,
            working_directory=request.working_directory,
            git_branch=request.git_branch or None,
            issue_id=request.issue_id or None,
            issue_identifier=request.issue_identifier or None,
            task=request.task.strip(),
            created_at=now,
            last_activity=now,
        )
        with self.store.transaction() as current:
            current.add(session)
        logger.info("spawned {} agent as {}", request.agent_type.value, session_id)
        return session
