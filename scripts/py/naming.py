from __future__ import annotations

import re
import time
from typing import Collection

from state_model import AgentType


MAX_SUFFIX = 99
UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-z0-9_-]+")

AGENT_PREFIXES: dict[AgentType, str] = {
    AgentType.CLAUDE: "claude",
    AgentType.CODEX: "codex",
    AgentType.CLAWDBOT: "clawdbot",
    AgentType.OTHER: "agent",
}


def agent_type_for_name(name: str) -> AgentType | None:
    """Agent type implied by a session name prefix, None for foreign names."""
    for agent_type, prefix in AGENT_PREFIXES.items():
        if agent_type is AgentType.OTHER:
            continue
        if name == prefix or name.startswith(f"{prefix}-"):
            return agent_type
    return None


def generate_base(agent_type: AgentType, issue_identifier: str | None = None) -> str:
    prefix = AGENT_PREFIXES[agent_type]
    if not issue_identifier or not issue_identifier.strip():
        return prefix
    # tmux rejects '.' and ':' in session names.
    slug = UNSAFE_NAME_CHARS_RE.sub("-", issue_identifier.strip().lower()).strip("-")
    return f"{prefix}-{slug}" if slug else prefix


def with_suffix(base: str, existing_ids: Collection[str], now: float | None = None) -> str:
    if base not in existing_ids:
        return base

    for n in range(2, MAX_SUFFIX + 1):
        candidate = f"{base}-{n}"
        if candidate not in existing_ids:
            return candidate

    stamp = int(now if now is not None else time.time())
    candidate = f"{base}-{stamp}"
    while candidate in existing_ids:
        stamp += 1
        candidate = f"{base}-{stamp}"
    return candidate
