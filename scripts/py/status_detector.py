from __future__ import annotations

import re

from state_model import LAST_OUTPUT_LIMIT, AgentStatus


ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
TAIL_LINES = 5
MIN_OUTPUT_CHARS = 4

ERROR_RE = re.compile(
    r"\b(?:error|errors|exception|traceback|panic|panicked|fatal|failed|failure|crash|crashed|segmentation fault)\b",
    re.IGNORECASE,
)
DONE_RE = re.compile(
    r"(?<!\w)(?:task completed|completed successfully|all done|done!|finished|session complete|work complete|goodbye)(?!\w)",
    re.IGNORECASE,
)
RUNNING_RE = re.compile(
    r"\b(?:thinking|working|running|processing|analyzing|analysing|reading|writing|editing|searching|"
    r"compiling|building|generating|esc to interrupt)\b",
    re.IGNORECASE,
)
SPINNER_GLYPHS = frozenset("✻✽✢✳✶⋯⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏◐◓◑◒")
PROMPT_CHARS = frozenset("❯›>$%#»")
# Bare glyphs, user@host:~/dir$, [user@host dir]#, and "~/dir ❯" style prompts.
PROMPT_LINE_RE = re.compile(
    r"^\s*(?:[❯›>$%#»]|>>>|(?:\[[^\]]+\]|[\w.@-]+(?::\S*)?)\s?[$%#]|(?:\S+\s+)?[❯›»])\s*$"
)
EDITOR_MODE_RE = re.compile(r"--\s*(?:INSERT|NORMAL|VISUAL)\s*--|\?\s*for shortcuts", re.IGNORECASE)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text.replace("\r", ""))


def _tail(content: str, count: int = TAIL_LINES) -> list[str]:
    lines = strip_ansi(content).rstrip("\n").split("\n")
    return lines[-count:]


def _has_spinner(line: str) -> bool:
    return any(ch in SPINNER_GLYPHS for ch in line)


def detect(content: str) -> AgentStatus:
    """Infer agent status from captured pane output.

    Only the last five lines count. Checks run error, done, running, idle in
    that order so a stale completion or progress line can never hide an error.
    """
    tail = _tail(content)
    text = "\n".join(tail)
    if not text.strip():
        return AgentStatus.UNKNOWN

    if ERROR_RE.search(text):
        return AgentStatus.ERROR
    if DONE_RE.search(text):
        return AgentStatus.DONE
    if RUNNING_RE.search(text) or any(_has_spinner(line) for line in tail):
        return AgentStatus.RUNNING
    if any(PROMPT_LINE_RE.match(line) or EDITOR_MODE_RE.search(line) for line in tail):
        return AgentStatus.IDLE
    return AgentStatus.UNKNOWN


def _is_pure_prompt(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and all(ch in PROMPT_CHARS or ch.isspace() for ch in stripped)


def extract_last_output(content: str) -> str | None:
    for raw_line in reversed(strip_ansi(content).split("\n")):
        line = raw_line.strip()
        if not line or _is_pure_prompt(line) or len(line) < MIN_OUTPUT_CHARS:
            continue
        if len(line) > LAST_OUTPUT_LIMIT:
            return line[: LAST_OUTPUT_LIMIT - 3] + "..."
        return line
    return None
