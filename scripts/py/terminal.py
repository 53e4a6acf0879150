from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from loguru import logger

from platform_env import Environment, Platform
from registry import SessionRegistry
from state_model import TrackedSession
from tmux_adapter import attach_command


DEFAULT_OVERRIDE_ENV = "PANOPTICON_TERMINAL"
CMD_PLACEHOLDER = "{cmd}"


class TeleportError(RuntimeError):
    pass


class NoTerminalFound(TeleportError):
    pass


@dataclass(frozen=True)
class TerminalCandidate:
    command: str
    args: tuple[str, ...] = ("-e", "sh", "-c", CMD_PLACEHOLDER)

    def argv(self, attach_cmd: str) -> list[str]:
        return [self.command, *(arg.replace(CMD_PLACEHOLDER, attach_cmd) for arg in self.args)]


OSASCRIPT_ARGS = ("-e", 'tell application "Terminal" to do script "{cmd}"', "-e", 'tell application "Terminal" to activate')

KNOWN_TEMPLATES: dict[str, tuple[str, ...]] = {
    "x-terminal-emulator": ("-e", "sh", "-c", CMD_PLACEHOLDER),
    "gnome-terminal": ("--", "sh", "-c", CMD_PLACEHOLDER),
    "konsole": ("-e", "sh", "-c", CMD_PLACEHOLDER),
    "xfce4-terminal": ("-x", "sh", "-c", CMD_PLACEHOLDER),
    "alacritty": ("-e", "sh", "-c", CMD_PLACEHOLDER),
    "kitty": ("sh", "-c", CMD_PLACEHOLDER),
    "wezterm": ("start", "--", "sh", "-c", CMD_PLACEHOLDER),
    "foot": ("sh", "-c", CMD_PLACEHOLDER),
    "xterm": ("-e", "sh", "-c", CMD_PLACEHOLDER),
    "osascript": OSASCRIPT_ARGS,
    "wt.exe": ("-w", "0", "nt", "wsl.exe", "-e", "sh", "-c", CMD_PLACEHOLDER),
    "cmd.exe": ("/c", "start", "wsl.exe", "-e", "sh", "-c", CMD_PLACEHOLDER),
}

PLATFORM_DEFAULTS: dict[Platform, str] = {
    Platform.LINUX: "x-terminal-emulator",
    Platform.MACOS: "osascript",
    Platform.WSL: "wt.exe",
}

PLATFORM_FALLBACKS: dict[Platform, tuple[str, ...]] = {
    Platform.LINUX: ("gnome-terminal", "konsole", "xfce4-terminal", "alacritty", "kitty", "wezterm", "foot", "xterm"),
    Platform.MACOS: ("wezterm", "alacritty", "kitty"),
    Platform.WSL: ("cmd.exe", "wezterm", "alacritty", "xterm"),
}


def candidate_for(program: str) -> TerminalCandidate:
    name = os.path.basename(program)
    return TerminalCandidate(command=program, args=KNOWN_TEMPLATES.get(name, KNOWN_TEMPLATES["xterm"]))


def candidate_chain(platform: Platform, env: Environment, override_env: str = DEFAULT_OVERRIDE_ENV) -> list[TerminalCandidate]:
    """Ordered candidates: user override, platform default, platform fallbacks."""
    chain: list[TerminalCandidate] = []
    override = env.get(override_env).strip()
    if override:
        chain.append(candidate_for(override))
    chain.append(candidate_for(PLATFORM_DEFAULTS[platform]))
    chain.extend(candidate_for(program) for program in PLATFORM_FALLBACKS[platform])

    unique: list[TerminalCandidate] = []
    seen: set[str] = set()
    for candidate in chain:
        if candidate.command in seen:
            continue
        seen.add(candidate.command)
        unique.append(candidate)
    return unique


class TerminalLauncher(Protocol):
    def is_available(self) -> bool: ...

    def launch(self, attach_cmd: str) -> None: ...


class ProcessTerminalLauncher:
    def __init__(self, candidate: TerminalCandidate, which: Callable[[str], str | None] = shutil.which) -> None:
        self.candidate = candidate
        self._which = which

    def is_available(self) -> bool:
        return self._which(self.candidate.command) is not None

    def launch(self, attach_cmd: str) -> None:
        argv = self.candidate.argv(attach_cmd)
        logger.info("launching terminal: {}", argv)
        try:
            subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise TeleportError(f"failed to launch {self.candidate.command}: {exc}") from exc


LauncherFactory = Callable[[TerminalCandidate], TerminalLauncher]


def resolve_launcher(
    candidates: Sequence[TerminalCandidate],
    factory: LauncherFactory = ProcessTerminalLauncher,
) -> tuple[TerminalCandidate, TerminalLauncher]:
    tried: list[str] = []
    for candidate in candidates:
        launcher = factory(candidate)
        if launcher.is_available():
            logger.debug("terminal resolved to {}", candidate.command)
            return candidate, launcher
        tried.append(candidate.command)
    raise NoTerminalFound(f"no terminal emulator available (tried: {', '.join(tried) or 'none'})")


def _escape_for_candidate(attach_cmd: str, candidate: TerminalCandidate) -> str:
    if candidate.command == "osascript":
        # Embedded in an AppleScript string literal.
        return attach_cmd.replace("\\", "\\\\").replace('"', '\\"')
    return attach_cmd


def teleport(
    session: TrackedSession,
    platform: Platform,
    env: Environment,
    override_env: str = DEFAULT_OVERRIDE_ENV,
    factory: LauncherFactory = ProcessTerminalLauncher,
) -> TerminalCandidate:
    if not session.multiplexer_session:
        raise TeleportError(f"session {session.id} has no multiplexer session to attach to")

    candidate, launcher = resolve_launcher(candidate_chain(platform, env, override_env), factory)
    cmd = attach_command(session.multiplexer_session, session.multiplexer_endpoint)
    launcher.launch(_escape_for_candidate(cmd, candidate))
    return candidate


def find_teleport_target(registry: SessionRegistry, query: str) -> TrackedSession | None:
    """Match by id, then multiplexer session name, branch, or issue identifier."""
    return (
        registry.get(query)
        or registry.find_by_multiplexer_session(query)
        or registry.find_by_branch(query)
        or registry.find_by_issue(query)
    )
