from __future__ import annotations

import shlex
import subprocess
from typing import Protocol

from loguru import logger


DEFAULT_TIMEOUT_SECS = 5.0
DEFAULT_CAPTURE_LINES = 30


class AdapterError(RuntimeError):
    def __init__(self, message: str, command: list[str] | None = None, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr


class ProcessAdapter(Protocol):
    endpoint: str | None

    def session_exists(self, name: str) -> bool: ...

    def create_session(self, name: str, working_dir: str, width: int, height: int) -> None: ...

    def kill_session(self, name: str) -> None: ...

    def send_keys(self, name: str, text: str) -> None: ...

    def capture_pane(self, name: str, line_count: int = DEFAULT_CAPTURE_LINES) -> str: ...

    def list_sessions(self) -> set[str]: ...

    def pane_working_dir(self, name: str) -> str: ...


def _target(name: str, pane: bool = False) -> str:
    # "=name" pins tmux to an exact session match instead of prefix matching.
    return f"={name}:" if pane else f"={name}"


class TmuxAdapter:
    def __init__(self, socket: str | None = None, timeout: float = DEFAULT_TIMEOUT_SECS, binary: str = "tmux") -> None:
        self.endpoint = socket or None
        self.timeout = timeout
        self.binary = binary

    def _base_cmd(self) -> list[str]:
        cmd = [self.binary]
        if self.endpoint:
            cmd.extend(["-S", self.endpoint])
        return cmd

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = [*self._base_cmd(), *args]
        logger.debug("tmux: {}", shlex.join(cmd))
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise AdapterError(f"tmux timed out after {self.timeout:.1f}s: {shlex.join(cmd)}", cmd) from exc
        except OSError as exc:
            raise AdapterError(f"cannot run tmux: {exc}", cmd) from exc

        if proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip() or f"exit={proc.returncode}"
            raise AdapterError(f"tmux {args[0]} failed: {detail}", cmd, proc.returncode, proc.stderr)
        return proc

    def session_exists(self, name: str) -> bool:
        try:
            self._run("has-session", "-t", _target(name))
        except AdapterError as exc:
            if exc.returncode is None:
                raise
            return False
        return True

    def create_session(self, name: str, working_dir: str, width: int, height: int) -> None:
        self._run(
            "new-session",
            "-d",
            "-s",
            name,
            "-c",
            working_dir,
            "-x",
            str(width),
            "-y",
            str(height),
        )

    def kill_session(self, name: str) -> None:
        self._run("kill-session", "-t", _target(name))

    def send_keys(self, name: str, text: str) -> None:
        self._run("send-keys", "-t", _target(name, pane=True), "-l", text)
        self._run("send-keys", "-t", _target(name, pane=True), "Enter")

    def capture_pane(self, name: str, line_count: int = DEFAULT_CAPTURE_LINES) -> str:
        proc = self._run("capture-pane", "-p", "-J", "-t", _target(name, pane=True), "-S", f"-{max(1, line_count)}")
        return proc.stdout

    def list_sessions(self) -> set[str]:
        try:
            proc = self._run("list-sessions", "-F", "#{session_name}")
        except AdapterError as exc:
            # A tmux server with no sessions exits non-zero.
            no_server = ("no server running", "no sessions", "error connecting to")
            if exc.returncode is not None and any(marker in exc.stderr for marker in no_server):
                return set()
            raise
        return {line.strip() for line in proc.stdout.splitlines() if line.strip()}

    def pane_working_dir(self, name: str) -> str:
        proc = self._run("display-message", "-p", "-t", _target(name, pane=True), "#{pane_current_path}")
        return proc.stdout.strip()


def attach_command(session_name: str, endpoint: str | None = None) -> str:
    cmd = ["tmux"]
    if endpoint:
        cmd.extend(["-S", endpoint])
    cmd.extend(["attach-session", "-t", session_name])
    return shlex.join(cmd)
