import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

from fakes import FakeLauncherFactory
from platform_env import Environment, Platform, detect_platform
from registry import SessionRegistry
from state_model import AgentStatus, AgentType, TrackedSession
from terminal import (
    NoTerminalFound,
    TeleportError,
    candidate_chain,
    candidate_for,
    find_teleport_target,
    resolve_launcher,
    teleport,
)


T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_session(session_id="claude-dre-1", multiplexer_session="claude-dre-1", **extra):
    return TrackedSession(
        id=session_id,
        agent_type=AgentType.CLAUDE,
        status=AgentStatus.RUNNING,
        working_directory="/tmp/repo",
        created_at=T0,
        last_activity=T0,
        multiplexer_session=multiplexer_session,
        **extra,
    )


class PlatformTests(unittest.TestCase):
    def test_detect_platform(self) -> None:
        no_proc = lambda: ""  # noqa: E731
        self.assertEqual(detect_platform("Darwin", "23.1.0", no_proc), Platform.MACOS)
        self.assertEqual(detect_platform("Linux", "6.8.0-generic", no_proc), Platform.LINUX)
        self.assertEqual(detect_platform("Linux", "5.15.90.1-microsoft-standard-WSL2", no_proc), Platform.WSL)
        self.assertEqual(
            detect_platform("Linux", "5.15.0", lambda: "Linux version 5.15 (Microsoft@Microsoft.com)"),
            Platform.WSL,
        )
        self.assertEqual(detect_platform("FreeBSD", "14.0", no_proc), Platform.LINUX)


class CandidateChainTests(unittest.TestCase):
    def test_linux_chain_order(self) -> None:
        chain = [c.command for c in candidate_chain(Platform.LINUX, Environment({}))]
        self.assertEqual(chain[0], "x-terminal-emulator")
        self.assertEqual(chain[1], "gnome-terminal")
        self.assertEqual(chain[-1], "xterm")

    def test_override_comes_first_and_is_deduplicated(self) -> None:
        env = Environment({"PANOPTICON_TERMINAL": "kitty"})
        chain = [c.command for c in candidate_chain(Platform.MACOS, env)]
        self.assertEqual(chain, ["kitty", "osascript", "wezterm", "alacritty"])

    def test_custom_override_variable(self) -> None:
        env = Environment({"MY_TERM": "/opt/bin/alacritty"})
        chain = candidate_chain(Platform.WSL, env, "MY_TERM")
        self.assertEqual(chain[0].command, "/opt/bin/alacritty")
        self.assertEqual(chain[0].args, candidate_for("alacritty").args)
        self.assertEqual(chain[1].command, "wt.exe")

    def test_placeholder_substitution(self) -> None:
        argv = candidate_for("gnome-terminal").argv("tmux attach-session -t claude")
        self.assertEqual(argv, ["gnome-terminal", "--", "sh", "-c", "tmux attach-session -t claude"])

    def test_unknown_program_uses_xterm_style(self) -> None:
        argv = candidate_for("myterm").argv("X")
        self.assertEqual(argv, ["myterm", "-e", "sh", "-c", "X"])


class ResolveAndTeleportTests(unittest.TestCase):
    def test_first_available_wins(self) -> None:
        factory = FakeLauncherFactory({"konsole", "xterm"})
        candidate, _ = resolve_launcher(candidate_chain(Platform.LINUX, Environment({})), factory)
        self.assertEqual(candidate.command, "konsole")
        self.assertEqual(factory.probed, ["x-terminal-emulator", "gnome-terminal", "konsole"])

    def test_unavailable_override_falls_through(self) -> None:
        factory = FakeLauncherFactory({"x-terminal-emulator"})
        env = Environment({"PANOPTICON_TERMINAL": "not-installed"})
        candidate, _ = resolve_launcher(candidate_chain(Platform.LINUX, env), factory)
        self.assertEqual(candidate.command, "x-terminal-emulator")

    def test_exhausted_chain_raises(self) -> None:
        factory = FakeLauncherFactory(set())
        with self.assertRaises(NoTerminalFound) as ctx:
            resolve_launcher(candidate_chain(Platform.MACOS, Environment({})), factory)
        self.assertIn("osascript", str(ctx.exception))

    def test_teleport_launches_attach_command(self) -> None:
        factory = FakeLauncherFactory({"xterm"})
        session = make_session(multiplexer_endpoint="/tmp/sock")
        candidate = teleport(session, Platform.LINUX, Environment({}), factory=factory)

        self.assertEqual(candidate.command, "xterm")
        self.assertEqual(factory.launched, [("xterm", "tmux -S /tmp/sock attach-session -t claude-dre-1")])

    def test_teleport_escapes_for_osascript(self) -> None:
        factory = FakeLauncherFactory({"osascript"})
        session = make_session(multiplexer_endpoint="/tmp/my sock")
        teleport(session, Platform.MACOS, Environment({}), factory=factory)
        self.assertEqual(factory.launched[0][1], "tmux -S '/tmp/my sock' attach-session -t claude-dre-1")

    def test_teleport_without_multiplexer_session_fails(self) -> None:
        factory = FakeLauncherFactory({"xterm"})
        with self.assertRaises(TeleportError):
            teleport(make_session(multiplexer_session=None), Platform.LINUX, Environment({}), factory=factory)
        self.assertEqual(factory.launched, [])

    def test_find_teleport_target(self) -> None:
        registry = SessionRegistry()
        registry.add(make_session("claude-dre-1", "claude-dre-1", git_branch="feat/a"))
        registry.add(
            make_session("hook-uuid", "codex-x", issue_id="9", issue_identifier="DRE-9")
        )

        self.assertEqual(find_teleport_target(registry, "claude-dre-1").id, "claude-dre-1")
        self.assertEqual(find_teleport_target(registry, "codex-x").id, "hook-uuid")
        self.assertEqual(find_teleport_target(registry, "feat/a").id, "claude-dre-1")
        self.assertEqual(find_teleport_target(registry, "dre-9").id, "hook-uuid")
        self.assertIsNone(find_teleport_target(registry, "nothing"))


if __name__ == "__main__":
    unittest.main()
