#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import subprocess
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from config import ConfigError, configure_logging, load_config, resolve_context
from hook_state import HookSessionSource, HookStateError, record_hook_event
from platform_env import Environment, SystemClock, detect_platform
from registry import DuplicateId, RegistryIOError, RegistryStore
from spawn import SpawnOrchestrator, SpawnRequest, UnsupportedAgentType, ValidationError
from state_model import AgentType, TrackedSession, parse_agent_type, summarize
from sync import PollLoop, SessionMirror, reconcile_once
from terminal import TeleportError, find_teleport_target, teleport
from tmux_adapter import AdapterError, TmuxAdapter


def die(msg: str, code: int = 1) -> None:
    print(f"Error: {msg}", file=sys.stderr)
    raise SystemExit(code)


def git_branch_for(directory: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "-C", directory, "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    branch = proc.stdout.strip()
    # Detached HEAD reports the literal "HEAD".
    if not branch or branch == "HEAD":
        return None
    return branch


def load_ctx(args: argparse.Namespace, log_to_file: bool = False) -> dict[str, Any]:
    config, config_path = load_config(getattr(args, "config", None))
    ctx = resolve_context(config, config_path)
    configure_logging(ctx["logging"]["level"], ctx["log_file"] if log_to_file else None)
    return ctx


def make_store(ctx: dict[str, Any]) -> RegistryStore:
    return RegistryStore(ctx["registry_file"])


def make_adapter(ctx: dict[str, Any]) -> TmuxAdapter:
    return TmuxAdapter(
        socket=ctx["tmux"]["socket"] or None,
        timeout=ctx["polling"]["command_timeout_secs"],
    )


def make_hook_source(ctx: dict[str, Any]) -> HookSessionSource:
    return HookSessionSource(
        ctx["hook_state_file"],
        stale_after=timedelta(minutes=ctx["hooks"]["stale_minutes"]),
    )


def cmd_paths(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    print(json.dumps(ctx, ensure_ascii=False, indent=2))


def _status_payload(ctx: dict[str, Any]) -> dict[str, Any]:
    registry = make_store(ctx).load()
    sessions = sorted(registry.sessions.values(), key=lambda s: s.last_activity, reverse=True)
    return {
        "registry_file": ctx["registry_file"],
        "summary": summarize(sessions),
        "sessions": [session.to_dict() for session in sessions],
    }


def _age(value: str, now: datetime) -> str:
    seconds = int((now - datetime.fromisoformat(value)).total_seconds())
    if seconds < 60:
        return f"{max(0, seconds)}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def _render_status_text(payload: dict[str, Any]) -> str:
    now = SystemClock().now()
    summary = payload["summary"]
    counts = ", ".join(f"{k}={v}" for k, v in sorted(summary["status_counts"].items())) or "-"
    lines = [
        f"Registry: {payload['registry_file']}",
        f"Sessions: {summary['total']} ({counts})",
    ]
    if not payload["sessions"]:
        lines.append("")
        lines.append("No tracked sessions.")
        return "\n".join(lines)

    lines.append("")
    lines.append(f"{'ID':<28} {'AGENT':<9} {'STATUS':<8} {'SOURCE':<9} {'AGE':>5}  LAST OUTPUT")
    for item in payload["sessions"]:
        lines.append(
            f"{item['id'][:28]:<28} {item['agent_type']:<9} {item['status']:<8} "
            f"{item['source']:<9} {_age(item['last_activity'], now):>5}  {item.get('last_output') or '-'}"
        )
    return "\n".join(lines)


def _run_status_tui(ctx: dict[str, Any]) -> None:
    try:
        from rich.text import Text
        from textual.app import App, ComposeResult
        from textual.containers import Container, Horizontal
        from textual.screen import ModalScreen
        from textual.widgets import Button, DataTable, Footer, Header, Static
    except ModuleNotFoundError:
        die("Textual is not installed. Install with: pip install textual")

    store = make_store(ctx)
    adapter = make_adapter(ctx)
    clock = SystemClock()
    env = Environment()
    host_platform = detect_platform()
    mirror = SessionMirror()
    loop = PollLoop(
        store,
        adapter,
        clock,
        external=make_hook_source(ctx),
        mirror=mirror,
        interval=ctx["polling"]["interval_secs"],
        capture_lines=ctx["polling"]["capture_lines"],
    )
    status_styles = {
        "running": "bold #5d8761",
        "idle": "#9a7a40",
        "done": "dim",
        "error": "bold red",
        "unknown": "dim italic",
    }

    class SessionOutputModal(ModalScreen[None]):
        CSS = """
        #output_center {
            width: 1fr;
            height: 1fr;
            align: center middle;
        }

        #output_dialog {
            width: 100%;
            max-width: 160;
            height: 100%;
            max-height: 60;
            layout: vertical;
            padding: 1 1;
        }

        #output_body {
            height: 1fr;
            overflow-y: auto;
            border: round #d8bf7c;
            padding: 0 1;
        }

        #output_footer {
            margin-top: 1;
            height: auto;
        }

        #output_meta {
            width: 1fr;
        }
        """
        BINDINGS = [
            ("escape", "close_modal", "Close"),
            ("q", "close_modal", "Close"),
            ("enter", "close_modal", "Close"),
        ]

        def __init__(self, session: TrackedSession) -> None:
            super().__init__()
            self.session = session

        def compose(self) -> ComposeResult:
            meta_text = (
                f"Session: {self.session.id}\n"
                f"Agent: {self.session.agent_type.label}\n"
                f"Dir: {self.session.working_directory}\n"
                f"tmux: {self.session.multiplexer_session or 'N/A'}"
            )
            with Container(id="output_center"):
                with Container(id="output_dialog"):
                    yield Static(Text("Loading session output..."), id="output_body")
                    with Horizontal(id="output_footer"):
                        yield Static(Text(meta_text, style="bold #dce9ff"), id="output_meta")
                        yield Button("Close (Enter/Esc)", id="close")

        def on_mount(self) -> None:
            self._request_capture()
            self.set_interval(1.0, self._request_capture)

        def _request_capture(self) -> None:
            self.run_worker(self._capture, thread=True, exclusive=True)

        def _capture(self) -> None:
            name = self.session.multiplexer_session
            if not name:
                body = Text("This session is not hosted in tmux.", style="yellow")
            else:
                try:
                    content = adapter.capture_pane(name, 300).rstrip("\n")
                    body = Text.from_ansi(content) if content.strip() else Text("(No output yet)")
                except AdapterError as exc:
                    body = Text(f"Failed to capture tmux pane: {exc}", style="red")
            self.app.call_from_thread(self._show, body)

        def _show(self, body: Text) -> None:
            self.query_one("#output_body", Static).update(body)

        def action_close_modal(self) -> None:
            self.dismiss(None)

        def on_button_pressed(self, event: Button.Pressed) -> None:
            if event.button.id == "close":
                self.dismiss(None)

    class StatusTui(App[None]):
        ENABLE_COMMAND_PALETTE = False
        TITLE = "panopticon"
        CSS = """
        Screen {
            layout: vertical;
        }

        #sessions_table {
            height: 1fr;
        }

        #status_line {
            height: 1;
            color: $text-muted;
        }
        """
        BINDINGS = [
            ("q", "quit", "Quit"),
            ("t", "teleport", "Teleport"),
            ("r", "refresh", "Refresh"),
        ]

        def __init__(self) -> None:
            super().__init__()
            self.generation = -1
            self.sessions: list[TrackedSession] = []
            self.last_action = ""

        def compose(self) -> ComposeResult:
            yield Header()
            yield DataTable(id="sessions_table", cursor_type="row", zebra_stripes=True)
            yield Static("", id="status_line")
            yield Footer()

        def on_mount(self) -> None:
            table = self.query_one("#sessions_table", DataTable)
            table.add_columns("", "ID", "Agent", "Status", "Branch", "Issue", "Last Output")
            # First poll pass fills the mirror.
            loop.start()
            self.set_interval(0.5, self._sync_from_mirror)
            self._sync_from_mirror()

        def on_unmount(self) -> None:
            loop.stop(timeout=2.0)

        def _sync_from_mirror(self) -> None:
            generation, sessions = mirror.snapshot()
            if generation == self.generation:
                return
            self.generation = generation
            self.sessions = sessions
            table = self.query_one("#sessions_table", DataTable)
            cursor = table.cursor_row
            table.clear()
            for session in sessions:
                style = status_styles.get(session.status.value, "")
                table.add_row(
                    Text(session.status.icon, style=style),
                    session.id,
                    session.agent_type.label,
                    Text(session.status.value, style=style),
                    session.git_branch or "-",
                    session.issue_identifier or "-",
                    session.last_output or "-",
                    key=session.id,
                )
            if sessions:
                table.move_cursor(row=min(cursor, len(sessions) - 1))
            self._render_status_line()

        def _render_status_line(self) -> None:
            counts = summarize(self.sessions)["status_counts"]
            parts = [f"{len(self.sessions)} sessions"]
            parts.extend(f"{k}={v}" for k, v in sorted(counts.items()))
            if self.last_action:
                parts.append(self.last_action)
            if mirror.last_error:
                parts.append(f"last poll failed: {mirror.last_error}")
            self.query_one("#status_line", Static).update(" | ".join(parts))

        def _selected(self) -> TrackedSession | None:
            table = self.query_one("#sessions_table", DataTable)
            if not self.sessions or table.cursor_row < 0 or table.cursor_row >= len(self.sessions):
                return None
            return self.sessions[table.cursor_row]

        def action_refresh(self) -> None:
            self.run_worker(loop.run_pass, thread=True, exclusive=True, group="poll")

        def action_teleport(self) -> None:
            session = self._selected()
            if session is None:
                return
            try:
                candidate = teleport(session, host_platform, env, ctx["terminal"]["override_env"])
            except TeleportError as exc:
                self.last_action = f"teleport failed: {exc}"
            else:
                self.last_action = f"teleported to {session.id} via {candidate.command}"
            self._render_status_line()

        def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
            session = self._selected()
            if session is not None:
                self.push_screen(SessionOutputModal(session))

    StatusTui().run()


def cmd_status(args: argparse.Namespace) -> None:
    if args.format == "tui":
        # In non-interactive shells (tests/CI), keep deterministic text output.
        if not (sys.stdin.isatty() and sys.stdout.isatty()):
            ctx = load_ctx(args)
            print(_render_status_text(_status_payload(ctx)))
            return
        ctx = load_ctx(args, log_to_file=True)
        _run_status_tui(ctx)
        return

    ctx = load_ctx(args)
    payload = _status_payload(ctx)
    if args.format == "json":
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    print(_render_status_text(payload))


def cmd_spawn(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    agent_type = parse_agent_type(args.agent)
    if agent_type is AgentType.OTHER and args.agent.strip().lower() != AgentType.OTHER.value:
        die(f"unknown agent type: {args.agent!r} (expected claude or codex)")
    working_dir = str(Path(args.dir).expanduser().resolve()) if args.dir else ""
    branch = args.branch or (git_branch_for(working_dir) if working_dir else None)

    orchestrator = SpawnOrchestrator(
        make_store(ctx),
        make_adapter(ctx),
        SystemClock(),
        agent_flags={
            AgentType.CLAUDE: ctx["agents"]["claude_flags"],
            AgentType.CODEX: ctx["agents"]["codex_flags"],
        },
        width=ctx["tmux"]["width"],
        height=ctx["tmux"]["height"],
    )
    session = orchestrator.execute(
        SpawnRequest(
            agent_type=agent_type,
            working_directory=working_dir,
            task=args.task or "",
            git_branch=branch,
            issue_id=args.issue_id,
            issue_identifier=args.issue,
        )
    )
    if args.format == "json":
        print(json.dumps(session.to_dict(), ensure_ascii=False, indent=2))
        return
    print(f"Spawned {session.id} ({session.agent_type.label}) in {session.working_directory}")


def cmd_teleport(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    registry = make_store(ctx).load()
    session = find_teleport_target(registry, args.query)
    if session is None:
        die(f"no tracked session matches: {args.query}")
    candidate = teleport(session, detect_platform(), Environment(), ctx["terminal"]["override_env"])
    print(f"Teleported to {session.id} via {candidate.command}")


def cmd_poll(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    store = make_store(ctx)
    adapter = make_adapter(ctx)
    clock = SystemClock()
    hooks = make_hook_source(ctx)

    if args.once:
        report = reconcile_once(store, adapter, clock, hooks, ctx["polling"]["capture_lines"])
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        return

    loop = PollLoop(
        store,
        adapter,
        clock,
        external=hooks,
        interval=ctx["polling"]["interval_secs"],
        capture_lines=ctx["polling"]["capture_lines"],
    )
    logger.info("polling every {:.1f}s; Ctrl-C to stop", loop.interval)
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        loop.stop()


def cmd_prune(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    days = args.days if args.days is not None else ctx["retention_days"]
    with make_store(ctx).transaction() as registry:
        pruned = registry.prune(SystemClock().now(), timedelta(days=days))
    print(json.dumps({"pruned": [s.id for s in pruned]}, ensure_ascii=False, indent=2))


def cmd_remove(args: argparse.Namespace) -> None:
    ctx = load_ctx(args)
    with make_store(ctx).transaction() as registry:
        removed = registry.remove(args.session_id)
    if removed is None:
        die(f"session not found: {args.session_id}")
    print(f"Removed {removed.id}")


def cmd_internal_hook(args: argparse.Namespace) -> None:
    ctx = load_ctx(args, log_to_file=True)
    cwd = args.cwd or str(Path.cwd())
    record_hook_event(
        ctx["hook_state_file"],
        args.event,
        args.session_id,
        cwd,
        git_branch_for(cwd),
        SystemClock().now(),
        retention=timedelta(days=ctx["hooks"]["retention_days"]),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="panopticon agent session dashboard")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", help="Config path override")

    p_paths = sub.add_parser("paths")
    add_common(p_paths)
    p_paths.set_defaults(fn=cmd_paths)

    p_status = sub.add_parser("status")
    add_common(p_status)
    p_status.add_argument(
        "--format", choices=["text", "json", "tui"], default="tui")
    p_status.set_defaults(fn=cmd_status)

    p_spawn = sub.add_parser("spawn")
    add_common(p_spawn)
    p_spawn.add_argument("--agent", default="claude",
                         help="Agent type: claude or codex")
    p_spawn.add_argument("--dir", default=".", help="Working directory")
    p_spawn.add_argument("--task", required=True)
    p_spawn.add_argument("--branch")
    p_spawn.add_argument("--issue", help="Issue identifier, e.g. DRE-380")
    p_spawn.add_argument("--issue-id", dest="issue_id",
                         help="Opaque issue id paired with --issue")
    p_spawn.add_argument("--format", choices=["text", "json"], default="text")
    p_spawn.set_defaults(fn=cmd_spawn)

    p_teleport = sub.add_parser("teleport")
    add_common(p_teleport)
    p_teleport.add_argument(
        "query", help="Session id, tmux session, branch or issue identifier")
    p_teleport.set_defaults(fn=cmd_teleport)

    p_poll = sub.add_parser("poll")
    add_common(p_poll)
    p_poll.add_argument("--once", action="store_true")
    p_poll.set_defaults(fn=cmd_poll)

    p_prune = sub.add_parser("prune")
    add_common(p_prune)
    p_prune.add_argument("--days", type=float)
    p_prune.set_defaults(fn=cmd_prune)

    p_remove = sub.add_parser("remove")
    add_common(p_remove)
    p_remove.add_argument("session_id")
    p_remove.set_defaults(fn=cmd_remove)

    p_hook = sub.add_parser("internal-hook")
    add_common(p_hook)
    p_hook.add_argument("event")
    p_hook.add_argument("--session-id", dest="session_id", required=True)
    p_hook.add_argument("--cwd")
    p_hook.set_defaults(fn=cmd_internal_hook)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    try:
        args.fn(args)
    except (
        ConfigError,
        ValidationError,
        UnsupportedAgentType,
        DuplicateId,
        RegistryIOError,
        AdapterError,
        TeleportError,
        HookStateError,
    ) as exc:
        die(str(exc))


if __name__ == "__main__":
    main()
