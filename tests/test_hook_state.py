import json
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

from hook_state import (
    HookSessionSource,
    HookSessionState,
    HookStateError,
    event_to_status,
    map_hook_status,
    read_hook_state,
    record_hook_event,
    sessions_from_hook_state,
)
from state_model import AgentStatus, AgentType, SessionSource


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class HookStatusTests(unittest.TestCase):
    def test_status_lookup_table(self) -> None:
        self.assertEqual(map_hook_status("running"), AgentStatus.RUNNING)
        self.assertEqual(map_hook_status("Active"), AgentStatus.RUNNING)
        self.assertEqual(map_hook_status("idle"), AgentStatus.IDLE)
        self.assertEqual(map_hook_status("done"), AgentStatus.DONE)
        self.assertEqual(map_hook_status("stop"), AgentStatus.DONE)
        self.assertEqual(map_hook_status("waiting"), AgentStatus.UNKNOWN)
        self.assertEqual(map_hook_status(""), AgentStatus.UNKNOWN)

    def test_event_mapping(self) -> None:
        self.assertEqual(event_to_status("tool_start"), "running")
        self.assertEqual(event_to_status("prompt"), "running")
        self.assertEqual(event_to_status("stop"), "stop")
        self.assertEqual(event_to_status("notification"), "idle")


class RecordHookEventTests(unittest.TestCase):
    def test_events_upsert_and_stop_marks_done(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            record_hook_event(path, "start", "s1", "/repo", "main", NOW)
            record_hook_event(path, "notification", "s1", "/repo", None, NOW + timedelta(seconds=5))

            state = read_hook_state(path)
            self.assertEqual(state["s1"].status, "idle")
            self.assertIsNone(state["s1"].git_branch)

            record_hook_event(path, "stop", "s1", "/repo", "main", NOW + timedelta(seconds=9))
            state = read_hook_state(path)
            self.assertEqual(state["s1"].status, "done")
            self.assertEqual(state["s1"].git_branch, "main")
            self.assertEqual(state["s1"].last_active, int(NOW.timestamp()) + 9)

    def test_stop_for_unknown_session_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            record_hook_event(path, "stop", "ghost", "/repo", None, NOW)
            self.assertEqual(read_hook_state(path), {})

    def test_old_entries_are_dropped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            record_hook_event(path, "start", "old", "/a", None, NOW - timedelta(days=8))
            record_hook_event(path, "start", "new", "/b", None, NOW)
            self.assertEqual(sorted(read_hook_state(path)), ["new"])

    def test_corrupt_file_raises_on_read_and_recovers_on_write(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            path.write_text("{broken", encoding="utf-8")
            with self.assertRaises(HookStateError):
                read_hook_state(path)

            record_hook_event(path, "start", "s1", "/repo", None, NOW)
            raw = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(list(raw["sessions"]), ["s1"])

    def test_non_object_root_starts_fresh(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            path.write_text("[1, 2, 3]", encoding="utf-8")
            self.assertEqual(read_hook_state(path), {})

            record_hook_event(path, "start", "s1", "/repo", None, NOW)
            self.assertEqual(sorted(read_hook_state(path)), ["s1"])


class HookConversionTests(unittest.TestCase):
    def test_dedupes_by_path_and_marks_stale_done(self) -> None:
        stamp = int(NOW.timestamp())
        state = {
            "older": HookSessionState("/repo", "running", stamp - 120, "main"),
            "newer": HookSessionState("/repo", "idle", stamp - 10, "main"),
            "stale": HookSessionState("/other", "running", stamp - 7200),
            "nopath": HookSessionState("", "running", stamp),
        }
        sessions = sessions_from_hook_state(state, NOW, timedelta(minutes=60))

        self.assertEqual([s.id for s in sessions], ["newer", "stale"])
        newer, stale = sessions
        self.assertEqual(newer.status, AgentStatus.IDLE)
        self.assertEqual(newer.source, SessionSource.HOOK)
        self.assertEqual(newer.agent_type, AgentType.CLAUDE)
        self.assertEqual(newer.git_branch, "main")
        self.assertIsNone(newer.multiplexer_session)
        self.assertEqual(stale.status, AgentStatus.DONE)

    def test_idle_entries_do_not_go_stale(self) -> None:
        stamp = int(NOW.timestamp())
        state = {
            "idle": HookSessionState("/a", "idle", stamp - 7200),
            "running": HookSessionState("/b", "active", stamp - 7200),
        }
        sessions = {s.id: s for s in sessions_from_hook_state(state, NOW, timedelta(minutes=60))}

        self.assertEqual(sessions["idle"].status, AgentStatus.IDLE)
        self.assertEqual(sessions["running"].status, AgentStatus.DONE)

    def test_out_of_range_timestamp_is_skipped(self) -> None:
        stamp = int(NOW.timestamp())
        state = {
            "huge": HookSessionState("/a", "running", 10**20),
            "ok": HookSessionState("/b", "running", stamp),
        }
        sessions = sessions_from_hook_state(state, NOW)
        self.assertEqual([s.id for s in sessions], ["ok"])

    def test_malformed_entries_are_skipped_on_read(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            path.write_text(
                json.dumps(
                    {
                        "sessions": {
                            "bad": {"path": "/w", "status": "running", "last_active": "soon"},
                            "list": {"path": "/x", "status": "idle", "last_active": [1]},
                            "good": {"path": "/g", "status": "idle", "last_active": int(NOW.timestamp())},
                        }
                    }
                ),
                encoding="utf-8",
            )
            self.assertEqual(sorted(read_hook_state(path)), ["good"])
            self.assertEqual([s.id for s in HookSessionSource(path).sessions(NOW)], ["good"])

    def test_source_reads_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "claude_state.json"
            source = HookSessionSource(path)
            self.assertEqual(source.sessions(NOW), [])

            record_hook_event(path, "start", "s1", "/repo", "main", NOW)
            sessions = source.sessions(NOW + timedelta(minutes=1))
            self.assertEqual([s.id for s in sessions], ["s1"])
            self.assertEqual(sessions[0].status, AgentStatus.RUNNING)


if __name__ == "__main__":
    unittest.main()
