import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "scripts" / "py"))

import state_model
from state_model import AgentStatus, AgentType, SessionSource, TrackedSession


T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_session(**overrides):
    values = dict(
        id="claude-dre-380",
        agent_type=AgentType.CLAUDE,
        status=AgentStatus.RUNNING,
        working_directory="/tmp/repo",
        created_at=T0,
        last_activity=T0,
    )
    values.update(overrides)
    return TrackedSession(**values)


class StateModelTests(unittest.TestCase):
    def test_status_helper_sets(self) -> None:
        self.assertTrue(state_model.is_active_status(AgentStatus.RUNNING))
        self.assertTrue(state_model.is_active_status(AgentStatus.IDLE))
        self.assertFalse(state_model.is_active_status(AgentStatus.DONE))

        self.assertTrue(state_model.is_done_status(AgentStatus.DONE))
        self.assertFalse(state_model.is_done_status(AgentStatus.ERROR))

    def test_parse_agent_type_is_lenient(self) -> None:
        self.assertEqual(state_model.parse_agent_type("Codex"), AgentType.CODEX)
        self.assertEqual(state_model.parse_agent_type(" claude "), AgentType.CLAUDE)
        self.assertEqual(state_model.parse_agent_type("gemini"), AgentType.OTHER)

    def test_rejects_empty_working_directory_and_half_linked_issue(self) -> None:
        with self.assertRaises(ValueError):
            make_session(working_directory="")
        with self.assertRaises(ValueError):
            make_session(issue_id="abc-uuid")
        with self.assertRaises(ValueError):
            make_session(id="")

    def test_last_activity_never_precedes_created_at(self) -> None:
        session = make_session(last_activity=T0 - timedelta(hours=1))
        self.assertEqual(session.last_activity, T0)

    def test_last_output_truncated_to_limit(self) -> None:
        session = make_session(last_output="x" * 250)
        self.assertEqual(len(session.last_output), state_model.LAST_OUTPUT_LIMIT)
        self.assertTrue(session.last_output.endswith("..."))

    def test_with_observation_keeps_identity_when_unchanged(self) -> None:
        session = make_session(last_output="Reading files")
        later = T0 + timedelta(minutes=5)

        same = session.with_observation(AgentStatus.RUNNING, "Reading files", later)
        self.assertIs(same, session)

        changed = session.with_observation(AgentStatus.IDLE, "Reading files", later)
        self.assertEqual(changed.status, AgentStatus.IDLE)
        self.assertEqual(changed.last_activity, later)
        self.assertEqual(session.status, AgentStatus.RUNNING)

    def test_dict_round_trip(self) -> None:
        session = make_session(
            source=SessionSource.EXTERNAL,
            multiplexer_session="claude-dre-380",
            multiplexer_endpoint="/tmp/tmux.sock",
            git_branch="feature/dre-380",
            issue_id="4f2c",
            issue_identifier="DRE-380",
            task="fix the login flow",
            last_output="All tests passed",
            last_activity=T0 + timedelta(minutes=3),
            extra={"model": "opus"},
        )
        restored = TrackedSession.from_dict(session.to_dict())
        self.assertEqual(restored, session)

    def test_from_dict_defaults_unknown_enums(self) -> None:
        restored = TrackedSession.from_dict(
            {
                "id": "x",
                "agent_type": "mystery",
                "status": "sleeping",
                "working_directory": "/w",
                "created_at": "2025-03-01T12:00:00",
            }
        )
        self.assertEqual(restored.agent_type, AgentType.OTHER)
        self.assertEqual(restored.status, AgentStatus.UNKNOWN)
        self.assertEqual(restored.source, SessionSource.SPAWNED)
        self.assertEqual(restored.created_at.tzinfo, timezone.utc)
        self.assertEqual(restored.last_activity, restored.created_at)

    def test_summarize_counts_by_status_and_source(self) -> None:
        sessions = [
            make_session(id="a"),
            make_session(id="b", status=AgentStatus.DONE),
            make_session(id="c", status=AgentStatus.DONE, source=SessionSource.HOOK),
        ]
        summary = state_model.summarize(sessions)
        self.assertEqual(summary["total"], 3)
        self.assertEqual(summary["status_counts"], {"running": 1, "done": 2})
        self.assertEqual(summary["source_counts"], {"spawned": 2, "hook": 1})


if __name__ == "__main__":
    unittest.main()
