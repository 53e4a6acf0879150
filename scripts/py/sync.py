from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from loguru import logger

from hook_state import HookStateError
from naming import agent_type_for_name
from platform_env import Clock
from registry import RegistryIOError, RegistryStore, SessionRegistry
from state_model import AgentStatus, SessionSource, TrackedSession
from status_detector import detect, extract_last_output
from tmux_adapter import DEFAULT_CAPTURE_LINES, AdapterError, ProcessAdapter


DEFAULT_INTERVAL_SECS = 5.0


class ExternalSessionSource(Protocol):
    def sessions(self, now: datetime) -> list[TrackedSession]: ...


@dataclass
class ReconcileReport:
    marked_done: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.marked_done or self.updated or self.merged)

    def to_dict(self) -> dict[str, object]:
        return {
            "marked_done": list(self.marked_done),
            "updated": list(self.updated),
            "merged": list(self.merged),
            "failures": dict(self.failures),
        }


def _observe_sessions(
    snapshot: SessionRegistry,
    live: set[str],
    adapter: ProcessAdapter,
    now: datetime,
    capture_lines: int,
    report: ReconcileReport,
) -> dict[str, TrackedSession]:
    changed: dict[str, TrackedSession] = {}
    for session in snapshot.sessions.values():
        name = session.multiplexer_session
        if not name or session.multiplexer_endpoint != adapter.endpoint:
            continue

        if name not in live:
            # A vanished session is treated as a clean exit.
            if session.status is not AgentStatus.DONE:
                changed[session.id] = session.with_observation(AgentStatus.DONE, session.last_output, now)
                report.marked_done.append(session.id)
            continue

        try:
            content = adapter.capture_pane(name, capture_lines)
        except AdapterError as exc:
            logger.warning("capture failed for {}: {}", session.id, exc)
            report.failures[session.id] = str(exc)
            continue

        observed = session.with_observation(detect(content), extract_last_output(content), now)
        if observed is not session:
            changed[session.id] = observed
            report.updated.append(session.id)
    return changed


def _orphan_sessions(
    snapshot: SessionRegistry,
    live: set[str],
    adapter: ProcessAdapter,
    now: datetime,
    capture_lines: int,
    report: ReconcileReport,
) -> list[TrackedSession]:
    bound = {s.multiplexer_session for s in snapshot.sessions.values() if s.multiplexer_session}
    orphans: list[TrackedSession] = []
    for name in sorted(live):
        if name in bound or name in snapshot.sessions:
            continue
        agent_type = agent_type_for_name(name)
        if agent_type is None:
            continue

        try:
            working_dir = adapter.pane_working_dir(name)
            content = adapter.capture_pane(name, capture_lines)
        except AdapterError as exc:
            logger.warning("cannot inspect orphan session {}: {}", name, exc)
            report.failures[name] = str(exc)
            continue
        if not working_dir:
            continue

        logger.info("adopting orphan tmux session {}", name)
        orphans.append(
            TrackedSession(
                id=name,
                agent_type=agent_type,
                status=detect(content),
                source=SessionSource.EXTERNAL,
                multiplexer_session=name,
                multiplexer_endpoint=adapter.endpoint,
                working_directory=working_dir,
                created_at=now,
                last_activity=now,
                last_output=extract_last_output(content),
            )
        )
    return orphans


def reconcile_once(
    store: RegistryStore,
    adapter: ProcessAdapter,
    clock: Clock,
    external: ExternalSessionSource | None = None,
    capture_lines: int = DEFAULT_CAPTURE_LINES,
) -> ReconcileReport:
    """Run one reconciliation pass and persist the result.

    Captures happen outside the registry lock; changes are re-applied to a
    freshly loaded registry under the exclusive lock, so records added or
    removed concurrently are never resurrected or clobbered by a merge.
    Nothing is written when the pass observes no change.
    """
    report = ReconcileReport()
    snapshot = store.load()
    live = adapter.list_sessions()
    now = clock.now()

    changed = _observe_sessions(snapshot, live, adapter, now, capture_lines, report)

    candidates = _orphan_sessions(snapshot, live, adapter, now, capture_lines, report)
    if external is not None:
        try:
            candidates.extend(external.sessions(now))
        except (HookStateError, OSError, ValueError) as exc:
            logger.warning("external session source unavailable: {}", exc)

    merges: dict[str, TrackedSession] = {}
    for candidate in candidates:
        if candidate.id in snapshot.sessions or candidate.id in merges:
            continue
        merges[candidate.id] = candidate

    if not changed and not merges:
        return report

    with store.transaction() as registry:
        for session_id, session in changed.items():
            if session_id in registry.sessions:
                registry.update(session)
        for session_id, session in merges.items():
            if session_id not in registry.sessions:
                registry.add(session)
                report.merged.append(session_id)

    logger.info(
        "reconciled: done={} updated={} merged={} failures={}",
        len(report.marked_done),
        len(report.updated),
        len(report.merged),
        len(report.failures),
    )
    return report


class SessionMirror:
    """In-memory copy of the registry for the UI; replaced wholesale under one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: list[TrackedSession] = []
        self._generation = 0
        self.last_error = ""

    def replace(self, sessions: list[TrackedSession], error: str = "") -> None:
        ordered = sorted(sessions, key=lambda s: s.last_activity, reverse=True)
        with self._lock:
            self._sessions = ordered
            self._generation += 1
            self.last_error = error

    def snapshot(self) -> tuple[int, list[TrackedSession]]:
        with self._lock:
            return self._generation, list(self._sessions)

    def refresh_from(self, store: RegistryStore, error: str = "") -> None:
        try:
            sessions = list(store.load().sessions.values())
        except RegistryIOError as exc:
            logger.warning("registry reload failed: {}", exc)
            with self._lock:
                self.last_error = str(exc)
            return
        self.replace(sessions, error)


class PollLoop:
    """Runs reconcile_once on a background thread; stops only between passes."""

    def __init__(
        self,
        store: RegistryStore,
        adapter: ProcessAdapter,
        clock: Clock,
        external: ExternalSessionSource | None = None,
        mirror: SessionMirror | None = None,
        interval: float = DEFAULT_INTERVAL_SECS,
        capture_lines: int = DEFAULT_CAPTURE_LINES,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.clock = clock
        self.external = external
        self.mirror = mirror
        self.interval = interval
        self.capture_lines = capture_lines
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_pass(self) -> ReconcileReport | None:
        report: ReconcileReport | None = None
        error = ""
        try:
            report = reconcile_once(self.store, self.adapter, self.clock, self.external, self.capture_lines)
        except (AdapterError, RegistryIOError) as exc:
            logger.warning("poll pass failed: {}", exc)
            error = str(exc)
        except Exception as exc:
            # The loop thread must outlive any single bad pass.
            logger.exception("unexpected poll pass failure")
            error = f"unexpected error: {exc}"

        if self.mirror is not None:
            self.mirror.refresh_from(self.store, error)
        return report

    def run_forever(self) -> None:
        while not self._stop.is_set():
            self.run_pass()
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="panopticon-poll", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
