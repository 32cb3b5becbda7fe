"""Plan activity: worker plan files and plan logs from session output.

:class:`PlanFileWatcher` polls the expected plan file of each in-progress
task and, after a burst of changes settles, emits one
``plan.file_changed`` event. Polling picks up a file that appears after
the watch was registered, which is the usual case: the watch starts at
spawn time, before the worker has written its plan.

:class:`PlanLogRecorder` turns streamed session output into plan log
entries matched against the task's plan steps.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from condos import events
from condos.events import EventBus
from condos.hooks import AfterRpcEvent, SessionStreamEvent
from condos.models import Document, find_task_by_session, is_goal_done
from condos.plans import PlanLogBuffer, match_log_to_step, plan_file_path
from condos.roles import agent_id_from_session
from condos.scheduler import Scheduler
from condos.store import Repository

log = logging.getLogger(__name__)

MAX_TEXT_ENTRY = 200
_SIGNIFICANT_PREFIXES = ("#", "✓", "✗")
_SIGNIFICANT_MARKERS = ("Starting", "Completed", "Error:", "Step ")


def _stamp(path: Path) -> tuple[int, int] | None:
    try:
        st = path.stat()
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


@dataclass
class _Watch:
    path: Path
    stamp: tuple[int, int] | None


class PlanFileWatcher:
    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        plan_logs: PlanLogBuffer,
        *,
        debounce: float = 0.5,
        interval: float = 0.25,
    ) -> None:
        self.bus = bus
        self.scheduler = scheduler
        self.plan_logs = plan_logs
        self.debounce = debounce
        self.interval = interval
        self._watches: dict[str, _Watch] = {}

    def watch(self, session_key: str, file_path: str | Path) -> bool:
        """Start watching; returns False when the session is already watched."""
        if session_key in self._watches:
            return False
        path = Path(file_path)
        self._watches[session_key] = _Watch(path, _stamp(path))
        log.info("Watching plan file for %s: %s", session_key, path)
        return True

    def unwatch(self, session_key: str) -> bool:
        self.scheduler.cancel(f"plan-watch:{session_key}")
        if self._watches.pop(session_key, None) is None:
            return False
        log.info("Stopped watching plan file for %s", session_key)
        return True

    def watching(self) -> dict[str, str]:
        return {key: str(w.path) for key, w in self._watches.items()}

    def retain(self, session_keys: set[str]) -> None:
        """Drop watches for sessions not in *session_keys*."""
        for key in list(self._watches):
            if key not in session_keys:
                self.unwatch(key)

    def check_once(self) -> list[str]:
        """Poll every watched file once; returns sessions whose file changed."""
        changed = []
        for key, watch in list(self._watches.items()):
            stamp = _stamp(watch.path)
            if stamp == watch.stamp:
                continue
            watch.stamp = stamp
            if stamp is None:
                continue
            changed.append(key)
            self.scheduler.call_later(
                self.debounce,
                lambda key=key, path=watch.path: self._settled(key, path),
                key=f"plan-watch:{key}",
            )
        return changed

    async def _settled(self, session_key: str, path: Path) -> None:
        if session_key not in self._watches or not path.exists():
            return
        self.bus.emit(events.PLAN_FILE_CHANGED, session_key=session_key, file_path=str(path))
        self.plan_logs.append(
            session_key,
            {"type": "file_change", "message": "Plan file updated", "file_path": str(path)},
        )
        log.debug("Plan file changed for %s: %s", session_key, path)

    def watch_active(self, data: Document, agent_home: Path) -> int:
        """Watch the plan file of every task that holds a live session."""
        added = 0
        for goal in data["goals"]:
            if is_goal_done(goal):
                continue
            for task in goal.get("tasks", []):
                key = task.get("session_key")
                if not key or task.get("status") in ("done", "failed"):
                    continue
                expected = (task.get("plan") or {}).get("expected_file_path")
                if not expected:
                    agent = agent_id_from_session(key) or "main"
                    expected = str(plan_file_path(agent_home, agent, goal["id"], task["id"]))
                added += self.watch(key, expected)
        return added

    async def run(
        self,
        stop: asyncio.Event,
        active_sessions: Callable[[], set[str]] | None = None,
    ) -> None:
        """Poll until *stop* is set, pruning watches of sessions that ended."""
        while not stop.is_set():
            if active_sessions is not None:
                self.retain(active_sessions())
            self.check_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                pass

    # -- Hook handlers ----------------------------------------------------

    def on_after_rpc(self, event: AfterRpcEvent) -> None:
        if event.method != "goals.spawn_task_session" or not event.success:
            return
        result = event.result or {}
        if result.get("session_key") and result.get("plan_file_path"):
            self.watch(result["session_key"], result["plan_file_path"])


def extract_log_entry(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Plan log entry for a streamed chunk, or None when it is not worth logging."""
    kind = chunk.get("type")
    if kind == "tool_call":
        name = chunk.get("name")
        return {"type": kind, "message": f"Tool call: {name or 'unknown'}", "tool_name": name}
    if kind == "tool_result":
        success = bool(chunk.get("success"))
        return {
            "type": kind,
            "message": f"Tool result: {'success' if success else 'failure'}",
            "tool_name": chunk.get("name"),
            "metadata": {"success": success},
        }
    if kind == "text" and chunk.get("text"):
        text = chunk["text"].strip()
        if text.startswith(_SIGNIFICANT_PREFIXES) or any(m in text for m in _SIGNIFICANT_MARKERS):
            return {"type": "text", "message": text[:MAX_TEXT_ENTRY]}
    return None


class PlanLogRecorder:
    """Record plan log entries from the output of sessions whose task has a plan."""

    def __init__(self, repo: Repository, bus: EventBus, plan_logs: PlanLogBuffer) -> None:
        self.repo = repo
        self.bus = bus
        self.plan_logs = plan_logs

    def on_stream(self, event: SessionStreamEvent) -> dict[str, Any] | None:
        found = find_task_by_session(self.repo.snapshot(), event.session_key)
        if found is None:
            return None
        goal, task = found
        plan = task.get("plan")
        if not plan:
            return None
        entry = extract_log_entry(event.chunk or {})
        if entry is None:
            return None

        step, confidence = match_log_to_step(entry["message"], plan.get("steps") or [])
        if step is not None:
            entry["step_index"] = step
            entry["match_confidence"] = confidence

        record = self.plan_logs.append(event.session_key, entry)
        self.bus.emit(
            events.PLAN_LOG,
            session_key=event.session_key,
            goal_id=goal["id"],
            task_id=task["id"],
            entry=record,
        )
        return record
