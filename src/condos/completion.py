"""Session-end state machine for worker tasks.

When a worker session ends, its task is completed, retried or failed:

- already done: nothing to do beyond releasing the plan watch,
- in progress and ended cleanly: done (under the auto-complete policy),
  then either re-kickoff of the goal or, when every task is done, merge,
- in progress and ended with a failure: back to pending while retries
  remain, permanently ``failed`` once they are exhausted.

PM sessions awaiting a plan are routed to the cascade controller.
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any

from condos import events
from condos.cascade import CascadeController
from condos.config import Settings
from condos.events import EventBus
from condos.hooks import SessionEndEvent
from condos.kickoff import KickoffEngine
from condos.merge import MergeController
from condos.models import (
    all_tasks_done,
    find_condo,
    find_task_by_session,
    is_task_done,
    mark_task_done,
    touch,
)
from condos.plans import PlanLogBuffer
from condos.roles import is_pm_session
from condos.scheduler import Scheduler
from condos.store import Repository

if TYPE_CHECKING:
    from condos.watcher import PlanFileWatcher

log = logging.getLogger(__name__)

AUTO_COMPLETE_SUMMARY = "Completed (auto-marked on session end)"
RETRY_ERROR = "Agent failed while working on task"
EXHAUSTED_ERROR = "Max retries exhausted; agent ended without completing task"
SILENT_END_ERROR = "Agent ended without reporting completion"


class CompletionPolicy(enum.StrEnum):
    """What a session that ends without an explicit failure means."""

    AUTO_COMPLETE = "auto_complete"
    REQUIRE_REPORT = "require_report"


class CompletionHandler:
    def __init__(
        self,
        repo: Repository,
        settings: Settings,
        bus: EventBus,
        scheduler: Scheduler,
        kickoff: KickoffEngine,
        merge: MergeController,
        cascade: CascadeController,
        watcher: PlanFileWatcher | None = None,
        plan_logs: PlanLogBuffer | None = None,
        policy: CompletionPolicy | str | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.bus = bus
        self.scheduler = scheduler
        self.kickoff = kickoff
        self.merge = merge
        self.cascade = cascade
        self.watcher = watcher
        self.plan_logs = plan_logs
        self.policy = CompletionPolicy(policy or settings.completion_policy)

    def release(self, session_key: str) -> None:
        """Stop watching the plan file of a session and drop its log buffer."""
        if self.watcher is not None:
            self.watcher.unwatch(session_key)
        if self.plan_logs is not None:
            self.plan_logs.clear(session_key)

    async def on_session_end(self, event: SessionEndEvent) -> dict[str, Any] | None:
        """Advance the task bound to an ended session. Returns what happened, if anything."""
        key = event.session_key
        data = self.repo.snapshot()

        condo_id = data["session_condo_index"].get(key)
        if condo_id and find_condo(data, condo_id):
            async with self.repo.transaction() as doc:
                condo = find_condo(doc, condo_id)
                if condo is not None:
                    touch(condo)

        if is_pm_session(key) or any(g.get("pm_session_key") == key for g in data["goals"]):
            return await self.cascade.handle_pm_session_end(key)

        found = find_task_by_session(data, key)
        if found is None:
            return None
        goal, task = found
        if is_task_done(task):
            self.release(key)
            return {"goal_id": goal["id"], "task_id": task["id"], "outcome": "already_done"}
        if task.get("status") != "in-progress":
            return None

        if event.success is False:
            return await self._fail(key, event.error or RETRY_ERROR)
        if self.policy is CompletionPolicy.REQUIRE_REPORT:
            return await self._fail(key, event.error or SILENT_END_ERROR)
        return await self._auto_complete(key)

    async def _auto_complete(self, session_key: str) -> dict[str, Any] | None:
        async with self.repo.transaction() as data:
            found = find_task_by_session(data, session_key)
            if found is None or found[1].get("status") != "in-progress":
                return None
            goal, task = found
            mark_task_done(task, summary=task.get("summary") or AUTO_COMPLETE_SUMMARY)
            task["auto_completed"] = True  # type: ignore[typeddict-unknown-key]
            touch(goal)
            goal_id, task_id, done = goal["id"], task["id"], all_tasks_done(goal)

        self.release(session_key)
        log.info("Task %s of goal %s auto-completed on session end", task_id, goal_id)
        self.task_completed(goal_id, task_id, all_done=done, auto_completed=True)
        return {"goal_id": goal_id, "task_id": task_id, "outcome": "completed"}

    def task_completed(
        self, goal_id: str, task_id: str, *, all_done: bool, auto_completed: bool = False
    ) -> None:
        """Announce a finished task and schedule what follows it."""
        self.bus.emit(
            events.GOAL_TASK_COMPLETED,
            goal_id=goal_id,
            task_id=task_id,
            all_tasks_done=all_done,
            auto_completed=auto_completed,
        )
        if all_done:
            self.request_merge(goal_id)
        else:
            self.cascade.schedule_kickoff(goal_id, self.settings.rekickoff_delay)

    def request_merge(self, goal_id: str) -> str:
        return self.scheduler.call_later(
            0, lambda: self.merge.auto_merge(goal_id), key=f"merge:{goal_id}"
        )

    async def _fail(self, session_key: str, error: str) -> dict[str, Any] | None:
        async with self.repo.transaction() as data:
            found = find_task_by_session(data, session_key)
            if found is None or found[1].get("status") != "in-progress":
                return None
            goal, task = found
            retries = task.get("retry_count") or 0
            max_retries = goal.get("max_retries", self.settings.default_max_retries)
            retry = retries < max_retries
            if retry:
                data["session_index"].pop(session_key, None)
                task["session_key"] = None
                task["status"] = "pending"
                task["retry_count"] = retries + 1
                task["last_error"] = error
            else:
                task["status"] = "failed"
                task["last_error"] = EXHAUSTED_ERROR
            touch(task)
            touch(goal)
            goal_id, task_id, retry_count = goal["id"], task["id"], task["retry_count"]

        self.release(session_key)
        if retry:
            log.warning(
                "Task %s of goal %s failed; retry %d/%d",
                task_id,
                goal_id,
                retry_count,
                max_retries,
            )
            self.bus.emit(
                events.GOAL_TASK_RETRY,
                goal_id=goal_id,
                task_id=task_id,
                retry_count=retry_count,
                max_retries=max_retries,
            )
            self.cascade.schedule_kickoff(goal_id, self.settings.retry_delay)
            return {"goal_id": goal_id, "task_id": task_id, "outcome": "retry"}

        log.error("Task %s of goal %s failed permanently: %s", task_id, goal_id, error)
        self.bus.emit(
            events.GOAL_TASK_FAILED,
            goal_id=goal_id,
            task_id=task_id,
            retry_count=retry_count,
            error=EXHAUSTED_ERROR,
        )
        return {"goal_id": goal_id, "task_id": task_id, "outcome": "failed"}
