"""Goal kickoff: select unblocked tasks, spawn their sessions, start them.

A kickoff pass runs in one repository transaction, so the selection and
every spawn it performs commit together. Delivering the opening messages
happens afterwards, outside the lock, one session at a time.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from condos import events
from condos.config import Settings
from condos.events import EventBus
from condos.models import (
    Goal,
    NotFoundError,
    done_task_ids,
    goal_deps_satisfied,
    is_goal_done,
    is_task_done,
    require_goal,
    touch,
)
from condos.runtime import AgentRuntime
from condos.spawn import spawn_in_document
from condos.store import Repository

if TYPE_CHECKING:
    from condos.watcher import PlanFileWatcher

log = logging.getLogger(__name__)

BLOCKED_MESSAGE = "Goal blocked by dependencies"
DONE_MESSAGE = "Goal is already done"


def ready_tasks(goal: Goal) -> list[dict]:
    """Tasks with no session, not done or failed, whose task dependencies are all done."""
    done = done_task_ids(goal)
    return [
        t
        for t in goal.get("tasks", [])
        if not t.get("session_key")
        and not is_task_done(t)
        and t.get("status") != "failed"
        and all(dep in done for dep in t.get("depends_on") or [])
    ]


def _summary(spawned: dict[str, Any]) -> dict[str, Any]:
    return {
        "session_key": spawned["session_key"],
        "task_id": spawned["task_id"],
        "agent_id": spawned["agent_id"],
        "headless_started": spawned.get("headless_started"),
    }


class SessionStarter:
    """Deliver the task context to each freshly spawned session."""

    def __init__(self, runtime: AgentRuntime, *, timeout: float = 30.0) -> None:
        self.runtime = runtime
        self.timeout = timeout

    async def start(self, spawned: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for entry in spawned:
            try:
                await self.runtime.send(
                    entry["session_key"], entry["task_context"], timeout=self.timeout
                )
            except Exception as exc:
                log.warning("Failed to start session %s: %s", entry["session_key"], exc)
                entry["headless_started"] = False
                entry["start_error"] = str(exc)
            else:
                entry["headless_started"] = True
        return spawned


class KickoffEngine:
    def __init__(
        self,
        repo: Repository,
        settings: Settings,
        bus: EventBus,
        starter: SessionStarter,
        *,
        watcher: PlanFileWatcher | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.bus = bus
        self.starter = starter
        self.watcher = watcher

    async def kickoff(self, goal_id: str) -> dict[str, Any]:
        """Spawn sessions for every unblocked task of a goal.

        Raises NotFoundError for an unknown goal. A done goal, or one whose
        goal-level dependencies are not done, yields zero spawns; per-task
        spawn failures are collected in ``errors``.
        """
        async with self.repo.transaction() as data:
            goal = require_goal(data, goal_id)
            if is_goal_done(goal):
                return {"goal_id": goal_id, "spawned_sessions": [], "message": DONE_MESSAGE}
            if not goal_deps_satisfied(data, goal):
                return {
                    "goal_id": goal_id,
                    "spawned_sessions": [],
                    "blocked": True,
                    "message": BLOCKED_MESSAGE,
                }

            tasks = ready_tasks(goal)
            if not tasks:
                return {"goal_id": goal_id, "spawned_sessions": [], "message": "No tasks to spawn"}

            spawned: list[dict[str, Any]] = []
            errors: list[dict[str, str]] = []
            for task in tasks:
                try:
                    spawned.append(spawn_in_document(data, self.settings, goal_id, task["id"]))
                except (NotFoundError, ValueError) as exc:
                    log.warning("Spawn failed for task %s of goal %s: %s", task["id"], goal_id, exc)
                    errors.append({"task_id": task["id"], "error": str(exc)})
                except Exception as exc:
                    log.exception("Spawn failed for task %s of goal %s", task["id"], goal_id)
                    errors.append({"task_id": task["id"], "error": str(exc)})

            if spawned:
                goal["status"] = "active"
                touch(goal)

        message = f"Spawned {len(spawned)} session(s)"
        if errors:
            message += f", {len(errors)} error(s)"
        log.info("Kickoff of goal %s: %s", goal_id, message)
        result: dict[str, Any] = {
            "goal_id": goal_id,
            "spawned_sessions": spawned,
            "message": message,
        }
        if errors:
            result["errors"] = errors
        return result

    async def kickoff_and_start(self, goal_id: str) -> dict[str, Any]:
        """Kickoff, deliver opening messages and announce ``goal.kickoff`` when anything spawned."""
        result = await self.kickoff(goal_id)
        spawned = result["spawned_sessions"]
        if spawned:
            if self.watcher is not None:
                for entry in spawned:
                    self.watcher.watch(entry["session_key"], entry["plan_file_path"])
            await self.starter.start(spawned)
            self.bus.emit(
                events.GOAL_KICKOFF,
                goal_id=goal_id,
                spawned_count=len(spawned),
                spawned_sessions=[_summary(s) for s in spawned],
            )
        return result

    async def deferred_kickoff(self, goal_id: str) -> None:
        """Scheduled re-kickoff: reads fresh state at fire time, never raises."""
        try:
            result = await self.kickoff_and_start(goal_id)
        except NotFoundError:
            log.info("Deferred kickoff skipped: goal %s no longer exists", goal_id)
            return
        except Exception:
            log.exception("Deferred kickoff failed for goal %s", goal_id)
            return
        if result["spawned_sessions"]:
            log.info(
                "Deferred kickoff started %d session(s) for goal %s",
                len(result["spawned_sessions"]),
                goal_id,
            )
