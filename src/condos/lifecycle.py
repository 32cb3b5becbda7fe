"""Session teardown and inspection for goals and condos.

Teardown is best-effort: each session is asked to delete, then abort,
and a failure on one session never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from condos.models import (
    Document,
    Goal,
    goals_for_condo,
    is_task_done,
    require_condo,
    require_goal,
    touch,
)
from condos.roles import pm_condo_session_key
from condos.runtime import AgentRuntime
from condos.store import Repository

log = logging.getLogger(__name__)


def goal_session_keys(goal: Goal) -> list[str]:
    """PM, goal-level and task-level session keys of a goal, deduplicated in order."""
    keys: dict[str, None] = {}
    if goal.get("pm_session_key"):
        keys[goal["pm_session_key"]] = None
    for key in goal.get("sessions") or []:
        keys[key] = None
    for task in goal.get("tasks", []):
        if task.get("session_key"):
            keys[task["session_key"]] = None
    return list(keys)


def condo_session_keys(
    data: Document, condo_id: str, roles: dict[str, str] | None = None
) -> list[str]:
    keys: dict[str, None] = {pm_condo_session_key(condo_id, roles): None}
    for key, bound in data["session_condo_index"].items():
        if bound == condo_id:
            keys[key] = None
    for goal in goals_for_condo(data, condo_id):
        for key in goal_session_keys(goal):
            keys[key] = None
    return list(keys)


def _release_tasks(data: Document, goal: Goal) -> None:
    for task in goal.get("tasks", []):
        if task.get("session_key") and not is_task_done(task):
            data["session_index"].pop(task["session_key"], None)
            task["session_key"] = None
            task["status"] = "pending"
            touch(task)
    touch(goal)


class SessionLifecycle:
    def __init__(
        self,
        repo: Repository,
        runtime: AgentRuntime,
        *,
        timeout: float = 30.0,
        roles: dict[str, str] | None = None,
    ) -> None:
        self.repo = repo
        self.runtime = runtime
        self.timeout = timeout
        self.roles = roles or {}

    async def abort_session(self, session_key: str) -> dict[str, Any]:
        """Delete then abort one session. Never raises."""
        try:
            await self.runtime.delete(session_key, timeout=self.timeout)
        except Exception as exc:
            log.debug("Delete of session %s failed: %s", session_key, exc)
        try:
            await self.runtime.abort(session_key, timeout=self.timeout)
        except Exception as exc:
            log.warning("Failed to abort session %s: %s", session_key, exc)
            return {"session_key": session_key, "aborted": False, "error": str(exc)}
        return {"session_key": session_key, "aborted": True}

    async def abort_all(self, session_keys: list[str]) -> list[dict[str, Any]]:
        return list(await asyncio.gather(*(self.abort_session(k) for k in session_keys)))

    async def kill_for_goal(self, goal_id: str) -> dict[str, Any]:
        keys = goal_session_keys(require_goal(self.repo.snapshot(), goal_id))
        results = await self.abort_all(keys)
        async with self.repo.transaction() as data:
            _release_tasks(data, require_goal(data, goal_id))
        aborted = sum(1 for r in results if r["aborted"])
        log.info("Aborted %d/%d sessions for goal %s", aborted, len(keys), goal_id)
        return {
            "goal_id": goal_id,
            "total": len(keys),
            "aborted": aborted,
            "killed_sessions": keys,
            "results": results,
        }

    async def kill_for_condo(self, condo_id: str) -> dict[str, Any]:
        data = self.repo.snapshot()
        require_condo(data, condo_id)
        keys = condo_session_keys(data, condo_id, self.roles)
        results = await self.abort_all(keys)
        async with self.repo.transaction() as data:
            for goal in goals_for_condo(data, condo_id):
                _release_tasks(data, goal)
        aborted = sum(1 for r in results if r["aborted"])
        log.info("Aborted %d/%d sessions for condo %s", aborted, len(keys), condo_id)
        return {
            "condo_id": condo_id,
            "total": len(keys),
            "aborted": aborted,
            "killed_sessions": keys,
            "results": results,
        }

    async def cleanup_stale(self, condo_id: str | None = None) -> dict[str, Any]:
        """Abort sessions still held by tasks that are neither in progress nor done."""
        data = self.repo.snapshot()
        goals = goals_for_condo(data, condo_id) if condo_id else data["goals"]
        stale = [
            t["session_key"]
            for g in goals
            for t in g.get("tasks", [])
            if t.get("session_key") and t.get("status") not in ("in-progress", "done")
        ]
        results = await self.abort_all(stale)
        aborted = sum(1 for r in results if r["aborted"])
        log.info("Cleaned %d/%d stale sessions", aborted, len(stale))
        return {"total": len(stale), "aborted": aborted, "results": results}

    def list_for_condo(self, condo_id: str) -> dict[str, Any]:
        data = self.repo.snapshot()
        require_condo(data, condo_id)
        sessions: list[dict[str, Any]] = []
        for goal in goals_for_condo(data, condo_id):
            for task in goal.get("tasks", []):
                if task.get("session_key"):
                    sessions.append(
                        {
                            "session_key": task["session_key"],
                            "goal_id": goal["id"],
                            "goal_title": goal["title"],
                            "task_id": task["id"],
                            "task_text": task["text"],
                            "task_status": task.get("status"),
                        }
                    )
        seen = {s["session_key"] for s in sessions}
        for key, bound in data["session_condo_index"].items():
            if bound == condo_id and key not in seen:
                sessions.append(
                    {
                        "session_key": key,
                        "goal_id": None,
                        "goal_title": None,
                        "task_id": None,
                        "task_text": None,
                        "task_status": "condo-session",
                    }
                )
        return {"condo_id": condo_id, "sessions": sessions, "count": len(sessions)}
