"""Allocate a worker session for one task.

:func:`spawn_in_document` mutates an in-memory document and is used both
by the ``goals.spawn_task_session`` request (in its own transaction) and by
the kickoff engine (many spawns inside one transaction).
"""

from __future__ import annotations

import logging
from typing import Any

from condos.autonomy import resolve_autonomy_mode
from condos.config import Settings
from condos.context import build_task_context
from condos.models import Document, find_condo, find_task, require_goal, touch
from condos.plans import create_empty_plan, plan_file_path
from condos.roles import resolve_agent, task_session_key
from condos.store import Repository

log = logging.getLogger(__name__)


class SpawnError(ValueError):
    """The task cannot be given a session in its current state."""


def spawn_in_document(
    data: Document,
    settings: Settings,
    goal_id: str,
    task_id: str,
    *,
    agent_id: str | None = None,
    model: str | None = None,
) -> dict[str, Any]:
    """Bind a new session key to a task and build its opening message.

    Validation happens before any mutation, so a failed spawn leaves
    *data* untouched.
    """
    goal = require_goal(data, goal_id)
    task = find_task(goal, task_id)
    if task is None:
        raise SpawnError("Task not found in goal")
    if task.get("session_key"):
        raise SpawnError("Task already has a session")
    if task.get("status") == "done" or task.get("done"):
        raise SpawnError("Task is already done")

    agent = agent_id or resolve_agent(task.get("assigned_agent"), settings.roles) or "main"
    session_key = task_session_key(agent)
    condo = find_condo(data, goal.get("condo_id"))
    plan_file = str(plan_file_path(settings.agent_home, agent, goal["id"], task["id"]))

    autonomy_mode = resolve_autonomy_mode(task, goal, condo)
    worktree = goal.get("worktree") or {}
    workspace = (condo or {}).get("workspace") or {}
    workspace_path = worktree.get("path") or workspace.get("path")
    services = {**settings.services, **((condo or {}).get("services") or {})}

    task_context = build_task_context(
        data,
        goal,
        task,
        session_key=session_key,
        autonomy_mode=autonomy_mode,
        plan_file=plan_file,
        workspace_path=workspace_path,
        services=services,
    )

    if not task.get("plan"):
        task["plan"] = create_empty_plan(plan_file)
    else:
        task["plan"]["expected_file_path"] = plan_file
    task["session_key"] = session_key
    task["status"] = "in-progress"
    task["autonomy_mode"] = autonomy_mode
    if model:
        task["model"] = model
    touch(task)
    goal.setdefault("sessions", []).append(session_key)
    touch(goal)
    data["session_index"][session_key] = {"goal_id": goal["id"]}
    data["session_condo_index"].pop(session_key, None)

    log.info("Spawned %s for task %s of goal %s", session_key, task["id"], goal["id"])
    return {
        "session_key": session_key,
        "task_context": task_context,
        "agent_id": agent,
        "model": model or task.get("model"),
        "goal_id": goal["id"],
        "task_id": task["id"],
        "task_text": task["text"],
        "assigned_role": task.get("assigned_agent"),
        "autonomy_mode": autonomy_mode,
        "plan_file_path": plan_file,
        "workspace_path": workspace_path,
    }


async def spawn_task_session(
    repo: Repository,
    settings: Settings,
    goal_id: str,
    task_id: str,
    *,
    agent_id: str | None = None,
    model: str | None = None,
) -> dict[str, Any]:
    async with repo.transaction() as data:
        return spawn_in_document(
            data, settings, goal_id, task_id, agent_id=agent_id, model=model
        )
