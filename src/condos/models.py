"""Document shapes for condos, goals and tasks plus small state helpers.

The persisted document is plain JSON; these TypedDicts describe the keys
the engine reads and writes. Helpers here never touch the store, they
only operate on the in-memory document passed in.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from typing import Any, TypedDict

VALID_GOAL_STATUSES = frozenset({"active", "done", "blocked", "dropped"})
VALID_TASK_STATUSES = frozenset({"pending", "in-progress", "done", "blocked", "failed", "waiting"})
VALID_MERGE_STATUSES = frozenset({"none", "merged", "conflict", "error"})
VALID_PUSH_STATUSES = frozenset({"none", "pushed", "failed"})
VALID_CASCADE_STATES = frozenset(
    {
        "awaiting_plan",
        "tasks_created",
        "plan_ready",
        "plan_fetch_failed",
        "plan_parse_failed",
        "response_saved",
    }
)
VALID_CASCADE_MODES = frozenset({"plan", "full"})

DEFAULT_MAX_RETRIES = 1


class NotFoundError(LookupError):
    """A referenced condo, goal or task does not exist."""


class Workspace(TypedDict):
    path: str
    repo_url: str | None


class Worktree(TypedDict):
    path: str
    branch: str


class PlanStep(TypedDict, total=False):
    title: str
    status: str
    started_at: str | None
    completed_at: str | None


class PlanState(TypedDict, total=False):
    status: str
    file_path: str | None
    expected_file_path: str | None
    content: str | None
    steps: list[PlanStep]
    updated_at: str


class Task(TypedDict, total=False):
    id: str
    text: str
    description: str
    status: str
    done: bool
    session_key: str | None
    assigned_agent: str | None
    depends_on: list[str]
    retry_count: int
    last_error: str | None
    summary: str
    plan: PlanState | None
    model: str | None
    autonomy_mode: str | None
    stage: str | None
    blocked_reason: str | None
    estimated_time: str | None
    auto_completed: bool
    created_at: str
    updated_at: str


class Goal(TypedDict, total=False):
    id: str
    condo_id: str | None
    title: str
    description: str
    status: str
    completed: bool
    tasks: list[Task]
    depends_on: list[str]
    phase: int | None
    autonomy_mode: str | None
    worktree: Worktree | None
    pm_session_key: str | None
    pm_plan_content: str | None
    pm_chat_history: list[dict[str, Any]]
    cascade_state: str | None
    cascade_mode: str | None
    merge_status: str
    merge_error: str | None
    merged_at: str | None
    push_status: str
    push_error: str | None
    pr_url: str | None
    pr_number: int | None
    max_retries: int
    sessions: list[str]
    notes: str
    files: list[dict[str, Any]]
    next_task: str | None
    priority: str | None
    deadline: str | None
    completed_at: str | None
    closed_at: str | None
    created_at: str
    updated_at: str


class Condo(TypedDict, total=False):
    id: str
    name: str
    description: str
    workspace: Workspace | None
    services: dict[str, Any]
    cascade_pending_goals: list[str] | None
    cascade_mode: str | None
    autonomy_mode: str | None
    pm_chat_history: list[dict[str, Any]]
    created_at: str
    updated_at: str


class Document(TypedDict, total=False):
    version: int
    revision: int
    condos: list[Condo]
    goals: list[Goal]
    session_index: dict[str, dict[str, str]]
    session_condo_index: dict[str, str]


def _utcnow() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


# -- Constructors ---------------------------------------------------------


def new_condo(
    name: str,
    *,
    description: str = "",
    autonomy_mode: str | None = None,
) -> Condo:
    now = _utcnow()
    return {
        "id": new_id("condo"),
        "name": name.strip(),
        "description": description,
        "workspace": None,
        "services": {},
        "cascade_pending_goals": None,
        "cascade_mode": None,
        "autonomy_mode": autonomy_mode,
        "pm_chat_history": [],
        "created_at": now,
        "updated_at": now,
    }


def new_task(
    text: str,
    *,
    description: str = "",
    assigned_agent: str | None = None,
    depends_on: list[str] | None = None,
    estimated_time: str | None = None,
    model: str | None = None,
    task_id: str | None = None,
) -> Task:
    now = _utcnow()
    return {
        "id": task_id or new_id("task"),
        "text": text.strip(),
        "description": description,
        "status": "pending",
        "done": False,
        "session_key": None,
        "assigned_agent": assigned_agent,
        "depends_on": list(depends_on or []),
        "retry_count": 0,
        "last_error": None,
        "plan": None,
        "model": model,
        "autonomy_mode": None,
        "estimated_time": estimated_time,
        "created_at": now,
        "updated_at": now,
    }


def new_goal(
    title: str,
    *,
    condo_id: str | None = None,
    description: str = "",
    depends_on: list[str] | None = None,
    phase: int | None = None,
    priority: str | None = None,
    deadline: str | None = None,
    autonomy_mode: str | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Goal:
    now = _utcnow()
    return {
        "id": new_id("goal"),
        "condo_id": condo_id,
        "title": title.strip(),
        "description": description,
        "status": "active",
        "completed": False,
        "tasks": [],
        "depends_on": list(depends_on or []),
        "phase": phase,
        "autonomy_mode": autonomy_mode,
        "worktree": None,
        "pm_session_key": None,
        "pm_plan_content": None,
        "pm_chat_history": [],
        "cascade_state": None,
        "cascade_mode": None,
        "merge_status": "none",
        "merge_error": None,
        "merged_at": None,
        "push_status": "none",
        "push_error": None,
        "pr_url": None,
        "pr_number": None,
        "max_retries": max_retries,
        "sessions": [],
        "notes": "",
        "files": [],
        "next_task": None,
        "priority": priority,
        "deadline": deadline,
        "completed_at": None,
        "closed_at": None,
        "created_at": now,
        "updated_at": now,
    }


def empty_document() -> Document:
    return {
        "version": 2,
        "revision": 0,
        "condos": [],
        "goals": [],
        "session_index": {},
        "session_condo_index": {},
    }


# -- Lookups --------------------------------------------------------------


def find_goal(data: Document, goal_id: str | None) -> Goal | None:
    if not goal_id:
        return None
    return next((g for g in data["goals"] if g["id"] == goal_id), None)


def find_condo(data: Document, condo_id: str | None) -> Condo | None:
    if not condo_id:
        return None
    return next((c for c in data["condos"] if c["id"] == condo_id), None)


def find_task(goal: Goal, task_id: str | None) -> Task | None:
    if not task_id:
        return None
    return next((t for t in goal.get("tasks", []) if t["id"] == task_id), None)


def require_goal(data: Document, goal_id: str | None) -> Goal:
    goal = find_goal(data, goal_id)
    if goal is None:
        raise NotFoundError("Goal not found")
    return goal


def require_condo(data: Document, condo_id: str | None) -> Condo:
    condo = find_condo(data, condo_id)
    if condo is None:
        raise NotFoundError("Condo not found")
    return condo


def goals_for_condo(data: Document, condo_id: str) -> list[Goal]:
    return [g for g in data["goals"] if g.get("condo_id") == condo_id]


def find_task_by_session(data: Document, session_key: str) -> tuple[Goal, Task] | None:
    """Resolve the goal and task a worker session is bound to."""
    entry = data["session_index"].get(session_key)
    if not entry:
        return None
    goal = find_goal(data, entry.get("goal_id"))
    if goal is None:
        return None
    task = next((t for t in goal.get("tasks", []) if t.get("session_key") == session_key), None)
    if task is None:
        return None
    return goal, task


# -- State predicates -----------------------------------------------------


def is_task_done(task: Task) -> bool:
    return task.get("status") == "done" or bool(task.get("done"))


def is_goal_done(goal: Goal) -> bool:
    return goal.get("status") == "done" or bool(goal.get("completed"))


def done_task_ids(goal: Goal) -> set[str]:
    return {t["id"] for t in goal.get("tasks", []) if is_task_done(t)}


def all_tasks_done(goal: Goal) -> bool:
    tasks = goal.get("tasks", [])
    return bool(tasks) and all(is_task_done(t) for t in tasks)


def goal_deps_satisfied(data: Document, goal: Goal) -> bool:
    """True when every goal listed in ``depends_on`` is done."""
    for dep_id in goal.get("depends_on") or []:
        dep = find_goal(data, dep_id)
        if dep is None or dep.get("status") != "done":
            return False
    return True


# -- Transitions ----------------------------------------------------------


def mark_task_done(task: Task, *, summary: str | None = None) -> None:
    now = _utcnow()
    task["status"] = "done"
    task["done"] = True
    if summary is not None:
        task["summary"] = summary
    task["completed_at"] = now  # type: ignore[typeddict-unknown-key]
    task["updated_at"] = now


def mark_goal_done(goal: Goal, *, field: str = "completed_at") -> None:
    """Set ``status`` and ``completed`` together."""
    now = _utcnow()
    goal["status"] = "done"
    goal["completed"] = True
    goal[field] = now  # type: ignore[literal-required]
    goal["updated_at"] = now


def touch(entity: dict[str, Any]) -> None:
    entity["updated_at"] = _utcnow()
