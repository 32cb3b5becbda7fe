"""Capabilities offered to agent sessions.

Each tool declares a JSON Schema for its parameters and the session roles
that may call it. Authorization is evaluated against the current document
on every call, so a session that binds to a condo gains the condo tools on
its next request and a manager session never gains any mutating tool.

Results are ``{"ok": bool, "text": str, ...}``; ``text`` is what the agent
reads back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jsonschema import ValidationError, validate

from condos import events
from condos.config import Settings
from condos.events import EventBus
from condos.git_ops import attach_condo_workspace, provision_goal_worktrees
from condos.graph import validate_task_dependencies
from condos.kickoff import KickoffEngine, SessionStarter
from condos.models import (
    Document,
    Goal,
    NotFoundError,
    _utcnow,
    find_condo,
    find_goal,
    find_task,
    goals_for_condo,
    is_goal_done,
    is_task_done,
    mark_task_done,
    new_condo,
    new_goal,
    new_task,
    require_condo,
    touch,
)
from condos.plans import (
    VALID_PLAN_STATUSES,
    VALID_STEP_STATUSES,
    create_empty_plan,
    read_plan_file,
    set_step_status,
    sync_plan_steps,
)
from condos.roles import SessionRole, classify_session
from condos.runtime import AgentRuntime, last_assistant_text
from condos.spawn import spawn_task_session
from condos.store import Repository

if TYPE_CHECKING:
    from condos.cascade import CascadeController
    from condos.completion import CompletionHandler
    from condos.watcher import PlanFileWatcher

log = logging.getLogger(__name__)

PM_POLL_INTERVAL = 3.0
PM_POLL_TIMEOUT = 180.0
PM_HISTORY_WINDOW = 50

WORKER_ONLY = frozenset({SessionRole.WORKER})
NON_MANAGER = frozenset({SessionRole.WORKER, SessionRole.UNBOUND})
ANY_ROLE = frozenset(SessionRole)

TASK_UPDATE_STATUSES = ("done", "in-progress", "blocked", "waiting")


class ToolError(Exception):
    """A tool call was refused; the message is returned to the agent."""


@dataclass(frozen=True)
class Tool:
    name: str
    label: str
    description: str
    parameters: dict[str, Any]
    roles: frozenset[SessionRole]
    # "condo": the session must be condo-bound; "free": it must not be.
    binding: str | None = None

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "parameters": self.parameters,
        }


def _obj(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


_STR = {"type": "string"}

TOOLS: dict[str, Tool] = {
    t.name: t
    for t in (
        Tool(
            "goal_update",
            "Update Goal/Task Status",
            "Report task progress, add tasks, set the next task, track files, sync a plan, "
            "or mark the goal done. Condo sessions pass goal_id.",
            _obj(
                {
                    "goal_id": _STR,
                    "task_id": _STR,
                    "status": {"type": "string", "enum": list(TASK_UPDATE_STATUSES)},
                    "summary": _STR,
                    "add_tasks": {
                        "type": "array",
                        "items": _obj({"text": _STR, "description": _STR}, ["text"]),
                    },
                    "next_task": _STR,
                    "goal_status": {"type": "string", "enum": ["active", "done"]},
                    "notes": _STR,
                    "files": {"type": "array", "items": _STR},
                    "plan_file": _STR,
                    "plan_status": {"type": "string", "enum": sorted(VALID_PLAN_STATUSES)},
                    "step_index": {"type": "integer", "minimum": 0},
                    "step_status": {"type": "string", "enum": sorted(VALID_STEP_STATUSES)},
                }
            ),
            NON_MANAGER,
        ),
        Tool(
            "condo_bind",
            "Bind Session to Condo",
            "Bind this session to an existing condo (condo_id) or create one (name).",
            _obj({"condo_id": _STR, "name": _STR, "description": _STR, "repo_url": _STR}),
            frozenset({SessionRole.UNBOUND}),
            binding="free",
        ),
        Tool(
            "condo_create_goal",
            "Create Goal",
            "Create a goal in the bound condo, optionally with initial tasks.",
            _obj(
                {
                    "title": {"type": "string", "minLength": 1},
                    "description": _STR,
                    "priority": _STR,
                    "tasks": {
                        "type": "array",
                        "items": {
                            "anyOf": [_STR, _obj({"text": _STR, "description": _STR}, ["text"])]
                        },
                    },
                },
                ["title"],
            ),
            WORKER_ONLY,
            binding="condo",
        ),
        Tool(
            "condo_add_task",
            "Add Task",
            "Add a task to a goal of the bound condo.",
            _obj(
                {
                    "goal_id": _STR,
                    "text": {"type": "string", "minLength": 1},
                    "description": _STR,
                    "depends_on": {"type": "array", "items": _STR},
                    "assigned_agent": _STR,
                },
                ["goal_id", "text"],
            ),
            WORKER_ONLY,
            binding="condo",
        ),
        Tool(
            "condo_spawn_task",
            "Spawn Task Worker",
            "Spawn a worker session for a task in the bound condo and start it.",
            _obj(
                {"goal_id": _STR, "task_id": _STR, "agent_id": _STR, "model": _STR},
                ["goal_id", "task_id"],
            ),
            WORKER_ONLY,
            binding="condo",
        ),
        Tool(
            "condo_list",
            "List Condos",
            "List all condos with their goal counts.",
            _obj({}),
            ANY_ROLE,
        ),
        Tool(
            "condo_status",
            "Condo Status",
            "Show the goals and tasks of a condo.",
            _obj({"condo_id": _STR}),
            ANY_ROLE,
        ),
        Tool(
            "condo_pm_chat",
            "Message Condo PM",
            "Send a request to the condo's PM and wait for its answer. Goals are created "
            "automatically when the PM answers with a plan.",
            _obj({"condo_id": _STR, "message": {"type": "string", "minLength": 1}}, ["message"]),
            WORKER_ONLY,
            binding="condo",
        ),
        Tool(
            "condo_pm_kickoff",
            "Approve Plan and Kick Off",
            "Start workers for a goal's tasks; a goal without tasks is planned by its PM first.",
            _obj({"condo_id": _STR, "goal_id": _STR}, ["goal_id"]),
            WORKER_ONLY,
            binding="condo",
        ),
    )
}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def _bound_condo(data: Document, session_key: str) -> str | None:
    return data["session_condo_index"].get(session_key)


def authorize(data: Document, session_key: str | None, tool: Tool) -> None:
    """Raise ToolError unless the session may call *tool* right now."""
    if not session_key:
        raise ToolError("a session key is required")
    role = classify_session(data, session_key)
    if role not in tool.roles:
        raise ToolError(f"{tool.name} is not available to {role} sessions")
    bound = _bound_condo(data, session_key)
    if tool.binding == "condo" and not bound:
        raise ToolError("session is not bound to a condo. Use condo_bind first")
    if tool.binding == "free" and bound:
        raise ToolError("session is already bound to a condo")


def available_tools(data: Document, session_key: str | None) -> list[dict[str, Any]]:
    allowed = []
    for tool in TOOLS.values():
        try:
            authorize(data, session_key, tool)
        except ToolError:
            continue
        allowed.append(tool.describe())
    return allowed


class AgentTools:
    def __init__(
        self,
        repo: Repository,
        settings: Settings,
        bus: EventBus,
        runtime: AgentRuntime,
        kickoff: KickoffEngine,
        starter: SessionStarter,
        cascade: CascadeController,
        completion: CompletionHandler,
        watcher: PlanFileWatcher | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.bus = bus
        self.runtime = runtime
        self.kickoff = kickoff
        self.starter = starter
        self.cascade = cascade
        self.completion = completion
        self.watcher = watcher
        self.poll_interval = PM_POLL_INTERVAL
        self.poll_timeout = PM_POLL_TIMEOUT
        self._handlers: dict[str, Callable[[str, dict], Awaitable[dict[str, Any]]]] = {
            "goal_update": self.goal_update,
            "condo_bind": self.condo_bind,
            "condo_create_goal": self.condo_create_goal,
            "condo_add_task": self.condo_add_task,
            "condo_spawn_task": self.condo_spawn_task,
            "condo_list": self.condo_list,
            "condo_status": self.condo_status,
            "condo_pm_chat": self.condo_pm_chat,
            "condo_pm_kickoff": self.condo_pm_kickoff,
        }

    def available(self, session_key: str | None) -> list[dict[str, Any]]:
        return available_tools(self.repo.snapshot(), session_key)

    async def call(self, session_key: str, name: str, params: dict | None = None) -> dict[str, Any]:
        """Authorize, validate and run one tool call. Never raises for refusals."""
        params = dict(params or {})
        tool = TOOLS.get(name)
        if tool is None:
            return {"ok": False, "text": f"Error: unknown tool {name}"}
        try:
            authorize(self.repo.snapshot(), session_key, tool)
            validate(params, tool.parameters)
            return await self._handlers[name](session_key, params)
        except ValidationError as exc:
            return {"ok": False, "text": f"Error: invalid parameters: {exc.message}"}
        except (ToolError, NotFoundError, ValueError) as exc:
            log.info("Tool %s refused for %s: %s", name, session_key, exc)
            return {"ok": False, "text": f"Error: {exc}"}

    # -- goal_update ------------------------------------------------------

    def _resolve_goal(self, data: Document, session_key: str, goal_id: str | None) -> Goal:
        if goal_id:
            goal = find_goal(data, goal_id)
            if goal is None:
                raise ToolError(f"goal {goal_id} not found")
            bound = _bound_condo(data, session_key)
            if bound and goal.get("condo_id") != bound:
                raise ToolError(f"goal {goal_id} does not belong to the bound condo")
        else:
            entry = data["session_index"].get(session_key)
            if not entry:
                raise ToolError("session not assigned to any goal")
            goal = find_goal(data, entry.get("goal_id"))
            if goal is None:
                raise ToolError("goal not found")

        own = data["session_index"].get(session_key)
        if own and own.get("goal_id") != goal["id"]:
            own_goal = find_goal(data, own.get("goal_id"))
            if not own_goal or not own_goal.get("condo_id") or (
                own_goal.get("condo_id") != goal.get("condo_id")
            ):
                raise ToolError("can only contribute to goals in the same project")
        return goal

    async def goal_update(self, session_key: str, params: dict) -> dict[str, Any]:
        task_id = params.get("task_id")
        status = params.get("status")
        has_task_update = bool(task_id and status)
        has_step = "step_index" in params and "step_status" in params
        actionable = (
            has_task_update
            or params.get("add_tasks")
            or "next_task" in params
            or "goal_status" in params
            or (params.get("notes") or "").strip()
            or params.get("files")
            or (params.get("plan_file") or "").strip()
            or params.get("plan_status")
            or has_step
        )
        if not actionable:
            raise ToolError(
                "provide at least one of: task_id+status, add_tasks, next_task, goal_status, "
                "notes, files, plan_file, plan_status, step_index+step_status"
            )

        completed_task = None
        request_merge = False
        async with self.repo.transaction() as data:
            goal = self._resolve_goal(data, session_key, params.get("goal_id"))
            own = data["session_index"].get(session_key) or {}
            if own.get("goal_id") not in (None, goal["id"]):
                if is_goal_done(goal):
                    raise ToolError("cannot modify a completed goal")
                if has_task_update or "goal_status" in params or "next_task" in params:
                    raise ToolError("cross-goal: only add_tasks and notes allowed on sibling goals")

            task = find_task(goal, task_id) if task_id else None
            if task_id and task is None and (has_task_update or has_step):
                raise ToolError(f"task {task_id} not found in goal")

            if params.get("goal_status") == "done":
                finishing = task_id if has_task_update and status == "done" else None
                pending = [
                    t for t in goal["tasks"] if not is_task_done(t) and t["id"] != finishing
                ]
                if pending:
                    raise ToolError(
                        f"cannot mark goal done: {_plural(len(pending), 'task')} still pending"
                    )

            results: list[str] = []

            if has_task_update:
                was_done = is_task_done(task)
                if status == "done":
                    mark_task_done(task, summary=params.get("summary"))
                    goal["next_task"] = None
                    if not was_done:
                        completed_task = task["id"]
                else:
                    task["status"] = status
                    task["done"] = False
                    if params.get("summary"):
                        task["summary"] = params["summary"]
                    if status == "in-progress":
                        goal["next_task"] = task["text"]
                    touch(task)
                results.append(f"task {task_id} -> {status}")

            created = []
            for item in params.get("add_tasks") or []:
                text = (item.get("text") or "").strip()
                if text:
                    new = new_task(text, description=(item.get("description") or "").strip())
                    goal["tasks"].append(new)
                    created.append(new["id"])
            if created:
                results.append(f"created {_plural(len(created), 'task')}: {', '.join(created)}")

            if "next_task" in params:
                goal["next_task"] = params["next_task"].strip()
                results.append("next_task set")

            if params.get("goal_status") == "active":
                if goal.get("merge_status") == "merged":
                    raise ToolError("cannot reactivate a merged goal")
                goal["status"] = "active"
                goal["completed"] = False
                results.append("goal marked active")
            elif params.get("goal_status") == "done":
                request_merge = True
                results.append("goal completion requested")

            notes = (params.get("notes") or "").strip()
            if notes:
                existing = (goal.get("notes") or "").strip()
                goal["notes"] = f"{existing}\n\n{notes}" if existing else notes
                results.append("notes updated")

            self._track_files(goal, params, session_key, results)
            if task is not None:
                self._update_plan(goal, task, params, results)

            touch(goal)
            goal_id, title = goal["id"], goal["title"]
            remaining = sum(1 for t in goal["tasks"] if not is_task_done(t))
            all_done = remaining == 0 and bool(goal["tasks"])

        if completed_task:
            self.completion.task_completed(goal_id, completed_task, all_done=all_done)
        elif request_merge:
            self.completion.request_merge(goal_id)

        suffix = f" ({_plural(remaining, 'task')} remaining)" if remaining else " (all tasks done)"
        result: dict[str, Any] = {
            "ok": True,
            "text": f'Goal "{title}" updated: {", ".join(results)}.{suffix}',
            "goal_id": goal_id,
        }
        if completed_task:
            result["task_completed_id"] = completed_task
            result["all_tasks_done"] = all_done
        return result

    @staticmethod
    def _track_files(goal: Goal, params: dict, session_key: str, results: list[str]) -> None:
        added = 0
        for raw in params.get("files") or []:
            path = raw.strip()
            if not path:
                continue
            files = [f for f in goal.get("files") or [] if f.get("path") != path]
            files.append(
                {
                    "path": path,
                    "task_id": params.get("task_id"),
                    "session_key": session_key,
                    "added_at": _utcnow(),
                    "source": "agent",
                }
            )
            goal["files"] = files
            added += 1
        if added:
            results.append(f"{_plural(added, 'file')} tracked")

    def _update_plan(self, goal: Goal, task: dict, params: dict, results: list[str]) -> None:
        plan_file = (params.get("plan_file") or "").strip()
        if plan_file:
            base = (goal.get("worktree") or {}).get("path")
            try:
                parsed = read_plan_file(plan_file, base)
            except OSError as exc:
                results.append(f"plan sync failed: {exc}")
            else:
                plan = task.get("plan") or create_empty_plan()
                task["plan"] = sync_plan_steps(plan, parsed["content"], parsed["file_path"])
                results.append(f"plan synced from {plan_file}")

        plan_status = params.get("plan_status")
        if plan_status:
            plan = task.get("plan") or create_empty_plan()
            now = _utcnow()
            plan["status"] = plan_status
            plan["updated_at"] = now
            if plan_status in ("approved", "rejected"):
                plan[f"{plan_status}_at"] = now  # type: ignore[literal-required]
            task["plan"] = plan
            results.append(f"plan status -> {plan_status}")

        if "step_index" in params and "step_status" in params:
            plan = task.get("plan")
            steps = (plan or {}).get("steps") or []
            index = params["step_index"]
            if index >= len(steps):
                raise ToolError(
                    f"step {index} not found in task plan ({_plural(len(steps), 'step')} available)"
                )
            set_step_status(plan, index, params["step_status"])
            results.append(f"step {index} -> {params['step_status']}")
        touch(task)

    # -- Condo binding and creation ---------------------------------------

    async def condo_bind(self, session_key: str, params: dict) -> dict[str, Any]:
        condo_id, name = params.get("condo_id"), (params.get("name") or "").strip()
        if not condo_id and not name:
            raise ToolError("provide either condo_id (to bind) or name (to create and bind)")
        created = None
        if not condo_id:
            created = new_condo(name, description=params.get("description") or "")
            await asyncio.to_thread(
                attach_condo_workspace,
                created,
                self.settings.workspaces_dir,
                params.get("repo_url"),
            )
        async with self.repo.transaction() as data:
            if created is None:
                condo = find_condo(data, condo_id)
                if condo is None:
                    raise ToolError(f"condo {condo_id} not found")
            else:
                condo = created
                data["condos"].insert(0, condo)
            data["session_condo_index"][session_key] = condo["id"]
        log.info("Session %s bound to condo %s", session_key, condo["id"])
        return {
            "ok": True,
            "text": f'Session bound to condo "{condo["name"]}" ({condo["id"]}).',
            "condo_id": condo["id"],
        }

    async def condo_create_goal(self, session_key: str, params: dict) -> dict[str, Any]:
        async with self.repo.transaction() as data:
            condo = require_condo(data, _bound_condo(data, session_key))
            goal = new_goal(
                params["title"],
                condo_id=condo["id"],
                description=params.get("description") or "",
                priority=params.get("priority"),
                autonomy_mode=condo.get("autonomy_mode"),
                max_retries=self.settings.default_max_retries,
            )
            for item in params.get("tasks") or []:
                text = item if isinstance(item, str) else item.get("text", "")
                desc = "" if isinstance(item, str) else item.get("description") or ""
                if text.strip():
                    goal["tasks"].append(new_task(text, description=desc))
            data["goals"].append(goal)
        await provision_goal_worktrees(self.repo, condo["id"], [goal["id"]])
        count = len(goal["tasks"])
        return {
            "ok": True,
            "text": f'Goal "{goal["title"]}" created ({goal["id"]}) in condo {condo["id"]} '
            f"with {_plural(count, 'task')}.",
            "goal_id": goal["id"],
        }

    def _condo_goal(self, data: Document, session_key: str, goal_id: str) -> Goal:
        goal = find_goal(data, goal_id)
        if goal is None:
            raise ToolError(f"goal {goal_id} not found")
        if goal.get("condo_id") != _bound_condo(data, session_key):
            raise ToolError(f"goal {goal_id} does not belong to the bound condo")
        return goal

    async def condo_add_task(self, session_key: str, params: dict) -> dict[str, Any]:
        async with self.repo.transaction() as data:
            goal = self._condo_goal(data, session_key, params["goal_id"])
            task = new_task(
                params["text"],
                description=params.get("description") or "",
                assigned_agent=params.get("assigned_agent"),
                depends_on=params.get("depends_on"),
            )
            goal["tasks"].append(task)
            validate_task_dependencies(goal["tasks"])
            touch(goal)
        return {
            "ok": True,
            "text": f'Task "{task["text"]}" ({task["id"]}) added to goal "{goal["title"]}".',
            "task_id": task["id"],
        }

    async def condo_spawn_task(self, session_key: str, params: dict) -> dict[str, Any]:
        self._condo_goal(self.repo.snapshot(), session_key, params["goal_id"])
        spawned = await spawn_task_session(
            self.repo,
            self.settings,
            params["goal_id"],
            params["task_id"],
            agent_id=params.get("agent_id"),
            model=params.get("model"),
        )
        if self.watcher is not None:
            self.watcher.watch(spawned["session_key"], spawned["plan_file_path"])
        await self.starter.start([spawned])
        self.bus.emit(
            events.GOAL_KICKOFF,
            goal_id=spawned["goal_id"],
            spawned_count=1,
            spawned_sessions=[
                {
                    "session_key": spawned["session_key"],
                    "task_id": spawned["task_id"],
                    "agent_id": spawned["agent_id"],
                    "headless_started": spawned["headless_started"],
                }
            ],
        )
        return {
            "ok": True,
            "text": f'Task session {spawned["session_key"]} spawned for task '
            f'"{spawned["task_text"]}".',
            "session_key": spawned["session_key"],
            "headless_started": spawned["headless_started"],
        }

    # -- Read-only views --------------------------------------------------

    async def condo_list(self, session_key: str, params: dict) -> dict[str, Any]:
        data = self.repo.snapshot()
        if not data["condos"]:
            text = "No condos found. Use `condo_bind` with a `name` to create one."
            return {"ok": True, "text": text}
        lines = [f"Found {len(data['condos'])} condo(s):", ""]
        for condo in data["condos"]:
            goals = goals_for_condo(data, condo["id"])
            active = sum(1 for g in goals if not is_goal_done(g))
            lines.append(f"- **{condo['name']}** ({condo['id']})")
            if condo.get("description"):
                lines.append(f"  {condo['description']}")
            lines.append(f"  Goals: {len(goals)} total, {active} active")
        return {"ok": True, "text": "\n".join(lines)}

    async def condo_status(self, session_key: str, params: dict) -> dict[str, Any]:
        data = self.repo.snapshot()
        condo_id = params.get("condo_id") or _bound_condo(data, session_key)
        if not condo_id:
            raise ToolError("condo_id is required")
        condo = find_condo(data, condo_id)
        if condo is None:
            raise ToolError(f"condo {condo_id} not found")

        lines = [f"# {condo['name']} ({condo['id']})"]
        if condo.get("description"):
            lines.append(condo["description"])
        if (condo.get("workspace") or {}).get("path"):
            lines.append(f"Workspace: {condo['workspace']['path']}")
        goals = goals_for_condo(data, condo_id)
        if not goals:
            lines += ["", "No goals yet."]
            return {"ok": True, "text": "\n".join(lines)}

        done_goals = sum(1 for g in goals if is_goal_done(g))
        lines += ["", f"## Goals ({len(goals) - done_goals} active, {done_goals} done)"]
        for goal in goals:
            tasks = goal["tasks"]
            lines += ["", f"### [{goal.get('status') or 'active'}] {goal['title']} ({goal['id']})"]
            if goal.get("description"):
                lines.append(goal["description"])
            if not tasks:
                continue
            lines.append(f"Tasks ({sum(1 for t in tasks if is_task_done(t))}/{len(tasks)} done):")
            for task in tasks:
                status = task.get("status") or "pending"
                if task.get("session_key"):
                    suffix = f" (session: {task['session_key']})"
                elif status != "done":
                    suffix = " (unassigned)"
                else:
                    suffix = ""
                lines.append(f"- [{status}] {task['text']} [{task['id']}]{suffix}")
                if status == "done" and task.get("summary"):
                    lines.append(f"  > {task['summary']}")
        return {"ok": True, "text": "\n".join(lines)}

    # -- PM interaction ---------------------------------------------------

    async def _history_len(self, session_key: str) -> int:
        try:
            messages = await self.runtime.history(
                session_key, PM_HISTORY_WINDOW, timeout=self.settings.rpc_timeout
            )
        except Exception as exc:
            log.debug("No history for %s: %s", session_key, exc)
            return 0
        return len(messages)

    async def _await_reply(self, session_key: str, baseline: int) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval)
            try:
                messages = await self.runtime.history(
                    session_key, PM_HISTORY_WINDOW, timeout=self.settings.rpc_timeout
                )
            except Exception as exc:
                log.warning("condo_pm_chat: poll error for %s: %s", session_key, exc)
                continue
            if len(messages) > baseline:
                reply = last_assistant_text(messages)
                if reply:
                    return reply
        return None

    async def condo_pm_chat(self, session_key: str, params: dict) -> dict[str, Any]:
        condo_id = params.get("condo_id") or _bound_condo(self.repo.snapshot(), session_key)
        prepared = await self.cascade.prepare_condo_chat(condo_id, params["message"])
        pm_key = prepared["pm_session_key"]
        baseline = await self._history_len(pm_key)
        try:
            await self.runtime.send(
                pm_key, prepared["enriched_message"], timeout=self.settings.rpc_timeout
            )
        except Exception as exc:
            raise ToolError(f"failed to send message to PM: {exc}") from None

        reply = await self._await_reply(pm_key, baseline)
        if reply is None:
            return {
                "ok": True,
                "text": "PM did not respond within the timeout period. The PM session may "
                "still be processing; check back with `condo_status`.",
                "pm_response": None,
            }
        await self.cascade.save_condo_response(condo_id, reply)

        goals = None
        try:
            created = await self.cascade.condo_create_goals(condo_id, reply)
            goals = created["goals"]
        except ValueError as exc:
            log.info("PM reply for condo %s produced no goals: %s", condo_id, exc)

        lines = ["**PM Response:**", "", reply]
        if goals:
            lines += ["", "---", f"**{len(goals)} goal(s) created from PM plan:**"]
            lines += [f"- {g['title']} ({g['id']})" for g in goals]
            lines += ["", "Use `condo_pm_kickoff` with a goal_id to start execution."]
        return {"ok": True, "text": "\n".join(lines), "pm_response": reply, "goals": goals}

    async def condo_pm_kickoff(self, session_key: str, params: dict) -> dict[str, Any]:
        data = self.repo.snapshot()
        condo_id = params.get("condo_id") or _bound_condo(data, session_key)
        condo = require_condo(data, condo_id)
        goal = find_goal(data, params["goal_id"])
        if goal is None:
            raise ToolError(f"goal {params['goal_id']} not found")
        if goal.get("condo_id") != condo["id"]:
            raise ToolError(f"goal {goal['id']} does not belong to condo {condo['id']}")

        pending = [t for t in goal["tasks"] if not t.get("session_key") and not is_task_done(t)]
        if pending:
            result = await self.kickoff.kickoff_and_start(goal["id"])
            count = len(result["spawned_sessions"])
            text = (
                f'Kickoff complete: spawned {count} worker session(s) for goal "{goal["title"]}". '
                "Use `condo_status` to monitor progress."
            )
            if result.get("blocked"):
                text = f'Goal "{goal["title"]}" is blocked by its dependencies.'
            return {"ok": True, "text": text, "spawned_count": count}

        if goal["tasks"]:
            return {"ok": True, "text": f'Goal "{goal["title"]}" has no tasks left to start.'}
        await self.cascade.goal_cascade(goal["id"], "full")
        return {
            "ok": True,
            "text": f'Goal "{goal["title"]}" has no tasks yet. Asked its PM to plan tasks; '
            "workers start automatically. Use `condo_status` to monitor progress.",
            "cascade_started": True,
        }

