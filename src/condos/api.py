"""JSON request dispatch for the orchestration engine.

Protocol:
    request:  {"method": "goals.kickoff", "params": {"goal_id": "goal_..."}}
    response: {"ok": true, "data": {...}}
    response: {"ok": false, "error": "Goal not found", "code": "NOT_FOUND"}

The daemon dispatches requests arriving on its socket; the ``condos-api``
console script reads one request from stdin, forwards it to the daemon
when one is listening and otherwise dispatches it in-process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from condos import events
from condos.autonomy import AUTONOMY_MODES
from condos.classification import learning_report
from condos.config import load_settings
from condos.engine import Engine
from condos.git_ops import (
    attach_condo_workspace,
    provision_goal_worktrees,
    remove_goal_worktree,
)
from condos.graph import validate_goal_dependencies, validate_task_dependencies
from condos.hooks import AfterRpcEvent, HookName
from condos.lifecycle import goal_session_keys
from condos.models import (
    VALID_GOAL_STATUSES,
    VALID_TASK_STATUSES,
    NotFoundError,
    all_tasks_done,
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
    require_goal,
    touch,
)
from condos.paths import DEFAULT_SOCKET_PATH
from condos.runtime import GatewayClient
from condos.spawn import spawn_task_session
from condos.store import StoreConflictError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

NOT_FOUND = "NOT_FOUND"
INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
CONFLICT = "CONFLICT"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if not val:
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_bool(params: dict, key: str, default: bool = False) -> bool:
    val = params.get(key)
    if val is None:
        return default
    return bool(val)


def _optional_non_negative_int(params: dict, key: str, default: int) -> int:
    val = params.get(key)
    if val is None:
        return default
    try:
        parsed = int(val)
    except (TypeError, ValueError) as exc:
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from exc
    if parsed < 0:
        raise ApiError(f"Param '{key}' must be >= 0", INVALID_PARAMS)
    return parsed


def _optional_list(params: dict, key: str) -> list[str] | None:
    val = params.get(key)
    if val is None:
        return None
    if not isinstance(val, list) or not all(isinstance(v, str) for v in val):
        raise ApiError(f"Param '{key}' must be a list of strings", INVALID_PARAMS)
    return list(val)


def _check_choice(value: str | None, choices, key: str) -> None:
    if value is not None and value not in choices:
        allowed = ", ".join(sorted(choices))
        raise ApiError(f"Param '{key}' must be one of: {allowed}", INVALID_PARAMS)


def _condo_summary(data, condo) -> dict[str, Any]:
    goals = goals_for_condo(data, condo["id"])
    return {
        **condo,
        "goal_count": len(goals),
        "active_goal_count": sum(1 for g in goals if not is_goal_done(g)),
    }


# ---------------------------------------------------------------------------
# Condos
# ---------------------------------------------------------------------------


async def _handle_condos_create(engine: Engine, params):
    name = _require(params, "name").strip()
    autonomy_mode = _optional(params, "autonomy_mode")
    _check_choice(autonomy_mode, AUTONOMY_MODES, "autonomy_mode")
    condo = new_condo(
        name, description=params.get("description") or "", autonomy_mode=autonomy_mode
    )
    if isinstance(params.get("services"), dict):
        condo["services"] = params["services"]
    await asyncio.to_thread(
        attach_condo_workspace, condo, engine.settings.workspaces_dir, params.get("repo_url")
    )
    async with engine.repo.transaction() as data:
        data["condos"].insert(0, condo)
    log.info("Created condo %s (%s)", condo["id"], name)
    return {"condo": condo}


async def _handle_condos_list(engine: Engine, _params):
    data = engine.repo.snapshot()
    return {"condos": [_condo_summary(data, c) for c in data["condos"]]}


async def _handle_condos_get(engine: Engine, params):
    data = engine.repo.snapshot()
    condo = require_condo(data, _require(params, "condo_id"))
    return {"condo": _condo_summary(data, condo), "goals": goals_for_condo(data, condo["id"])}


async def _handle_condos_kickoff(engine: Engine, params):
    condo_id = _require(params, "condo_id")
    require_condo(engine.repo.snapshot(), condo_id)
    started = await engine.cascade.sweep(
        condo_id, include_independent=_optional_bool(params, "include_independent", True)
    )
    return {
        "condo_id": condo_id,
        "started_goals": [r["goal_id"] for r in started],
        "spawned_count": sum(len(r["spawned_sessions"]) for r in started),
    }


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------


def _tasks_from_params(items) -> list[dict]:
    tasks = []
    for item in items or []:
        if isinstance(item, str):
            item = {"text": item}
        text = (item.get("text") or "").strip() if isinstance(item, dict) else ""
        if not text:
            continue
        tasks.append(
            new_task(
                text,
                description=item.get("description") or "",
                assigned_agent=item.get("assigned_agent"),
                depends_on=item.get("depends_on"),
                task_id=item.get("id"),
            )
        )
    return tasks


async def _handle_goals_create(engine: Engine, params):
    title = _require(params, "title")
    condo_id = _optional(params, "condo_id")
    autonomy_mode = _optional(params, "autonomy_mode")
    _check_choice(autonomy_mode, AUTONOMY_MODES, "autonomy_mode")
    phase = params.get("phase")

    async with engine.repo.transaction() as data:
        condo = require_condo(data, condo_id) if condo_id else None
        goal = new_goal(
            title,
            condo_id=condo_id,
            description=params.get("description") or "",
            depends_on=_optional_list(params, "depends_on"),
            phase=int(phase) if phase is not None else None,
            priority=_optional(params, "priority"),
            deadline=_optional(params, "deadline"),
            autonomy_mode=autonomy_mode or (condo or {}).get("autonomy_mode"),
            max_retries=_optional_non_negative_int(
                params, "max_retries", engine.settings.default_max_retries
            ),
        )
        goal["tasks"] = _tasks_from_params(params.get("tasks"))
        validate_task_dependencies(goal["tasks"])
        data["goals"].append(goal)
        validate_goal_dependencies(data["goals"])
        if condo is not None:
            touch(condo)
    if condo is not None:
        await provision_goal_worktrees(engine.repo, condo["id"], [goal["id"]])
        goal = find_goal(engine.repo.snapshot(), goal["id"]) or goal
    log.info("Created goal %s (%s)", goal["id"], goal["title"])
    return {"goal": goal}


async def _handle_goals_list(engine: Engine, params):
    data = engine.repo.snapshot()
    condo_id = _optional(params, "condo_id")
    status = _optional(params, "status")
    goals = goals_for_condo(data, condo_id) if condo_id else data["goals"]
    if status:
        goals = [g for g in goals if g.get("status") == status]
    return {"goals": goals}


async def _handle_goals_get(engine: Engine, params):
    data = engine.repo.snapshot()
    goal = require_goal(data, _require(params, "goal_id"))
    return {"goal": goal, "condo": find_condo(data, goal.get("condo_id"))}


_GOAL_TEXT_FIELDS = ("title", "description", "priority", "deadline", "notes", "next_task")


async def _handle_goals_update(engine: Engine, params):
    goal_id = _require(params, "goal_id")
    status = _optional(params, "status")
    _check_choice(status, VALID_GOAL_STATUSES, "status")
    if status == "done":
        raise ApiError(
            "Goals complete through merge; use goals.retry_merge or goals.close", INVALID_PARAMS
        )
    autonomy_mode = _optional(params, "autonomy_mode")
    _check_choice(autonomy_mode, AUTONOMY_MODES, "autonomy_mode")

    async with engine.repo.transaction() as data:
        goal = require_goal(data, goal_id)
        for key in _GOAL_TEXT_FIELDS:
            if key in params:
                goal[key] = params[key]
        if autonomy_mode is not None:
            goal["autonomy_mode"] = autonomy_mode
        if "phase" in params:
            goal["phase"] = None if params["phase"] is None else int(params["phase"])
        if "max_retries" in params:
            goal["max_retries"] = _optional_non_negative_int(params, "max_retries", 0)
        if status is not None:
            if goal.get("merge_status") == "merged":
                raise ApiError("Cannot change the status of a merged goal", INVALID_PARAMS)
            goal["status"] = status
            goal["completed"] = False
        depends_on = _optional_list(params, "depends_on")
        if depends_on is not None:
            goal["depends_on"] = depends_on
            validate_goal_dependencies(data["goals"])
        touch(goal)
    return {"goal": goal}


async def _handle_goals_delete(engine: Engine, params):
    goal_id = _require(params, "goal_id")
    data = engine.repo.snapshot()
    goal = require_goal(data, goal_id)
    keys = goal_session_keys(goal)
    await engine.lifecycle.abort_all(keys)

    workspace = (find_condo(data, goal.get("condo_id")) or {}).get("workspace") or {}
    branch = (goal.get("worktree") or {}).get("branch")
    if workspace.get("path") and branch:
        await asyncio.to_thread(remove_goal_worktree, workspace["path"], goal_id, branch)

    async with engine.repo.transaction() as data:
        require_goal(data, goal_id)
        data["goals"] = [g for g in data["goals"] if g["id"] != goal_id]
        for key, entry in list(data["session_index"].items()):
            if entry.get("goal_id") == goal_id:
                del data["session_index"][key]
        for other in data["goals"]:
            if goal_id in (other.get("depends_on") or []):
                other["depends_on"] = [d for d in other["depends_on"] if d != goal_id]
                touch(other)
        condo = find_condo(data, goal.get("condo_id"))
        pending = (condo or {}).get("cascade_pending_goals")
        if pending and goal_id in pending:
            condo["cascade_pending_goals"] = [g for g in pending if g != goal_id] or None
            touch(condo)

    for key in keys:
        engine.completion.release(key)
    engine.bus.emit(events.GOAL_DELETED, goal_id=goal_id, condo_id=goal.get("condo_id"))
    return {"ok": True, "goal_id": goal_id, "killed_sessions": keys}


async def _handle_goals_add_task(engine: Engine, params):
    goal_id = _require(params, "goal_id")
    text = _require(params, "text")
    async with engine.repo.transaction() as data:
        goal = require_goal(data, goal_id)
        if is_goal_done(goal):
            raise ApiError("Cannot add tasks to a completed goal", INVALID_PARAMS)
        task = new_task(
            text,
            description=params.get("description") or "",
            assigned_agent=_optional(params, "assigned_agent"),
            depends_on=_optional_list(params, "depends_on"),
            model=_optional(params, "model"),
        )
        goal["tasks"].append(task)
        validate_task_dependencies(goal["tasks"])
        touch(goal)
    return {"task": task, "goal_id": goal_id}


async def _handle_goals_update_task(engine: Engine, params):
    goal_id = _require(params, "goal_id")
    task_id = _require(params, "task_id")
    status = _optional(params, "status")
    _check_choice(status, VALID_TASK_STATUSES, "status")

    completed = False
    async with engine.repo.transaction() as data:
        goal = require_goal(data, goal_id)
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        for key in ("text", "description", "assigned_agent", "model", "summary"):
            if key in params:
                task[key] = params[key]
        depends_on = _optional_list(params, "depends_on")
        if depends_on is not None:
            task["depends_on"] = depends_on
            validate_task_dependencies(goal["tasks"])
        if status == "done":
            completed = not is_task_done(task)
            mark_task_done(task, summary=params.get("summary"))
        elif status is not None:
            task["status"] = status
            task["done"] = False
        touch(task)
        touch(goal)
        all_done = all_tasks_done(goal)

    if completed:
        if task.get("session_key"):
            engine.completion.release(task["session_key"])
        engine.completion.task_completed(goal_id, task_id, all_done=all_done)
    return {"task": task, "goal_id": goal_id, "all_tasks_done": all_done}


async def _handle_goals_delete_task(engine: Engine, params):
    goal_id = _require(params, "goal_id")
    task_id = _require(params, "task_id")
    async with engine.repo.transaction() as data:
        goal = require_goal(data, goal_id)
        task = find_task(goal, task_id)
        if task is None:
            raise NotFoundError("Task not found")
        goal["tasks"] = [t for t in goal["tasks"] if t["id"] != task_id]
        for other in goal["tasks"]:
            if task_id in (other.get("depends_on") or []):
                other["depends_on"] = [d for d in other["depends_on"] if d != task_id]
        session_key = task.get("session_key")
        if session_key:
            data["session_index"].pop(session_key, None)
        touch(goal)
    if session_key:
        engine.completion.release(session_key)
    return {"ok": True, "goal_id": goal_id, "task_id": task_id}


async def _handle_goals_set_session_condo(engine: Engine, params):
    session_key = _require(params, "session_key")
    condo_id = _require(params, "condo_id")
    async with engine.repo.transaction() as data:
        require_condo(data, condo_id)
        if session_key in data["session_index"]:
            raise ApiError("Session is bound to a goal task", CONFLICT)
        previous = data["session_condo_index"].get(session_key)
        data["session_condo_index"][session_key] = condo_id
    if previous and previous != condo_id:
        await asyncio.to_thread(
            engine.classification.record_reclassification, session_key, previous, condo_id
        )
    return {"ok": True, "session_key": session_key, "condo_id": condo_id, "previous": previous}


async def _handle_goals_spawn_task_session(engine: Engine, params):
    return await spawn_task_session(
        engine.repo,
        engine.settings,
        _require(params, "goal_id"),
        _require(params, "task_id"),
        agent_id=_optional(params, "agent_id"),
        model=_optional(params, "model"),
    )


async def _handle_goals_kickoff(engine: Engine, params):
    return await engine.kickoff.kickoff_and_start(_require(params, "goal_id"))


async def _handle_goals_close(engine: Engine, params):
    return await engine.merge.close_goal(_require(params, "goal_id"))


async def _handle_goals_branch_status(engine: Engine, params):
    return await engine.merge.branch_status(_require(params, "goal_id"))


async def _handle_goals_create_pr(engine: Engine, params):
    return await engine.merge.create_pr(_require(params, "goal_id"))


async def _handle_goals_retry_push(engine: Engine, params):
    return await engine.merge.retry_push(_require(params, "goal_id"))


async def _handle_goals_retry_merge(engine: Engine, params):
    return await engine.merge.retry_merge(_require(params, "goal_id"))


async def _handle_goals_push_main(engine: Engine, params):
    return await engine.merge.push_main(_require(params, "condo_id"))


# ---------------------------------------------------------------------------
# PM cascade
# ---------------------------------------------------------------------------


async def _handle_pm_goal_cascade(engine: Engine, params):
    return await engine.cascade.goal_cascade(
        _require(params, "goal_id"), _optional(params, "mode") or "plan"
    )


async def _handle_pm_condo_cascade(engine: Engine, params):
    return await engine.cascade.condo_cascade(
        _require(params, "condo_id"), _optional(params, "mode") or "plan"
    )


async def _handle_pm_condo_create_goals(engine: Engine, params):
    return await engine.cascade.condo_create_goals(
        _require(params, "condo_id"), _optional(params, "plan")
    )


async def _handle_pm_save_response(engine: Engine, params):
    return await engine.cascade.save_pm_response(
        _require(params, "goal_id"), _require(params, "content")
    )


async def _handle_pm_condo_chat(engine: Engine, params):
    return await engine.cascade.prepare_condo_chat(
        _require(params, "condo_id"), _require(params, "message")
    )


async def _handle_pm_condo_save_response(engine: Engine, params):
    return await engine.cascade.save_condo_response(
        _require(params, "condo_id"), _require(params, "content")
    )


# ---------------------------------------------------------------------------
# Sessions, plans, classification, tools
# ---------------------------------------------------------------------------


async def _handle_sessions_kill_for_goal(engine: Engine, params):
    return await engine.lifecycle.kill_for_goal(_require(params, "goal_id"))


async def _handle_sessions_kill_for_condo(engine: Engine, params):
    return await engine.lifecycle.kill_for_condo(_require(params, "condo_id"))


async def _handle_sessions_cleanup_stale(engine: Engine, params):
    return await engine.lifecycle.cleanup_stale(_optional(params, "condo_id"))


async def _handle_sessions_list_for_condo(engine: Engine, params):
    return engine.lifecycle.list_for_condo(_require(params, "condo_id"))


async def _handle_plans_logs(engine: Engine, params):
    session_key = _require(params, "session_key")
    limit = _optional_non_negative_int(params, "limit", 0)
    return {"session_key": session_key, "logs": engine.plan_logs.get(session_key, limit or None)}


async def _handle_classification_stats(engine: Engine, _params):
    return await asyncio.to_thread(engine.classification.stats)


async def _handle_classification_learning_report(engine: Engine, params):
    since_ms = _optional_non_negative_int(params, "since_ms", 0)
    suggestions = await asyncio.to_thread(learning_report, engine.classification, since_ms)
    return {"suggestions": suggestions}


async def _handle_tools_list(engine: Engine, params):
    return {"tools": engine.tools.available(_optional(params, "session_key"))}


async def _handle_tools_call(engine: Engine, params):
    tool_params = params.get("params") or {}
    if not isinstance(tool_params, dict):
        raise ApiError("Param 'params' must be an object", INVALID_PARAMS)
    return await engine.tools.call(
        _require(params, "session_key"), _require(params, "name"), tool_params
    )


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

Handler = Callable[[Engine, dict], Awaitable[Any]]

METHODS: dict[str, Handler] = {
    # condos
    "condos.create": _handle_condos_create,
    "condos.list": _handle_condos_list,
    "condos.get": _handle_condos_get,
    "condos.kickoff": _handle_condos_kickoff,
    # goals
    "goals.create": _handle_goals_create,
    "goals.list": _handle_goals_list,
    "goals.get": _handle_goals_get,
    "goals.update": _handle_goals_update,
    "goals.delete": _handle_goals_delete,
    "goals.add_task": _handle_goals_add_task,
    "goals.update_task": _handle_goals_update_task,
    "goals.delete_task": _handle_goals_delete_task,
    "goals.set_session_condo": _handle_goals_set_session_condo,
    "goals.spawn_task_session": _handle_goals_spawn_task_session,
    "goals.kickoff": _handle_goals_kickoff,
    "goals.close": _handle_goals_close,
    "goals.branch_status": _handle_goals_branch_status,
    "goals.create_pr": _handle_goals_create_pr,
    "goals.retry_push": _handle_goals_retry_push,
    "goals.retry_merge": _handle_goals_retry_merge,
    "goals.push_main": _handle_goals_push_main,
    # pm
    "pm.goal_cascade": _handle_pm_goal_cascade,
    "pm.condo_cascade": _handle_pm_condo_cascade,
    "pm.condo_create_goals": _handle_pm_condo_create_goals,
    "pm.save_response": _handle_pm_save_response,
    "pm.condo_chat": _handle_pm_condo_chat,
    "pm.condo_save_response": _handle_pm_condo_save_response,
    # sessions
    "sessions.kill_for_goal": _handle_sessions_kill_for_goal,
    "sessions.kill_for_condo": _handle_sessions_kill_for_condo,
    "sessions.cleanup_stale": _handle_sessions_cleanup_stale,
    "sessions.list_for_condo": _handle_sessions_list_for_condo,
    # plans / classification / tools
    "plans.logs": _handle_plans_logs,
    "classification.stats": _handle_classification_stats,
    "classification.learning_report": _handle_classification_learning_report,
    "tools.list": _handle_tools_list,
    "tools.call": _handle_tools_call,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def dispatch(engine: Engine, request: dict) -> dict:
    """Process a single API request and return the response dict.

    A successful request is announced on the ``after_rpc`` hook before the
    response is returned.
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        data = await handler(engine, params)
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except NotFoundError as exc:
        return {"ok": False, "error": str(exc), "code": NOT_FOUND}
    except StoreConflictError as exc:
        return {"ok": False, "error": str(exc), "code": CONFLICT}
    except ValueError as exc:
        return {"ok": False, "error": str(exc), "code": INVALID_PARAMS}
    except Exception as exc:
        log.exception("Request %s failed", method)
        return {"ok": False, "error": str(exc), "code": INTERNAL}

    await engine.hooks.emit(
        HookName.AFTER_RPC, AfterRpcEvent(method=method, params=params, success=True, result=data)
    )
    return {"ok": True, "data": data}


Respond = Callable[[bool, Any, Any], None]


def respond_with(engine: Engine, method: str) -> Callable[[dict, Respond], Awaitable[None]]:
    """Adapt *method* to a ``handler(params, respond)`` callback.

    ``respond(success, data, error)`` is called exactly once; ``error`` is
    ``{"message", "code"}`` on failure and None on success.
    """

    async def handler(params: dict, respond: Respond) -> None:
        response = await dispatch(engine, {"method": method, "params": params})
        if response["ok"]:
            respond(True, response["data"], None)
        else:
            respond(False, None, {"message": response["error"], "code": response["code"]})

    return handler


async def _dispatch_local(request: dict) -> dict:
    runtime = GatewayClient()
    try:
        await runtime.start()
    except OSError as exc:
        log.warning("Agent gateway unavailable: %s", exc)
    engine = Engine.from_settings(load_settings(), runtime=runtime)
    try:
        response = await dispatch(engine, request)
        dropped = engine.scheduler.pending()
        if dropped:
            log.warning(
                "%d follow-up job(s) need the daemon and were not run: %s",
                len(dropped),
                ", ".join(job.key for job in dropped),
            )
        return response
    finally:
        await engine.stop()
        await runtime.stop()


async def _dispatch_once(request: dict) -> dict:
    from condos.daemon_client import DaemonClient

    if DEFAULT_SOCKET_PATH.exists():
        try:
            async with DaemonClient() as client:
                return await client.call(request.get("method"), request.get("params"))
        except OSError as exc:
            log.warning("Daemon unreachable, dispatching in-process: %s", exc)
    return await _dispatch_local(request)


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            response = asyncio.run(_dispatch_once(request))
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
