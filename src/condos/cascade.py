"""Cascades: completion of one unit of work starting the next.

Two kinds live here:

- the *phase sweep*, which kicks off goals of a condo whose goal-level
  dependencies just became satisfied, and
- the *plan cascade*, which sends a planning prompt to a goal's PM
  session and, when the PM answers, turns its plan into tasks (and in
  ``full`` mode kicks them off without waiting for approval).
"""

from __future__ import annotations

import logging
from typing import Any

from condos import events
from condos.config import Settings
from condos.context import build_pm_condo_prompt, build_pm_goal_prompt
from condos.events import EventBus
from condos.git_ops import provision_goal_worktrees
from condos.graph import validate_goal_dependencies, validate_task_dependencies
from condos.kickoff import KickoffEngine
from condos.models import (
    VALID_CASCADE_MODES,
    Condo,
    Document,
    Goal,
    _utcnow,
    find_condo,
    goal_deps_satisfied,
    goals_for_condo,
    is_goal_done,
    new_goal,
    new_id,
    new_task,
    require_condo,
    require_goal,
    touch,
)
from condos.plan_parser import (
    convert_phases_to_depends_on,
    detect_condo_plan,
    detect_plan,
    parse_goals_from_plan,
    parse_tasks_from_plan,
)
from condos.roles import (
    SUPPORTED_ROLES,
    agent_for_role,
    pm_condo_session_key,
    pm_goal_session_key,
)
from condos.runtime import AgentRuntime, last_assistant_text
from condos.scheduler import Scheduler
from condos.store import Repository

log = logging.getLogger(__name__)

PM_HISTORY_LIMIT = 100
PM_HISTORY_FETCH = 10


def add_to_pm_history(
    entity: Goal | Condo, role: str, content: str, limit: int = PM_HISTORY_LIMIT
) -> None:
    history = entity.setdefault("pm_chat_history", [])
    history.append({"role": role, "content": content, "timestamp": _utcnow()})
    del history[:-limit]


def _outcome(has_plan: bool, state: str, created: list | None = None) -> dict[str, Any]:
    created = created or []
    return {
        "has_plan": has_plan,
        "tasks_created": len(created),
        "cascade_state": state,
        "created_tasks": created,
    }


def process_pm_response(
    goal: Goal, content: str | None, *, mode: str | None = None
) -> dict[str, Any]:
    """Record a PM reply on *goal* and, in ``full`` mode, create its tasks.

    Returns ``{has_plan, tasks_created, cascade_state, created_tasks}``.
    Created tasks run in sequence: each depends on the one before it.
    """
    mode = mode or goal.get("cascade_mode") or "plan"
    content = (content or "").strip()
    if not content:
        return _outcome(False, "response_saved")

    add_to_pm_history(goal, "assistant", content)
    has_plan = detect_plan(content)
    if not has_plan or mode == "plan":
        goal["cascade_state"] = "plan_ready" if has_plan else "response_saved"
        touch(goal)
        return _outcome(has_plan, goal["cascade_state"])

    parsed, _ = parse_tasks_from_plan(content)
    if not parsed:
        goal["cascade_state"] = "plan_parse_failed"
        touch(goal)
        return _outcome(True, "plan_parse_failed")

    created = []
    previous: str | None = None
    for item in parsed:
        task = new_task(
            item.text,
            description=item.description,
            assigned_agent=item.agent,
            estimated_time=item.time,
            depends_on=[previous] if previous else None,
        )
        goal["tasks"].append(task)
        created.append(task)
        previous = task["id"]
    validate_task_dependencies(goal["tasks"])

    goal["pm_plan_content"] = content
    goal["cascade_state"] = "tasks_created"
    touch(goal)
    return _outcome(True, "tasks_created", created)


class CascadeController:
    def __init__(
        self,
        repo: Repository,
        settings: Settings,
        bus: EventBus,
        scheduler: Scheduler,
        kickoff: KickoffEngine,
        runtime: AgentRuntime,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.bus = bus
        self.scheduler = scheduler
        self.kickoff = kickoff
        self.runtime = runtime

    # -- Phase sweep ------------------------------------------------------

    @staticmethod
    def sweep_candidates(
        data: Document, condo_id: str, *, include_independent: bool = False
    ) -> list[str]:
        """Goals that have tasks, were never kicked off and whose dependencies are done.

        Goals without goal-level dependencies are only included when
        *include_independent* is set; the automatic sweep after a merge
        leaves them to an explicit kickoff.
        """
        candidates = []
        for goal in goals_for_condo(data, condo_id):
            tasks = goal.get("tasks", [])
            if is_goal_done(goal) or not tasks:
                continue
            if any(t.get("session_key") for t in tasks):
                continue
            if not goal.get("depends_on") and not include_independent:
                continue
            if goal_deps_satisfied(data, goal):
                candidates.append(goal["id"])
        return candidates

    async def sweep(self, condo_id: str, *, include_independent: bool = False) -> list[dict]:
        """Kick off every eligible goal of a condo. One goal's failure never stops the rest."""
        started = []
        candidates = self.sweep_candidates(
            self.repo.snapshot(), condo_id, include_independent=include_independent
        )
        for goal_id in candidates:
            try:
                result = await self.kickoff.kickoff_and_start(goal_id)
            except Exception:
                log.exception("Sweep kickoff failed for goal %s", goal_id)
                continue
            if result["spawned_sessions"]:
                log.info(
                    "Sweep started %d session(s) for goal %s",
                    len(result["spawned_sessions"]),
                    goal_id,
                )
                started.append(result)
        return started

    def schedule_sweep(self, condo_id: str) -> str:
        return self.scheduler.call_later(
            self.settings.sweep_delay, lambda: self.sweep(condo_id), key=f"sweep:{condo_id}"
        )

    def schedule_kickoff(self, goal_id: str, delay: float) -> str:
        return self.scheduler.call_later(
            delay, lambda: self.kickoff.deferred_kickoff(goal_id), key=f"kickoff:{goal_id}"
        )

    # -- Plan cascade -----------------------------------------------------

    def _roles(self) -> dict[str, str]:
        return {role: agent_for_role(role, self.settings.roles) for role in SUPPORTED_ROLES}

    def _prepare_goal_pm(
        self, data: Document, condo: Condo, goal: Goal, siblings: list[Goal], mode: str
    ) -> dict[str, Any]:
        pm_key = pm_goal_session_key(goal["id"], self.settings.roles)
        goal["pm_session_key"] = pm_key
        data["session_index"][pm_key] = {"goal_id": goal["id"]}
        data["session_condo_index"].pop(pm_key, None)

        user_prompt, prompt = build_pm_goal_prompt(condo, goal, siblings, self._roles())
        add_to_pm_history(goal, "user", user_prompt)
        goal["cascade_state"] = "awaiting_plan"
        goal["cascade_mode"] = mode
        if mode == "full":
            goal["autonomy_mode"] = "full"
        touch(goal)
        return {
            "goal_id": goal["id"],
            "title": goal["title"],
            "pm_session_key": pm_key,
            "prompt": prompt,
            "user_prompt": user_prompt,
        }

    async def _send_prompt(self, entry: dict[str, Any]) -> dict[str, Any]:
        try:
            await self.runtime.send(
                entry["pm_session_key"], entry["prompt"], timeout=self.settings.rpc_timeout
            )
        except Exception as exc:
            log.error("Failed to send PM prompt to %s: %s", entry["pm_session_key"], exc)
            return {"goal_id": entry["goal_id"], "ok": False, "error": str(exc)}
        return {"goal_id": entry["goal_id"], "ok": True}

    async def goal_cascade(self, goal_id: str, mode: str) -> dict[str, Any]:
        """Ask a goal's PM for a task plan."""
        if mode not in VALID_CASCADE_MODES:
            raise ValueError('mode must be "plan" or "full"')
        async with self.repo.transaction() as data:
            goal = require_goal(data, goal_id)
            if not goal.get("condo_id"):
                raise ValueError(f"Goal {goal_id} has no condo")
            condo = require_condo(data, goal["condo_id"])
            if goal.get("tasks"):
                raise ValueError("Goal already has tasks; use goals.kickoff instead")
            siblings = [g for g in goals_for_condo(data, condo["id"]) if not is_goal_done(g)]
            entry = self._prepare_goal_pm(data, condo, goal, siblings, mode)

        log.info("Prepared PM session for goal %s (mode: %s)", goal_id, mode)
        send_result = await self._send_prompt(entry)
        return {**entry, "mode": mode, "send_result": send_result}

    async def condo_cascade(self, condo_id: str, mode: str) -> dict[str, Any]:
        """Ask the PM of every unplanned goal in a condo for a task plan."""
        if mode not in VALID_CASCADE_MODES:
            raise ValueError('mode must be "plan" or "full"')
        async with self.repo.transaction() as data:
            condo = require_condo(data, condo_id)
            siblings = [g for g in goals_for_condo(data, condo_id) if not is_goal_done(g)]
            unplanned = [g for g in siblings if not g.get("tasks")]
            if not unplanned:
                raise ValueError("No goals need planning (all already have tasks)")
            entries = [self._prepare_goal_pm(data, condo, g, siblings, mode) for g in unplanned]
            condo["cascade_mode"] = mode
            condo["cascade_pending_goals"] = [e["goal_id"] for e in entries]
            touch(condo)

        log.info("Prepared %d goal PMs for condo %s (mode: %s)", len(entries), condo_id, mode)
        send_results = [await self._send_prompt(e) for e in entries]
        return {
            "condo_id": condo_id,
            "mode": mode,
            "goals": entries,
            "send_results": send_results,
        }

    # -- Condo PM chat ----------------------------------------------------

    async def prepare_condo_chat(self, condo_id: str, message: str) -> dict[str, Any]:
        """Bind the condo PM session and build its enriched message. Nothing is sent."""
        message = (message or "").strip()
        if not message:
            raise ValueError("message is required")
        pm_key = pm_condo_session_key(condo_id, self.settings.roles)
        async with self.repo.transaction() as data:
            condo = require_condo(data, condo_id)
            data["session_index"].pop(pm_key, None)
            data["session_condo_index"][pm_key] = condo_id
            add_to_pm_history(condo, "user", message)
            touch(condo)
            goals = goals_for_condo(data, condo_id)
            enriched = build_pm_condo_prompt(condo, goals, self._roles(), message)
        return {"condo_id": condo_id, "pm_session_key": pm_key, "enriched_message": enriched}

    async def save_condo_response(self, condo_id: str, content: str) -> dict[str, Any]:
        async with self.repo.transaction() as data:
            condo = require_condo(data, condo_id)
            add_to_pm_history(condo, "assistant", content.strip())
            touch(condo)
        return {"condo_id": condo_id, "has_plan": detect_condo_plan(content)}

    async def condo_create_goals(
        self, condo_id: str, plan_content: str | None = None
    ) -> dict[str, Any]:
        """Create goals from a condo PM plan.

        Without *plan_content* the last reply of the condo PM session is
        used. Phases become goal dependencies; suggested tasks are kept in
        the goal description for its own PM to plan from.
        """
        content = plan_content
        if not content:
            pm_key = pm_condo_session_key(condo_id, self.settings.roles)
            messages = await self.runtime.history(
                pm_key, PM_HISTORY_FETCH, timeout=self.settings.rpc_timeout
            )
            content = last_assistant_text(messages)
        if not content:
            raise ValueError("No plan content provided and no PM response found for the condo")

        parsed, has_plan = parse_goals_from_plan(content)
        if not parsed:
            if not has_plan:
                raise ValueError("No plan or goals detected in content")
            raise ValueError("Plan detected but could not extract any goals")

        specs = [{"id": new_id("goal"), "phase": g.phase} for g in parsed]
        convert_phases_to_depends_on(specs)

        async with self.repo.transaction() as data:
            condo = require_condo(data, condo_id)
            created: list[Goal] = []
            for item, spec in zip(parsed, specs, strict=True):
                suggested = "\n".join(
                    f"- {t.text}" + (f": {t.description}" if t.description else "")
                    for t in item.tasks
                )
                description = item.description
                if suggested:
                    description += f"\n\n### Suggested tasks from project plan:\n{suggested}"
                goal = new_goal(
                    item.title,
                    condo_id=condo_id,
                    description=description.strip(),
                    depends_on=spec.get("depends_on"),
                    phase=item.phase,
                    priority=item.priority,
                    autonomy_mode=condo.get("autonomy_mode"),
                    max_retries=self.settings.default_max_retries,
                )
                goal["id"] = spec["id"]
                goal["pm_plan_content"] = content
                data["goals"].append(goal)
                created.append(goal)
            validate_goal_dependencies(data["goals"])
            touch(condo)
        await provision_goal_worktrees(self.repo, condo_id, [g["id"] for g in created])

        log.info("Created %d goals for condo %s from PM plan", len(created), condo_id)
        return {
            "condo_id": condo_id,
            "goals_created": len(created),
            "goals": [
                {
                    "id": g["id"],
                    "title": g["title"],
                    "phase": g.get("phase"),
                    "depends_on": g["depends_on"],
                }
                for g in created
            ],
            "needs_cascade": True,
        }

    async def apply_pm_response(
        self, goal_id: str, content: str, *, mode: str | None = None
    ) -> dict[str, Any]:
        """Process a PM reply for a goal and run the follow-on cascade steps."""
        async with self.repo.transaction() as data:
            goal = require_goal(data, goal_id)
            result = process_pm_response(goal, content, mode=mode)
            full = goal.get("cascade_mode") == "full"
            created = result["cascade_state"] == "tasks_created"
            if created and full:
                goal["autonomy_mode"] = "full"
            deps_ok = goal_deps_satisfied(data, goal)
            condo_id = goal.get("condo_id")

        log.info(
            "PM response for goal %s: state=%s, tasks=%d",
            goal_id,
            result["cascade_state"],
            result["tasks_created"],
        )
        if created and full:
            self.bus.emit(
                events.GOAL_CASCADE_TASKS_CREATED,
                goal_id=goal_id,
                condo_id=condo_id,
                tasks_created=result["tasks_created"],
            )
            if deps_ok:
                self.schedule_kickoff(goal_id, self.settings.cascade_kickoff_delay)
            else:
                log.info("Goal %s has tasks but is blocked by dependencies", goal_id)
        else:
            self.bus.emit(
                events.GOAL_CASCADE_PLAN_READY,
                goal_id=goal_id,
                condo_id=condo_id,
                has_plan=result["has_plan"],
                cascade_state=result["cascade_state"],
            )
        await self.update_cascade_tracking(condo_id, goal_id)
        return {k: v for k, v in result.items() if k != "created_tasks"} | {
            "created_task_ids": [t["id"] for t in result["created_tasks"]]
        }

    async def _plan_fetch_failed(self, goal_id: str, condo_id: str | None) -> None:
        async with self.repo.transaction() as data:
            goal = require_goal(data, goal_id)
            goal["cascade_state"] = "plan_fetch_failed"
            touch(goal)
        self.bus.emit(
            events.GOAL_CASCADE_PLAN_READY,
            goal_id=goal_id,
            condo_id=condo_id,
            has_plan=False,
            cascade_state="plan_fetch_failed",
        )
        await self.update_cascade_tracking(condo_id, goal_id)

    async def handle_pm_session_end(self, session_key: str) -> dict[str, Any] | None:
        """Collect the plan from a PM session that was awaiting one.

        Returns None when the session is not a goal PM awaiting a plan.
        """
        data = self.repo.snapshot()
        goal = next((g for g in data["goals"] if g.get("pm_session_key") == session_key), None)
        if goal is None or goal.get("cascade_state") != "awaiting_plan":
            return None
        goal_id, condo_id = goal["id"], goal.get("condo_id")

        try:
            messages = await self.runtime.history(
                session_key, PM_HISTORY_FETCH, timeout=self.settings.rpc_timeout
            )
        except Exception as exc:
            log.error("PM history fetch failed for %s: %s", session_key, exc)
            await self._plan_fetch_failed(goal_id, condo_id)
            return {"goal_id": goal_id, "cascade_state": "plan_fetch_failed", "error": str(exc)}

        content = last_assistant_text(messages)
        if not content:
            log.warning("No assistant message found for PM session %s", session_key)
            await self._plan_fetch_failed(goal_id, condo_id)
            return {"goal_id": goal_id, "cascade_state": "plan_fetch_failed"}
        return {"goal_id": goal_id, **await self.apply_pm_response(goal_id, content)}

    async def save_pm_response(self, goal_id: str, content: str) -> dict[str, Any]:
        """Store a PM reply delivered out of band; a goal awaiting a plan is cascaded."""
        snapshot = require_goal(self.repo.snapshot(), goal_id)
        if snapshot.get("cascade_state") == "awaiting_plan":
            return {"goal_id": goal_id, **await self.apply_pm_response(goal_id, content)}
        async with self.repo.transaction() as data:
            goal = require_goal(data, goal_id)
            add_to_pm_history(goal, "assistant", content.strip())
            touch(goal)
        return {"goal_id": goal_id, "has_plan": detect_plan(content)}

    async def update_cascade_tracking(self, condo_id: str | None, goal_id: str) -> bool:
        """Retire *goal_id* from the condo's pending cascade set.

        Emits ``condo.cascade_complete`` when this removal empties the set.
        Returns whether the cascade completed.
        """
        if not condo_id:
            return False
        async with self.repo.transaction() as data:
            condo = find_condo(data, condo_id)
            pending = (condo or {}).get("cascade_pending_goals")
            if condo is None or not isinstance(pending, list) or goal_id not in pending:
                return False
            remaining = [g for g in pending if g != goal_id]
            condo["cascade_pending_goals"] = remaining or None
            touch(condo)
        if remaining:
            return False
        log.info("Cascade complete for condo %s", condo_id)
        self.bus.emit(events.CONDO_CASCADE_COMPLETE, condo_id=condo_id)
        return True
