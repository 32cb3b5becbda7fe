"""Text blocks injected into agent sessions.

Worker sessions get the goal (and project) they belong to; condo-bound
sessions get the whole condo; unbound sessions get a menu of condos to
bind to. Task contexts are the first message sent to a spawned worker.
"""

from __future__ import annotations

import re

from condos.autonomy import autonomy_directive
from condos.models import Condo, Document, Goal, Task, find_condo, is_task_done

PROJECT_SUMMARY_CAP = 15
_SENSITIVE_KEYS = frozenset(
    {"token", "api_key", "secret", "password", "access_token", "agent_token"}
)


def _done_count(goal: Goal) -> int:
    return sum(1 for t in goal.get("tasks", []) if is_task_done(t))


def build_goal_context(goal: Goal, *, current_session_key: str | None = None) -> str:
    status = goal.get("status") or "active"
    lines = [f'<goal id="{goal["id"]}" status="{status}">', f"# {goal['title']}"]

    meta = []
    if goal.get("priority"):
        meta.append(goal["priority"])
    if goal.get("deadline"):
        meta.append(f"Deadline: {goal['deadline']}")
    if meta:
        lines.append(" · ".join(meta))

    worktree = goal.get("worktree")
    if worktree and worktree.get("path"):
        lines.append(f"Workspace: {worktree['path']} (branch: {worktree['branch']})")
    if goal.get("description"):
        lines += ["", goal["description"]]

    tasks = goal.get("tasks", [])
    if tasks:
        lines += ["", f"Tasks ({_done_count(goal)}/{len(tasks)} done):"]
        for task in tasks:
            done = is_task_done(task)
            status = task.get("status") or ("done" if done else "pending")
            if current_session_key and task.get("session_key") == current_session_key:
                suffix = " ← you"
            elif task.get("session_key"):
                suffix = f" (agent: {task['session_key']})"
            elif not done:
                suffix = " (unassigned)"
            else:
                suffix = ""
            lines.append(f"- [{status}] {task['text']} [{task['id']}]{suffix}")
            if done and task.get("summary"):
                lines.append(f"  > {task['summary']}")

    lines.append("</goal>")
    return "\n".join(lines)


def build_project_summary(
    condo: Condo, goals: list[Goal], current_goal_id: str | None = None
) -> str | None:
    if not goals:
        return None
    lines = [f'<project name="{condo["name"]}" id="{condo["id"]}" goals="{len(goals)}">']
    for i, goal in enumerate(goals[:PROJECT_SUMMARY_CAP], 1):
        status = goal.get("status") or "active"
        suffix = ""
        if goal["id"] == current_goal_id:
            suffix = " ← this goal"
        elif status == "active" and goal.get("tasks"):
            suffix = f": {_done_count(goal)}/{len(goal['tasks'])} tasks"
        lines.append(f"{i}. [{status}] {goal['title']} ({goal['id']}){suffix}")
    if len(goals) > PROJECT_SUMMARY_CAP:
        lines.append(f"... and {len(goals) - PROJECT_SUMMARY_CAP} more")
    lines.append("</project>")
    return "\n".join(lines)


def project_summary_for_goal(data: Document, goal: Goal) -> str | None:
    condo = find_condo(data, goal.get("condo_id"))
    if condo is None:
        return None
    siblings = [g for g in data["goals"] if g.get("condo_id") == condo["id"]]
    return build_project_summary(condo, siblings, goal["id"])


def build_condo_menu_context(data: Document) -> str | None:
    if not data["condos"]:
        return None
    lines = [
        "## Session Not Yet Assigned to a Project",
        "",
        "Based on the user's message, pick the most relevant project and call the "
        "`condo_bind` tool to assign this session.",
        "",
        "### Available Projects",
    ]
    for condo in data["condos"]:
        active = [
            g["title"]
            for g in data["goals"]
            if g.get("condo_id") == condo["id"] and g.get("status") == "active"
        ]
        lines.append(f"- **{condo['name']}** ({condo['id']})")
        if condo.get("description"):
            lines.append(f"  {condo['description']}")
        if active:
            more = f" (+{len(active) - 3} more)" if len(active) > 3 else ""
            lines.append(f"  Active goals: {', '.join(active[:3])}{more}")
    lines += ["", "If none of these projects match, proceed without binding."]
    return "\n".join(lines)


_TOP_HEADING = re.compile(r"^# (?!#)", re.M)


def build_condo_context(
    condo: Condo, goals: list[Goal], *, current_session_key: str | None = None
) -> str:
    lines = [
        f'[SESSION SCOPE: condo {condo["id"]}] This session is exclusively for condo '
        f'"{condo["name"]}". Do not reference or mix context from other condos or projects.',
        "",
        f"# Condo: {condo['name']}",
    ]
    workspace = condo.get("workspace")
    if workspace and workspace.get("path"):
        lines.append(f"Workspace: {workspace['path']}")
    if condo.get("description"):
        lines += ["", condo["description"]]

    if goals:
        lines += ["", "## Goals"]
        for goal in goals:
            block = build_goal_context(goal, current_session_key=current_session_key)
            lines += ["", _TOP_HEADING.sub("### ", block, count=1)]

    active = [g for g in goals if g.get("status") != "done"]
    pending = sum(1 for g in goals for t in g.get("tasks", []) if not is_task_done(t))
    lines += [
        "",
        "---",
        f"Active: {len(active)} goals, {pending} pending tasks | "
        f"Completed: {len(goals) - len(active)} goals",
        "",
        "> Use `condo_pm_chat` to send work requests to the PM. Use `condo_pm_kickoff` to "
        "approve a plan and spawn workers. Use `condo_status` to check progress. Use "
        "`goal_update` only for tasks assigned to you (marked `← you` above).",
    ]
    return "\n".join(lines)


def build_service_context(services: dict | None) -> str | None:
    """List configured services by name with their non-secret settings."""
    if not services:
        return None
    lines = ["## Available Services", ""]
    for name, cfg in services.items():
        meta = ", ".join(
            f"{k}: {v}"
            for k, v in (cfg or {}).items()
            if k not in _SENSITIVE_KEYS and k != "auth_mode"
        )
        lines.append(f"- **{name}**" + (f" ({meta})" if meta else ""))
    return "\n".join(lines)


def build_task_context(
    data: Document,
    goal: Goal,
    task: Task,
    *,
    session_key: str,
    autonomy_mode: str,
    plan_file: str,
    workspace_path: str | None,
    services: dict | None = None,
) -> str:
    """First message sent to a freshly spawned worker session."""
    task_id = task["id"]
    project = project_summary_for_goal(data, goal)
    goal_block = build_goal_context(goal, current_session_key=session_key)
    parts: list[str | None] = [
        f'**REQUIRED: When you finish this task you MUST call `goal_update` with '
        f'`status: "done"` and `task_id: "{task_id}"`. Your work is not recorded until you do.**',
        "",
        (project + "\n\n" + goal_block) if project else goal_block,
        "",
        f"---\n## PM Plan (for reference)\n\n{goal['pm_plan_content']}\n---"
        if goal.get("pm_plan_content")
        else None,
        "",
        "---",
        f"## Your Assignment: {task['text']}",
        f"\n{task['description']}" if task.get("description") else None,
        "",
        f"**Working Directory:** `{workspace_path}`\n"
        f"IMPORTANT: start by running `cd {workspace_path}` to work in the correct directory."
        if workspace_path
        else None,
        "",
        build_service_context(services),
        "",
        autonomy_directive(autonomy_mode),
        "",
        f"**Plan File:** if you need a plan, write it to `{plan_file}`",
        'Call `goal_update` with `plan_status="awaiting_approval"` when the plan is ready.',
        "",
        "When executing plan steps, update each step's status:",
        f'- `goal_update({{"task_id": "{task_id}", "step_index": 0, '
        f'"step_status": "in-progress"}})` when starting a step',
        f'- `goal_update({{"task_id": "{task_id}", "step_index": 0, '
        f'"step_status": "done"}})` when completing a step',
        "",
        f'**REMINDER: when done, call `goal_update({{"task_id": "{task_id}", '
        f'"status": "done", "summary": "..."}})`**',
    ]
    return "\n".join(p for p in parts if p is not None)


def build_goals_summary(condo: Condo, goals: list[Goal]) -> str:
    lines = [f'## Project Goals Summary: "{condo["name"]}"']
    for goal in goals:
        tasks = goal.get("tasks", [])
        info = f": {_done_count(goal)}/{len(tasks)} tasks" if tasks else ""
        lines.append(f"- [{goal.get('status') or 'active'}] {goal['title']} ({goal['id']}){info}")
    return "\n".join(lines)


def build_roles_context(roles: dict[str, str]) -> str:
    lines = ["## Available Roles"]
    for role, agent in roles.items():
        if role != "pm":
            lines.append(f"- **{role}** (agent: {agent})")
    lines.append(
        "Assign each task to one of these roles. Answer with a markdown table "
        "`| # | Task | Agent | Time |` under a `## Tasks` heading."
    )
    return "\n".join(lines)


def build_pm_goal_prompt(
    condo: Condo, goal: Goal, goals: list[Goal], roles: dict[str, str]
) -> tuple[str, str]:
    """Return ``(user_prompt, enriched_prompt)`` for a goal's PM planning session."""
    user_prompt = f'Plan tasks for this goal: "{goal["title"]}"'
    if goal.get("description"):
        user_prompt += f"\n\nDescription:\n{goal['description']}"
    user_prompt += (
        f'\n\nThis goal is part of the "{condo["name"]}" project. '
        "Break it into actionable tasks with agent assignments."
    )
    active = sum(1 for g in goals if not g.get("completed"))
    prefix = "\n".join(
        [
            f'[SESSION IDENTITY] You are the Goal PM for "{goal["title"]}" in project '
            f'"{condo["name"]}" (condo: {condo["id"]}, goal: {goal["id"]}). This is an '
            "ISOLATED session: only plan tasks for THIS goal.",
            "",
            build_goals_summary(condo, goals),
            "",
            build_roles_context(roles),
            "",
            "[PM Mode Context]",
            f"Condo: {condo['name']}",
            f"Goal: {goal['title']}",
            f"Active Goals: {active}",
            "",
            "User Message:",
        ]
    )
    return user_prompt, f"{prefix}\n{user_prompt}"


def build_pm_condo_prompt(
    condo: Condo, goals: list[Goal], roles: dict[str, str], message: str
) -> str:
    """Enriched message for a condo PM session: project framing plus the user's request."""
    lines = [
        f'[SESSION IDENTITY] You are the PM for condo "{condo["name"]}" (ID: {condo["id"]}). '
        "This is an ISOLATED session: do not reference goals or conversations from any "
        "other condo.",
        "",
        build_goals_summary(condo, goals) if goals else "This project has no goals yet.",
        "",
        build_roles_context(roles),
        "",
        "When proposing work, answer with a `## Goals` markdown table "
        "`| # | Goal | Description | Phase |` so the goals can be created from it.",
        "",
        "User Message:",
        message,
    ]
    return "\n".join(lines)
