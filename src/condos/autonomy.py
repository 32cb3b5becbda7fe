"""Autonomy modes for worker sessions.

``full``: execute without approval. ``plan``: plan first and wait for
approval. ``step``: approve the plan, then report every step.
``supervised``: describe each action and wait before doing it.
"""

from __future__ import annotations

AUTONOMY_MODES = ("full", "plan", "step", "supervised")
DEFAULT_AUTONOMY_MODE = "plan"


def resolve_autonomy_mode(task: dict | None, goal: dict | None, condo: dict | None) -> str:
    """First valid mode from task, then goal, then condo, else ``plan``."""
    for entity in (task, goal, condo):
        mode = (entity or {}).get("autonomy_mode")
        if mode in AUTONOMY_MODES:
            return mode
    return DEFAULT_AUTONOMY_MODE


def autonomy_directive(mode: str) -> str:
    if mode == "full":
        return (
            "**Autonomy: Full**: you have full autonomy. Execute the task without "
            "waiting for approval and use your best judgment."
        )
    if mode == "step":
        return (
            "**Autonomy: Step-by-Step Approval**: create a plan and get it approved. "
            "After approval, for EACH step:\n"
            '1. Call `goal_update({"task_id": "<task_id>", "step_index": N, '
            '"step_status": "in-progress"})` before starting\n'
            "2. Complete the step\n"
            '3. Call `goal_update({"task_id": "<task_id>", "step_index": N, '
            '"step_status": "done"})` when finished\n'
            "4. Wait for confirmation before the next step if it involves significant changes."
        )
    if mode == "supervised":
        return (
            "**Autonomy: Supervised**: before each action (file write, command, external "
            "API call) describe what you are about to do and wait for explicit approval. "
            "Create a plan first and get it approved."
        )
    return (
        "**Autonomy: Plan Approval Required**\n"
        "STOP. Do NOT execute any code or make any changes yet.\n"
        "1. Read your assignment and write a detailed plan in your PLAN.md file\n"
        '2. Call `goal_update` with `plan_status="awaiting_approval"` to submit it\n'
        "3. WAIT for the PM to approve or give feedback\n"
        '4. Only after approval call `goal_update` with `plan_status="executing"` and proceed'
    )
