"""Worker plan tracking: PLAN.md parsing, step status and per-session logs."""

from __future__ import annotations

import re
import time
from collections import deque
from pathlib import Path
from typing import Any

from condos.models import PlanState, _utcnow

VALID_PLAN_STATUSES = frozenset(
    {"none", "draft", "awaiting_approval", "approved", "rejected", "executing", "completed"}
)
VALID_STEP_STATUSES = frozenset({"pending", "in-progress", "done", "skipped"})

MAX_STEP_TITLE = 100
DEFAULT_LOG_LIMIT = 100

_HEADER_STEP = re.compile(r"^#{2,3}\s+(.+)$")
_NUMBERED_STEP = re.compile(r"^\d+\.\s+(.+)$")
_CHECKBOX_STEP = re.compile(r"^-\s+\[([ xX])\]\s+(.+)$")


def plan_file_path(agent_home: Path, agent_id: str, goal_id: str, task_id: str) -> Path:
    return Path(agent_home) / f"workspace-{agent_id}" / "plans" / goal_id / task_id / "PLAN.md"


def create_empty_plan(expected_file_path: str | None = None) -> PlanState:
    return {
        "status": "none",
        "file_path": None,
        "expected_file_path": expected_file_path,
        "content": None,
        "steps": [],
        "updated_at": _utcnow(),
    }


def parse_plan_markdown(content: str | None) -> list[dict[str, Any]]:
    """Extract steps from ``##``/``###`` headers, numbered items and checkboxes."""
    steps: list[dict[str, Any]] = []
    for line in (content or "").splitlines():
        status = "pending"
        if match := _HEADER_STEP.match(line):
            title = match.group(1).strip()
        elif match := _NUMBERED_STEP.match(line):
            title = match.group(1).strip()
        elif match := _CHECKBOX_STEP.match(line):
            title = match.group(2).strip()
            status = "pending" if match.group(1) == " " else "done"
        else:
            continue
        if not title:
            continue
        if len(title) > MAX_STEP_TITLE:
            title = title[:MAX_STEP_TITLE] + "..."
        steps.append(
            {
                "index": len(steps),
                "title": title,
                "status": status,
                "started_at": None,
                "completed_at": _utcnow() if status == "done" else None,
            }
        )
    return steps


def read_plan_file(path: str | Path, base: str | Path | None = None) -> dict[str, Any]:
    """Read and parse a plan file. Raises FileNotFoundError when absent."""
    resolved = Path(base or Path.cwd()) / path if not Path(path).is_absolute() else Path(path)
    content = resolved.read_text()
    return {"content": content, "steps": parse_plan_markdown(content), "file_path": str(resolved)}


def sync_plan_steps(plan: PlanState, content: str, file_path: str | None = None) -> PlanState:
    """Replace plan steps from *content*, keeping statuses of steps with the same title."""
    previous = {s["title"]: s for s in plan.get("steps") or []}
    steps = parse_plan_markdown(content)
    for step in steps:
        old = previous.get(step["title"])
        if old and step["status"] == "pending":
            step["status"] = old.get("status", "pending")
            step["started_at"] = old.get("started_at")
            step["completed_at"] = old.get("completed_at")
    plan["steps"] = steps  # type: ignore[typeddict-item]
    plan["content"] = content
    if file_path:
        plan["file_path"] = file_path
    if plan.get("status", "none") == "none":
        plan["status"] = "draft"
    plan["status"] = compute_plan_status(plan)
    plan["updated_at"] = _utcnow()
    return plan


def set_step_status(plan: PlanState, index: int, status: str) -> None:
    if status not in VALID_STEP_STATUSES:
        raise ValueError(f"Invalid step status: {status}")
    steps = plan.get("steps") or []
    if not 0 <= index < len(steps):
        raise IndexError(f"Step {index} out of range (plan has {len(steps)} steps)")
    step = steps[index]
    now = _utcnow()
    step["status"] = status
    if status == "in-progress" and not step.get("started_at"):
        step["started_at"] = now
    if status in ("done", "skipped"):
        step["completed_at"] = now
    plan["status"] = compute_plan_status(plan)
    plan["updated_at"] = now


def compute_plan_status(plan: PlanState | None) -> str:
    if not plan:
        return "none"
    steps = plan.get("steps") or []
    status = plan.get("status") or "none"
    if not steps:
        return status
    if all(s["status"] in ("done", "skipped") for s in steps):
        return "completed"
    any_in_progress = any(s["status"] == "in-progress" for s in steps)
    any_started = any(s["status"] != "pending" for s in steps)
    if any_in_progress or (any_started and status == "approved"):
        return "executing"
    return status


def match_log_to_step(entry: str | dict, steps: list[dict]) -> tuple[int | None, float]:
    """Best-matching step index for a log line, with a confidence in [0, 1].

    Confidence is the share of the step's words longer than three letters
    found in the text; an exact title substring scores at least 0.9.
    Matches under 0.3 are discarded.
    """
    if not steps:
        return None, 0.0
    if isinstance(entry, str):
        text = entry.lower()
    else:
        text = str(entry.get("text") or entry.get("message") or entry).lower()
    best: tuple[int | None, float] = (None, 0.0)
    for step in steps:
        title = step["title"].lower()
        words = [w for w in title.split() if len(w) > 3]
        confidence = sum(1 for w in words if w in text) / len(words) if words else 0.0
        if title in text:
            confidence = max(confidence, 0.9)
        if confidence >= 0.3 and confidence > best[1]:
            best = (step.get("index"), confidence)
    return best


class PlanLogBuffer:
    """Per-session ring buffer of plan log entries (not persisted)."""

    def __init__(self, max_per_session: int = DEFAULT_LOG_LIMIT) -> None:
        self.max_per_session = max_per_session
        self._buffers: dict[str, deque[dict[str, Any]]] = {}

    def append(self, session_key: str, entry: dict[str, Any]) -> dict[str, Any]:
        buf = self._buffers.setdefault(session_key, deque(maxlen=self.max_per_session))
        record = {"timestamp": time.time(), **entry}
        buf.append(record)
        return record

    def get(self, session_key: str, limit: int | None = None) -> list[dict[str, Any]]:
        entries = list(self._buffers.get(session_key, ()))
        return entries[-limit:] if limit else entries

    def clear(self, session_key: str) -> None:
        self._buffers.pop(session_key, None)

    def sessions(self) -> list[str]:
        return list(self._buffers)

    def stats(self) -> dict[str, int]:
        return {
            "session_count": len(self._buffers),
            "total_entries": sum(len(b) for b in self._buffers.values()),
        }
