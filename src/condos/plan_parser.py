"""Parse a PM's markdown plan into tasks (goal plans) or goals (condo plans).

Tables are authoritative: when a plan has a task table, bullet lists are
ignored so descriptive bullets do not turn into extra tasks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_AGENT_ALIASES = {
    "frontend": "frontend",
    "front-end": "frontend",
    "front": "frontend",
    "ui": "frontend",
    "backend": "backend",
    "back-end": "backend",
    "back": "backend",
    "api": "backend",
    "designer": "designer",
    "design": "designer",
    "ux": "designer",
    "tester": "tester",
    "qa": "tester",
    "test": "tester",
    "devops": "devops",
    "ops": "devops",
    "infra": "devops",
    "pm": "pm",
    "project manager": "pm",
}

_SEPARATOR_CELL = re.compile(r"^[-:]+$")
_NUMBER = re.compile(r"^\d+$")

_LIST_PATTERNS = [
    # - **Task** (agent)
    re.compile(r"^[-*]\s+(?:\[[ xX]?\]\s+)?\*\*(.+?)\*\*\s*\(([^)]+)\)\s*$"),
    # - Task (agent)
    re.compile(r"^[-*]\s+(?:\[[ xX]?\]\s+)?(.+?)\s*\(([^)]+)\)\s*$"),
    # - Task (agent) — description
    re.compile(r"^[-*]\s+(?:\[[ xX]?\]\s+)?(.+?)\s*\(([^)]+)\)\s*[—–-]\s*(.+?)\s*$"),
    # - Task — agent
    re.compile(r"^[-*]\s+(?:\[[ xX]?\]\s+)?(.+?)\s+[—–-]\s+([^—–\-]+?)\s*$"),
    # 1. Task (agent)
    re.compile(r"^\d+\.\s+(.+?)\s*\(([^)]+)\)\s*$"),
    # 1. Task — agent
    re.compile(r"^\d+\.\s+(.+?)\s+[—–-]\s+([^—–\-]+?)\s*$"),
]

_PLAN_HEADERS = (
    "## plan",
    "## tasks",
    "## task breakdown",
    "## implementation plan",
    "## development plan",
    "## execution plan",
    "### plan",
    "### tasks",
    "# plan",
    "**plan:**",
    "**tasks:**",
    "**task breakdown:**",
)
_APPROVAL_MARKERS = (
    "awaiting approval",
    "awaiting_approval",
    "pending approval",
    "please approve",
    "ready for approval",
    "approval requested",
    "status: awaiting",
)
_TASK_TABLE = re.compile(r"\|\s*#?\s*\|\s*task|\|\s*(task|agent|assignee|role)\s*\|", re.I)
_ROLE_WORDS = "frontend|backend|designer|tester|devops|qa|pm"
_LIST_WITH_AGENT = re.compile(
    rf"^\s*(?:\d+\.|[-*])\s+(?:\[[ xX]?\]\s+)?.+\(.*({_ROLE_WORDS})", re.I | re.M
)

_GOAL_HEADERS = (
    "## goals",
    "## milestones",
    "## objectives",
    "### goals",
    "### milestones",
    "### objectives",
    "# goals",
    "**goals:**",
    "**milestones:**",
    "**objectives:**",
    "## proposed goals",
    "## goal breakdown",
)
_GOAL_TABLE = re.compile(r"\|\s*#?\s*\|\s*goal|\|\s*(goal|milestone|objective)\s*\|", re.I)
_GOAL_HEADING = re.compile(r"^#{2,5}\s+(?:\d+\.\s*)?(.+)$")
_NON_GOAL_HEADINGS = frozenset(
    {
        "goals",
        "milestones",
        "objectives",
        "plan",
        "tasks",
        "task breakdown",
        "overview",
        "summary",
        "introduction",
        "proposed goals",
        "goal breakdown",
        "available roles",
        "implementation plan",
        "development plan",
        "execution plan",
    }
)


@dataclass
class ParsedTask:
    text: str
    agent: str | None = None
    time: str | None = None
    description: str = ""


@dataclass
class ParsedGoal:
    title: str
    description: str = ""
    priority: str | None = None
    phase: int | None = None
    tasks: list[ParsedTask] = field(default_factory=list)


def _clean(text: str) -> str:
    return text.replace("**", "").replace("`", "").strip()


def normalize_agent_to_role(name: str | None) -> str | None:
    """Map a free-form assignee to a role name; unknown names pass through."""
    if not name or not name.strip():
        return None
    normalized = name.strip().lower()
    if normalized in _AGENT_ALIASES:
        return _AGENT_ALIASES[normalized]
    for alias, role in _AGENT_ALIASES.items():
        if re.search(rf"\b{re.escape(alias)}\b", normalized):
            return role
    return name.strip()


def _table_rows(content: str):
    """Yield ``(header_cells, row_cells)`` for every data row of every table."""
    header: list[str] | None = None
    for line in content.splitlines():
        stripped = line.strip()
        if not (stripped.startswith("|") and stripped.endswith("|")):
            header = None
            continue
        cells = [c.strip() for c in stripped.strip("|").split("|")]
        if all(_SEPARATOR_CELL.match(c) for c in cells if c):
            continue
        if header is None:
            header = [c.lower() for c in cells]
            continue
        yield header, cells


def _column(header: list[str], *needles: str) -> int:
    for idx, col in enumerate(header):
        if any(n in col for n in needles):
            return idx
    return -1


def _cell(cells: list[str], idx: int) -> str:
    return cells[idx].strip() if 0 <= idx < len(cells) else ""


def _row_title(cells: list[str], idx: int) -> str | None:
    title = _cell(cells, idx)
    if not title or _NUMBER.match(title):
        title = next((c for c in cells if c and not _NUMBER.match(c) and len(c) > 3), "")
    return _clean(title) or None


def parse_tasks_from_table(content: str) -> list[ParsedTask]:
    tasks: list[ParsedTask] = []
    for header, cells in _table_rows(content or ""):
        task_idx = _column(header, "task", "action")
        if task_idx < 0:
            continue
        text = _row_title(cells, task_idx)
        if not text:
            continue
        agent_idx = _column(header, "agent", "assignee", "owner", "who", "role")
        time_idx = _column(header, "time", "estimate", "duration", "est.")
        desc_idx = _column(header, "description", "detail", "notes")
        tasks.append(
            ParsedTask(
                text=text,
                agent=normalize_agent_to_role(_cell(cells, agent_idx)) if agent_idx >= 0 else None,
                time=_cell(cells, time_idx) or None if time_idx >= 0 else None,
                description=_cell(cells, desc_idx) if desc_idx >= 0 else "",
            )
        )
    return tasks


def parse_tasks_from_lists(content: str) -> list[ParsedTask]:
    tasks: list[ParsedTask] = []
    for line in (content or "").splitlines():
        stripped = line.strip()
        if not stripped or stripped[0] not in "-*0123456789":
            continue
        for pattern in _LIST_PATTERNS:
            match = pattern.match(stripped)
            if not match:
                continue
            text = _clean(match.group(1))
            if len(text) < 3:
                continue
            description = match.group(3) if pattern.groups >= 3 else ""
            tasks.append(
                ParsedTask(
                    text=text,
                    agent=normalize_agent_to_role(match.group(2)),
                    description=(description or "").strip(),
                )
            )
            break
    return tasks


def detect_plan(content: str | None) -> bool:
    if not content:
        return False
    lower = content.lower()
    if any(h in lower for h in _PLAN_HEADERS) or any(m in lower for m in _APPROVAL_MARKERS):
        return True
    return bool(_TASK_TABLE.search(content) or _LIST_WITH_AGENT.search(content))


def parse_tasks_from_plan(content: str | None) -> tuple[list[ParsedTask], bool]:
    """Return ``(tasks, has_plan)``. Table tasks win over list tasks."""
    if not content:
        return [], False
    has_plan = detect_plan(content)
    table_tasks = parse_tasks_from_table(content)
    if table_tasks:
        return table_tasks, has_plan
    seen: set[str] = set()
    tasks: list[ParsedTask] = []
    for task in parse_tasks_from_lists(content):
        key = " ".join(task.text.lower().split())
        if key not in seen:
            seen.add(key)
            tasks.append(task)
    return tasks, has_plan


# -- Condo plans ----------------------------------------------------------


def detect_condo_plan(content: str | None) -> bool:
    if not content:
        return False
    lower = content.lower()
    if any(h in lower for h in _GOAL_HEADERS) or _GOAL_TABLE.search(content):
        return True
    return detect_plan(content)


def _parse_goals_from_table(content: str) -> list[ParsedGoal]:
    goals: list[ParsedGoal] = []
    for header, cells in _table_rows(content):
        goal_idx = _column(header, "goal", "milestone", "objective")
        if goal_idx < 0:
            continue
        title = _row_title(cells, goal_idx)
        if not title:
            continue
        desc_idx = _column(header, "description", "detail", "scope")
        prio_idx = _column(header, "priority", "importance", "order")
        phase_idx = _column(header, "phase", "wave", "stage")
        phase = None
        raw_phase = _cell(cells, phase_idx) if phase_idx >= 0 else ""
        if raw_phase.isdigit() and int(raw_phase) > 0:
            phase = int(raw_phase)
        goals.append(
            ParsedGoal(
                title=title,
                description=_clean(_cell(cells, desc_idx)) if desc_idx >= 0 else "",
                priority=(_cell(cells, prio_idx) or None) if prio_idx >= 0 else None,
                phase=phase,
            )
        )
    return goals


def _parse_goal_sections(content: str) -> list[ParsedGoal]:
    goals: list[ParsedGoal] = []
    current: ParsedGoal | None = None
    block: list[str] = []

    def flush() -> None:
        if current is not None:
            current.tasks = parse_tasks_from_lists("\n".join(block))
            goals.append(current)

    for line in content.splitlines():
        match = _GOAL_HEADING.match(line.strip())
        if match:
            flush()
            title = match.group(1).replace("**", "").strip()
            current = None if title.lower() in _NON_GOAL_HEADINGS else ParsedGoal(title=title)
            block = []
            continue
        if current is not None:
            block.append(line)
    flush()
    return goals


def parse_goals_from_plan(content: str | None) -> tuple[list[ParsedGoal], bool]:
    """Return ``(goals, has_plan)`` from a condo-level plan.

    A goals table defines the goals; ``### Goal`` sections contribute their
    bullet tasks to the table goal with a matching title. Without a table
    the sections themselves become the goals.
    """
    if not content:
        return [], False
    has_plan = detect_condo_plan(content)
    goals = _parse_goals_from_table(content)
    sections = _parse_goal_sections(content)
    if goals and sections:
        for goal in goals:
            title = goal.title.lower()
            match = next(
                (s for s in sections if title in s.title.lower() or s.title.lower() in title),
                None,
            )
            if match and match.tasks:
                goal.tasks = match.tasks
    elif not goals:
        goals = sections
    return goals, has_plan


def convert_phases_to_depends_on(goals: list[dict]) -> list[dict]:
    """Make every goal of phase N depend on all goals of the previous phase.

    Goals need ``id`` and optional ``phase`` keys; ``depends_on`` is set in place.
    """
    by_phase: dict[int, list[dict]] = {}
    for goal in goals:
        if goal.get("phase"):
            by_phase.setdefault(goal["phase"], []).append(goal)
    phases = sorted(by_phase)
    for prev, cur in zip(phases, phases[1:], strict=False):
        prev_ids = [g["id"] for g in by_phase[prev] if g.get("id")]
        if not prev_ids:
            continue
        for goal in by_phase[cur]:
            goal["depends_on"] = list(prev_ids)
    return goals
