"""Tests for PM plan parsing."""

from condos.plan_parser import (
    convert_phases_to_depends_on,
    detect_plan,
    normalize_agent_to_role,
    parse_goals_from_plan,
    parse_tasks_from_lists,
    parse_tasks_from_plan,
)

TABLE_PLAN = """\
## Plan

| # | Task | Agent | Time |
|---|------|-------|------|
| 1 | Build login API | Backend | 2h |
| 2 | Login page | front-end | 1h |

- Descriptive bullet (backend)

**Status:** Awaiting approval
"""

CONDO_PLAN = """\
## Goals

| # | Goal | Description | Priority | Phase |
|---|------|-------------|----------|-------|
| 1 | Auth | Accounts and sessions | high | 1 |
| 2 | Checkout | Cart and payment | medium | 2 |

### Auth
- Login endpoint (backend)
- Login form (frontend)

### Checkout
- Cart service (backend)
"""


def test_normalize_agent_aliases():
    assert normalize_agent_to_role("Front-End") == "frontend"
    assert normalize_agent_to_role("QA") == "tester"
    assert normalize_agent_to_role("senior backend engineer") == "backend"
    assert normalize_agent_to_role("Security") == "Security"
    assert normalize_agent_to_role("  ") is None


def test_table_tasks_win_over_bullets():
    tasks, has_plan = parse_tasks_from_plan(TABLE_PLAN)
    assert has_plan is True
    assert [t.text for t in tasks] == ["Build login API", "Login page"]
    assert [t.agent for t in tasks] == ["backend", "frontend"]
    assert tasks[0].time == "2h"


def test_list_tasks_deduplicated():
    content = "## Tasks\n- Write docs (designer)\n- write  docs (designer)\n1. Deploy (devops)\n"
    tasks, has_plan = parse_tasks_from_plan(content)
    assert has_plan is True
    assert [(t.text, t.agent) for t in tasks] == [("Write docs", "designer"), ("Deploy", "devops")]


def test_list_patterns():
    tasks = parse_tasks_from_lists(
        "- **Bold task** (backend)\n- [ ] Checkbox task (qa)\n- Dash task - ops\n- ab (pm)\n"
    )
    assert [(t.text, t.agent) for t in tasks] == [
        ("Bold task", "backend"),
        ("Checkbox task", "tester"),
        ("Dash task", "devops"),
    ]


def test_detect_plan():
    assert detect_plan("Please approve the following.") is True
    assert detect_plan("1. Fix header (frontend)") is True
    assert detect_plan("Just chatting about the weather.") is False
    assert detect_plan(None) is False


def test_no_content_has_no_plan():
    assert parse_tasks_from_plan("") == ([], False)
    assert parse_goals_from_plan(None) == ([], False)


def test_condo_plan_table_merges_section_tasks():
    goals, has_plan = parse_goals_from_plan(CONDO_PLAN)
    assert has_plan is True
    assert [g.title for g in goals] == ["Auth", "Checkout"]
    auth, checkout = goals
    assert auth.description == "Accounts and sessions"
    assert auth.priority == "high"
    assert (auth.phase, checkout.phase) == (1, 2)
    assert [t.text for t in auth.tasks] == ["Login endpoint", "Login form"]
    assert [t.agent for t in checkout.tasks] == ["backend"]


def test_condo_plan_sections_without_table():
    content = "## Overview\nintro\n\n### 1. Search\n- Index products (backend)\n\n### Reviews\n"
    goals, has_plan = parse_goals_from_plan(content)
    assert has_plan is True
    assert [g.title for g in goals] == ["Search", "Reviews"]
    assert [t.text for t in goals[0].tasks] == ["Index products"]
    assert goals[1].tasks == []


def test_convert_phases_to_depends_on():
    goals = [
        {"id": "a", "phase": 1},
        {"id": "b", "phase": 1},
        {"id": "c", "phase": 2},
        {"id": "d", "phase": 3},
        {"id": "e"},
    ]
    convert_phases_to_depends_on(goals)
    assert "depends_on" not in goals[0]
    assert goals[2]["depends_on"] == ["a", "b"]
    assert goals[3]["depends_on"] == ["c"]
    assert "depends_on" not in goals[4]
