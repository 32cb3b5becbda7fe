"""Tests for session teardown across goals and condos."""

from __future__ import annotations

import pytest

from condos.lifecycle import condo_session_keys, goal_session_keys
from condos.models import find_goal, new_goal, new_task
from condos.roles import pm_condo_session_key


def test_goal_session_keys_are_deduplicated_in_order():
    goal = new_goal("Keys")
    goal["pm_session_key"] = "agent:main:webchat:pm-g"
    goal["sessions"] = ["s1", "s2"]
    goal["tasks"] = [new_task("a"), new_task("b")]
    goal["tasks"][0]["session_key"] = "s2"
    goal["tasks"][1]["session_key"] = "s3"
    assert goal_session_keys(goal) == ["agent:main:webchat:pm-g", "s1", "s2", "s3"]


def test_condo_session_keys_include_pm_and_bound_sessions():
    goal = new_goal("In condo", condo_id="c1")
    goal["sessions"] = ["task-1"]
    data = {
        "goals": [goal, new_goal("Elsewhere", condo_id="c2")],
        "session_condo_index": {"chat-1": "c1", "chat-2": "c2"},
    }
    assert condo_session_keys(data, "c1") == [pm_condo_session_key("c1"), "chat-1", "task-1"]


@pytest.mark.asyncio
async def test_abort_failure_does_not_stop_other_sessions(engine, add_goal, runtime):
    goal = await add_goal("Mixed", tasks=["a", "b"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    bad, good = (s["session_key"] for s in kicked["spawned_sessions"])
    real_abort = runtime.abort

    async def abort(session_key, *, timeout=None):
        if session_key == bad:
            raise ConnectionError("socket closed")
        return await real_abort(session_key, timeout=timeout)

    runtime.abort = abort
    result = await engine.lifecycle.kill_for_goal(goal["id"])
    assert (result["total"], result["aborted"]) == (2, 1)
    failed = next(r for r in result["results"] if r["session_key"] == bad)
    assert failed == {"session_key": bad, "aborted": False, "error": "socket closed"}
    assert runtime.aborted == [good]
    assert sorted(runtime.deleted) == sorted([bad, good])

    tasks = find_goal(engine.repo.snapshot(), goal["id"])["tasks"]
    assert all(t["session_key"] is None and t["status"] == "pending" for t in tasks)


@pytest.mark.asyncio
async def test_kill_for_condo_keeps_done_tasks(engine, add_condo, add_goal, settings):
    condo = await add_condo()
    goal = await add_goal(
        "Half", tasks=[{"id": "a", "text": "A"}, {"id": "b", "text": "B"}], condo_id=condo["id"]
    )
    await engine.kickoff.kickoff(goal["id"])
    async with engine.repo.transaction() as data:
        task = find_goal(data, goal["id"])["tasks"][0]
        task["status"] = "done"
        task["done"] = True

    result = await engine.lifecycle.kill_for_condo(condo["id"])
    assert pm_condo_session_key(condo["id"], settings.roles) in result["killed_sessions"]
    assert result["total"] == 3

    done, pending = find_goal(engine.repo.snapshot(), goal["id"])["tasks"]
    assert done["session_key"] is not None
    assert pending["session_key"] is None


def test_list_for_condo_requires_condo(engine):
    with pytest.raises(LookupError, match="Condo not found"):
        engine.lifecycle.list_for_condo("condo_missing")
