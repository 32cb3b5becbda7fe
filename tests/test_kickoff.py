"""Tests for goal kickoff and task session spawning."""

from __future__ import annotations

import logging

import pytest

from condos import events
from condos import spawn as spawn_module
from condos.kickoff import BLOCKED_MESSAGE, ready_tasks
from condos.models import NotFoundError, find_goal, mark_goal_done
from condos.spawn import SpawnError, spawn_task_session


def _task(engine, goal_id, task_id):
    goal = find_goal(engine.repo.snapshot(), goal_id)
    return next(t for t in goal["tasks"] if t["id"] == task_id)


def test_ready_tasks_respects_dependencies_and_state():
    goal = {
        "tasks": [
            {"id": "a", "status": "done", "done": True},
            {"id": "b", "status": "pending", "depends_on": ["a"]},
            {"id": "c", "status": "pending", "depends_on": ["b"]},
            {"id": "d", "status": "failed"},
            {"id": "e", "status": "in-progress", "session_key": "s"},
        ]
    }
    assert [t["id"] for t in ready_tasks(goal)] == ["b"]


@pytest.mark.asyncio
async def test_kickoff_spawns_every_independent_task(engine, add_goal, runtime):
    goal = await add_goal("Login", tasks=["Build API", "Build page"])
    result = await engine.kickoff.kickoff_and_start(goal["id"])

    spawned = result["spawned_sessions"]
    assert len(spawned) == 2
    assert result["message"] == "Spawned 2 session(s)"
    assert all(s["headless_started"] for s in spawned)
    assert {key for key, _ in runtime.sent} == {s["session_key"] for s in spawned}

    data = engine.repo.snapshot()
    stored = find_goal(data, goal["id"])
    assert stored["status"] == "active"
    for task in stored["tasks"]:
        assert task["status"] == "in-progress"
        assert data["session_index"][task["session_key"]] == {"goal_id": goal["id"]}

    (kickoff_event,) = engine.live.named(events.GOAL_KICKOFF)
    assert kickoff_event["spawned_count"] == 2


@pytest.mark.asyncio
async def test_kickoff_only_spawns_unblocked_tasks(engine, add_goal):
    goal = await add_goal(
        "Chain",
        tasks=[{"id": "a", "text": "First"}, {"id": "b", "text": "Second", "depends_on": ["a"]}],
    )
    result = await engine.kickoff.kickoff(goal["id"])
    assert [s["task_id"] for s in result["spawned_sessions"]] == ["a"]
    assert _task(engine, goal["id"], "b")["session_key"] is None


@pytest.mark.asyncio
async def test_kickoff_blocked_by_goal_dependency(engine, add_goal):
    first = await add_goal("First", tasks=["x"])
    second = await add_goal("Second", tasks=["y"], depends_on=[first["id"]])

    result = await engine.kickoff.kickoff_and_start(second["id"])
    assert result["blocked"] is True
    assert result["message"] == BLOCKED_MESSAGE
    assert result["spawned_sessions"] == []
    assert engine.live.named(events.GOAL_KICKOFF) == []

    async with engine.repo.transaction() as data:
        mark_goal_done(find_goal(data, first["id"]))
    result = await engine.kickoff.kickoff(second["id"])
    assert len(result["spawned_sessions"]) == 1


@pytest.mark.asyncio
async def test_done_tasks_are_never_respawned(engine, add_goal):
    goal = await add_goal("Once", tasks=[{"id": "a", "text": "Only"}])
    async with engine.repo.transaction() as data:
        task = find_goal(data, goal["id"])["tasks"][0]
        task["status"] = "done"
        task["done"] = True

    result = await engine.kickoff.kickoff(goal["id"])
    assert result["spawned_sessions"] == []
    assert result["message"] == "No tasks to spawn"
    assert _task(engine, goal["id"], "a")["session_key"] is None


@pytest.mark.asyncio
async def test_failed_delivery_does_not_block_other_sessions(engine, add_goal, runtime):
    goal = await add_goal("Flaky", tasks=[{"id": "a", "text": "A"}, {"id": "b", "text": "B"}])
    first = await engine.kickoff.kickoff(goal["id"])
    keys = [s["session_key"] for s in first["spawned_sessions"]]
    runtime.fail_sends.add(keys[0])

    started = await engine.starter.start(first["spawned_sessions"])
    assert started[0]["headless_started"] is False
    assert "gateway unavailable" in started[0]["start_error"]
    assert started[1]["headless_started"] is True
    assert runtime.sent_to(keys[1])


@pytest.mark.asyncio
async def test_kickoff_unknown_goal(engine):
    with pytest.raises(NotFoundError):
        await engine.kickoff.kickoff("goal_missing")


@pytest.mark.asyncio
async def test_deferred_kickoff_never_raises(engine, caplog):
    caplog.set_level(logging.INFO, logger="condos.kickoff")
    await engine.kickoff.deferred_kickoff("goal_missing")
    assert "no longer exists" in caplog.text


@pytest.mark.asyncio
async def test_spawned_session_context_and_assignment(engine, add_goal, settings):
    goal = await add_goal(
        "Roles", tasks=[{"id": "a", "text": "Style the page", "assigned_agent": "frontend"}]
    )
    spawned = await spawn_task_session(engine.repo, settings, goal["id"], "a")
    assert spawned["agent_id"] == "frontend"
    assert spawned["session_key"].startswith("agent:frontend:webchat:task-")
    assert spawned["autonomy_mode"] == "plan"
    assert "Style the page" in spawned["task_context"]
    assert spawned["plan_file_path"].endswith("plans/" + goal["id"] + "/a/PLAN.md")

    task = _task(engine, goal["id"], "a")
    assert task["plan"]["status"] == "none"
    assert task["plan"]["expected_file_path"] == spawned["plan_file_path"]
    assert spawned["session_key"] in find_goal(engine.repo.snapshot(), goal["id"])["sessions"]


@pytest.mark.asyncio
async def test_spawn_rejects_task_with_session(engine, add_goal, settings):
    goal = await add_goal("Twice", tasks=[{"id": "a", "text": "Once only"}])
    await spawn_task_session(engine.repo, settings, goal["id"], "a")
    with pytest.raises(SpawnError, match="already has a session"):
        await spawn_task_session(engine.repo, settings, goal["id"], "a")
    with pytest.raises(SpawnError, match="Task not found"):
        await spawn_task_session(engine.repo, settings, goal["id"], "zzz")


@pytest.mark.asyncio
async def test_kickoff_watches_plan_file_of_each_spawn(engine, add_goal):
    goal = await add_goal("Watched", tasks=["a", "b"])
    kicked = await engine.kickoff.kickoff_and_start(goal["id"])
    watching = engine.watcher.watching()
    assert len(watching) == 2
    for spawned in kicked["spawned_sessions"]:
        assert watching[spawned["session_key"]] == spawned["plan_file_path"]


@pytest.mark.asyncio
async def test_context_failure_is_isolated_to_its_task(engine, add_goal, monkeypatch):
    goal = await add_goal("Partial", tasks=[{"id": "a", "text": "A"}, {"id": "b", "text": "B"}])
    real = spawn_module.build_task_context

    def broken_for_a(data, goal, task, **kwargs):
        if task["id"] == "a":
            raise KeyError("pm_plan_content")
        return real(data, goal, task, **kwargs)

    monkeypatch.setattr(spawn_module, "build_task_context", broken_for_a)
    kicked = await engine.kickoff.kickoff(goal["id"])

    assert [s["task_id"] for s in kicked["spawned_sessions"]] == ["b"]
    assert [e["task_id"] for e in kicked["errors"]] == ["a"]
    untouched = _task(engine, goal["id"], "a")
    assert (untouched["status"], untouched["session_key"], untouched["plan"]) == (
        "pending",
        None,
        None,
    )
    assert _task(engine, goal["id"], "b")["status"] == "in-progress"
