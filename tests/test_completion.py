"""Tests for the session-end state machine."""

from __future__ import annotations

import pytest

from condos import events
from condos.completion import (
    AUTO_COMPLETE_SUMMARY,
    EXHAUSTED_ERROR,
    SILENT_END_ERROR,
    CompletionPolicy,
)
from condos.hooks import HookName, SessionEndEvent
from condos.models import find_goal, mark_task_done


async def _end(engine, session_key, success=True, error=None):
    results = await engine.hooks.emit(
        HookName.AGENT_END, SessionEndEvent(session_key, success=success, error=error)
    )
    return results[0] if results else None


def _goal(engine, goal_id):
    return find_goal(engine.repo.snapshot(), goal_id)


@pytest.mark.asyncio
async def test_two_independent_tasks_complete_and_merge(engine, add_goal, scheduler):
    goal = await add_goal("Pair", tasks=["Left", "Right"])
    kicked = await engine.kickoff.kickoff_and_start(goal["id"])
    first, second = (s["session_key"] for s in kicked["spawned_sessions"])

    outcome = await _end(engine, first)
    assert outcome["outcome"] == "completed"
    assert _goal(engine, goal["id"])["status"] == "active"
    assert [job.key for job in scheduler.pending()] == [f"kickoff:{goal['id']}"]

    await _end(engine, second)
    assert f"merge:{goal['id']}" in [job.key for job in scheduler.pending()]
    await scheduler.run_all()

    stored = _goal(engine, goal["id"])
    assert stored["status"] == "done"
    assert stored["completed"] is True
    assert all(t["summary"] == AUTO_COMPLETE_SUMMARY for t in stored["tasks"])
    assert all(t["auto_completed"] for t in stored["tasks"])
    task_events = engine.live.named(events.GOAL_TASK_COMPLETED)
    assert [e["all_tasks_done"] for e in task_events] == [False, True]
    assert len(engine.live.named(events.GOAL_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_dependent_task_spawns_after_rekickoff(
    engine, add_goal, scheduler, runtime, settings
):
    goal = await add_goal(
        "Chain",
        tasks=[{"id": "a", "text": "First"}, {"id": "b", "text": "Second", "depends_on": ["a"]}],
    )
    kicked = await engine.kickoff.kickoff_and_start(goal["id"])
    (only,) = kicked["spawned_sessions"]
    assert only["task_id"] == "a"

    await _end(engine, only["session_key"])
    task_b = _goal(engine, goal["id"])["tasks"][1]
    assert task_b["session_key"] is None

    assert await scheduler.advance(settings.rekickoff_delay) == 1
    task_b = _goal(engine, goal["id"])["tasks"][1]
    assert task_b["status"] == "in-progress"
    assert runtime.sent_to(task_b["session_key"])


@pytest.mark.asyncio
async def test_failure_retries_then_fails_permanently(engine, add_goal, scheduler, runtime):
    goal = await add_goal("Fragile", tasks=[{"id": "a", "text": "Risky"}], max_retries=1)
    kicked = await engine.kickoff.kickoff_and_start(goal["id"])
    first_key = kicked["spawned_sessions"][0]["session_key"]

    outcome = await _end(engine, first_key, success=False, error="crashed")
    assert outcome["outcome"] == "retry"
    task = _goal(engine, goal["id"])["tasks"][0]
    assert task["retry_count"] == 1
    assert task["status"] == "pending"
    assert task["session_key"] is None
    assert task["last_error"] == "crashed"
    assert first_key not in engine.repo.snapshot()["session_index"]

    await scheduler.run_all()
    task = _goal(engine, goal["id"])["tasks"][0]
    second_key = task["session_key"]
    assert second_key and second_key != first_key

    outcome = await _end(engine, second_key, success=False)
    assert outcome["outcome"] == "failed"
    task = _goal(engine, goal["id"])["tasks"][0]
    assert task["status"] == "failed"
    assert task["retry_count"] == 1
    assert task["last_error"] == EXHAUSTED_ERROR
    assert task["session_key"] == second_key

    sent_before = len(runtime.sent)
    assert await scheduler.run_all() == 0
    assert len(runtime.sent) == sent_before
    assert len(engine.live.named(events.GOAL_TASK_RETRY)) == 1
    (failed,) = engine.live.named(events.GOAL_TASK_FAILED)
    assert failed["task_id"] == "a"


@pytest.mark.asyncio
async def test_require_report_policy_treats_silent_end_as_failure(engine, add_goal):
    engine.completion.policy = CompletionPolicy.REQUIRE_REPORT
    goal = await add_goal("Strict", tasks=["Report back"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    key = kicked["spawned_sessions"][0]["session_key"]

    outcome = await _end(engine, key, success=None)
    assert outcome["outcome"] == "retry"
    task = _goal(engine, goal["id"])["tasks"][0]
    assert task["last_error"] == SILENT_END_ERROR
    assert task.get("done") is False


@pytest.mark.asyncio
async def test_session_end_after_reported_completion(engine, add_goal):
    goal = await add_goal("Reported", tasks=["Done early", "Still going"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    key = kicked["spawned_sessions"][0]["session_key"]
    async with engine.repo.transaction() as data:
        mark_task_done(find_goal(data, goal["id"])["tasks"][0], summary="all good")

    outcome = await _end(engine, key)
    assert outcome["outcome"] == "already_done"
    assert _goal(engine, goal["id"])["tasks"][0]["summary"] == "all good"
    assert engine.live.named(events.GOAL_TASK_COMPLETED) == []


@pytest.mark.asyncio
async def test_unknown_session_is_ignored(engine):
    assert await _end(engine, "agent:main:webchat:nobody") is None
