"""Tests for plan file watching, plan logs from session output and session context."""

from __future__ import annotations

import pytest

from condos import events
from condos.events import EventBus, LiveSink
from condos.hooks import HookName, SessionStartEvent, SessionStreamEvent
from condos.models import find_goal
from condos.plans import PlanLogBuffer
from condos.scheduler import VirtualScheduler
from condos.watcher import PlanFileWatcher, extract_log_entry


@pytest.fixture()
def live():
    return LiveSink()


@pytest.fixture()
def watcher(live):
    return PlanFileWatcher(EventBus([live]), VirtualScheduler(), PlanLogBuffer(), debounce=0.5)


# -- PlanFileWatcher --------------------------------------------------------


@pytest.mark.asyncio
async def test_file_created_after_watch_is_reported_once_settled(watcher, live, tmp_path):
    plan = tmp_path / "plans" / "PLAN.md"
    assert watcher.watch("s1", plan) is True
    assert watcher.watch("s1", plan) is False
    assert watcher.check_once() == []

    plan.parent.mkdir()
    plan.write_text("## Step one\n")
    assert watcher.check_once() == ["s1"]
    assert watcher.check_once() == []

    plan.write_text("## Step one\n## Step two\n")
    assert watcher.check_once() == ["s1"]
    assert [job.key for job in watcher.scheduler.pending()] == ["plan-watch:s1"]

    await watcher.scheduler.advance(0.5)
    (changed,) = live.named(events.PLAN_FILE_CHANGED)
    assert changed["file_path"] == str(plan)
    assert watcher.plan_logs.get("s1")[0]["type"] == "file_change"


@pytest.mark.asyncio
async def test_unwatch_cancels_pending_notification(watcher, live, tmp_path):
    plan = tmp_path / "PLAN.md"
    watcher.watch("s1", plan)
    plan.write_text("draft")
    watcher.check_once()
    assert watcher.unwatch("s1") is True
    assert watcher.unwatch("s1") is False
    assert await watcher.scheduler.run_all() == 0
    assert live.named(events.PLAN_FILE_CHANGED) == []


def test_retain_drops_ended_sessions(watcher, tmp_path):
    watcher.watch("keep", tmp_path / "a.md")
    watcher.watch("drop", tmp_path / "b.md")
    watcher.retain({"keep"})
    assert list(watcher.watching()) == ["keep"]


@pytest.mark.asyncio
async def test_watch_active_resumes_live_tasks(engine, add_goal, settings):
    goal = await add_goal("Resume", tasks=["a", "b"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    first, second = (s["session_key"] for s in kicked["spawned_sessions"])
    async with engine.repo.transaction() as data:
        find_goal(data, goal["id"])["tasks"][1]["status"] = "failed"

    fresh = PlanFileWatcher(engine.bus, engine.scheduler, engine.plan_logs)
    assert fresh.watch_active(engine.repo.snapshot(), settings.agent_home) == 1
    watched = fresh.watching()
    assert second not in watched
    assert watched[first] == kicked["spawned_sessions"][0]["plan_file_path"]


# -- Plan logs ------------------------------------------------------------


def test_extract_log_entry():
    assert extract_log_entry({"type": "tool_call", "name": "bash"})["message"] == "Tool call: bash"
    result = extract_log_entry({"type": "tool_result", "success": False})
    assert result["message"] == "Tool result: failure"
    assert result["metadata"] == {"success": False}
    assert extract_log_entry({"type": "text", "text": "Starting step 2"})["type"] == "text"
    assert extract_log_entry({"type": "text", "text": "thinking out loud"}) is None
    assert extract_log_entry({"type": "heartbeat"}) is None
    long = extract_log_entry({"type": "text", "text": "# " + "x" * 500})
    assert len(long["message"]) == 200


@pytest.mark.asyncio
async def test_stream_output_becomes_plan_log(engine, add_goal, tmp_path):
    goal = await add_goal("Logged", tasks=["a"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    key = kicked["spawned_sessions"][0]["session_key"]

    chunk = {"type": "text", "text": "Starting: Configure database schema"}
    (early,) = await engine.hooks.emit(HookName.AGENT_STREAM, SessionStreamEvent(key, chunk))
    assert "step_index" not in early

    plan = tmp_path / "PLAN.md"
    plan.write_text("## Configure database schema\n## Deploy service\n")
    task_id = goal["tasks"][0]["id"]
    await engine.tools.call(key, "goal_update", {"task_id": task_id, "plan_file": str(plan)})
    (record,) = await engine.hooks.emit(HookName.AGENT_STREAM, SessionStreamEvent(key, chunk))
    assert record["step_index"] == 0
    assert record["match_confidence"] >= 0.9
    logged = engine.live.named(events.PLAN_LOG)
    assert [e["task_id"] for e in logged] == [task_id, task_id]
    assert logged[-1]["goal_id"] == goal["id"]
    assert engine.plan_logs.get(key) == [early, record]

    unknown = SessionStreamEvent("agent:main:webchat:stranger", chunk)
    assert await engine.hooks.emit(HookName.AGENT_STREAM, unknown) == []


# -- Session context ------------------------------------------------------


@pytest.mark.asyncio
async def test_session_context_by_binding(engine, add_condo, add_goal):
    condo = await add_condo("Bakery")
    goal = await add_goal("Menu board", tasks=["Draw"], condo_id=condo["id"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    task_key = kicked["spawned_sessions"][0]["session_key"]
    chat = "agent:main:webchat:chat-ctx"
    await engine.tools.call(chat, "condo_bind", {"condo_id": condo["id"]})

    async def context(key):
        results = await engine.hooks.emit(HookName.BEFORE_AGENT_START, SessionStartEvent(key))
        return results[0]["prepend_context"] if results else None

    assert "Menu board" in await context(task_key)
    assert "Bakery" in await context(chat)
    assert "Bakery" in await context("agent:main:webchat:unbound")
    assert await context(f"agent:main:webchat:pm-{goal['id']}") is None
