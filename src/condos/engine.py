"""Composition root: one object wiring every controller to shared state.

The engine owns the repository, scheduler, event bus and hook bus and
subscribes the controllers to the agent host's lifecycle hooks:

- ``before_agent_start``: goal, condo or condo-menu context for the session,
- ``agent_end``: the completion state machine,
- ``agent_stream``: plan log extraction,
- ``after_rpc``: plan file watching for newly spawned sessions.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from condos.cascade import CascadeController
from condos.classification import ClassificationLog
from condos.completion import CompletionHandler
from condos.config import Settings, load_settings
from condos.context import (
    build_condo_context,
    build_condo_menu_context,
    build_goal_context,
    project_summary_for_goal,
)
from condos.events import EventBus, JsonlOutboxSink, LiveSink, RedisStreamSink
from condos.hooks import HookBus, HookName, SessionStartEvent
from condos.kickoff import KickoffEngine, SessionStarter
from condos.lifecycle import SessionLifecycle
from condos.merge import MergeController
from condos.models import find_condo, find_goal, goals_for_condo, is_task_done
from condos.plans import PlanLogBuffer
from condos.roles import is_pm_session
from condos.runtime import AgentRuntime, GatewayClient
from condos.scheduler import LoopScheduler, Scheduler
from condos.store import GoalStore, Repository
from condos.tools import AgentTools
from condos.watcher import PlanFileWatcher, PlanLogRecorder

log = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        settings: Settings,
        runtime: AgentRuntime,
        *,
        repo: Repository | None = None,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
        classification: ClassificationLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.repo = repo or Repository(GoalStore(settings.store_path))
        self.scheduler = scheduler or LoopScheduler()
        self.live = LiveSink()
        self.bus = bus or EventBus()
        self.bus.add_sink(self.live)
        self.hooks = HookBus()
        self.plan_logs = PlanLogBuffer()
        self.classification = classification or ClassificationLog(
            settings.store_path.parent / "classification-log.json"
        )

        self.watcher = PlanFileWatcher(
            self.bus,
            self.scheduler,
            self.plan_logs,
            debounce=settings.plan_watch_debounce,
            interval=settings.plan_watch_interval,
        )
        self.starter = SessionStarter(runtime, timeout=settings.rpc_timeout)
        self.kickoff = KickoffEngine(
            self.repo, settings, self.bus, self.starter, watcher=self.watcher
        )
        self.cascade = CascadeController(
            self.repo, settings, self.bus, self.scheduler, self.kickoff, runtime
        )
        self.lifecycle = SessionLifecycle(
            self.repo, runtime, timeout=settings.rpc_timeout, roles=settings.roles
        )
        self.merge = MergeController(
            self.repo, settings, self.bus, self.cascade, self.lifecycle, transport=transport
        )
        self.recorder = PlanLogRecorder(self.repo, self.bus, self.plan_logs)
        self.completion = CompletionHandler(
            self.repo,
            settings,
            self.bus,
            self.scheduler,
            self.kickoff,
            self.merge,
            self.cascade,
            watcher=self.watcher,
            plan_logs=self.plan_logs,
        )
        self.tools = AgentTools(
            self.repo,
            settings,
            self.bus,
            runtime,
            self.kickoff,
            self.starter,
            self.cascade,
            self.completion,
            watcher=self.watcher,
        )
        self._watch_task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._register_hooks()

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> Engine:
        """Engine with the gateway runtime and the configured durable sinks."""
        settings = settings or load_settings()
        bus = EventBus()
        if settings.outbox_path:
            bus.add_sink(JsonlOutboxSink(settings.outbox_path))
        if settings.redis_url:
            bus.add_sink(RedisStreamSink(settings.redis_url))
        runtime = kwargs.pop("runtime", None) or GatewayClient()
        return cls(settings, runtime, bus=bus, **kwargs)

    # -- Hooks ------------------------------------------------------------

    def _register_hooks(self) -> None:
        self.hooks.register(HookName.BEFORE_AGENT_START, self.session_context, name="context")
        self.hooks.register(
            HookName.AGENT_END, self.completion.on_session_end, name="completion"
        )
        self.hooks.register(HookName.AGENT_STREAM, self.recorder.on_stream, name="plan_log")
        self.hooks.register(HookName.AFTER_RPC, self.watcher.on_after_rpc, name="plan_watch")

    def session_context(self, event: SessionStartEvent) -> dict[str, str] | None:
        """Context to prepend for a session about to run, if any."""
        key = event.session_key
        if not key or is_pm_session(key):
            return None
        data = self.repo.snapshot()

        condo = find_condo(data, data["session_condo_index"].get(key))
        if condo is not None:
            goals = goals_for_condo(data, condo["id"])
            return {"prepend_context": build_condo_context(condo, goals, current_session_key=key)}

        entry = data["session_index"].get(key)
        goal = find_goal(data, (entry or {}).get("goal_id"))
        if goal is not None:
            context = build_goal_context(goal, current_session_key=key)
            summary = project_summary_for_goal(data, goal)
            return {"prepend_context": f"{summary}\n\n{context}" if summary else context}

        menu = build_condo_menu_context(data)
        return {"prepend_context": menu} if menu else None

    # -- Background work --------------------------------------------------

    def active_sessions(self) -> set[str]:
        data = self.repo.snapshot()
        return {
            t["session_key"]
            for g in data["goals"]
            for t in g.get("tasks", [])
            if t.get("session_key") and not is_task_done(t) and t.get("status") != "failed"
        }

    async def start(self) -> None:
        """Resume plan file watches and start polling them."""
        count = self.watcher.watch_active(self.repo.snapshot(), self.settings.agent_home)
        if count:
            log.info("Resumed %d plan file watch(es)", count)
        self._stop.clear()
        self._watch_task = asyncio.create_task(self.watcher.run(self._stop, self.active_sessions))

    async def stop(self) -> None:
        self._stop.set()
        if self._watch_task is not None:
            await self._watch_task
            self._watch_task = None
        await self.scheduler.shutdown()
        await asyncio.to_thread(self.bus.close)
