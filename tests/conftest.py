"""Shared fixtures: isolated settings, a fake agent runtime and a virtual clock."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from condos.config import Settings
from condos.engine import Engine
from condos.models import new_condo, new_goal, new_task
from condos.scheduler import VirtualScheduler


class FakeRuntime:
    """In-memory agent runtime recording every call."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.histories: dict[str, list[dict[str, Any]]] = {}
        self.deleted: list[str] = []
        self.aborted: list[str] = []
        self.fail_sends: set[str] = set()

    async def send(self, session_key, message, *, timeout=None):
        if session_key in self.fail_sends:
            raise ConnectionError("gateway unavailable")
        self.sent.append((session_key, message))
        return {"ok": True}

    async def history(self, session_key, limit=10, *, timeout=None):
        return list(self.histories.get(session_key, []))[-limit:]

    async def delete(self, session_key, *, timeout=None):
        self.deleted.append(session_key)
        return {}

    async def abort(self, session_key, *, timeout=None):
        self.aborted.append(session_key)
        return {}

    def sent_to(self, session_key: str) -> list[str]:
        return [message for key, message in self.sent if key == session_key]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        store_path=tmp_path / "goals.json",
        outbox_path=tmp_path / "events.jsonl",
        workspaces_dir=None,
        agent_home=tmp_path / "agents",
        redis_url=None,
    )


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture()
def engine(settings: Settings, runtime: FakeRuntime, scheduler: VirtualScheduler) -> Engine:
    return Engine(settings, runtime, scheduler=scheduler)


@pytest.fixture()
def add_condo(engine: Engine):
    """Insert a condo into the engine's document and return it."""

    async def _add(name: str = "Shop", **fields: Any) -> dict:
        condo = new_condo(name)
        condo.update(fields)
        async with engine.repo.transaction() as data:
            data["condos"].append(condo)
        return condo

    return _add


@pytest.fixture()
def add_goal(engine: Engine):
    """Insert a goal with tasks given as text or ``{"id", "text", "depends_on"}`` dicts."""

    async def _add(
        title: str = "Goal",
        *,
        tasks=(),
        condo_id: str | None = None,
        depends_on: list[str] | None = None,
        max_retries: int = 1,
        **fields: Any,
    ) -> dict:
        goal = new_goal(
            title, condo_id=condo_id, depends_on=depends_on, max_retries=max_retries
        )
        for spec in tasks:
            if isinstance(spec, str):
                spec = {"text": spec}
            goal["tasks"].append(
                new_task(
                    spec["text"],
                    task_id=spec.get("id"),
                    depends_on=spec.get("depends_on"),
                    assigned_agent=spec.get("assigned_agent"),
                )
            )
        goal.update(fields)
        async with engine.repo.transaction() as data:
            data["goals"].append(goal)
        return goal

    return _add
