"""Typed lifecycle hooks delivered by the agent host.

Handlers are registered per hook with an ``order``; :meth:`HookBus.emit`
awaits them in ascending order. A handler that raises is logged and the
remaining handlers still run.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


class HookName(enum.StrEnum):
    BEFORE_AGENT_START = "before_agent_start"
    AGENT_END = "agent_end"
    AGENT_STREAM = "agent_stream"
    AFTER_RPC = "after_rpc"


@dataclass
class SessionStartEvent:
    session_key: str
    messages: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionEndEvent:
    session_key: str
    success: bool | None = None
    error: str | None = None


@dataclass
class SessionStreamEvent:
    session_key: str
    chunk: dict[str, Any] = field(default_factory=dict)


@dataclass
class AfterRpcEvent:
    method: str
    params: dict[str, Any]
    success: bool
    result: Any = None


HookEvent = SessionStartEvent | SessionEndEvent | SessionStreamEvent | AfterRpcEvent

EVENT_TYPES: dict[HookName, type] = {
    HookName.BEFORE_AGENT_START: SessionStartEvent,
    HookName.AGENT_END: SessionEndEvent,
    HookName.AGENT_STREAM: SessionStreamEvent,
    HookName.AFTER_RPC: AfterRpcEvent,
}

Handler = Callable[[Any], Awaitable[Any] | Any]


@dataclass(order=True)
class _Registration:
    order: int
    seq: int
    name: str = field(compare=False)
    handler: Handler = field(compare=False)


class HookBus:
    def __init__(self) -> None:
        self._handlers: dict[HookName, list[_Registration]] = {h: [] for h in HookName}
        self._seq = 0

    def register(
        self, hook: HookName | str, handler: Handler, *, order: int = 100, name: str = ""
    ) -> None:
        hook = HookName(hook)
        self._seq += 1
        label = name or getattr(handler, "__name__", "handler")
        reg = _Registration(order, self._seq, label, handler)
        self._handlers[hook].append(reg)
        self._handlers[hook].sort()

    def handlers(self, hook: HookName | str) -> list[str]:
        return [r.name for r in self._handlers[HookName(hook)]]

    async def emit(self, hook: HookName | str, event: HookEvent) -> list[Any]:
        """Deliver *event* to every handler; return the non-None results in order."""
        hook = HookName(hook)
        expected = EVENT_TYPES[hook]
        if not isinstance(event, expected):
            raise TypeError(f"{hook} expects {expected.__name__}, got {type(event).__name__}")
        results: list[Any] = []
        for reg in list(self._handlers[hook]):
            try:
                result = reg.handler(event)
                if asyncio.iscoroutine(result):
                    result = await result
            except Exception:
                log.exception("Hook handler %s failed on %s", reg.name, hook)
                continue
            if result is not None:
                results.append(result)
        return results


def build_hook_event(hook: HookName | str, payload: dict[str, Any]) -> HookEvent:
    """Build a typed event from a wire payload sent by the agent host."""
    hook = HookName(hook)
    if hook is HookName.BEFORE_AGENT_START:
        return SessionStartEvent(
            session_key=str(payload.get("session_key") or ""),
            messages=list(payload.get("messages") or []),
        )
    if hook is HookName.AGENT_END:
        success = payload.get("success")
        return SessionEndEvent(
            session_key=str(payload.get("session_key") or ""),
            success=None if success is None else bool(success),
            error=payload.get("error"),
        )
    if hook is HookName.AGENT_STREAM:
        return SessionStreamEvent(
            session_key=str(payload.get("session_key") or ""),
            chunk=dict(payload.get("chunk") or {}),
        )
    return AfterRpcEvent(
        method=str(payload.get("method") or ""),
        params=dict(payload.get("params") or {}),
        success=bool(payload.get("success")),
        result=payload.get("result"),
    )
