"""Client for the engine daemon.

Used by the ``condos`` CLI, the ``condos-api`` entry point and the agent
host's hook bridge. Communication uses newline-delimited JSON over the
daemon's Unix domain socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from condos.daemon import _encode
from condos.paths import DEFAULT_SOCKET_PATH

log = logging.getLogger(__name__)


class DaemonClient:
    """Request/response client with an optional live event feed."""

    def __init__(self, *, socket_path: Path = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._events: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def start(self) -> None:
        """Connect to the daemon's Unix socket."""
        self._reader, self._writer = await asyncio.open_unix_connection(str(self._socket_path))
        self._reader_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._writer:
            self._writer.close()
            with contextlib.suppress(Exception):
                await self._writer.wait_closed()
        self._reader = None
        self._writer = None
        self._reader_task = None

    async def _send(self, msg: dict[str, Any], timeout: float | None) -> dict[str, Any]:
        if not self._writer:
            raise RuntimeError("DaemonClient not connected")

        req_id = self._next_id
        self._next_id += 1
        msg["id"] = req_id

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            self._writer.write(_encode(msg))
            await self._writer.drain()
        except Exception:
            self._pending.pop(req_id, None)
            raise

        try:
            if timeout is not None:
                return await asyncio.wait_for(future, timeout=timeout)
            return await future
        except (TimeoutError, asyncio.CancelledError):
            self._pending.pop(req_id, None)
            raise

    async def call(
        self, method: str | None, params: dict[str, Any] | None = None, timeout: float | None = 300
    ) -> dict[str, Any]:
        """Dispatch an API request; returns the ``{"ok", ...}`` response."""
        return await self._send(
            {"type": "request", "method": method, "params": params or {}}, timeout
        )

    async def hook(
        self, hook: str, payload: dict[str, Any], timeout: float | None = 60
    ) -> dict[str, Any]:
        """Deliver a lifecycle hook; returns the handler results."""
        return await self._send({"type": "hook", "hook": hook, "payload": payload}, timeout)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Live events from the daemon until the connection closes."""
        if not self._writer:
            raise RuntimeError("DaemonClient not connected")
        self._writer.write(_encode({"type": "subscribe"}))
        await self._writer.drain()
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    # -- Internal read loop -----------------------------------------------

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                self._handle_eof()
                break
            try:
                msg = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError):
                continue
            if not isinstance(msg, dict):
                continue
            if msg.get("type") == "response":
                self._handle_response(msg)
            elif msg.get("type") == "event":
                self._events.put_nowait(msg.get("event") or {})

    def _handle_response(self, msg: dict[str, Any]) -> None:
        msg_id = msg.get("id")
        if not isinstance(msg_id, int) or msg_id not in self._pending:
            return
        future = self._pending.pop(msg_id)
        if not future.done():
            future.set_result(msg.get("result") or {})

    def _handle_eof(self) -> None:
        """Daemon disconnected: fail all pending requests."""
        err = ConnectionError("Daemon connection closed")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(err)
        self._pending.clear()
        self._events.put_nowait(None)

    async def __aenter__(self) -> DaemonClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
