"""Client side of the agent runtime gateway.

The engine needs four calls from the runtime: deliver a message to a
session, read a session's recent history, and tear a session down
(delete, abort). :class:`AgentRuntime` is the structural interface;
:class:`GatewayClient` implements it over newline-delimited JSON on a
Unix domain socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from condos.paths import GATEWAY_SOCKET_PATH

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class RPCError(Exception):
    def __init__(self, error: dict[str, Any]) -> None:
        self.code = error.get("code", -1)
        self.data = error.get("data")
        super().__init__(error.get("message", "Unknown RPC error"))


@runtime_checkable
class AgentRuntime(Protocol):
    async def send(
        self, session_key: str, message: str, *, timeout: float | None = DEFAULT_TIMEOUT
    ) -> dict[str, Any]: ...

    async def history(
        self, session_key: str, limit: int = 10, *, timeout: float | None = DEFAULT_TIMEOUT
    ) -> list[dict[str, Any]]: ...

    async def delete(
        self, session_key: str, *, timeout: float | None = DEFAULT_TIMEOUT
    ) -> dict[str, Any]: ...

    async def abort(
        self, session_key: str, *, timeout: float | None = DEFAULT_TIMEOUT
    ) -> dict[str, Any]: ...


def _encode(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":")).encode() + b"\n"


class GatewayClient:
    """JSON-RPC client for the agent runtime gateway socket."""

    def __init__(self, *, socket_path: Path = GATEWAY_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}

    async def start(self) -> None:
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

    async def __aenter__(self) -> GatewayClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> Any:
        if not self._writer:
            raise RuntimeError("GatewayClient not connected")

        req_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"type": "request", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
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

    # -- AgentRuntime interface -------------------------------------------

    async def send(self, session_key, message, *, timeout=DEFAULT_TIMEOUT):
        return await self.request(
            "chat.send", {"session_key": session_key, "message": message}, timeout=timeout
        )

    async def history(self, session_key, limit=10, *, timeout=DEFAULT_TIMEOUT):
        result = await self.request(
            "chat.history", {"session_key": session_key, "limit": limit}, timeout=timeout
        )
        if isinstance(result, dict):
            return list(result.get("messages") or [])
        return list(result or [])

    async def delete(self, session_key, *, timeout=DEFAULT_TIMEOUT):
        return await self.request("sessions.delete", {"key": session_key}, timeout=timeout)

    async def abort(self, session_key, *, timeout=DEFAULT_TIMEOUT):
        return await self.request("chat.abort", {"session_key": session_key}, timeout=timeout)

    # -- Read loop --------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                self._fail_pending(ConnectionError("Gateway connection closed"))
                break
            try:
                msg = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError):
                continue
            if isinstance(msg, dict) and msg.get("type") == "response":
                self._handle_response(msg)

    def _handle_response(self, msg: dict[str, Any]) -> None:
        msg_id = msg.get("id")
        if not isinstance(msg_id, int) or msg_id not in self._pending:
            return
        future = self._pending.pop(msg_id)
        if future.done():
            return
        if "error" in msg:
            future.set_exception(RPCError(msg["error"]))
        else:
            future.set_result(msg.get("result", {}))

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()


def last_assistant_text(messages: list[dict[str, Any]]) -> str | None:
    """Text of the most recent assistant message, or None.

    Content may be a plain string or a list of parts, in which case the
    ``{"type": "text"}`` parts are joined with newlines.
    """
    for message in reversed(messages or []):
        if message.get("role") != "assistant":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content or None
        if isinstance(content, list):
            text = "\n".join(
                part.get("text", "")
                for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
            return text or None
        return None
    return None
