"""Engine daemon: one process owning the goals document and its timers.

The daemon exposes a Unix domain socket speaking newline-delimited JSON.
Clients send:

- ``{"type": "request", "id", "method", "params"}``: an API request,
  answered with ``{"type": "response", "id", "result": {"ok", ...}}``;
- ``{"type": "hook", "id", "hook", "payload"}``: a lifecycle hook from the
  agent host, answered with the non-None handler results;
- ``{"type": "subscribe"}``: live events are pushed as
  ``{"type": "event", "event": {...}}`` until the client disconnects.

Every message is handled in its own task, so a slow request never
delays the others on the same connection.

Run directly::

    python -m condos.daemon
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any

from condos.api import INVALID_PARAMS, dispatch
from condos.engine import Engine
from condos.hooks import HookName, build_hook_event
from condos.paths import DEFAULT_SOCKET_PATH

log = logging.getLogger(__name__)


class DaemonRunningError(RuntimeError):
    """Another daemon already serves the socket."""


def running_pid(pid_path: Path) -> int | None:
    """PID recorded in *pid_path* when that process is still alive."""
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text().strip())
        os.kill(pid, 0)
    except PermissionError:
        return pid
    except (ValueError, ProcessLookupError):
        return None
    return pid


# -- Wire protocol --------------------------------------------------------


def _encode(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":"), default=str).encode() + b"\n"


def _decode(line: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


# -- Client connection ----------------------------------------------------


class _Client:
    """State for one connected client."""

    __slots__ = ("reader", "writer", "addr", "tasks", "feed")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.addr = writer.get_extra_info("peername") or "unknown"
        self.tasks: set[asyncio.Task[None]] = set()
        self.feed: asyncio.Task[None] | None = None

    def send(self, msg: dict) -> None:
        """Queue a message to this client (non-blocking)."""
        try:
            self.writer.write(_encode(msg))
        except Exception:
            log.debug("Failed to write to client %s", self.addr)

    def close(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        if self.feed is not None:
            self.feed.cancel()
        self.writer.close()


def hook_response(hook: HookName, results: list[Any]) -> dict[str, Any]:
    """Reply body for a delivered hook.

    For ``before_agent_start`` the first non-empty ``prepend_context`` is
    lifted to the top level.
    """
    data: dict[str, Any] = {"results": results}
    if hook is HookName.BEFORE_AGENT_START:
        data["prepend_context"] = next(
            (
                r["prepend_context"]
                for r in results
                if isinstance(r, dict) and r.get("prepend_context")
            ),
            None,
        )
    return {"ok": True, "data": data}


# -- Daemon ---------------------------------------------------------------


class CondosDaemon:
    def __init__(self, engine: Engine, *, socket_path: Path = DEFAULT_SOCKET_PATH) -> None:
        self.engine = engine
        self._socket_path = socket_path
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[_Client] = set()

    # -- Message handling -------------------------------------------------

    async def handle_message(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Result body for one request or hook message."""
        msg_type = msg.get("type")
        if msg_type == "request":
            return await dispatch(
                self.engine, {"method": msg.get("method"), "params": msg.get("params")}
            )
        if msg_type == "hook":
            try:
                hook = HookName(msg.get("hook"))
            except ValueError:
                error = f"Unknown hook: {msg.get('hook')}"
                return {"ok": False, "error": error, "code": INVALID_PARAMS}
            event = build_hook_event(hook, msg.get("payload") or {})
            results = await self.engine.hooks.emit(hook, event)
            return hook_response(hook, results)
        return {"ok": False, "error": f"Unknown message type: {msg_type}", "code": INVALID_PARAMS}

    async def _reply(self, client: _Client, msg: dict[str, Any]) -> None:
        result = await self.handle_message(msg)
        client.send({"type": "response", "id": msg.get("id"), "result": result})
        try:
            await client.writer.drain()
        except ConnectionError:
            log.debug("Client %s went away before the reply", client.addr)

    async def _feed(self, client: _Client) -> None:
        queue = self.engine.live.subscribe()
        try:
            while True:
                event = await queue.get()
                client.send({"type": "event", "event": event})
                await client.writer.drain()
        except ConnectionError:
            pass
        finally:
            self.engine.live.unsubscribe(queue)

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        client = _Client(reader, writer)
        self._clients.add(client)
        log.debug("Client connected: %s (total: %d)", client.addr, len(self._clients))
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = _decode(line)
                if msg is None:
                    continue
                if msg.get("type") == "subscribe":
                    if client.feed is None:
                        client.feed = asyncio.create_task(self._feed(client))
                    continue
                task = asyncio.create_task(self._reply(client, msg))
                client.tasks.add(task)
                task.add_done_callback(client.tasks.discard)
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            if client.tasks:
                await asyncio.gather(*client.tasks, return_exceptions=True)
            self._clients.discard(client)
            client.close()
            log.debug("Client disconnected: %s (total: %d)", client.addr, len(self._clients))

    # -- Public API -------------------------------------------------------

    async def start(self) -> None:
        """Start the engine and listen on the socket.

        A leftover socket is replaced only when the daemon recorded in the
        pid file is gone; otherwise DaemonRunningError is raised.
        """
        self._socket_path.parent.mkdir(parents=True, exist_ok=True)
        pid = running_pid(self._socket_path.with_suffix(".pid"))
        if pid is not None:
            raise DaemonRunningError(f"Daemon already running (pid {pid}) on {self._socket_path}")
        if self._socket_path.exists():
            self._socket_path.unlink()

        await self.engine.start()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self._socket_path)
        )
        self._socket_path.chmod(0o600)
        pid_path = self._socket_path.with_suffix(".pid")
        pid_path.write_text(str(os.getpid()))
        log.info("Daemon listening on %s", self._socket_path)

    async def stop(self) -> None:
        for client in list(self._clients):
            client.close()
        self._clients.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        await self.engine.stop()
        if self._socket_path.exists():
            self._socket_path.unlink()
        pid_path = self._socket_path.with_suffix(".pid")
        if pid_path.exists():
            pid_path.unlink()
        log.info("Daemon stopped")

    async def serve_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""
        assert self._server is not None
        stop_event = asyncio.Event()

        def on_signal() -> None:
            log.info("Signal received, shutting down")
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        await stop_event.wait()
        await self.stop()


# -- Entry point ----------------------------------------------------------


async def _main(socket_path: Path = DEFAULT_SOCKET_PATH) -> None:
    from condos.config import load_settings
    from condos.runtime import GatewayClient

    runtime = GatewayClient()
    try:
        await runtime.start()
    except OSError as exc:
        log.warning("Agent gateway unavailable (%s); session messages will fail", exc)
    engine = Engine.from_settings(load_settings(), runtime=runtime)
    daemon = CondosDaemon(engine, socket_path=socket_path)
    try:
        await daemon.start()
        await daemon.serve_forever()
    finally:
        await runtime.stop()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        asyncio.run(_main())
    except DaemonRunningError as exc:
        log.error("%s", exc)
        raise SystemExit(1) from None


if __name__ == "__main__":
    main()
