"""Lifecycle event bus.

Every state transition is published once through :class:`EventBus`, which
fans it out to pluggable sinks:

- :class:`LiveSink` feeds in-process subscribers (dashboard websockets,
  tests, the daemon's event stream).
- :class:`RedisStreamSink` appends ``goal.*`` and ``condo.*`` events to a Redis Stream so a
  separate process can follow state with ``XREAD``.
- :class:`JsonlOutboxSink` appends the same events to a JSON-lines file,
  one ``O_APPEND`` write per event, for relays without Redis.

A sink that raises is logged and skipped; it never suppresses the sinks
after it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from queue import Full, Queue
from typing import Any, Protocol

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

# -- Event names ----------------------------------------------------------

GOAL_KICKOFF = "goal.kickoff"
GOAL_COMPLETED = "goal.completed"
GOAL_MERGED = "goal.merged"
GOAL_PUSH_FAILED = "goal.push_failed"
GOAL_TASK_COMPLETED = "goal.task_completed"
GOAL_TASK_RETRY = "goal.task_retry"
GOAL_TASK_FAILED = "goal.task_failed"
GOAL_CASCADE_TASKS_CREATED = "goal.cascade_tasks_created"
GOAL_CASCADE_PLAN_READY = "goal.cascade_plan_ready"
GOAL_PR_CREATED = "goal.pr_created"
GOAL_CLOSED = "goal.closed"
GOAL_DELETED = "goal.deleted"
CONDO_CASCADE_COMPLETE = "condo.cascade_complete"
PLAN_LOG = "plan.log"
PLAN_FILE_CHANGED = "plan.file_changed"

EVENTS_STREAM = "condos:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("CONDOS_EVENTS_STREAM_MAXLEN", "1000"))

DURABLE_PREFIXES = ("goal.", "condo.")


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


class EventSink(Protocol):
    def publish(self, event: dict[str, Any]) -> None: ...


class EventBus:
    """Stamps events and hands them to each sink in registration order."""

    def __init__(self, sinks: Iterable[EventSink] = ()) -> None:
        self.sinks: list[EventSink] = list(sinks)

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, name: str, **payload: Any) -> dict[str, Any]:
        event = {"event": name, **payload, "timestamp": _timestamp()}
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception:
                log.exception("Event sink %s failed for %s", type(sink).__name__, name)
        return event

    def close(self) -> None:
        """Flush and release sinks that hold background resources."""
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()


# -- Sinks ----------------------------------------------------------------


class LiveSink:
    """In-process fan-out to queues and callbacks, with a short history."""

    def __init__(self, history: int = 500) -> None:
        self.history: deque[dict[str, Any]] = deque(maxlen=history)
        self._queues: set[asyncio.Queue[dict[str, Any]]] = set()
        self._callbacks: list[Callable[[dict[str, Any]], None]] = []

    def publish(self, event: dict[str, Any]) -> None:
        self.history.append(event)
        for queue in list(self._queues):
            queue.put_nowait(event)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                log.exception("Event subscriber failed for %s", event.get("event"))

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._queues.discard(queue)

    def on_event(self, callback: Callable[[dict[str, Any]], None]) -> None:
        self._callbacks.append(callback)

    def named(self, name: str) -> list[dict[str, Any]]:
        return [e for e in self.history if e["event"] == name]


_pools: dict[tuple[str, float | None], ConnectionPool] = {}

REDIS_CONNECT_TIMEOUT = float(os.environ.get("CONDOS_REDIS_CONNECT_TIMEOUT", "2"))
REDIS_SOCKET_TIMEOUT = float(os.environ.get("CONDOS_REDIS_SOCKET_TIMEOUT", "5"))


def get_redis(url: str, *, socket_timeout: float | None = REDIS_SOCKET_TIMEOUT) -> Redis:
    key = (url, socket_timeout)
    pool = _pools.get(key)
    if pool is None:
        pool = _pools[key] = ConnectionPool.from_url(
            url,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
            socket_timeout=socket_timeout,
        )
    return Redis(connection_pool=pool)


class RedisStreamSink:
    """Durable relay on a Redis Stream. Best-effort, never raises.

    ``publish`` only enqueues the event; a background thread does the
    XADD, so an emitting coroutine never waits on Redis. ``close`` drains
    what is queued and stops the thread.
    """

    def __init__(
        self,
        url: str,
        *,
        stream: str = EVENTS_STREAM,
        maxlen: int = EVENTS_STREAM_MAXLEN,
        prefixes: tuple[str, ...] = DURABLE_PREFIXES,
        queue_size: int = 10_000,
    ) -> None:
        self.url = url
        self.stream = stream
        self.maxlen = maxlen
        self.prefixes = prefixes
        self._queue: Queue[tuple[str, str] | None] = Queue(maxsize=queue_size)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def publish(self, event: dict[str, Any]) -> None:
        if not event["event"].startswith(self.prefixes):
            return
        payload = json.dumps(event, default=str)
        self._ensure_worker()
        try:
            self._queue.put_nowait((event["event"], payload))
        except Full:
            log.warning("Event relay backlog full, dropping %s", event["event"])

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except Full:
            log.warning("Event relay backlog full, not waiting for it to drain")
            return
        thread.join(timeout)
        if thread.is_alive():
            log.warning("Event relay did not drain within %.1fs", timeout)

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._drain, name="condos-event-relay", daemon=True
                )
                self._thread.start()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                return
            name, payload = item
            try:
                get_redis(self.url).xadd(
                    self.stream, {"data": payload}, maxlen=self.maxlen, approximate=True
                )
            except RedisError:
                log.warning("Event publish failed (Redis unavailable): %s", name)
            except Exception:
                log.exception("Event relay failed for %s", name)


class JsonlOutboxSink:
    """Append-only JSON-lines outbox.

    Each event is a single ``os.write`` on a descriptor opened with
    ``O_APPEND``, so concurrent writers never interleave or truncate
    each other's records.
    """

    def __init__(self, path: Path, *, prefixes: tuple[str, ...] = DURABLE_PREFIXES) -> None:
        self.path = Path(path)
        self.prefixes = prefixes

    def publish(self, event: dict[str, Any]) -> None:
        if not event["event"].startswith(self.prefixes):
            return
        line = json.dumps(event, default=str, separators=(",", ":")).encode() + b"\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)


def read_outbox(path: Path, *, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    """Read outbox records starting at byte *offset*.

    Returns the decoded events and the offset to resume from. A trailing
    partial line is left for the next read.
    """
    path = Path(path)
    if not path.exists():
        return [], offset
    with open(path, "rb") as f:
        f.seek(offset)
        chunk = f.read()
    events: list[dict[str, Any]] = []
    consumed = 0
    for line in chunk.splitlines(keepends=True):
        if not line.endswith(b"\n"):
            break
        consumed += len(line)
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            log.warning("Skipping malformed outbox record at offset %d", offset + consumed)
    return events, offset + consumed


# -- Stream subscriber ----------------------------------------------------


class EventSubscriber:
    """Iterator over the Redis Stream relay with optional filtering.

    Returns ``None`` on timeout. When Redis is unavailable ``__next__``
    sleeps for ``timeout`` and returns ``None``.
    """

    def __init__(
        self,
        url: str,
        *,
        goal_id: str | None = None,
        condo_id: str | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ) -> None:
        self.goal_id = goal_id
        self.condo_id = condo_id
        self.timeout = timeout
        self._cursor = cursor
        self._redis: Redis | None
        try:
            self._redis = get_redis(url, socket_timeout=timeout + REDIS_SOCKET_TIMEOUT)
            self._redis.ping()
        except RedisError:
            self._redis = None

    def __iter__(self):
        return self

    @staticmethod
    def _decode_stream_event(entry_id, fields) -> dict | None:
        data = fields.get("data") or fields.get(b"data")
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(event, dict):
            return None
        event["_stream_id"] = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        return event

    def _matches(self, event: dict) -> bool:
        if self.goal_id and event.get("goal_id") != self.goal_id:
            return False
        return not (self.condo_id and event.get("condo_id") != self.condo_id)

    def __next__(self) -> dict | None:
        if self._redis is None:
            time.sleep(self.timeout)
            return None
        while True:
            result = self._redis.xread(
                {EVENTS_STREAM: self._cursor}, block=int(self.timeout * 1000), count=10
            )
            if not result:
                return None
            for _stream, entries in result:  # type: ignore[union-attr]
                for entry_id, fields in entries:
                    self._cursor = entry_id
                    event = self._decode_stream_event(entry_id, fields)
                    if event is not None and self._matches(event):
                        return event
