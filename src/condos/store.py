"""Persistence for the goals document.

:class:`GoalStore` is the raw load/save contract over one JSON file.
:class:`Repository` is the only writer the engine uses: it keeps the
authoritative in-memory copy, serializes mutations behind one lock and
bumps a revision counter that is checked against the file on every save.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from condos.models import Document, empty_document

log = logging.getLogger(__name__)


class StoreLoadError(RuntimeError):
    """The document on disk could not be read; saving would clobber it."""


class StoreConflictError(RuntimeError):
    """The file changed underneath the repository since it was last read."""


def _normalize(data: dict[str, Any]) -> Document:
    doc = empty_document()
    doc.update({k: v for k, v in data.items() if k in doc})
    doc["revision"] = int(data.get("revision") or 0)
    for condo in doc["condos"]:
        condo.setdefault("workspace", None)
        condo.setdefault("cascade_pending_goals", None)
        condo.setdefault("services", {})
    for goal in doc["goals"]:
        goal["completed"] = bool(goal.get("completed")) or goal.get("status") == "done"
        goal.setdefault("tasks", [])
        goal.setdefault("sessions", [])
        goal.setdefault("depends_on", [])
        goal.setdefault("max_retries", 1)
        goal.setdefault("merge_status", "none")
        goal.setdefault("push_status", "none")
        for task in goal["tasks"]:
            task.setdefault("depends_on", [])
            task.setdefault("retry_count", 0)
            task.setdefault("session_key", None)
            task.setdefault("done", task.get("status") == "done")
    return doc


class GoalStore:
    """Load/save contract for the goals document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Document:
        if not self.path.exists():
            return empty_document()
        try:
            raw = json.loads(self.path.read_text())
            if not isinstance(raw, dict):
                raise ValueError("document root is not an object")
        except (OSError, ValueError):
            log.exception("Failed to read goals document %s", self.path)
            doc = empty_document()
            doc["_load_error"] = True  # type: ignore[typeddict-unknown-key]
            return doc
        return _normalize(raw)

    def save(self, data: Document) -> None:
        if data.get("_load_error"):
            raise StoreLoadError(
                f"Refusing to overwrite {self.path}: it failed to load and would be lost"
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".goals-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def read_revision(self) -> int:
        """Revision currently on disk (0 when the file does not exist)."""
        if not self.path.exists():
            return 0
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError):
            return -1
        return int(raw.get("revision") or 0) if isinstance(raw, dict) else -1


class Repository:
    """Single-writer access to the goals document.

    Every mutation runs inside :meth:`transaction`; transactions are
    serialized and either commit as a whole or leave no trace. Reads use
    :meth:`snapshot`, a detached copy that never blocks writers.
    """

    def __init__(self, store: GoalStore) -> None:
        self.store = store
        self._data: Document = store.load()
        self._lock = asyncio.Lock()

    @property
    def revision(self) -> int:
        return self._data.get("revision", 0)

    def snapshot(self) -> Document:
        return copy.deepcopy(self._data)

    def reload(self) -> None:
        self._data = self.store.load()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Document]:
        async with self._lock:
            working = copy.deepcopy(self._data)
            yield working
            if working == self._data:
                return
            if self._data.get("_load_error"):
                raise StoreLoadError(f"{self.store.path} failed to load; refusing to save")
            on_disk = self.store.read_revision()
            if on_disk != self.revision:
                log.error(
                    "Goals document changed on disk (revision %s, expected %s); reloading",
                    on_disk,
                    self.revision,
                )
                self.reload()
                raise StoreConflictError(
                    f"Document revision {on_disk} does not match {self.revision}"
                )
            working["revision"] = self.revision + 1
            self.store.save(working)
            self._data = working
