"""Log of session-to-condo classifications and the corrections made to them.

The log is a small JSON file capped at :data:`MAX_ENTRIES`. Corrections
come from sessions being moved to a different condo; condos that keep
being corrected to are reported so their routing can be improved.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import time
from collections import Counter
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

MAX_ENTRIES = 1000
MIN_CORRECTIONS = 2


def _now_ms() -> int:
    return int(time.time() * 1000)


def _entry(session_key: str, **fields: Any) -> dict[str, Any]:
    return {
        "id": f"clf_{secrets.token_hex(8)}",
        "timestamp": _now_ms(),
        "session_key": session_key,
        "tier": fields.get("tier", 1),
        "predicted_condo": fields.get("predicted_condo"),
        "confidence": fields.get("confidence", 0),
        "reasoning": fields.get("reasoning", ""),
        "latency_ms": fields.get("latency_ms", 0),
        "accepted": fields.get("accepted"),
        "corrected_to": fields.get("corrected_to"),
        "feedback_ms": fields.get("feedback_ms"),
    }


class ClassificationLog:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"entries": []}
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            log.error("Failed to read classification log %s: %s", self.path, exc)
            return {"entries": [], "_load_error": str(exc)}
        entries = raw.get("entries") if isinstance(raw, dict) else None
        return {"entries": entries if isinstance(entries, list) else []}

    def save(self, data: dict[str, Any]) -> None:
        if data.get("_load_error"):
            raise RuntimeError(
                f"Refusing to save classification log: previous load failed "
                f"({data['_load_error']})"
            )
        data["entries"] = data["entries"][-MAX_ENTRIES:]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".classification-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def append(self, session_key: str, **fields: Any) -> dict[str, Any]:
        """Record one classification attempt. Feedback fields start empty."""
        data = self.load()
        entry = _entry(session_key, **fields)
        entry.update(accepted=None, corrected_to=None, feedback_ms=None)
        data["entries"].append(entry)
        self.save(data)
        return entry

    def record_feedback(
        self, entry_id: str, *, accepted: bool, corrected_to: str | None = None
    ) -> dict[str, Any] | None:
        data = self.load()
        entry = next((e for e in data["entries"] if e["id"] == entry_id), None)
        if entry is None:
            return None
        entry["accepted"] = accepted
        entry["corrected_to"] = corrected_to
        entry["feedback_ms"] = _now_ms()
        self.save(data)
        return entry

    def record_reclassification(
        self, session_key: str, previous_condo: str | None, new_condo: str
    ) -> dict[str, Any]:
        """Mark the latest prediction of *previous_condo* for the session as corrected.

        Without such a prediction a synthetic tier-0 correction is logged.
        """
        data = self.load()
        entry = next(
            (
                e
                for e in reversed(data["entries"])
                if e.get("session_key") == session_key
                and e.get("predicted_condo") == previous_condo
            ),
            None,
        )
        if entry is None:
            entry = _entry(
                session_key,
                tier=0,
                predicted_condo=previous_condo,
                reasoning="reclassification",
            )
            data["entries"].append(entry)
        entry["accepted"] = False
        entry["corrected_to"] = new_condo
        entry["feedback_ms"] = _now_ms()
        self.save(data)
        log.info("Session %s reclassified %s -> %s", session_key, previous_condo, new_condo)
        return entry

    def corrections(self, since_ms: int = 0) -> list[dict[str, Any]]:
        return [
            e
            for e in self.load()["entries"]
            if e.get("corrected_to") is not None and (e.get("feedback_ms") or 0) > since_ms
        ]

    def stats(self) -> dict[str, Any]:
        entries = self.load()["entries"]
        with_feedback = [e for e in entries if e.get("accepted") is not None]
        accepted = sum(1 for e in with_feedback if e["accepted"] is True)
        return {
            "total": len(entries),
            "with_feedback": len(with_feedback),
            "accepted": accepted,
            "corrected": sum(1 for e in entries if e.get("corrected_to") is not None),
            "accuracy": accepted / len(with_feedback) if with_feedback else None,
        }


def learning_report(
    classification_log: ClassificationLog, since_ms: int = 0
) -> list[dict[str, Any]]:
    """Condos that sessions were corrected to at least :data:`MIN_CORRECTIONS` times."""
    counts = Counter(e["corrected_to"] for e in classification_log.corrections(since_ms))
    return [
        {"condo_id": condo_id, "correction_count": count, "suggested_keywords": []}
        for condo_id, count in counts.most_common()
        if count >= MIN_CORRECTIONS
    ]
