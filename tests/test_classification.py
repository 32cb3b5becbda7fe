"""Tests for the session classification log."""

from __future__ import annotations

import json

import pytest

from condos.classification import MAX_ENTRIES, ClassificationLog, learning_report


@pytest.fixture()
def clog(tmp_path):
    return ClassificationLog(tmp_path / "classification-log.json")


def test_append_and_feedback(clog):
    entry = clog.append("s1", predicted_condo="c1", confidence=0.8, reasoning="keyword match")
    assert entry["accepted"] is None
    assert clog.stats() == {
        "total": 1,
        "with_feedback": 0,
        "accepted": 0,
        "corrected": 0,
        "accuracy": None,
    }

    updated = clog.record_feedback(entry["id"], accepted=True)
    assert updated["feedback_ms"] is not None
    assert clog.stats()["accuracy"] == 1.0
    assert clog.record_feedback("clf_missing", accepted=False) is None


def test_reclassification_corrects_latest_prediction(clog):
    clog.append("s1", predicted_condo="c1")
    latest = clog.append("s1", predicted_condo="c1")
    corrected = clog.record_reclassification("s1", "c1", "c2")
    assert corrected["id"] == latest["id"]
    assert (corrected["accepted"], corrected["corrected_to"]) == (False, "c2")
    assert len(clog.load()["entries"]) == 2


def test_reclassification_without_prediction_is_synthetic(clog):
    entry = clog.record_reclassification("s9", None, "c3")
    assert entry["tier"] == 0
    assert entry["reasoning"] == "reclassification"
    assert clog.stats()["corrected"] == 1


def test_learning_report_needs_repeated_corrections(clog):
    clog.record_reclassification("a", "c1", "target")
    assert learning_report(clog) == []
    clog.record_reclassification("b", "c1", "target")
    clog.record_reclassification("c", "c1", "other")
    assert learning_report(clog) == [
        {"condo_id": "target", "correction_count": 2, "suggested_keywords": []}
    ]
    assert learning_report(clog, since_ms=10**15) == []


def test_log_is_capped(clog):
    seeded = [{"id": f"clf_{i}", "session_key": "s"} for i in range(MAX_ENTRIES)]
    clog.path.write_text(json.dumps({"entries": seeded}))
    clog.append("newest")
    entries = clog.load()["entries"]
    assert len(entries) == MAX_ENTRIES
    assert entries[0]["id"] == "clf_1"
    assert entries[-1]["session_key"] == "newest"


def test_unreadable_log_is_never_overwritten(clog):
    clog.path.write_text("{broken")
    with pytest.raises(RuntimeError, match="Refusing to save"):
        clog.append("s1")
    assert clog.path.read_text() == "{broken"
