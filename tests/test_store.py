"""Tests for the goals document store and the single-writer repository."""

from __future__ import annotations

import asyncio
import json

import pytest

from condos.models import new_goal
from condos.store import GoalStore, Repository, StoreConflictError, StoreLoadError


def test_load_missing_file_returns_empty_document(tmp_path):
    doc = GoalStore(tmp_path / "goals.json").load()
    assert doc["goals"] == []
    assert doc["condos"] == []
    assert doc["session_index"] == {}
    assert doc["session_condo_index"] == {}
    assert doc["revision"] == 0


def test_load_unreadable_file_is_flagged(tmp_path):
    path = tmp_path / "goals.json"
    path.write_text("{not json")
    doc = GoalStore(path).load()
    assert doc["_load_error"] is True
    assert doc["goals"] == []


def test_save_refuses_document_that_failed_to_load(tmp_path):
    path = tmp_path / "goals.json"
    path.write_text("[1, 2")
    store = GoalStore(path)
    with pytest.raises(StoreLoadError):
        store.save(store.load())
    assert path.read_text() == "[1, 2"


def test_load_normalizes_goals(tmp_path):
    path = tmp_path / "goals.json"
    path.write_text(
        json.dumps(
            {
                "goals": [
                    {"id": "g1", "title": "Done goal", "status": "done", "tasks": [
                        {"id": "t1", "text": "x", "status": "done"}
                    ]},
                    {"id": "g2", "title": "Bare goal"},
                ],
                "unknown_key": 1,
            }
        )
    )
    doc = GoalStore(path).load()
    done, bare = doc["goals"]
    assert done["completed"] is True
    assert done["tasks"][0]["done"] is True
    assert done["tasks"][0]["retry_count"] == 0
    assert bare["completed"] is False
    assert bare["tasks"] == []
    assert bare["max_retries"] == 1
    assert bare["merge_status"] == "none"
    assert "unknown_key" not in doc


def test_save_is_atomic_and_round_trips(tmp_path):
    store = GoalStore(tmp_path / "nested" / "goals.json")
    doc = store.load()
    doc["goals"].append(new_goal("Ship it"))
    store.save(doc)
    assert store.load()["goals"][0]["title"] == "Ship it"
    assert [p.name for p in store.path.parent.iterdir()] == ["goals.json"]


class TestRepository:
    @pytest.mark.asyncio
    async def test_commit_bumps_revision_and_persists(self, tmp_path):
        repo = Repository(GoalStore(tmp_path / "goals.json"))
        async with repo.transaction() as data:
            data["goals"].append(new_goal("First"))
        assert repo.revision == 1
        on_disk = json.loads((tmp_path / "goals.json").read_text())
        assert on_disk["revision"] == 1
        assert on_disk["goals"][0]["title"] == "First"

    @pytest.mark.asyncio
    async def test_unchanged_transaction_commits_nothing(self, tmp_path):
        repo = Repository(GoalStore(tmp_path / "goals.json"))
        async with repo.transaction() as data:
            assert data["goals"] == []
        assert repo.revision == 0
        assert not (tmp_path / "goals.json").exists()

    @pytest.mark.asyncio
    async def test_exception_discards_changes(self, tmp_path):
        repo = Repository(GoalStore(tmp_path / "goals.json"))
        with pytest.raises(RuntimeError):
            async with repo.transaction() as data:
                data["goals"].append(new_goal("Doomed"))
                raise RuntimeError("boom")
        assert repo.snapshot()["goals"] == []
        assert repo.revision == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, tmp_path):
        repo = Repository(GoalStore(tmp_path / "goals.json"))
        async with repo.transaction() as data:
            data["goals"].append(new_goal("Original"))
        snap = repo.snapshot()
        snap["goals"][0]["title"] = "Changed"
        assert repo.snapshot()["goals"][0]["title"] == "Original"

    @pytest.mark.asyncio
    async def test_concurrent_transactions_do_not_lose_updates(self, tmp_path):
        repo = Repository(GoalStore(tmp_path / "goals.json"))

        async def add(title):
            async with repo.transaction() as data:
                await asyncio.sleep(0)
                data["goals"].append(new_goal(title))

        await asyncio.gather(*(add(f"goal {i}") for i in range(10)))
        assert len(repo.snapshot()["goals"]) == 10
        assert repo.revision == 10

    @pytest.mark.asyncio
    async def test_revision_mismatch_raises_conflict_and_reloads(self, tmp_path):
        path = tmp_path / "goals.json"
        repo = Repository(GoalStore(path))
        async with repo.transaction() as data:
            data["goals"].append(new_goal("Mine"))

        external = json.loads(path.read_text())
        external["revision"] = 7
        external["goals"][0]["title"] = "Theirs"
        path.write_text(json.dumps(external))

        with pytest.raises(StoreConflictError):
            async with repo.transaction() as data:
                data["goals"][0]["title"] = "Lost"
        assert json.loads(path.read_text())["goals"][0]["title"] == "Theirs"
        assert repo.snapshot()["goals"][0]["title"] == "Theirs"
        assert repo.revision == 7

    @pytest.mark.asyncio
    async def test_refuses_to_save_over_unreadable_file(self, tmp_path):
        path = tmp_path / "goals.json"
        path.write_text("garbage")
        repo = Repository(GoalStore(path))
        with pytest.raises(StoreLoadError):
            async with repo.transaction() as data:
                data["goals"].append(new_goal("New"))
        assert path.read_text() == "garbage"
