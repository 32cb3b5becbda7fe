"""Tests for merging, pushing, pull requests and closing goals."""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path

import httpx
import pytest

from condos import events
from condos.engine import Engine
from condos.git_ops import create_condo_workspace, create_goal_worktree
from condos.github import GitHubError
from condos.models import find_goal, new_condo, new_goal


@pytest.fixture()
def git_identity_env(monkeypatch):
    monkeypatch.setenv("GIT_AUTHOR_NAME", "condos-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "condos-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "condos-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "condos-tests@example.com")


def _commit_file(repo, name, content, message):
    (Path(repo) / name).write_text(content)
    for args in (["add", name], ["commit", "-m", message]):
        subprocess.run(["git", *args], cwd=str(repo), check=True, capture_output=True)


def _goal(engine, goal_id):
    return find_goal(engine.repo.snapshot(), goal_id)


@pytest.fixture()
def git_condo(tmp_path, add_condo, git_identity_env):
    """A condo backed by a real repository, plus a factory for goal worktrees."""

    async def _make():
        ws = create_condo_workspace(tmp_path / "ws", "condo_feedface0000", "Git condo")
        condo = await add_condo("Git condo", workspace={"path": str(ws), "repo_url": None})
        return condo, ws

    return _make


# -- Without a worktree ---------------------------------------------------


@pytest.mark.asyncio
async def test_merge_without_worktree_marks_goal_done(engine, add_condo, add_goal, scheduler):
    condo = await add_condo()
    goal = await add_goal("Plain", tasks=["x"], condo_id=condo["id"], phase=1)

    result = await engine.merge.merge(goal["id"])
    assert result == {"goal_id": goal["id"], "merge_status": "none", "completed": True}
    stored = _goal(engine, goal["id"])
    assert (stored["status"], stored["completed"]) == ("done", True)
    assert stored["completed_at"]
    (completed,) = engine.live.named(events.GOAL_COMPLETED)
    assert completed["condo_id"] == condo["id"]
    assert completed["phase"] == 1
    assert [job.key for job in scheduler.pending()] == [f"sweep:{condo['id']}"]


@pytest.mark.asyncio
async def test_retry_merge_requires_worktree(engine, add_goal):
    goal = await add_goal("No branch")
    with pytest.raises(ValueError, match="no worktree branch"):
        await engine.merge.retry_merge(goal["id"])
    with pytest.raises(ValueError, match="no worktree branch"):
        await engine.merge.branch_status(goal["id"])
    with pytest.raises(ValueError, match="no worktree branch"):
        await engine.merge.retry_push(goal["id"])


@pytest.mark.asyncio
async def test_push_main_requires_remote(engine, add_condo):
    condo = await add_condo()
    with pytest.raises(ValueError, match="No workspace or remote"):
        await engine.merge.push_main(condo["id"])


@pytest.mark.asyncio
async def test_auto_merge_never_raises(engine, caplog):
    await engine.merge.auto_merge("goal_missing")
    assert "Auto-merge failed for goal goal_missing" in caplog.text


# -- Real repositories ----------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.slow
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
async def test_merge_success_sets_status_and_completed_together(engine, git_condo, add_goal):
    condo, ws = await git_condo()
    path, branch = create_goal_worktree(ws, "goal_wt_ok", "Feature")
    (Path(path) / "feature.txt").write_text("uncommitted work\n")
    goal = await add_goal(
        "Feature", condo_id=condo["id"], worktree={"path": path, "branch": branch}
    )

    result = await engine.merge.merge(goal["id"])
    assert result["merge_status"] == "merged"
    stored = _goal(engine, goal["id"])
    assert stored["merge_status"] == "merged"
    assert stored["status"] == "done"
    assert stored["completed"] is True
    assert stored["merged_at"]
    assert (ws / "feature.txt").exists()
    assert [e["merge_status"] for e in engine.live.named(events.GOAL_MERGED)] == ["merged"]


@pytest.mark.asyncio
@pytest.mark.slow
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
async def test_merge_conflict_leaves_goal_open_and_retry_repeats(engine, git_condo, add_goal):
    condo, ws = await git_condo()
    path, branch = create_goal_worktree(ws, "goal_wt_conflict", "Conflict")
    _commit_file(path, "README.md", "goal version\n", "goal edit")
    _commit_file(ws, "README.md", "main version\n", "main edit")
    goal = await add_goal(
        "Conflict", tasks=["x"], condo_id=condo["id"], worktree={"path": path, "branch": branch}
    )

    result = await engine.merge.merge(goal["id"])
    assert result["merge_status"] == "conflict"
    stored = _goal(engine, goal["id"])
    assert stored["merge_status"] == "conflict"
    assert "Merge conflict" in stored["merge_error"]
    assert stored["status"] == "active"
    assert stored["completed"] is False
    assert engine.live.named(events.GOAL_COMPLETED) == []

    before = stored["tasks"]
    retried = await engine.merge.retry_merge(goal["id"])
    assert retried["merge_status"] == "conflict"
    after = _goal(engine, goal["id"])
    assert after["status"] == "active"
    assert after["tasks"] == before
    assert (ws / "README.md").read_text() == "main version\n"

    status = await engine.merge.branch_status(goal["id"])
    assert (status["ahead"], status["behind"]) == (1, 1)
    assert status["has_remote"] is False


# -- Pull requests --------------------------------------------------------


@pytest.mark.asyncio
async def test_create_pr_posts_to_github(settings, runtime, scheduler, monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        pr = {"html_url": "https://github.com/acme/shop/pull/7", "number": 7}
        return httpx.Response(201, json=pr)

    engine = Engine(
        settings, runtime, scheduler=scheduler, transport=httpx.MockTransport(handler)
    )
    monkeypatch.setattr("condos.merge.push_branch", lambda path, branch: True)
    monkeypatch.setattr("condos.merge.get_main_branch", lambda path: "main")

    condo = new_condo("Shop")
    condo["workspace"] = {"path": "/srv/shop", "repo_url": "git@github.com:acme/shop.git"}
    condo["services"] = {"github": {"token": "ghp_test"}}
    goal = new_goal("Add search", condo_id=condo["id"], description="Full text search")
    goal["worktree"] = {"path": "/srv/shop/goals/x", "branch": "goal/add-search"}
    async with engine.repo.transaction() as data:
        data["condos"].append(condo)
        data["goals"].append(goal)

    result = await engine.merge.create_pr(goal["id"])
    assert result == {"pr_url": "https://github.com/acme/shop/pull/7", "pr_number": 7}
    assert seen["url"] == "https://api.github.com/repos/acme/shop/pulls"
    assert seen["auth"] == "Bearer ghp_test"
    assert seen["body"]["head"] == "goal/add-search"
    assert seen["body"]["base"] == "main"
    assert "Full text search" in seen["body"]["body"]

    stored = _goal(engine, goal["id"])
    assert (stored["pr_number"], stored["push_status"]) == (7, "pushed")
    assert len(engine.live.named(events.GOAL_PR_CREATED)) == 1


@pytest.mark.asyncio
async def test_create_pr_surfaces_github_errors(settings, runtime, scheduler, monkeypatch):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(422, json={"message": "A pull request already exists"})
    )
    engine = Engine(settings, runtime, scheduler=scheduler, transport=transport)
    monkeypatch.setattr("condos.merge.push_branch", lambda path, branch: True)
    monkeypatch.setattr("condos.merge.get_main_branch", lambda path: "main")
    settings.services = {"github": {"token": "ghp_settings"}}

    condo = new_condo("Shop")
    condo["workspace"] = {"path": "/srv/shop", "repo_url": "https://github.com/acme/shop"}
    goal = new_goal("Dup", condo_id=condo["id"])
    goal["worktree"] = {"path": "/srv/shop/goals/d", "branch": "goal/dup"}
    async with engine.repo.transaction() as data:
        data["condos"].append(condo)
        data["goals"].append(goal)

    with pytest.raises(GitHubError, match="already exists") as exc_info:
        await engine.merge.create_pr(goal["id"])
    assert exc_info.value.status == 422
    assert _goal(engine, goal["id"])["pr_url"] is None


@pytest.mark.asyncio
async def test_create_pr_requires_token(engine, add_condo, add_goal):
    condo = await add_condo(workspace={"path": "/srv/x", "repo_url": "https://github.com/a/b"})
    goal = await add_goal(
        "No token", condo_id=condo["id"], worktree={"path": "/srv/x/goals/y", "branch": "goal/y"}
    )
    with pytest.raises(ValueError, match="GitHub token not configured"):
        await engine.merge.create_pr(goal["id"])


# -- Close ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_close_goal_aborts_sessions_and_marks_closed(engine, add_goal, runtime):
    goal = await add_goal("Abandon", tasks=["a", "b"])
    kicked = await engine.kickoff.kickoff(goal["id"])
    keys = [s["session_key"] for s in kicked["spawned_sessions"]]

    result = await engine.merge.close_goal(goal["id"])
    assert result["ok"] is True
    assert sorted(result["killed_sessions"]) == sorted(keys)
    assert sorted(runtime.aborted) == sorted(keys)
    assert sorted(runtime.deleted) == sorted(keys)

    stored = _goal(engine, goal["id"])
    assert (stored["status"], stored["completed"]) == ("done", True)
    assert stored["closed_at"]
    assert all(t["session_key"] is None for t in stored["tasks"])
    assert not any(k in engine.repo.snapshot()["session_index"] for k in keys)
    assert len(engine.live.named(events.GOAL_CLOSED)) == 1
    assert [t["status"] for t in stored["tasks"]] == ["pending", "pending"]


@pytest.mark.asyncio
async def test_closed_goal_is_not_revived_by_kickoff(engine, add_goal, runtime):
    goal = await add_goal("Shelved", tasks=["a", "b"])
    await engine.kickoff.kickoff_and_start(goal["id"])
    await engine.merge.close_goal(goal["id"])
    runtime.sent.clear()

    again = await engine.kickoff.kickoff_and_start(goal["id"])
    assert again["spawned_sessions"] == []
    assert again["message"] == "Goal is already done"
    assert runtime.sent == []

    stored = _goal(engine, goal["id"])
    assert (stored["status"], stored["completed"]) == ("done", True)
    assert all(t["session_key"] is None for t in stored["tasks"])
    assert len(engine.live.named(events.GOAL_KICKOFF)) == 1
