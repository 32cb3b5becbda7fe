"""Finishing goals: merge back to main, push, pull requests, close.

All git work runs in a worker thread; the repository transaction is only
taken to record outcomes, never while git is running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from condos import events
from condos.cascade import CascadeController
from condos.config import Settings
from condos.events import EventBus
from condos.git_ops import (
    MergeConflictError,
    check_branch_status,
    close_goal_worktree,
    commit_worktree_changes,
    get_main_branch,
    has_remote,
    merge_goal_branch,
    push_branch,
)
from condos.github import create_pull_request, parse_repo_url, pull_request_body
from condos.lifecycle import SessionLifecycle, goal_session_keys
from condos.models import (
    Condo,
    Document,
    Goal,
    _utcnow,
    find_condo,
    is_task_done,
    mark_goal_done,
    require_condo,
    require_goal,
    touch,
)
from condos.store import Repository

log = logging.getLogger(__name__)


def _workspace(condo: Condo | None) -> dict[str, Any]:
    return (condo or {}).get("workspace") or {}


def _goal_and_condo(data: Document, goal_id: str) -> tuple[Goal, Condo | None]:
    goal = require_goal(data, goal_id)
    return goal, find_condo(data, goal.get("condo_id"))


class MergeController:
    def __init__(
        self,
        repo: Repository,
        settings: Settings,
        bus: EventBus,
        cascade: CascadeController,
        lifecycle: SessionLifecycle,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.repo = repo
        self.settings = settings
        self.bus = bus
        self.cascade = cascade
        self.lifecycle = lifecycle
        self.transport = transport

    async def _push(self, repo_path: str, branch: str) -> tuple[str | None, str | None]:
        """Push *branch*; returns ``(push_status, error)``, status None without a remote."""
        try:
            pushed = await asyncio.to_thread(push_branch, repo_path, branch)
        except RuntimeError as exc:
            log.warning("Push of %s failed: %s", branch, exc)
            return "failed", str(exc)
        return ("pushed" if pushed else None), None

    async def _completed(self, goal_id: str, condo_id: str | None, phase: Any) -> None:
        self.bus.emit(events.GOAL_COMPLETED, goal_id=goal_id, condo_id=condo_id, phase=phase)
        if condo_id:
            self.cascade.schedule_sweep(condo_id)

    # -- Merge ------------------------------------------------------------

    async def merge(self, goal_id: str) -> dict[str, Any]:
        """Close out a goal whose tasks are all done.

        Goals without a worktree are simply marked done. Otherwise pending
        changes are committed and pushed, the branch is merged into main
        and, when that succeeds, the goal is marked done and main pushed.
        A conflict or git error leaves the goal open with ``merge_status``
        recording why.
        """
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        condo_id, phase = goal.get("condo_id"), goal.get("phase")
        worktree = goal.get("worktree") or {}
        workspace = _workspace(condo)
        branch = worktree.get("branch")

        if not branch or not workspace.get("path"):
            async with self.repo.transaction() as data:
                mark_goal_done(require_goal(data, goal_id))
            log.info("Goal %s completed (no worktree to merge)", goal_id)
            await self._completed(goal_id, condo_id, phase)
            return {"goal_id": goal_id, "merge_status": "none", "completed": True}

        committed = False
        try:
            committed = await asyncio.to_thread(
                commit_worktree_changes, worktree["path"], f"Goal complete: {goal['title']}"
            )
        except RuntimeError as exc:
            log.error("Final commit for goal %s failed: %s", goal_id, exc)

        if committed and workspace.get("repo_url"):
            status, error = await self._push(worktree["path"], branch)
            if status:
                async with self.repo.transaction() as data:
                    g = require_goal(data, goal_id)
                    g["push_status"], g["push_error"] = status, error
                    touch(g)
            if status == "failed":
                self.bus.emit(events.GOAL_PUSH_FAILED, goal_id=goal_id, error=error, branch=branch)

        merge_error = None
        main_branch = None
        try:
            main_branch = await asyncio.to_thread(merge_goal_branch, workspace["path"], branch)
            merge_status = "merged"
        except MergeConflictError as exc:
            merge_status, merge_error = "conflict", str(exc)
        except RuntimeError as exc:
            merge_status, merge_error = "error", str(exc)

        async with self.repo.transaction() as data:
            g = require_goal(data, goal_id)
            g["merge_status"] = merge_status
            g["merge_error"] = merge_error
            if merge_status == "merged":
                g["merged_at"] = _utcnow()
                mark_goal_done(g)
            touch(g)

        self.bus.emit(
            events.GOAL_MERGED, goal_id=goal_id, merge_status=merge_status, branch=branch
        )
        if merge_status != "merged":
            log.warning("Merge of goal %s: %s (%s)", goal_id, merge_status, merge_error)
            return {"goal_id": goal_id, "merge_status": merge_status, "merge_error": merge_error}

        log.info("Merged %s into %s for goal %s", branch, main_branch, goal_id)
        if workspace.get("repo_url"):
            status, error = await self._push(workspace["path"], main_branch)
            if status == "failed":
                async with self.repo.transaction() as data:
                    g = require_goal(data, goal_id)
                    g["push_status"], g["push_error"] = status, error
                    touch(g)
                self.bus.emit(
                    events.GOAL_PUSH_FAILED, goal_id=goal_id, error=error, branch=main_branch
                )
        await self._completed(goal_id, condo_id, phase)
        return {"goal_id": goal_id, "merge_status": "merged", "merge_error": None}

    async def auto_merge(self, goal_id: str) -> None:
        """Merge triggered by the last task finishing; never raises."""
        try:
            await self.merge(goal_id)
        except Exception:
            log.exception("Auto-merge failed for goal %s", goal_id)

    async def retry_merge(self, goal_id: str) -> dict[str, Any]:
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        if not (goal.get("worktree") or {}).get("branch"):
            raise ValueError("Goal has no worktree branch")
        if not _workspace(condo).get("path"):
            raise ValueError("Condo has no workspace")
        result = await self.merge(goal_id)
        return {"merge_status": result["merge_status"], "merge_error": result.get("merge_error")}

    # -- Push / status ----------------------------------------------------

    async def retry_push(self, goal_id: str) -> dict[str, Any]:
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        worktree = goal.get("worktree") or {}
        if not worktree.get("branch"):
            raise ValueError("Goal has no worktree branch")
        if not _workspace(condo).get("repo_url"):
            raise ValueError("No remote configured")

        status, error = await self._push(worktree["path"], worktree["branch"])
        if status is None:
            raise ValueError("No remote configured")
        async with self.repo.transaction() as data:
            g = require_goal(data, goal_id)
            g["push_status"], g["push_error"] = status, error
            touch(g)
        if status == "failed":
            self.bus.emit(
                events.GOAL_PUSH_FAILED, goal_id=goal_id, error=error, branch=worktree["branch"]
            )
        return {"push_status": status, "push_error": error}

    async def push_main(self, condo_id: str) -> dict[str, Any]:
        workspace = _workspace(require_condo(self.repo.snapshot(), condo_id))
        if not workspace.get("path") or not workspace.get("repo_url"):
            raise ValueError("No workspace or remote")
        branch = await asyncio.to_thread(get_main_branch, workspace["path"])
        status, error = await self._push(workspace["path"], branch)
        return {"ok": status == "pushed", "branch": branch, "error": error}

    async def branch_status(self, goal_id: str) -> dict[str, Any]:
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        branch = (goal.get("worktree") or {}).get("branch")
        if not branch:
            raise ValueError("Goal has no worktree branch")
        path = _workspace(condo).get("path")
        if not path:
            raise ValueError("Condo has no workspace")
        status = await asyncio.to_thread(check_branch_status, path, branch)
        status["has_remote"] = await asyncio.to_thread(has_remote, path)
        return status

    # -- Pull requests ----------------------------------------------------

    def _github_token(self, condo: Condo) -> str | None:
        github = (condo.get("services") or {}).get("github") or {}
        return github.get("token") or github.get("agent_token") or self.settings.github_token

    async def create_pr(self, goal_id: str) -> dict[str, Any]:
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        branch = (goal.get("worktree") or {}).get("branch")
        if not branch:
            raise ValueError("Goal has no worktree branch")
        workspace = _workspace(condo)
        if not workspace.get("path"):
            raise ValueError("Condo has no workspace")
        repo_url = workspace.get("repo_url")
        if not repo_url:
            raise ValueError("Condo has no remote repository URL")
        token = self._github_token(condo)
        if not token:
            raise ValueError("GitHub token not configured")
        parsed = parse_repo_url(repo_url)
        if parsed is None:
            raise ValueError(f"Cannot parse GitHub owner/repo from {repo_url}")
        owner, name = parsed

        try:
            pushed = await asyncio.to_thread(push_branch, workspace["path"], branch)
        except RuntimeError as exc:
            raise RuntimeError(f"Failed to push branch: {exc}") from None
        if not pushed:
            raise ValueError("No remote configured")

        base = await asyncio.to_thread(get_main_branch, workspace["path"])
        pr = await create_pull_request(
            token,
            owner,
            name,
            head=branch,
            base=base,
            title=goal["title"],
            body=pull_request_body(goal),
            transport=self.transport,
        )
        pr_url, pr_number = pr.get("html_url"), pr.get("number")
        async with self.repo.transaction() as data:
            g = require_goal(data, goal_id)
            g["pr_url"], g["pr_number"] = pr_url, pr_number
            g["push_status"], g["push_error"] = "pushed", None
            touch(g)
        self.bus.emit(events.GOAL_PR_CREATED, goal_id=goal_id, pr_url=pr_url, pr_number=pr_number)
        return {"pr_url": pr_url, "pr_number": pr_number}

    # -- Close ------------------------------------------------------------

    async def close_goal(self, goal_id: str) -> dict[str, Any]:
        """Abort the goal's sessions, fold its worktree back and mark it closed."""
        goal, condo = _goal_and_condo(self.repo.snapshot(), goal_id)
        keys = goal_session_keys(goal)
        for key in keys:
            await self.lifecycle.abort_session(key)

        worktree_result = None
        worktree = goal.get("worktree") or {}
        path = _workspace(condo).get("path")
        if worktree.get("branch") and path:
            try:
                worktree_result = await asyncio.to_thread(
                    close_goal_worktree, path, goal_id, worktree["branch"]
                )
            except RuntimeError as exc:
                log.error("Closing worktree of goal %s failed: %s", goal_id, exc)
                worktree_result = {"merged": False, "conflict": False, "error": str(exc)}

        async with self.repo.transaction() as data:
            g = require_goal(data, goal_id)
            for task in g.get("tasks", []):
                if task.get("session_key") and not is_task_done(task):
                    data["session_index"].pop(task["session_key"], None)
                    task["session_key"] = None
                    task["status"] = "pending"
                    touch(task)
            if worktree_result and worktree_result["merged"]:
                g["merge_status"] = "merged"
                g["merged_at"] = _utcnow()
            mark_goal_done(g, field="closed_at")
            g["worktree"] = None

        log.info("Closed goal %s (%d session(s) aborted)", goal_id, len(keys))
        self.bus.emit(events.GOAL_CLOSED, goal_id=goal_id)
        return {
            "ok": True,
            "goal_id": goal_id,
            "killed_sessions": keys,
            "worktree": worktree_result,
        }
