"""Git workspaces for condos and worktrees for goals.

Each condo with a workspace owns one repository; each goal works on its
own branch in a worktree under ``<condo>/goals/<goal_id>``. Finished
goals are merged back into the condo's main branch from the condo root.

Functions raise RuntimeError on failure so callers can record the
message on the affected goal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from condos.models import find_condo, find_goal, touch

if TYPE_CHECKING:
    from condos.store import Repository

log = logging.getLogger(__name__)

_ENGINE_IDENTITY = {
    "GIT_AUTHOR_NAME": "condos",
    "GIT_AUTHOR_EMAIL": "condos@localhost",
    "GIT_COMMITTER_NAME": "condos",
    "GIT_COMMITTER_EMAIL": "condos@localhost",
}


class MergeConflictError(RuntimeError):
    """Merging a goal branch hit conflicts; the merge was aborted."""


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def _git(args: list[str], cwd: str | Path) -> str:
    # Caller identity from the environment wins over the engine default.
    env = {**_ENGINE_IDENTITY, **os.environ}
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
        env=env,
    ).stdout


def _branch_exists(repo: str | Path, branch: str) -> bool:
    try:
        _git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], repo)
    except subprocess.CalledProcessError:
        return False
    return True


# -- Condo workspaces -----------------------------------------------------


def condo_workspace_path(base_dir: str | Path, condo_id: str, name: str) -> Path:
    slug = slugify(name, max_len=60) or "workspace"
    short = condo_id.removeprefix("condo_")[:8]
    return Path(base_dir) / f"{slug}-{short}"


def create_condo_workspace(
    base_dir: str | Path,
    condo_id: str,
    name: str,
    repo_url: str | None = None,
) -> Path:
    """Create (or reuse) the git repository backing a condo.

    Clones *repo_url* when given, otherwise initializes an empty repository
    with one empty commit so worktrees have a base to branch from.
    """
    ws = condo_workspace_path(base_dir, condo_id, name)
    if (ws / ".git").exists():
        return ws
    Path(base_dir).mkdir(parents=True, exist_ok=True)
    try:
        if repo_url:
            _git(["clone", repo_url, str(ws)], base_dir)
        else:
            ws.mkdir(parents=True, exist_ok=True)
            _git(["init", "-b", "main"], ws)
            _git(["commit", "--allow-empty", "-m", "Initial commit"], ws)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create workspace: {e.stderr.strip()}") from None
    (ws / "goals").mkdir(exist_ok=True)
    exclude = ws / ".git" / "info" / "exclude"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    with open(exclude, "a") as f:
        f.write("/goals/\n")
    log.info("Created condo workspace %s", ws)
    return ws


# -- Goal worktrees -------------------------------------------------------


def goal_worktree_path(condo_ws: str | Path, goal_id: str) -> Path:
    return Path(condo_ws) / "goals" / goal_id


def create_goal_worktree(condo_ws: str | Path, goal_id: str, title: str) -> tuple[str, str]:
    """Create a worktree for a goal. Returns ``(path, branch)``.

    Branches are named ``goal/<slug>``; when that name is taken the goal id
    prefix is appended. An existing worktree is reused.
    """
    path = goal_worktree_path(condo_ws, goal_id)
    branch = f"goal/{slugify(title) or goal_id}"
    if path.exists():
        with contextlib.suppress(subprocess.CalledProcessError):
            branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], path).strip() or branch
        return str(path), branch
    if _branch_exists(condo_ws, branch):
        branch = f"{branch}-{goal_id.removeprefix('goal_')[:6]}"
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        _git(["worktree", "add", str(path), "-b", branch], condo_ws)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create worktree: {e.stderr.strip()}") from None
    return str(path), branch


def remove_goal_worktree(condo_ws: str | Path, goal_id: str, branch: str | None = None) -> None:
    """Remove a goal worktree and delete its branch. Best-effort."""
    path = goal_worktree_path(condo_ws, goal_id)
    if path.exists():
        try:
            _git(["worktree", "remove", "--force", str(path)], condo_ws)
        except subprocess.CalledProcessError as exc:
            log.warning("Failed to remove worktree %s: %s", path, exc.stderr.strip())
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], condo_ws)
    if branch:
        try:
            _git(["branch", "-D", branch], condo_ws)
        except subprocess.CalledProcessError as exc:
            log.warning("Failed to delete branch %s: %s", branch, exc.stderr.strip())


def close_goal_worktree(condo_ws: str | Path, goal_id: str, branch: str) -> dict:
    """Commit, merge best-effort, and remove a goal worktree, keeping the branch.

    Returns ``{"merged": bool, "conflict": bool, "error": str | None}``.
    """
    path = goal_worktree_path(condo_ws, goal_id)
    if path.exists():
        commit_worktree_changes(path, f"Goal closed: {goal_id}")

    result: dict = {"merged": False, "conflict": False, "error": None}
    try:
        merge_goal_branch(condo_ws, branch)
        result["merged"] = True
    except MergeConflictError as exc:
        result["conflict"] = True
        result["error"] = str(exc)
    except RuntimeError as exc:
        result["error"] = str(exc)

    if path.exists():
        try:
            _git(["worktree", "remove", "--force", str(path)], condo_ws)
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Failed to remove worktree: {e.stderr.strip()}") from None
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], condo_ws)
    return result


# -- Commit / push / merge ------------------------------------------------


def get_main_branch(repo: str | Path) -> str:
    """Name of the repository's main line: main, master, or HEAD's branch."""
    try:
        listed = _git(["branch", "--list", "main", "master"], repo)
    except subprocess.CalledProcessError:
        return "main"
    lines = [line.strip() for line in listed.splitlines() if line.strip()]
    current = next((line[2:] for line in lines if line.startswith("* ")), None)
    if current:
        return current
    if "main" in lines:
        return "main"
    if "master" in lines:
        return "master"
    try:
        return _git(["rev-parse", "--abbrev-ref", "HEAD"], repo).strip() or "main"
    except subprocess.CalledProcessError:
        return "main"


def commit_worktree_changes(worktree: str | Path, message: str) -> bool:
    """Stage and commit everything in *worktree*. Returns whether a commit was made."""
    try:
        status = _git(["status", "--porcelain"], worktree)
        if not status.strip():
            return False
        _git(["add", "-A"], worktree)
        _git(["commit", "-m", message], worktree)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Commit failed: {e.stderr.strip()}") from None
    return True


def has_remote(repo: str | Path, remote: str = "origin") -> bool:
    try:
        remotes = _git(["remote"], repo).split()
    except subprocess.CalledProcessError:
        return False
    return remote in remotes


def push_branch(repo: str | Path, branch: str, *, remote: str = "origin") -> bool:
    """Push *branch* with upstream tracking. Returns False when no remote exists."""
    if not has_remote(repo, remote):
        return False
    try:
        _git(["push", "-u", remote, branch], repo)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Push failed: {e.stderr.strip()}") from None
    return True


def push_goal_branch(worktree: str | Path, branch: str) -> bool:
    return push_branch(worktree, branch)


def merge_goal_branch(condo_ws: str | Path, branch: str) -> str:
    """Merge *branch* into the main branch from the condo root.

    Returns the main branch name. Raises MergeConflictError after aborting
    a conflicted merge, RuntimeError for any other git failure.
    """
    main = get_main_branch(condo_ws)
    try:
        _git(["merge", branch, "--no-ff", "-m", f"Merge {branch} into {main}"], condo_ws)
    except subprocess.CalledProcessError as e:
        output = f"{e.stdout or ''}\n{e.stderr or ''}".strip()
        if "CONFLICT" in output or "Automatic merge failed" in output:
            with contextlib.suppress(subprocess.CalledProcessError):
                _git(["merge", "--abort"], condo_ws)
            raise MergeConflictError(f"Merge conflict:\n{output}") from None
        raise RuntimeError(f"Merge failed: {output}") from None
    return main


_CONFLICT_LINE = re.compile(r"CONFLICT \([^)]+\):\s*(?:Merge conflict in )?(.+)")


def check_branch_status(condo_ws: str | Path, branch: str) -> dict:
    """Ahead/behind counts of *branch* against main, plus predicted conflict files."""
    main = get_main_branch(condo_ws)
    try:
        counts = _git(["rev-list", "--left-right", "--count", f"{main}...{branch}"], condo_ws)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Cannot compare {branch} with {main}: {e.stderr.strip()}") from None
    behind, ahead = (int(n) for n in counts.split()[:2])

    conflict_files: list[str] = []
    if behind > 0 and ahead > 0:
        try:
            _git(["merge-tree", "--write-tree", main, branch], condo_ws)
        except subprocess.CalledProcessError as e:
            output = e.stdout or e.stderr or ""
            for line in output.splitlines():
                match = _CONFLICT_LINE.search(line)
                if match:
                    conflict_files.append(match.group(1).strip())
            if not conflict_files and output.strip():
                conflict_files = ["(conflict detected)"]
    return {
        "main_branch": main,
        "behind": behind,
        "ahead": ahead,
        "conflict_files": conflict_files,
    }


# -- Document helpers -----------------------------------------------------


def attach_goal_worktree(condo: dict, goal: dict) -> None:
    """Give *goal* a worktree in *condo*'s workspace and publish its branch.

    No-op without a condo workspace or when the goal already has one.
    Failures are logged and leave the goal without a worktree.
    """
    workspace = condo.get("workspace") or {}
    if not workspace.get("path") or goal.get("worktree"):
        return
    try:
        path, branch = create_goal_worktree(workspace["path"], goal["id"], goal["title"])
    except RuntimeError as exc:
        log.error("Worktree creation failed for goal %s: %s", goal["id"], exc)
        return
    goal["worktree"] = {"path": path, "branch": branch}
    if not workspace.get("repo_url"):
        return
    try:
        if push_goal_branch(path, branch):
            goal["push_status"] = "pushed"
            goal["push_error"] = None
    except RuntimeError as exc:
        log.warning("Failed to publish branch %s: %s", branch, exc)
        goal["push_status"] = "failed"
        goal["push_error"] = str(exc)


def attach_condo_workspace(condo: dict, base_dir: str | Path | None, repo_url: str | None) -> None:
    """Create the repository backing *condo* when workspaces are enabled.

    Failures are logged and leave the condo without a workspace.
    """
    if not base_dir or condo.get("workspace"):
        return
    try:
        path = create_condo_workspace(base_dir, condo["id"], condo["name"], repo_url)
    except RuntimeError as exc:
        log.error("Workspace creation failed for condo %s: %s", condo["id"], exc)
        return
    condo["workspace"] = {"path": str(path), "repo_url": repo_url or None}


async def provision_goal_worktrees(repo: Repository, condo_id: str, goal_ids: list[str]) -> None:
    """Create worktrees for freshly committed goals and record them.

    Git runs on a snapshot outside the write lock; the resulting worktree
    and push fields are written back in a short transaction afterwards.
    """
    data = repo.snapshot()
    condo = find_condo(data, condo_id)
    if condo is None or not (condo.get("workspace") or {}).get("path"):
        return
    staged = []
    for goal_id in goal_ids:
        goal = find_goal(data, goal_id)
        if goal is None or goal.get("worktree"):
            continue
        await asyncio.to_thread(attach_goal_worktree, condo, goal)
        if goal.get("worktree"):
            staged.append(goal)
    if not staged:
        return
    async with repo.transaction() as data:
        for prepared in staged:
            goal = find_goal(data, prepared["id"])
            if goal is None:
                log.warning("Goal %s was deleted before its worktree was recorded", prepared["id"])
                continue
            if goal.get("worktree"):
                continue
            for key in ("worktree", "push_status", "push_error"):
                if key in prepared:
                    goal[key] = prepared[key]
            touch(goal)
