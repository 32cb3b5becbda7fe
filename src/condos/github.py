"""Minimal GitHub REST client for opening pull requests from goal branches."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

log = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
API_VERSION = "2022-11-28"
USER_AGENT = "condos/1.0"
REQUEST_TIMEOUT = 30.0

_REPO_URL = re.compile(r"github\.com[/:]([^/]+)/([^/.]+)")


class GitHubError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def parse_repo_url(url: str) -> tuple[str, str] | None:
    """Extract ``(owner, repo)`` from an https or ssh GitHub URL."""
    match = _REPO_URL.search(url or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def _headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
        "User-Agent": USER_AGENT,
    }


async def create_pull_request(
    token: str,
    owner: str,
    repo: str,
    *,
    head: str,
    base: str,
    title: str,
    body: str = "",
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Open a pull request and return GitHub's response (``html_url``, ``number``...)."""
    async with httpx.AsyncClient(
        base_url=API_BASE, timeout=REQUEST_TIMEOUT, transport=transport
    ) as client:
        try:
            resp = await client.post(
                f"/repos/{owner}/{repo}/pulls",
                headers=_headers(token),
                json={"head": head, "base": base, "title": title, "body": body},
            )
        except httpx.TimeoutException:
            raise GitHubError("GitHub API request timed out") from None
        except httpx.HTTPError as exc:
            raise GitHubError(f"GitHub API request failed: {exc}") from None

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not resp.is_success:
        message = data.get("message") if isinstance(data, dict) else None
        raise GitHubError(
            f"GitHub API {resp.status_code}: {message or resp.text}", resp.status_code
        )
    log.info("Opened pull request %s/%s#%s", owner, repo, data.get("number"))
    return data


def pull_request_body(goal: dict) -> str:
    parts = [f"## Goal: {goal.get('title', '')}"]
    if goal.get("description"):
        parts.append(goal["description"])
    parts.append("---\nCreated by condos")
    return "\n\n".join(parts)
