"""Worker roles, session keys and per-request session classification."""

from __future__ import annotations

import enum
import os
import secrets
from collections.abc import Mapping

from condos.models import Document

SUPPORTED_ROLES = ("pm", "frontend", "backend", "designer", "tester", "devops", "qa")

_ROLE_DEFAULTS = {
    "pm": "main",
    "frontend": "frontend",
    "backend": "backend",
    "designer": "designer",
    "tester": "tester",
    "devops": "devops",
    "qa": "qa",
}


def default_roles() -> dict[str, str]:
    """Role -> agent id, with ``CONDOS_<ROLE>_AGENT`` env overrides applied."""
    return {
        role: os.environ.get(f"CONDOS_{role.upper()}_AGENT") or agent
        for role, agent in _ROLE_DEFAULTS.items()
    }


def agent_for_role(role: str, overrides: Mapping[str, str] | None = None) -> str:
    if overrides and overrides.get(role):
        return overrides[role]
    return default_roles().get(role, role)


def resolve_agent(spec: str | None, overrides: Mapping[str, str] | None = None) -> str | None:
    """Resolve a role name or literal agent id to an agent id."""
    if not spec:
        return None
    role = spec.lower()
    if role in _ROLE_DEFAULTS or (overrides and role in overrides):
        return agent_for_role(role, overrides)
    return spec


# -- Session keys ---------------------------------------------------------


def task_session_key(agent_id: str) -> str:
    return f"agent:{agent_id}:webchat:task-{secrets.token_hex(12)}"


def pm_goal_session_key(goal_id: str, overrides: Mapping[str, str] | None = None) -> str:
    return f"agent:{agent_for_role('pm', overrides)}:webchat:pm-{goal_id}"


def pm_condo_session_key(condo_id: str, overrides: Mapping[str, str] | None = None) -> str:
    return f"agent:{agent_for_role('pm', overrides)}:webchat:pm-condo-{condo_id}"


def is_pm_session(session_key: str | None) -> bool:
    return bool(session_key) and ":webchat:pm-" in session_key  # type: ignore[operator]


def agent_id_from_session(session_key: str) -> str | None:
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0] == "agent":
        return parts[1]
    return None


# -- Classification -------------------------------------------------------


class SessionRole(enum.StrEnum):
    WORKER = "worker"
    MANAGER = "manager"
    UNBOUND = "unbound"


def classify_session(data: Document, session_key: str | None) -> SessionRole:
    """Classify a session against the current document.

    Manager sessions are recognised by key shape or by being some goal's
    PM session. Anything present in either session index is a worker.
    """
    if not session_key:
        return SessionRole.UNBOUND
    if is_pm_session(session_key) or any(
        g.get("pm_session_key") == session_key for g in data.get("goals", [])
    ):
        return SessionRole.MANAGER
    if session_key in data.get("session_index", {}) or session_key in data.get(
        "session_condo_index", {}
    ):
        return SessionRole.WORKER
    return SessionRole.UNBOUND


def bound_condo_id(data: Document, session_key: str | None) -> str | None:
    """Condo a session is bound to, directly or through its goal."""
    if not session_key:
        return None
    condo_id = data.get("session_condo_index", {}).get(session_key)
    if condo_id:
        return condo_id
    entry = data.get("session_index", {}).get(session_key)
    if entry:
        goal = next((g for g in data["goals"] if g["id"] == entry.get("goal_id")), None)
        if goal:
            return goal.get("condo_id")
    return None
