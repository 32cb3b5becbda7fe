"""Canonical filesystem paths for condos configuration and state."""

from __future__ import annotations

import os
from pathlib import Path


def _env_path(name: str, default: Path | None) -> Path | None:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else default


CONDOS_CONFIG_DIR = Path(
    os.environ.get("CONDOS_CONFIG_DIR") or Path.home() / ".config" / "condos"
).expanduser()

CONFIG_FILE = CONDOS_CONFIG_DIR / "config.toml"

_env_store = os.environ.get("CONDOS_STORE_PATH")
DEFAULT_STORE_PATH = (
    Path(_env_store).expanduser() if _env_store else CONDOS_CONFIG_DIR / "goals.json"
)
DEFAULT_OUTBOX_PATH = CONDOS_CONFIG_DIR / "events.jsonl"

# Git workspaces are only created when a base directory is configured.
WORKSPACES_DIR = _env_path("CONDOS_WORKSPACES_DIR", None)

# Worker agents keep their plan files under <home>/workspace-<agent>/plans/.
AGENT_HOME = _env_path("CONDOS_AGENT_HOME", None) or Path.home() / ".openclaw"

_RUNTIME_DIR = Path(os.environ.get("XDG_RUNTIME_DIR") or f"/run/user/{os.getuid()}") / "condos"
DEFAULT_SOCKET_PATH = _env_path("CONDOS_SOCKET", None) or _RUNTIME_DIR / "condos.sock"
GATEWAY_SOCKET_PATH = _env_path("CONDOS_GATEWAY_SOCKET", None) or _RUNTIME_DIR / "gateway.sock"
