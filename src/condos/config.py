"""Engine settings.

Defaults can be overridden in ``~/.config/condos/config.toml``::

    [engine]
    rekickoff_delay = 1.0
    retry_delay = 2.0
    completion_policy = "auto_complete"   # or "require_report"

    [redis]
    url = "redis://localhost:6379/0"

    [roles]
    frontend = "ui-agent"

    [services.github]
    token = "ghp_..."

Environment variables win over the file: ``CONDOS_REDIS_URL``,
``CONDOS_GITHUB_TOKEN`` and ``CONDOS_<ROLE>_AGENT``.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from condos import paths

log = logging.getLogger(__name__)

COMPLETION_POLICIES = frozenset({"auto_complete", "require_report"})


@dataclass
class Settings:
    store_path: Path = field(default_factory=lambda: paths.DEFAULT_STORE_PATH)
    outbox_path: Path | None = field(default_factory=lambda: paths.DEFAULT_OUTBOX_PATH)
    workspaces_dir: Path | None = field(default_factory=lambda: paths.WORKSPACES_DIR)
    agent_home: Path = field(default_factory=lambda: paths.AGENT_HOME)
    redis_url: str | None = "redis://localhost:6379/0"

    # Deferred work delays (seconds).
    rekickoff_delay: float = 1.0
    retry_delay: float = 2.0
    sweep_delay: float = 2.0
    cascade_kickoff_delay: float = 1.0
    plan_watch_debounce: float = 0.5
    plan_watch_interval: float = 0.25

    rpc_timeout: float = 30.0
    default_max_retries: int = 1
    completion_policy: str = "auto_complete"

    roles: dict[str, str] = field(default_factory=dict)
    services: dict[str, Any] = field(default_factory=dict)

    @property
    def github_token(self) -> str | None:
        github = self.services.get("github") or {}
        return github.get("token") or github.get("agent_token")


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Parse the TOML config file. Returns {} when missing or malformed."""
    path = path or paths.CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception:
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}


_FLOAT_KEYS = (
    "rekickoff_delay",
    "retry_delay",
    "sweep_delay",
    "cascade_kickoff_delay",
    "plan_watch_debounce",
    "plan_watch_interval",
    "rpc_timeout",
)


def load_settings(path: Path | None = None) -> Settings:
    """Build Settings from defaults, the config file and the environment."""
    raw = load_config_file(path)
    settings = Settings()

    engine = raw.get("engine") or {}
    known = {f.name for f in fields(Settings)}
    for key, value in engine.items():
        if key not in known:
            log.warning("Ignoring unknown [engine] key: %s", key)
            continue
        if key in _FLOAT_KEYS:
            value = float(value)
        elif key in ("store_path", "outbox_path", "workspaces_dir", "agent_home"):
            value = Path(value).expanduser()
        setattr(settings, key, value)

    if settings.completion_policy not in COMPLETION_POLICIES:
        log.warning(
            "Unknown completion_policy %r, using auto_complete", settings.completion_policy
        )
        settings.completion_policy = "auto_complete"

    redis_cfg = raw.get("redis") or {}
    settings.redis_url = os.environ.get("CONDOS_REDIS_URL") or redis_cfg.get(
        "url", settings.redis_url
    )

    settings.roles = {str(k): str(v) for k, v in (raw.get("roles") or {}).items()}
    settings.services = dict(raw.get("services") or {})
    env_token = os.environ.get("CONDOS_GITHUB_TOKEN")
    if env_token:
        settings.services["github"] = {**settings.services.get("github", {}), "token": env_token}
    return settings
