from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from condos import __version__
from condos.api import METHODS, _dispatch_once
from condos.config import load_settings
from condos.events import EventSubscriber, read_outbox
from condos.paths import DEFAULT_SOCKET_PATH


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. This subclass
    intercepts Click exceptions and emits a JSON error object on stdout.
    Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _request(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Dispatch through the daemon when it is running, in-process otherwise."""
    return asyncio.run(_dispatch_once({"method": method, "params": params or {}}))


def _emit(response: dict[str, Any]) -> None:
    """Print a response; a failed request exits non-zero."""
    click.echo(json.dumps(response, indent=2, default=str))
    if not response.get("ok"):
        raise SystemExit(1)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Orchestrate agent sessions across condos, goals and tasks.

    \b
    Quick start:
      condos serve                          Run the engine daemon
      condos call condos.create --params '{"name": "Shop"}'
      condos kickoff GOAL_ID                Spawn sessions for unblocked tasks
      condos status                         List condos and their goals
      condos events --goal GOAL_ID          Follow lifecycle events

    \b
    Key concepts:
      condo   A project scope, optionally backed by a git repository
      goal    A unit of work with its own branch, decomposed into tasks
      task    An atomic piece of work handed to one agent session
    """


# -- serve --


@main.command()
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_SOCKET_PATH,
    show_default=True,
    help="Unix socket to listen on.",
)
def serve(socket_path: Path):
    """Run the engine daemon in the foreground."""
    from condos.daemon import DaemonRunningError, _main

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        asyncio.run(_main(socket_path))
    except DaemonRunningError as exc:
        raise click.ClickException(str(exc)) from None


# -- call --


@main.command()
@click.argument("method")
@click.option("--params", "raw_params", default="{}", help="Request params as a JSON object.")
def call(method: str, raw_params: str):
    """Send one API request and print the response.

    \b
    Example:
      condos call goals.retry_merge --params '{"goal_id": "goal_..."}'
    """
    if method not in METHODS:
        import difflib

        matches = difflib.get_close_matches(method, list(METHODS), n=3, cutoff=0.5)
        hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
        raise click.BadParameter(f"Unknown method '{method}'.{hint}", param_hint="METHOD")
    try:
        params = json.loads(raw_params)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Invalid JSON: {exc}", param_hint="--params") from None
    if not isinstance(params, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--params")
    _emit(_request(method, params))


# -- goal shortcuts --


@main.command()
@click.argument("goal_id")
def kickoff(goal_id: str):
    """Spawn and start sessions for every unblocked task of a goal."""
    _emit(_request("goals.kickoff", {"goal_id": goal_id}))


@main.command()
@click.argument("goal_id")
def close(goal_id: str):
    """Abort a goal's sessions, fold its worktree back and mark it closed."""
    _emit(_request("goals.close", {"goal_id": goal_id}))


@main.command()
@click.argument("condo_id", required=False)
def status(condo_id: str | None):
    """Show every condo, or one condo with its goals."""
    if condo_id:
        _emit(_request("condos.get", {"condo_id": condo_id}))
    else:
        _emit(_request("condos.list"))


# -- events --


def _matches(event: dict, goal_id: str | None, condo_id: str | None) -> bool:
    if goal_id and event.get("goal_id") != goal_id:
        return False
    return not (condo_id and event.get("condo_id") != condo_id)


async def _follow_live(goal_id: str | None, condo_id: str | None) -> None:
    from condos.daemon_client import DaemonClient

    async with DaemonClient() as client:
        async for event in client.events():
            if _matches(event, goal_id, condo_id):
                click.echo(json.dumps(event, default=str))


@main.command()
@click.option("--goal", "goal_id", default=None, help="Only events for this goal.")
@click.option("--condo", "condo_id", default=None, help="Only events for this condo.")
@click.option(
    "--source",
    type=click.Choice(["redis", "outbox", "live"]),
    default="redis",
    show_default=True,
    help="Redis Stream relay, the JSONL outbox (printed once), or the daemon's live feed.",
)
@click.option("--timeout", default=30.0, show_default=True, help="Redis poll timeout (s).")
def events(goal_id: str | None, condo_id: str | None, source: str, timeout: float):
    """Print lifecycle events as JSON lines."""
    settings = load_settings()
    if source == "outbox":
        if not settings.outbox_path:
            raise click.UsageError("No outbox configured")
        found, _ = read_outbox(settings.outbox_path)
        for event in found:
            if _matches(event, goal_id, condo_id):
                click.echo(json.dumps(event, default=str))
        return
    if source == "live":
        try:
            asyncio.run(_follow_live(goal_id, condo_id))
        except OSError as exc:
            raise click.ClickException(f"Daemon unreachable: {exc}") from None
        except KeyboardInterrupt:
            pass
        return

    if not settings.redis_url:
        raise click.UsageError("No Redis URL configured")
    subscriber = EventSubscriber(
        settings.redis_url, goal_id=goal_id, condo_id=condo_id, timeout=timeout
    )
    try:
        for event in subscriber:
            if event is not None:
                click.echo(json.dumps(event, default=str))
    except KeyboardInterrupt:
        pass
