"""Tests for the CLI commands."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from condos.cli import main
from condos.config import Settings
from condos.daemon import DaemonRunningError


def _ok(data=None):
    return {"ok": True, "data": data or {}}


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_usage_error_is_json():
    result = CliRunner().invoke(main, ["status", "--no-such-flag"])
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert "no-such-flag" in payload["error"].lower() or "no such option" in payload["error"]


def test_unknown_command_suggests_close_match():
    result = CliRunner().invoke(main, ["kickof"])
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert "Did you mean: kickoff" in payload["error"]


def test_missing_argument_is_json():
    result = CliRunner().invoke(main, ["close"])
    assert result.exit_code != 0
    assert "goal_id" in json.loads(result.output)["error"].lower()


# ---------------------------------------------------------------------------
# call
# ---------------------------------------------------------------------------


def test_call_forwards_params():
    with patch("condos.cli._request", return_value=_ok({"condos": []})) as request:
        result = CliRunner().invoke(main, ["call", "condos.list", "--params", '{"x": 1}'])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"ok": True, "data": {"condos": []}}
    request.assert_called_once_with("condos.list", {"x": 1})


def test_call_rejects_unknown_method_and_bad_json():
    runner = CliRunner()
    unknown = runner.invoke(main, ["call", "goals.kickof"])
    assert unknown.exit_code != 0
    assert "Did you mean: goals.kickoff" in json.loads(unknown.output)["error"]

    bad_json = runner.invoke(main, ["call", "goals.get", "--params", "{nope"])
    assert "Invalid JSON" in json.loads(bad_json.output)["error"]

    not_object = runner.invoke(main, ["call", "goals.get", "--params", "[1]"])
    assert "must be a JSON object" in json.loads(not_object.output)["error"]


def test_failed_request_exits_non_zero():
    failure = {"ok": False, "error": "Goal not found", "code": "NOT_FOUND"}
    with patch("condos.cli._request", return_value=failure):
        result = CliRunner().invoke(main, ["kickoff", "goal_missing"])
    assert result.exit_code == 1
    assert json.loads(result.output)["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Shortcuts
# ---------------------------------------------------------------------------


def test_shortcuts_map_to_methods():
    runner = CliRunner()
    with patch("condos.cli._request", return_value=_ok()) as request:
        runner.invoke(main, ["kickoff", "goal_1"])
        runner.invoke(main, ["close", "goal_1"])
        runner.invoke(main, ["status"])
        runner.invoke(main, ["status", "condo_1"])
    assert [c.args for c in request.call_args_list] == [
        ("goals.kickoff", {"goal_id": "goal_1"}),
        ("goals.close", {"goal_id": "goal_1"}),
        ("condos.list",),
        ("condos.get", {"condo_id": "condo_1"}),
    ]


# ---------------------------------------------------------------------------
# events
# ---------------------------------------------------------------------------


def test_events_from_outbox_filters_by_goal(tmp_path):
    outbox = tmp_path / "events.jsonl"
    lines = [
        {"event": "goal.kickoff", "goal_id": "g1"},
        {"event": "goal.kickoff", "goal_id": "g2"},
        {"event": "goal.completed", "goal_id": "g1", "condo_id": "c1"},
    ]
    outbox.write_text("".join(json.dumps(e) + "\n" for e in lines))
    settings = Settings(outbox_path=outbox, redis_url=None)

    with patch("condos.cli.load_settings", return_value=settings):
        result = CliRunner().invoke(main, ["events", "--source", "outbox", "--goal", "g1"])
    assert result.exit_code == 0
    printed = [json.loads(line) for line in result.output.splitlines()]
    assert [e["event"] for e in printed] == ["goal.kickoff", "goal.completed"]


def test_events_from_redis_skips_idle_polls():
    settings = Settings(redis_url="redis://localhost:6379/0")
    subscriber = MagicMock()
    subscriber.__iter__.return_value = iter([None, {"event": "goal.merged", "goal_id": "g1"}])

    with (
        patch("condos.cli.load_settings", return_value=settings),
        patch("condos.cli.EventSubscriber", return_value=subscriber) as factory,
    ):
        result = CliRunner().invoke(main, ["events", "--condo", "c1", "--timeout", "5"])
    assert result.exit_code == 0
    assert json.loads(result.output) == {"event": "goal.merged", "goal_id": "g1"}
    factory.assert_called_once_with(
        "redis://localhost:6379/0", goal_id=None, condo_id="c1", timeout=5.0
    )


def test_events_without_redis_is_usage_error():
    with patch("condos.cli.load_settings", return_value=Settings(redis_url=None)):
        result = CliRunner().invoke(main, ["events"])
    assert result.exit_code != 0
    assert "No Redis URL" in json.loads(result.output)["error"]


def test_live_events_report_unreachable_daemon():
    with (
        patch("condos.cli.load_settings", return_value=Settings()),
        patch("condos.cli._follow_live", side_effect=ConnectionRefusedError("refused")),
    ):
        result = CliRunner().invoke(main, ["events", "--source", "live"])
    assert result.exit_code != 0
    assert "Daemon unreachable" in json.loads(result.output)["error"]


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


def test_serve_reports_running_daemon(tmp_path):
    busy = DaemonRunningError("Daemon already running (pid 4242) on condos.sock")
    with patch("condos.daemon._main", side_effect=busy):
        result = CliRunner().invoke(main, ["serve", "--socket", str(tmp_path / "condos.sock")])
    assert result.exit_code == 1
    assert "already running (pid 4242)" in json.loads(result.output)["error"]
