"""Tests for CLI commands and helper functions."""

import json
import logging

import click
import pytest
from click.testing import CliRunner

from broadcast_engine.cli import _parse_days, main, run_async
from broadcast_engine.core import BroadcastEngine, StoreUnavailableError


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Invoke the CLI against a temporary database."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("WAB_CONFIG", raising=False)
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level

    def invoke(*args):
        return runner.invoke(main, ["--db", db_path, "--log-level", "CRITICAL", *args])

    yield invoke
    root.handlers = handlers
    root.setLevel(level)


class TestHelperFunctions:
    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_parse_days(self):
        assert _parse_days("1,3,5") == [1, 3, 5]
        assert _parse_days("") is None
        assert _parse_days(None) is None
        with pytest.raises(click.BadParameter):
            _parse_days("mon,wed")


class TestInstances:
    def test_add_list_delete(self, cli):
        result = cli("instances", "add", "main", "--token", "tok", "--name", "Main")
        assert result.exit_code == 0
        assert "Instance 'main' saved." in result.output

        listed = cli("instances", "list")
        assert listed.exit_code == 0
        assert "main" in listed.output
        assert "tok" not in listed.output

        deleted = cli("instances", "delete", "main")
        assert deleted.exit_code == 0
        assert "No instances configured." in cli("instances", "list").output

    def test_delete_missing_instance(self, cli):
        result = cli("instances", "delete", "ghost")
        assert result.exit_code == 1
        assert "not found" in result.output


class TestJobs:
    def test_add_and_operator_actions(self, cli):
        added = cli(
            "jobs", "add",
            "--id", "promo",
            "--instance", "main",
            "--group-jid", "1203630@g.us",
            "--content", "Good morning",
            "--at", "2030-01-01T09:00:00Z",
            "--recurring", "weekly",
            "--days", "1,3,5",
        )
        assert added.exit_code == 0, added.output
        assert "Scheduled message 'promo'" in added.output

        listed = cli("jobs", "list")
        assert listed.exit_code == 0
        assert "promo" in listed.output

        assert "is now paused" in cli("jobs", "pause", "promo").output
        again = cli("jobs", "pause", "promo")
        assert again.exit_code == 1
        assert "Cannot pause" in again.output
        assert "is now pending" in cli("jobs", "resume", "promo").output
        assert "is now cancelled" in cli("jobs", "cancel", "promo").output

        assert "No scheduled messages." in cli("jobs", "list", "--status", "pending").output

    def test_add_rejects_text_without_content(self, cli):
        result = cli(
            "jobs", "add",
            "--instance", "main",
            "--group-jid", "1203630@g.us",
            "--at", "2030-01-01T09:00:00Z",
        )
        assert result.exit_code == 1
        assert "Validation error" in result.output

    def test_action_on_missing_job(self, cli):
        result = cli("jobs", "cancel", "ghost")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_logs_of_missing_job(self, cli):
        result = cli("jobs", "logs", "ghost")
        assert result.exit_code == 1


class TestScheduler:
    def test_init_db(self, cli, tmp_path):
        result = cli("init-db")
        assert result.exit_code == 0
        assert (tmp_path / "cli.db").exists()

    def test_run_once_records_missing_credential(self, cli):
        cli(
            "jobs", "add",
            "--id", "orphan",
            "--instance", "ghost",
            "--group-jid", "1203630@g.us",
            "--content", "hello",
            "--at", "2020-01-01T00:00:00Z",
        )
        result = cli("run-once")
        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["success"] is True
        assert summary["processed"] == 1

        logs = cli("jobs", "logs", "orphan", "--json")
        assert logs.exit_code == 0
        entries = json.loads(logs.output)
        assert entries[0]["status"] == "failed"
        assert entries[0]["error_message"] == "No gateway token configured for instance 'ghost'"

    def test_run_once_store_failure_exits_non_zero(self, cli, monkeypatch):
        async def broken(self):
            raise StoreUnavailableError("Failed to fetch scheduled messages: boom")

        monkeypatch.setattr(BroadcastEngine, "run_once", broken)
        result = cli("run-once")
        assert result.exit_code == 1
        assert "boom" in result.output

    def test_reclaim_stale(self, cli):
        result = cli("reclaim-stale")
        assert result.exit_code == 0
        assert "Released 0 stale job(s)." in result.output
