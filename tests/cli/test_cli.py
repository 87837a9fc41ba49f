"""Tests for the CLI commands."""

import pytest
from click.testing import CliRunner

from studysync.calendar.errors import CalendarNotConnectedError
from studysync.calendar.models import SyncSummary
from studysync.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def google_env(monkeypatch):
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "secret")
    monkeypatch.delenv("DATABASE_URL", raising=False)


class TestRruleCommands:
    def test_build_custom_weekly(self, runner):
        result = runner.invoke(
            cli,
            [
                "rrule",
                "build",
                "--freq",
                "custom_weekly",
                "--weekday",
                "wed",
                "--weekday",
                "MON",
                "--count",
                "5",
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;COUNT=5"

    def test_build_until(self, runner):
        result = runner.invoke(
            cli, ["rrule", "build", "--freq", "daily", "--interval", "2", "--until", "2024-12-20"]
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "RRULE:FREQ=DAILY;INTERVAL=2;UNTIL=20241220"

    def test_build_none(self, runner):
        result = runner.invoke(cli, ["rrule", "build", "--freq", "none"])
        assert result.output.strip() == "(does not repeat)"

    def test_build_rejects_invalid_count(self, runner):
        result = runner.invoke(cli, ["rrule", "build", "--freq", "daily", "--count", "0"])
        assert result.exit_code == 1
        assert "Invalid recurrence options" in result.output

    def test_parse_describes_rule(self, runner):
        result = runner.invoke(
            cli, ["rrule", "parse", "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=5"]
        )
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert '"frequency":"custom_weekly"' in lines[0]
        assert lines[-1] == "every 2 weeks on Mon, Wed, 5 times"

    def test_parse_unsupported(self, runner):
        result = runner.invoke(cli, ["rrule", "parse", "RRULE:FREQ=HOURLY"])
        assert result.exit_code == 1
        assert "Unsupported recurrence rule" in result.output


class TestExpandCommand:
    def test_weekly_count(self, runner):
        result = runner.invoke(
            cli,
            [
                "expand",
                "RRULE:FREQ=WEEKLY;INTERVAL=1;COUNT=3",
                "--start",
                "2024-09-02T10:00:00",
                "--end",
                "2024-09-02T11:00:00",
                "--from",
                "2024-09-01",
                "--to",
                "2024-10-01",
            ],
        )
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert lines[0] == "2024-09-02T10:00:00  2024-09-02T11:00:00"
        assert lines[2] == "2024-09-16T10:00:00  2024-09-16T11:00:00"
        assert lines[-1] == "3 occurrence(s)"

    def test_without_rule_prints_base(self, runner):
        result = runner.invoke(
            cli,
            [
                "expand",
                "--start",
                "2024-09-02T10:00:00",
                "--end",
                "2024-09-02T11:00:00",
                "--from",
                "2024-09-01",
                "--to",
                "2024-10-01",
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip().splitlines()[-1] == "1 occurrence(s)"

    def test_invalid_rule(self, runner):
        result = runner.invoke(
            cli,
            [
                "expand",
                "FREQ=SECONDLY",
                "--start",
                "2024-09-02T10:00:00",
                "--end",
                "2024-09-02T11:00:00",
                "--from",
                "2024-09-01",
                "--to",
                "2024-10-01",
            ],
        )
        assert result.exit_code == 1

    def test_limit_defaults_to_configured_max_occurrences(self, runner, tmp_path):
        (tmp_path / "studysync.toml").write_text(
            '[google]\nclient_id = "cid"\nclient_secret = "secret"\n\n'
            "[sync]\nmax_occurrences = 2\n"
        )
        result = runner.invoke(
            cli,
            [
                "--config-dir",
                str(tmp_path),
                "expand",
                "RRULE:FREQ=DAILY;INTERVAL=1",
                "--start",
                "2024-09-02T10:00:00",
                "--end",
                "2024-09-02T11:00:00",
                "--from",
                "2024-09-01",
                "--to",
                "2024-10-01",
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip().splitlines()[-1] == "2 occurrence(s)"

    def test_explicit_limit_wins_over_config(self, runner, tmp_path):
        (tmp_path / "studysync.toml").write_text(
            '[google]\nclient_id = "cid"\nclient_secret = "secret"\n\n'
            "[sync]\nmax_occurrences = 2\n"
        )
        result = runner.invoke(
            cli,
            [
                "--config-dir",
                str(tmp_path),
                "expand",
                "RRULE:FREQ=DAILY;INTERVAL=1",
                "--start",
                "2024-09-02T10:00:00",
                "--end",
                "2024-09-02T11:00:00",
                "--from",
                "2024-09-01",
                "--to",
                "2024-10-01",
                "--limit",
                "5",
            ],
        )
        assert result.exit_code == 0, result.output
        assert result.output.strip().splitlines()[-1] == "5 occurrence(s)"


class TestSyncCommand:
    def test_prints_summary(self, runner, google_env, monkeypatch, tmp_path):
        async def fake_run_sync(config, user_id, semester_id, timeout):
            assert (user_id, semester_id, timeout) == ("user-1", "sem-1", 30.0)
            return SyncSummary(synced_count=2, created_count=2, message="Synced 2 events")

        monkeypatch.setattr("studysync.cli._run_sync", fake_run_sync)

        result = runner.invoke(
            cli,
            [
                "--config-dir",
                str(tmp_path),
                "sync",
                "--user",
                "user-1",
                "--semester",
                "sem-1",
                "--timeout",
                "30",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Synced 2 events" in result.output

    def test_partial_failure_exit_code(self, runner, google_env, monkeypatch, tmp_path):
        async def fake_run_sync(config, user_id, semester_id, timeout):
            return SyncSummary(synced_count=1, error_count=1, message="Synced 1 events, 1 failed")

        monkeypatch.setattr("studysync.cli._run_sync", fake_run_sync)

        result = runner.invoke(
            cli, ["--config-dir", str(tmp_path), "sync", "--user", "u", "--semester", "s"]
        )

        assert result.exit_code == 2

    def test_not_connected_exit_code(self, runner, google_env, monkeypatch, tmp_path):
        async def fake_run_sync(config, user_id, semester_id, timeout):
            raise CalendarNotConnectedError(user_id)

        monkeypatch.setattr("studysync.cli._run_sync", fake_run_sync)

        result = runner.invoke(
            cli, ["--config-dir", str(tmp_path), "sync", "--user", "u", "--semester", "s"]
        )

        assert result.exit_code == 1
        assert "not connected" in result.output

    def test_missing_credentials(self, runner, monkeypatch, tmp_path):
        monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
        monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)

        result = runner.invoke(
            cli, ["--config-dir", str(tmp_path), "sync", "--user", "u", "--semester", "s"]
        )

        assert result.exit_code == 1
        assert "Configuration error" in result.output
