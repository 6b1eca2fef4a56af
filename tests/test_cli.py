"""
Tests for the CLI interface.
"""
import logging
import os
import tempfile

import pytest
import yaml
from typer.testing import CliRunner

from meter_ledger.cli.main import app, EXIT_CODE_CONFIRM, EXIT_CODE_FAIL, EXIT_CODE_PASS
from meter_ledger.storage.repository import EventRepository

runner = CliRunner()


@pytest.fixture(autouse=True)
def detach_log_handler():
    """The CLI attaches a handler to the runner's stderr; drop it afterwards."""
    yield
    package_logger = logging.getLogger("meter_ledger")
    for handler in list(package_logger.handlers):
        if getattr(handler, "_meter_ledger", False):
            package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def db_file():
    """Path to a database file in a temporary directory (not yet created)."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "cli.db")


def invoke(db_file, *args):
    return runner.invoke(app, ["--db", db_file, "--user", "alice", *args])


@pytest.fixture
def initialized(db_file):
    result = invoke(db_file, "init")
    assert result.exit_code == EXIT_CODE_PASS
    return db_file


@pytest.fixture
def with_readings(initialized):
    for balance, date in [("60", "2024-03-01"), ("45", "2024-03-03"), ("30", "2024-03-04")]:
        result = invoke(initialized, "add-reading", balance, "--date", date)
        assert result.exit_code == EXIT_CODE_PASS, result.output
    return initialized


class TestCLI:
    """Test CLI commands."""

    def test_init(self, db_file):
        result = invoke(db_file, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_file)

    def test_command_before_init(self, db_file):
        result = invoke(db_file, "history")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not initialized" in result.output

    def test_add_reading(self, initialized):
        result = invoke(initialized, "add-reading", "120.5", "--date", "2024-03-01 08:00")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Saved entry" in result.output
        events = EventRepository(initialized).fetch_events("alice")
        assert [e.balance_kwh for e in events] == [120.5]

    def test_increased_reading_is_blocked(self, with_readings):
        result = invoke(with_readings, "add-reading", "50", "--date", "2024-03-05")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Blocked" in result.output
        assert "top-up" in result.output

    def test_backdated_topup_needs_confirmation(self, with_readings):
        result = invoke(with_readings, "add-topup", "--purchase", "40", "--date", "2024-03-02")

        assert result.exit_code == EXIT_CODE_CONFIRM
        assert "--yes" in result.output
        events = EventRepository(with_readings).fetch_events("alice")
        assert [e.balance_kwh for e in events] == [60.0, 45.0, 30.0]

    def test_backdated_topup_with_yes(self, with_readings):
        result = invoke(with_readings, "add-topup", "--purchase", "40", "--date", "2024-03-02", "--yes")

        assert result.exit_code == EXIT_CODE_PASS, result.output
        assert "Recalculation" in result.output
        events = EventRepository(with_readings).fetch_events("alice")
        assert [e.balance_kwh for e in events] == [60.0, 100.0, 85.0, 70.0]

    def test_duplicate_date(self, with_readings):
        result = invoke(with_readings, "add-reading", "44", "--date", "2024-03-03")
        assert result.exit_code == EXIT_CODE_CONFIRM
        assert "--replace" in result.output

        result = invoke(with_readings, "add-reading", "44", "--date", "2024-03-03", "--replace")
        assert result.exit_code == EXIT_CODE_PASS
        events = EventRepository(with_readings).fetch_events("alice")
        assert [e.balance_kwh for e in events] == [60.0, 44.0, 30.0]

    def test_duplicate_edit_existing(self, with_readings):
        result = invoke(with_readings, "add-reading", "44", "--date", "2024-03-03", "--edit-existing")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Voided entry" in result.output

    def test_edit_and_delete(self, with_readings):
        events = EventRepository(with_readings).fetch_events("alice")

        result = invoke(with_readings, "edit", str(events[2].id), "--balance", "28")
        assert result.exit_code == EXIT_CODE_PASS

        result = invoke(with_readings, "delete", str(events[0].id), "--reason", "wrong meter")
        assert result.exit_code == EXIT_CODE_PASS

        remaining = EventRepository(with_readings).fetch_events("alice")
        assert [e.balance_kwh for e in remaining] == [45.0, 28.0]

    def test_edit_unknown_event(self, initialized):
        result = invoke(initialized, "edit", "999", "--balance", "1")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_undo_flow(self, with_readings):
        invoke(with_readings, "add-topup", "--purchase", "40", "--date", "2024-03-02", "--yes")
        audit = EventRepository(with_readings).fetch_audits("alice")[0]

        result = invoke(with_readings, "audits")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Pending undos" in result.output

        result = invoke(with_readings, "undo", str(audit.id))
        assert result.exit_code == EXIT_CODE_PASS
        assert "undone" in result.output

        result = invoke(with_readings, "undo", str(audit.id))
        assert result.exit_code == EXIT_CODE_FAIL
        assert "already undone" in result.output

    def test_idempotent_retry(self, with_readings):
        args = ["add-reading", "20", "--date", "2024-03-06", "--key", "retry-1"]
        assert invoke(with_readings, *args).exit_code == EXIT_CODE_PASS

        result = invoke(with_readings, *args)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Idempotency replay" in result.output

    def test_balance_history_and_summary(self, with_readings):
        result = invoke(with_readings, "balance")
        assert result.exit_code == EXIT_CODE_PASS
        assert "30.00 kWh" in result.output

        result = invoke(with_readings, "history")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Meter history" in result.output

        result = invoke(with_readings, "summary")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Average per day" in result.output

    def test_demo(self, db_file):
        result = runner.invoke(app, ["--db", db_file, "demo"])

        assert result.exit_code == EXIT_CODE_PASS, result.output
        assert "Demo entries recorded" in result.output
        audits = EventRepository(db_file).fetch_audits("demo")
        assert len(audits) == 1
        assert audits[0].offset_kwh == 69.2185

    def test_config_file(self, db_file):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "ledger.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"database": {"path": db_file}, "logging": {"level": "WARNING"}}, f)

            result = runner.invoke(app, ["--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(db_file)

    def test_invalid_config_file(self, db_file):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "ledger.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"tariff": {"per_kwh": 0}}, f)

            result = runner.invoke(app, ["--config", config_path, "--db", db_file, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_unparsable_config_file(self, db_file):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "ledger.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                f.write("database: [unclosed\n")

            result = runner.invoke(app, ["--config", config_path, "--db", db_file, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output
        assert not os.path.exists(db_file)

    def test_repeated_invocations_share_one_handler(self, initialized):
        """Every call swaps in a handler for its own stderr; closed streams are never touched."""
        for balance, date in [("50", "2024-03-01"), ("40", "2024-03-02")]:
            result = invoke(initialized, "add-reading", balance, "--date", date)
            assert result.exit_code == EXIT_CODE_PASS, result.output

        package_logger = logging.getLogger("meter_ledger")
        tagged = [h for h in package_logger.handlers if getattr(h, "_meter_ledger", False)]
        assert len(tagged) == 1
