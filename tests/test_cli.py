"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from stock_ledger import cli, core_logic
from stock_ledger.errors import (
    AuthError,
    BusinessRuleViolation,
    PermissionDeniedError,
    RetryExhaustedError,
    ValidationError,
)
from stock_ledger.ordering import HolidayInfo


WRITE_COMMANDS = {
    "save-stock",
    "order",
    "add-item",
    "remove-item",
    "add-store",
    "remove-store",
}

READ_COMMANDS = {
    "show-stock",
    "sold",
    "orders",
    "order-stats",
    "export",
    "catalog",
    "stores",
}

ADMIN_COMMANDS = {"order", "add-item", "remove-item", "add-store", "remove-store"}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert parser.prog == "stock-ledger"
    assert "stock" in (parser.description or "").lower()


def test_configure_subcommands_registers_all_commands():
    """configure_subcommands should wire every read and write sub-command."""

    command_table = cli.configure_subcommands(cli.build_parser())
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert {name for name, spec in specs.items() if spec.admin_only} == ADMIN_COMMANDS
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return read-only specs open to every role."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert not any(spec.admin_only for spec in specs.values())


def test_register_save_stock_command_configures_arguments():
    """save-stock should accept repeated --item values and an ISO date."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_save_stock_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        [
            "save-stock",
            "--store",
            "fc-road",
            "--date",
            "2024-01-15",
            "--item",
            "MILKSHAKE-Mango=5",
            "--item",
            "ICE CREAM-Keshar Pista=2.5",
        ]
    )
    assert namespace.store == "fc-road"
    assert namespace.date.isoformat() == "2024-01-15"
    assert namespace.items == [("MILKSHAKE-Mango", "5"), ("ICE CREAM-Keshar Pista", "2.5")]


def test_register_order_command_configures_arguments():
    """order should collect holidays and weather for the advisory."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_order_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        [
            "order",
            "--store",
            "fc-road",
            "--suggested",
            "--holiday",
            "2024-01-16=Local Festival",
            "--weather",
            "Rain",
            "--temp",
            "24.5",
        ]
    )
    assert namespace.suggested is True
    assert namespace.holidays == [HolidayInfo("2024-01-16", "Local Festival")]

    advisory = cli.translate_advisory(namespace)
    assert advisory.weather == {"condition": "Rain", "temp": 24.5}


# ---------------------------------------------------------------------------
# Argument parsing helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("MILKSHAKE-Mango=5", ("MILKSHAKE-Mango", "5")),
        (" MISC-Spoon = 12 ", ("MISC-Spoon", "12")),
        ("MISC-A=B=3", ("MISC-A=B", "3")),
    ],
)
def test_parse_item_argument(text, expected):
    assert cli.parse_item_argument(text) == expected


@pytest.mark.parametrize("text", ["MILKSHAKE-Mango", "=5"])
def test_parse_item_argument_rejects_malformed_values(text):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item_argument(text)


@pytest.mark.parametrize("text", ["2024-01-16", "tomorrow=Festival", "2024-01-16="])
def test_parse_holiday_argument_rejects_malformed_values(text):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_holiday_argument(text)


def test_translate_quantities_merges_file_and_items(tmp_path: Path):
    """--item entries should override values loaded from --file."""

    source = tmp_path / "counts.json"
    source.write_text(json.dumps({"MILKSHAKE-Mango": 5, "MILKSHAKE-Rose": 2}))
    args = argparse.Namespace(file=source, items=[("MILKSHAKE-Mango", "7")])

    assert cli.translate_quantities(args) == {"MILKSHAKE-Mango": "7", "MILKSHAKE-Rose": 2}


def test_translate_quantities_requires_json_object(tmp_path: Path):
    source = tmp_path / "counts.json"
    source.write_text("[1, 2]")

    with pytest.raises(ValidationError):
        cli.translate_quantities(argparse.Namespace(file=source, items=[]))


def test_translate_quantities_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        cli.translate_quantities(argparse.Namespace(file=tmp_path / "nope.json", items=[]))


def test_resolve_actor_defaults_to_login_name(monkeypatch):
    monkeypatch.setattr(cli.getpass, "getuser", lambda: "counter-7")

    actor = cli.resolve_actor(argparse.Namespace(user=None, role="staff"))

    assert actor == core_logic.Actor(user_id="counter-7")
    assert not actor.is_admin


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_dispatch_command_invokes_executor(context, command_table_entry):
    """dispatch_command should call the executor associated with the command."""

    command_name, spec = command_table_entry
    args = argparse.Namespace(command=command_name, user="counter-1", role="staff")
    result = cli.dispatch_command(context, args, {command_name: spec})
    assert result == 0
    assert spec.execute.__dict__["called"] is True


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    args = argparse.Namespace(command="unknown")
    with pytest.raises(KeyError):
        cli.dispatch_command(context, args, {})


def test_dispatch_command_refuses_admin_commands_for_staff(context):
    """Admin-only executors must never run for the staff role."""

    def execute(*_: object) -> int:
        raise AssertionError("executor should not run")

    spec = cli.CommandSpec("order", "help", lambda s: s.add_parser("order"), execute, admin_only=True)
    args = argparse.Namespace(command="order", user="counter-1", role="staff")

    with pytest.raises(PermissionDeniedError):
        cli.dispatch_command(context, args, {"order": spec})


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (RetryExhaustedError("Stock save", attempts=5, backup_saved=True), 4),
        (PermissionDeniedError("denied"), 5),
        (AuthError("expired"), 5),
        (BusinessRuleViolation("invalid"), 2),
        (ValidationError("bad key"), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_backup_hint(caplog: pytest.LogCaptureFixture):
    """Exhausted retries should tell the user the entry was kept locally."""

    caplog.set_level("ERROR")
    cli.handle_cli_error(RetryExhaustedError("Stock save", attempts=5, backup_saved=True))
    assert any("local backup" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def _run(config_file: Path, *argv: str, role: str = "admin") -> int:
    return cli.main(["--config", str(config_file), "--user", "owner", "--role", role, *argv])


def test_main_runs_daily_cycle_end_to_end(config_file: Path, capsys: pytest.CaptureFixture[str]):
    """main should drive store setup, stock entry and reporting against a workbook."""

    today = datetime.now(UTC).date().isoformat()

    assert _run(config_file, "add-store", "--name", "FC Road", "--area-code", "411004") == 0
    assert _run(config_file, "save-stock", "--store", "fc-road", "--item", "MILKSHAKE-Mango=5", role="staff") == 0
    assert _run(config_file, "show-stock", "--store", "fc-road", role="staff") == 0
    assert _run(config_file, "sold", "--store", "fc-road", role="staff") == 0
    assert _run(config_file, "stores", role="staff") == 0

    output = capsys.readouterr().out
    assert "Added store FC Road (fc-road)" in output
    assert f"Saved stock for fc-road on {today} (1 items)" in output
    assert "  MILKSHAKE-Mango: 5" in output
    assert "MILKSHAKE-Mango: ordered 0, current 5, LOSS/ERROR -5" in output
    assert "Total sold: 0" in output
    assert "fc-road  FC Road  FC Road  411004" in output


def test_main_order_prints_rendered_text(config_file: Path, capsys: pytest.CaptureFixture[str]):
    assert _run(config_file, "add-store", "--name", "FC Road") == 0
    assert _run(config_file, "order", "--store", "fc-road", "--item", "MILKSHAKE-Mango=4") == 0
    assert _run(config_file, "orders", "--store", "fc-road") == 0

    output = capsys.readouterr().out
    assert "FC Road\n\n*MILKSHAKE*\nMango - 4\n" in output
    assert "Order fc-road-" in output
    assert "items=4" in output


def test_main_refuses_order_for_staff(config_file: Path, capsys: pytest.CaptureFixture[str]):
    """Staff users get the permission exit code and nothing is written."""

    assert _run(config_file, "order", "--store", "fc-road", "--item", "MILKSHAKE-Mango=4", role="staff") == 5
    assert _run(config_file, "orders", role="staff") == 0
    assert "fc-road-" not in capsys.readouterr().out


def test_main_rejects_order_for_unknown_store(config_file: Path, capsys: pytest.CaptureFixture[str]):
    assert _run(config_file, "order", "--store", "nowhere", "--item", "MILKSHAKE-Mango=4") == 2
    assert _run(config_file, "orders") == 0
    assert "nowhere-" not in capsys.readouterr().out


def test_main_rejects_empty_stock(config_file: Path):
    assert _run(config_file, "save-stock", "--store", "fc-road", "--item", "MILKSHAKE-Mango=0", role="staff") == 2


def test_main_missing_config_returns_not_found_code(tmp_path: Path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "catalog"]) == 3


def test_main_schema_mismatch_returns_generic_error(config_factory):
    bundle = config_factory(schema_version="0.9.0")

    assert cli.main(["--config", str(bundle.config_path), "catalog"]) == 1


def test_main_export_writes_workbook(config_file: Path, tmp_path: Path):
    destination = tmp_path / "exports" / "fc-road.xlsx"

    assert _run(config_file, "save-stock", "--store", "fc-road", "--item", "MILKSHAKE-Mango=5", role="staff") == 0
    assert _run(config_file, "export", "--store", "fc-road", "--output", str(destination), role="staff") == 0
    assert destination.exists()
