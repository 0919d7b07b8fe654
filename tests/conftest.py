"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, List

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from stock_ledger.constants import UserRole  # noqa: E402
from stock_ledger.document_store import InMemoryDocumentStore  # noqa: E402
from stock_ledger.errors import TransientStorageError  # noqa: E402
from stock_ledger.setup_workbook import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "AppName = {app_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "MaxQuantity = 1000000\n"
    "MaxRetries = {max_retries}\n"
    "BackupTTLSeconds = 3600\n\n"
    "[Stores]\n"
    "HubStore = store-1\n"
    "SatelliteStore = store-2\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    app_name: str


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyDocumentStore(InMemoryDocumentStore):
    """In-memory store whose writes to selected collections fail a set number of times.

    With ``write_before_failing`` the document is stored before the error is
    raised, which models a write that landed but whose acknowledgment was
    lost.
    """

    def __init__(
        self,
        failures: int,
        error_factory: Callable[[], Exception] = lambda: TransientStorageError("network connection lost"),
        *,
        collections: Iterable[str] = ("stock_entries", "orders"),
        write_before_failing: bool = False,
    ) -> None:
        super().__init__()
        self.failures = failures
        self.error_factory = error_factory
        self.collections = set(collections)
        self.write_before_failing = write_before_failing
        self.put_attempts: List[str] = []

    def put(self, collection, doc_id, document):
        if collection not in self.collections:
            return super().put(collection, doc_id, document)
        self.put_attempts.append(doc_id)
        if self.failures > 0:
            self.failures -= 1
            if self.write_before_failing:
                super().put(collection, doc_id, document)
            raise self.error_factory()
        return super().put(collection, doc_id, document)


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        return create_ledger_workbook(base_dir / filename, overwrite=True)

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        app_name: str = "Test Ledger",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_retries: int = 5,
    ) -> ConfigBundle:
        bundle_id = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_id
        workbook_path = workbook_factory(subdir=bundle_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                app_name=app_name,
                schema_version=schema_version,
                max_retries=max_retries,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            app_name=app_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    try:
        yield context
    finally:
        context.close()


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        app_name="Test Ledger",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        hub_store_id="store-1",
        satellite_store_id="store-2",
    )


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def flaky_store() -> Callable[..., FlakyDocumentStore]:
    """Factory for :class:`FlakyDocumentStore` instances."""

    return FlakyDocumentStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_calls() -> List[float]:
    """Records every backoff delay instead of sleeping."""

    return []


@pytest.fixture
def context_factory(
    settings: data_manager.ConfigSettings,
    sleep_calls: List[float],
    clock: FakeClock,
) -> Callable[..., core_logic.RuntimeContext]:
    """Build runtime contexts around any document store without real sleeps."""

    def _build(store, *, settings_override: data_manager.ConfigSettings | None = None) -> core_logic.RuntimeContext:
        return core_logic.build_runtime_context(
            settings_override or settings,
            store,
            sleep=sleep_calls.append,
            clock=clock,
        )

    return _build


@pytest.fixture
def context(context_factory, document_store: InMemoryDocumentStore) -> core_logic.RuntimeContext:
    """Runtime context over an in-memory document store."""

    return context_factory(document_store)


@pytest.fixture
def staff() -> core_logic.Actor:
    return core_logic.Actor(user_id="counter-1", role=UserRole.STAFF)


@pytest.fixture
def admin() -> core_logic.Actor:
    return core_logic.Actor(user_id="owner", role=UserRole.ADMIN)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec
