"""Utility for initializing the stock ledger workbook.

The module doubles as a script (``python -m stock_ledger.setup_workbook``)
and as a library used by tests. It creates one bold-headed worksheet per
collection and seeds the default master catalog.
"""

from __future__ import annotations

import argparse
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable, Sequence

from . import data_manager
from .catalog import MasterCatalog
from .constants import Collection
from .document_store import WorkbookDocumentStore, create_workbook, save_workbook


def create_ledger_workbook(
    destination: Path,
    *,
    collections: Iterable[str] = tuple(item.value for item in Collection),
    seed_catalog: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    Raises ``FileExistsError`` when the target exists and ``overwrite`` is
    ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing ledger workbook: {destination}")

    save_workbook(create_workbook(collections), destination)

    if seed_catalog:
        store = WorkbookDocumentStore(destination)
        data_manager.put_catalog(store, MasterCatalog.default(), updated_at=datetime.now(UTC))

    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_ledger_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the stock ledger workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
