"""Utility for initializing the cylinder ledger master workbook.

The module doubles as a script (``cylinder-ledger-setup``) and as a library
used by tests. Sheet layouts come from :data:`data_manager.ENTITY_SCHEMAS`
so the bootstrap and the store always agree on column order.
"""

from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import DEFAULT_BASE_PRICES, CylinderSize, Entity, GasType

CONFIG_FILE = "config.ini"


def default_price_rows(
    prices: Mapping[GasType, Mapping[CylinderSize, Decimal]] = DEFAULT_BASE_PRICES,
) -> list[data_manager.BasePriceRow]:
    """Flatten the seed price table into base price rows with stable ids."""

    rows = []
    for gas, by_size in prices.items():
        for size, price in by_size.items():
            rows.append(
                data_manager.BasePriceRow(
                    price_id=f"BP-{gas.name}-{size.value}",
                    gas_type=gas.value,
                    size=size.value,
                    price=price,
                )
            )
    return rows


def create_master_workbook(
    destination: Path,
    *,
    seed_prices: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    One sheet per entity is created with a bold header row. When
    ``seed_prices`` is set the base price sheet is filled from the default
    price list. Raises ``FileExistsError`` if the target exists and
    ``overwrite`` is ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for entity, schema in data_manager.ENTITY_SCHEMAS.items():
        worksheet = workbook.create_sheet(title=entity.value)
        for column_index, column_name in enumerate(schema.columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if seed_prices:
        data_manager.insert_rows(workbook, Entity.BASE_PRICES, default_price_rows())

    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, seed_prices: bool = True, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        seed_prices=seed_prices,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the cylinder ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--no-prices",
        action="store_true",
        help="Leave the base price sheet empty.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Cylinder Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, seed_prices=not args.no_prices, overwrite=args.force)
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
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
