"""Create the Kadaele POS store workbook named in ``config.ini``.

Run it once per till (``python setup_excel.py --with-sample-goods``) before
using the ``kadaele-pos`` command. Tests import :func:`create_store_workbook`
to build throwaway stores.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence, Tuple
import sys

from openpyxl.styles import Font

from kadaele_pos import data_manager
from kadaele_pos.constants import EXPECTED_SCHEMA_VERSION, CollectionKey

# Starter catalogue: (name, price, category)
SAMPLE_GOODS: Sequence[Tuple[str, str, str]] = (
    ("Rice (1kg)", "50", "Grains"),
    ("Sugar (1kg)", "80", "Groceries"),
    ("Cooking Oil (1L)", "120", "Cooking"),
    ("Bread", "30", "Bakery"),
    ("Milk (1L)", "60", "Dairy"),
    ("Eggs (12pcs)", "90", "Dairy"),
    ("Soap", "25", "Personal Care"),
    ("Toothpaste", "45", "Personal Care"),
)

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    schema_version: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config file's
    directory, exactly as the ledger resolves them at runtime.
    """

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return SetupSettings(data_file=settings.data_file, schema_version=settings.schema_version)


def sample_goods(created_at: Optional[str] = None) -> list[data_manager.GoodRow]:
    """Return :data:`SAMPLE_GOODS` as catalogue rows with ids ``G001``..``G008``."""

    created_at = created_at or data_manager.to_iso(data_manager.utc_now())
    return [
        data_manager.GoodRow(
            good_id=f"G{index:03d}",
            name=name,
            price=Decimal(price),
            category=category,
            created_at=created_at,
        )
        for index, (name, price, category) in enumerate(SAMPLE_GOODS, start=1)
    ]


def create_store_workbook(
    destination: Path,
    *,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
    overwrite: bool = False,
    with_sample_goods: bool = False,
) -> Path:
    """Create the Kadaele POS store workbook at ``destination``.

    Every managed sheet is created with a bold header row and the ``Meta``
    sheet records ``schema_version``. When ``overwrite`` is ``False`` (the
    default) this function raises ``FileExistsError`` if the target already
    exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    workbook = data_manager.create_workbook(schema_version)

    bold_font = Font(bold=True)
    for worksheet in workbook.worksheets:
        for cell in worksheet[1]:
            cell.font = bold_font

    if with_sample_goods:
        data_manager.write_collection(workbook, CollectionKey.GOODS, sample_goods())

    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, with_sample_goods: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_store_workbook(
        settings.data_file,
        schema_version=settings.schema_version,
        overwrite=overwrite,
        with_sample_goods=with_sample_goods,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Kadaele POS store workbook")
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
        "--with-sample-goods",
        action="store_true",
        help="Seed the catalogue with a starter set of goods.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Kadaele POS Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(
            config_path,
            overwrite=args.force,
            with_sample_goods=args.with_sample_goods,
        )
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
