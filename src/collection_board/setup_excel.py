"""Bootstrap an empty collection board workbook.

Run as ``collection-board-setup`` to create the file named by ``config.ini``,
or import :func:`create_master_workbook` to build scratch workbooks in tests.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import log
from .data_manager import (
    CASE_COLUMNS,
    CASES_SHEET,
    FOLLOW_UP_COLUMNS,
    FOLLOW_UPS_SHEET,
    STATUS_HISTORY_COLUMNS,
    STATUS_HISTORY_SHEET,
    CaseRow,
    append_case,
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    CASES_SHEET: CASE_COLUMNS,
    STATUS_HISTORY_SHEET: STATUS_HISTORY_COLUMNS,
    FOLLOW_UPS_SHEET: FOLLOW_UP_COLUMNS,
}

CONFIG_FILE = "config.ini"
MIN_COLUMN_WIDTH = 12


@dataclass(frozen=True)
class SetupSettings:
    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read the ``[System] DataFile`` entry, resolving it next to the config."""

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    if not parser.has_option("System", "DataFile"):
        raise KeyError("Missing required configuration entry: [System] DataFile")

    data_file = Path(parser.get("System", "DataFile"))
    if not data_file.is_absolute():
        data_file = (config_path.parent / data_file).resolve()
    return SetupSettings(data_file=data_file)


def create_master_workbook(
    destination: Path,
    *,
    seed_cases: Iterable[CaseRow] = (),
    overwrite: bool = False,
) -> Path:
    """Write a workbook with one header row per board sheet.

    ``seed_cases`` are appended to the Cases sheet after the headers, which
    lets tests and demos start from a populated board. Raises
    ``FileExistsError`` when ``destination`` exists and ``overwrite`` is off.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing workbook: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    for sheet in list(workbook.worksheets):
        workbook.remove(sheet)

    header_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.append(list(columns))
        for index, column_name in enumerate(columns, start=1):
            worksheet.cell(row=1, column=index).font = header_font
            worksheet.column_dimensions[get_column_letter(index)].width = max(
                MIN_COLUMN_WIDTH, len(column_name) + 2
            )
        worksheet.freeze_panes = "A2"

    seeded = 0
    for row in seed_cases:
        append_case(workbook, row)
        seeded += 1

    workbook.save(destination)
    log.info("Created board workbook at %s with %d seeded case(s)", destination, seeded)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="collection-board-setup",
        description="Create the workbook that backs the collection board.",
    )
    parser.add_argument("--config", default=CONFIG_FILE, help="Path to config.ini (default: %(default)s)")
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``collection-board-setup``."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nRun with --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, OSError) as exc:
        print(f"[ERROR] {exc}")
        return 1

    print(f"[SUCCESS] Board workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
