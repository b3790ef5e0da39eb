"""Data access layer for the collection board.

This module provides low-level helpers that read from and write to the
``collection_board.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
CASES_SHEET = SheetName.CASES.value
STATUS_HISTORY_SHEET = SheetName.STATUS_HISTORY.value
FOLLOW_UPS_SHEET = SheetName.FOLLOW_UPS.value

CASE_COLUMNS: tuple[str, ...] = (
    "CaseID",
    "Name",
    "Course",
    "Email",
    "Phone",
    "Amount",
    "DueDate",
    "DaysOverdue",
    "Stage",
    "LegacyFollowUp",
    "Notes",
    "PaymentDate",
    "CreatedBy",
    "Month",
    "FirstContact",
    "LastContact",
)
STATUS_HISTORY_COLUMNS: tuple[str, ...] = (
    "CaseID",
    "FromStage",
    "ToStage",
    "ChangedBy",
    "ChangedAt",
)
FOLLOW_UP_COLUMNS: tuple[str, ...] = (
    "FollowUpID",
    "CaseID",
    "Content",
    "CreatedBy",
    "CreatedAt",
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    board_name: str
    schema_version: str
    default_actor: str
    default_role: str


@dataclass(frozen=True)
class CaseRow:
    """In-memory view of a row from the ``Cases`` sheet."""

    case_id: str
    name: str
    course: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    amount: Decimal
    due_date: str
    days_overdue: int
    stage: str
    legacy_follow_up: str
    notes: str
    payment_date: Optional[str]
    created_by: Optional[str]
    month: str
    first_contact: Optional[str]
    last_contact: Optional[str]


@dataclass(frozen=True)
class StatusChangeRow:
    """In-memory view of a row from the ``StatusHistory`` sheet."""

    case_id: str
    from_stage: str
    to_stage: str
    changed_by: str
    changed_at_iso: str


@dataclass(frozen=True)
class FollowUpRow:
    """In-memory view of a row from the ``FollowUps`` sheet."""

    follow_up_id: str
    case_id: str
    content: str
    created_by: Optional[str]
    created_at_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the working
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``BoardName`` and
    ``SchemaVersion``. The ``[Defaults]`` section is optional; the default
    actor is empty (anonymous) and the default role is ``user`` when omitted.
    Relative ``DataFile`` paths are anchored at ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` entries is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        board_name = parser.get("System", "BoardName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_actor = parser.get("Defaults", "DefaultActor", fallback="")
    default_role = parser.get("Defaults", "DefaultRole", fallback="user")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        board_name=board_name,
        schema_version=schema_version,
        default_actor=default_actor,
        default_role=default_role,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the board workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[tuple[object, ...]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_cases(workbook: Workbook) -> Iterable[CaseRow]:
    """Iterate over the ``Cases`` worksheet and yield typed records.

    Header and completely empty rows are ignored.
    """

    for raw in _iter_sheet(workbook, CASES_SHEET):
        yield deserialize_case(raw)


def iter_status_history(workbook: Workbook) -> Iterable[StatusChangeRow]:
    """Stream audit entries from the ``StatusHistory`` worksheet in sheet order.

    The sheet is append-only, so sheet order is chronological order per case.
    """

    for raw in _iter_sheet(workbook, STATUS_HISTORY_SHEET):
        yield deserialize_status_change(raw)


def iter_follow_ups(workbook: Workbook) -> Iterable[FollowUpRow]:
    """Iterate over follow-up notes stored on the ``FollowUps`` worksheet."""

    for raw in _iter_sheet(workbook, FOLLOW_UPS_SHEET):
        yield deserialize_follow_up(raw)


def append_case(workbook: Workbook, record: CaseRow) -> None:
    """Append a case record to the ``Cases`` worksheet."""

    sheet = workbook[CASES_SHEET]
    sheet.append(serialize_case(record))


def append_status_change(workbook: Workbook, record: StatusChangeRow) -> None:
    """Append an audit entry to the ``StatusHistory`` worksheet."""

    sheet = workbook[STATUS_HISTORY_SHEET]
    sheet.append(serialize_status_change(record))


def append_follow_up(workbook: Workbook, record: FollowUpRow) -> None:
    """Append a follow-up note to the ``FollowUps`` worksheet."""

    sheet = workbook[FOLLOW_UPS_SHEET]
    sheet.append(serialize_follow_up(record))


def _header_map(workbook: Workbook, sheet_name: str) -> dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def update_case_row(workbook: Workbook, case_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing case.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the cases sheet.
        case_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the case or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, CASES_SHEET, "CaseID", case_id)
    if row_index is None:
        raise KeyError(f"Case not found: {case_id}")

    sheet = workbook[CASES_SHEET]
    header_map = _header_map(workbook, CASES_SHEET)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown case field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def replace_case_row(workbook: Workbook, record: CaseRow) -> None:
    """Overwrite every column of an existing case, or append it when new."""

    row_index = locate_row(workbook, CASES_SHEET, "CaseID", record.case_id)
    if row_index is None:
        log.debug("Case '%s' not present in workbook; appending", record.case_id)
        append_case(workbook, record)
        return

    sheet = workbook[CASES_SHEET]
    for column_index, value in enumerate(serialize_case(record), start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def delete_rows_for_case(workbook: Workbook, sheet_name: str, case_id: str) -> int:
    """Remove every row of ``sheet_name`` whose ``CaseID`` equals ``case_id``.

    Rows are removed bottom-up so earlier indices stay valid.

    Returns:
        int: Number of rows removed.

    Raises:
        KeyError: If the sheet has no ``CaseID`` column.
    """

    header_map = _header_map(workbook, sheet_name)
    if "CaseID" not in header_map:
        raise KeyError("Unknown column: CaseID")
    key_col_index = header_map["CaseID"]

    sheet = workbook[sheet_name]
    matches = [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == case_id
    ]
    for row_idx in reversed(matches):
        sheet.delete_rows(row_idx)
    return len(matches)


def normalise_case_id(value: object) -> str:
    """Canonical text form of a ``CaseID`` cell.

    Excel stores numeric-looking identifiers as floats, so ``1001`` typed into
    a cell can come back as ``1001.0``.
    """

    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        return text[:-2]
    return text


def rekey_follow_ups(workbook: Workbook, case_id: str) -> int:
    """Point follow-up rows with a mangled ``CaseID`` back at ``case_id``.

    Returns:
        int: Number of rows rewritten.
    """

    header_map = _header_map(workbook, FOLLOW_UPS_SHEET)
    key_col_index = header_map["CaseID"]
    sheet = workbook[FOLLOW_UPS_SHEET]
    rewritten = 0
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        raw = row[key_col_index - 1]
        if raw is None or str(raw) == case_id:
            continue
        if normalise_case_id(raw) == case_id:
            sheet.cell(row=row_idx, column=key_col_index, value=case_id)
            rewritten += 1
    return rewritten


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Cell values are compared as strings because Excel happily turns numeric
    looking identifiers into numbers.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_case(record: CaseRow) -> list[object]:
    """Convert a case dataclass into the ``Cases`` column ordering."""

    return [
        record.case_id,
        record.name,
        record.course,
        record.email,
        record.phone,
        record.amount,
        record.due_date,
        record.days_overdue,
        record.stage,
        record.legacy_follow_up,
        record.notes,
        record.payment_date,
        record.created_by,
        record.month,
        record.first_contact,
        record.last_contact,
    ]


def serialize_status_change(record: StatusChangeRow) -> list[object]:
    """Convert an audit entry into the ``StatusHistory`` column ordering."""

    return [
        record.case_id,
        record.from_stage,
        record.to_stage,
        record.changed_by,
        record.changed_at_iso,
    ]


def serialize_follow_up(record: FollowUpRow) -> list[object]:
    """Convert a follow-up note into the ``FollowUps`` column ordering."""

    return [
        record.follow_up_id,
        record.case_id,
        record.content,
        record.created_by,
        record.created_at_iso,
    ]


def _optional_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def _decimal_or_zero(value: object) -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        log.warning("Unparseable amount '%s' in workbook; defaulting to 0", value)
        return Decimal("0.00")


def _int_or_zero(value: object) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        log.warning("Unparseable day count '%s' in workbook; defaulting to 0", value)
        return 0


def deserialize_case(raw_row: Sequence[object]) -> CaseRow:
    """Convert a raw worksheet row into a strongly typed case record.

    Identifiers and dates are coerced to ``str`` to avoid surprises caused by
    Excel interpreting them as numbers, the amount becomes a
    :class:`~decimal.Decimal`, and missing trailing cells are tolerated.

    Args:
        raw_row (Sequence[object]): Raw cell values in ``CASE_COLUMNS`` order.

    Returns:
        CaseRow: Dataclass reflecting the row contents.
    """

    padded = list(raw_row) + [None] * (len(CASE_COLUMNS) - len(raw_row))
    (
        case_id,
        name,
        course,
        email,
        phone,
        amount_raw,
        due_date,
        days_overdue_raw,
        stage,
        legacy_follow_up,
        notes,
        payment_date,
        created_by,
        month,
        first_contact,
        last_contact,
    ) = padded[: len(CASE_COLUMNS)]

    return CaseRow(
        case_id=str(case_id),
        name=str(name) if name is not None else "",
        course=_optional_text(course),
        email=_optional_text(email),
        phone=_optional_text(phone),
        amount=_decimal_or_zero(amount_raw),
        due_date=str(due_date) if due_date is not None else "",
        days_overdue=_int_or_zero(days_overdue_raw),
        stage=str(stage) if stage is not None else "",
        legacy_follow_up=str(legacy_follow_up) if legacy_follow_up is not None else "",
        notes=str(notes) if notes is not None else "",
        payment_date=_optional_text(payment_date),
        created_by=_optional_text(created_by),
        month=str(month) if month is not None else "",
        first_contact=_optional_text(first_contact),
        last_contact=_optional_text(last_contact),
    )


def deserialize_status_change(raw_row: Sequence[object]) -> StatusChangeRow:
    """Convert a raw worksheet row into a typed audit entry."""

    case_id, from_stage, to_stage, changed_by, changed_at = raw_row[:5]
    return StatusChangeRow(
        case_id=str(case_id),
        from_stage=str(from_stage) if from_stage is not None else "",
        to_stage=str(to_stage) if to_stage is not None else "",
        changed_by=str(changed_by) if changed_by is not None else "",
        changed_at_iso=str(changed_at) if changed_at is not None else "",
    )


def deserialize_follow_up(raw_row: Sequence[object]) -> FollowUpRow:
    """Convert a raw worksheet row into a typed follow-up note."""

    follow_up_id, case_id, content, created_by, created_at = raw_row[:5]
    return FollowUpRow(
        follow_up_id=str(follow_up_id),
        case_id=str(case_id),
        content=str(content) if content is not None else "",
        created_by=_optional_text(created_by),
        created_at_iso=str(created_at) if created_at is not None else "",
    )
