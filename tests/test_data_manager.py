"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from collection_board import data_manager
from conftest import make_row


@pytest.fixture
def board_workbook_path(workbook_factory) -> Path:
    return workbook_factory(subdir="dal", seed_cases=[make_row("C1"), make_row("C2", stage="sent")])


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk upward from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=collection_board.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)

    assert parser.get("System", "BoardName") == "Test Board"
    assert parser.get("Defaults", "DefaultActor") == "alice"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, default_role="admin")
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.board_name == "Test Board"
    assert settings.default_role == "admin"


def test_parse_settings_defaults_section_is_optional(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=/data/board.xlsx\nBoardName=B\nSchemaVersion=1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.default_actor == ""
    assert settings.default_role == "user"


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=board.xlsx")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(board_workbook_path):
    assert isinstance(data_manager.open_workbook(board_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(board_workbook_path, tmp_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    data_manager.append_case(workbook, make_row("C3"))
    copy_path = tmp_path / "copies" / "copy.xlsx"

    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    ids = [row[0] for row in copy[data_manager.CASES_SHEET].iter_rows(min_row=2, values_only=True)]
    assert ids == ["C1", "C2", "C3"]


def test_refresh_workbook_discards_unsaved_changes(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    data_manager.append_case(workbook, make_row("C3"))

    refreshed = data_manager.refresh_workbook(board_workbook_path)

    assert refreshed is not workbook
    assert [row.case_id for row in data_manager.iter_cases(refreshed)] == ["C1", "C2"]


def test_iter_cases_yields_typed_rows(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)

    rows = list(data_manager.iter_cases(workbook))

    assert [row.case_id for row in rows] == ["C1", "C2"]
    assert rows[0].amount == Decimal("150.00")
    assert rows[1].stage == "sent"
    assert rows[0].email is None


def test_iter_cases_skips_blank_rows(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    sheet = workbook[data_manager.CASES_SHEET]
    sheet.append([None] * len(data_manager.CASE_COLUMNS))
    data_manager.append_case(workbook, make_row("C3"))

    assert [row.case_id for row in data_manager.iter_cases(workbook)] == ["C1", "C2", "C3"]


def test_append_status_change_and_follow_up(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    data_manager.append_status_change(
        workbook,
        data_manager.StatusChangeRow("C1", "overdue", "sent", "alice", "2024-03-15T12:00:00+00:00"),
    )
    data_manager.append_follow_up(
        workbook,
        data_manager.FollowUpRow("F1", "C1", "Sent a reminder", "alice", "2024-03-14T09:00:00+00:00"),
    )

    history = list(data_manager.iter_status_history(workbook))
    notes = list(data_manager.iter_follow_ups(workbook))

    assert history == [data_manager.StatusChangeRow("C1", "overdue", "sent", "alice", "2024-03-15T12:00:00+00:00")]
    assert notes[0].content == "Sent a reminder"


def test_update_case_row_modifies_selected_columns(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)

    data_manager.update_case_row(workbook, "C2", field_values={"Stage": "replied", "Notes": "called"})

    row = next(row for row in data_manager.iter_cases(workbook) if row.case_id == "C2")
    assert (row.stage, row.notes, row.name) == ("replied", "called", "Student C2")


def test_update_case_row_missing_case_raises(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_case_row(workbook, "nope", field_values={"Stage": "sent"})


def test_update_case_row_unknown_column_raises(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_case_row(workbook, "C1", field_values={"Colour": "red"})


def test_replace_case_row_overwrites_or_appends(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)

    data_manager.replace_case_row(workbook, make_row("C1", name="Renamed"))
    data_manager.replace_case_row(workbook, make_row("C9"))

    rows = {row.case_id: row for row in data_manager.iter_cases(workbook)}
    assert list(rows) == ["C1", "C2", "C9"]
    assert rows["C1"].name == "Renamed"


def test_delete_rows_for_case_removes_every_match(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    for note_id in ("F1", "F2"):
        data_manager.append_follow_up(workbook, data_manager.FollowUpRow(note_id, "C1", "x", None, ""))
    data_manager.append_follow_up(workbook, data_manager.FollowUpRow("F3", "C2", "y", None, ""))

    removed = data_manager.delete_rows_for_case(workbook, data_manager.FOLLOW_UPS_SHEET, "C1")

    assert removed == 2
    assert [note.follow_up_id for note in data_manager.iter_follow_ups(workbook)] == ["F3"]


def test_locate_row_compares_identifiers_as_text(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    workbook[data_manager.CASES_SHEET].append([1001, "Numeric"])

    assert data_manager.locate_row(workbook, data_manager.CASES_SHEET, "CaseID", "C2") == 3
    assert data_manager.locate_row(workbook, data_manager.CASES_SHEET, "CaseID", "1001") == 4
    assert data_manager.locate_row(workbook, data_manager.CASES_SHEET, "CaseID", "missing") is None


def test_locate_row_unknown_column_raises(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.CASES_SHEET, "Nope", "C1")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(1001.0, "1001"), ("1001.0", "1001"), (" C7 ", "C7"), (42, "42"), ("3.5", "3.5")],
)
def test_normalise_case_id(raw, expected):
    assert data_manager.normalise_case_id(raw) == expected


def test_rekey_follow_ups_rewrites_mangled_ids(board_workbook_path):
    workbook = data_manager.open_workbook(board_workbook_path)
    sheet = workbook[data_manager.FOLLOW_UPS_SHEET]
    sheet.append(["F1", 1001.0, "first", None, ""])
    sheet.append(["F2", "1001", "second", None, ""])
    sheet.append(["F3", "2002", "other", None, ""])

    assert data_manager.rekey_follow_ups(workbook, "1001") == 1
    assert [note.case_id for note in data_manager.iter_follow_ups(workbook)] == ["1001", "1001", "2002"]


def test_deserialize_case_tolerates_short_and_messy_rows():
    row = data_manager.deserialize_case(["C1", "Ana", None, "", None, "abc", "01/02/2024", "x"])

    assert row.amount == Decimal("0.00")
    assert row.days_overdue == 0
    assert row.email is None
    assert row.stage == ""
    assert row.last_contact is None


def test_serialize_case_matches_column_order():
    values = data_manager.serialize_case(make_row("C1", notes="n"))

    assert len(values) == len(data_manager.CASE_COLUMNS)
    assert values[data_manager.CASE_COLUMNS.index("Notes")] == "n"
    assert values[data_manager.CASE_COLUMNS.index("Stage")] == "overdue"
