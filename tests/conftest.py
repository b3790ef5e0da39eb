"""Shared pytest fixtures and utilities for collection board tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator
from unittest.mock import AsyncMock, Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from collection_board import board as board_module, cli, constants, core_logic, data_manager, store  # noqa: E402
from collection_board.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
TODAY = date(2024, 3, 15)
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BoardName = {board_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor}\n"
    "DefaultRole = {default_role}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    board_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


def make_case(case_id: str = "C1", **overrides) -> core_logic.CollectionCase:
    """Build a case with sensible defaults; keyword arguments override fields."""

    values = dict(
        case_id=case_id,
        name=f"Student {case_id}",
        amount=Decimal("150.00"),
        due_date="10/03/2024",
        stage=constants.Stage.OVERDUE,
        created_by="alice",
    )
    values.update(overrides)
    return core_logic.CollectionCase(**values)


def make_row(case_id: str = "C1", **overrides) -> data_manager.CaseRow:
    """Build a ``Cases`` sheet row; keyword arguments override fields."""

    values = dict(
        case_id=case_id,
        name=f"Student {case_id}",
        course="Nursing",
        email=None,
        phone=None,
        amount=Decimal("150.00"),
        due_date="10/03/2024",
        days_overdue=0,
        stage="overdue",
        legacy_follow_up="",
        notes="",
        payment_date=None,
        created_by="alice",
        month="",
        first_contact=None,
        last_contact=None,
    )
    values.update(overrides)
    return data_manager.CaseRow(**values)


def follow_up(note_id: str = "F1", content: str = "Called the student") -> core_logic.FollowUp:
    return core_logic.FollowUp(follow_up_id=note_id, content=content, created_by="alice")


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized board workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        seed_cases: Iterable[data_manager.CaseRow] = (),
        filename: str = "collection_board.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, seed_cases=seed_cases, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        board_name: str = "Test Board",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor: str = "alice",
        default_role: str = "user",
        seed_cases: Iterable[data_manager.CaseRow] = (),
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name, seed_cases=seed_cases)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                board_name=board_name,
                schema_version=schema_version,
                default_actor=default_actor,
                default_role=default_role,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            board_name=board_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> store.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = store.load_runtime_context(config_file)
    store.ensure_schema_version(context)
    return context


@pytest.fixture
def workbook_store(runtime_context: store.RuntimeContext) -> store.WorkbookCaseStore:
    return store.WorkbookCaseStore(runtime_context)


# ---------------------------------------------------------------------------
# Board fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_store() -> Mock:
    """A CaseStore double whose async methods succeed by default."""

    double = Mock(spec=store.CaseStore)
    double.fetch_all = AsyncMock(return_value=[])
    double.persist = AsyncMock(return_value=None)
    double.persist_all = AsyncMock(return_value=None)
    double.remove = AsyncMock(return_value=None)
    double.append_status_history = AsyncMock(return_value=None)
    double.repair_missing_follow_ups = AsyncMock(return_value=False)
    return double


@pytest.fixture
def board_factory(fake_store: Mock) -> Callable[..., board_module.CollectionBoard]:
    """Create a board over ``fake_store`` already synchronised with ``cases``."""

    def _create(*cases: core_logic.CollectionCase, **kwargs) -> board_module.CollectionBoard:
        kwargs.setdefault("today", lambda: TODAY)
        kwargs.setdefault("now", lambda: FIXED_NOW)
        instance = board_module.CollectionBoard(fake_store, **kwargs)
        instance.sync_sources(list(cases))
        return instance

    return _create


@pytest.fixture
def alice() -> core_logic.Actor:
    return core_logic.Actor(name="alice")


@pytest.fixture
def admin() -> core_logic.Actor:
    return core_logic.Actor(name="root", role=constants.Role.ADMIN)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="collection-board", description="Collection board CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    async def _execute(*_):
        return 0

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            _execute,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
