"""Persistence boundary for the collection board.

The board controller only ever talks to a :class:`CaseStore`. This module
defines that interface and ships :class:`WorkbookCaseStore`, which keeps the
cases, their audit trail, and their follow-up notes in the Excel workbook
managed by :mod:`collection_board.data_manager`.
"""

from __future__ import annotations

import abc
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, Stage
from .core_logic import (
    CollectionCase,
    FollowUp,
    MissingReferenceError,
    PersistenceError,
    StatusChange,
    resolve_timestamp,
)


class CaseStore(abc.ABC):
    """Asynchronous record store consumed by the board.

    Every method signals failure by raising; a normal return means the store
    accepted the operation.
    """

    @abc.abstractmethod
    async def fetch_all(self) -> List[CollectionCase]:
        """Return every stored case."""

    @abc.abstractmethod
    async def persist(self, case: CollectionCase) -> None:
        """Store the full state of a single case."""

    @abc.abstractmethod
    async def persist_all(self, cases: Sequence[CollectionCase]) -> None:
        """Store every case in one all-or-nothing call."""

    @abc.abstractmethod
    async def remove(self, case_id: str) -> None:
        """Delete a case and everything attached to it."""

    @abc.abstractmethod
    async def append_status_history(
        self,
        case_id: str,
        from_stage: Stage,
        to_stage: Stage,
        actor: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        """Record a stage change: update the case stage and append the audit entry.

        ``changed_at`` is the timestamp of the entry the caller already shows;
        stores fall back to the current UTC time when it is omitted.
        """

    @abc.abstractmethod
    async def repair_missing_follow_ups(self, case_id: str) -> bool:
        """Best-effort fix for cases migrated without follow-up records.

        Returns whether anything was changed.
        """


# ---------------------------------------------------------------------------
# Workbook runtime context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references."""

    settings: data_manager.ConfigSettings
    workbook: Workbook


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` declares the schema this code expects.

    Raises:
        RuntimeError: If the versions differ.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved modifications.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------


def _parse_stage(raw: str, *, case_id: str) -> Stage:
    try:
        return Stage(raw)
    except ValueError:
        log.warning("Unknown stage '%s' for case '%s'; treating as overdue", raw, case_id)
        return Stage.OVERDUE


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        log.warning("Unparseable timestamp '%s' in workbook", raw)
        return datetime.fromtimestamp(0, UTC)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def build_case(
    row: data_manager.CaseRow,
    history: Iterable[data_manager.StatusChangeRow] = (),
    follow_ups: Iterable[data_manager.FollowUpRow] = (),
) -> CollectionCase:
    """Assemble a :class:`CollectionCase` from its workbook rows."""

    return CollectionCase(
        case_id=row.case_id,
        name=row.name,
        amount=row.amount,
        due_date=row.due_date,
        stage=_parse_stage(row.stage, case_id=row.case_id),
        days_overdue=row.days_overdue,
        course=row.course,
        email=row.email,
        phone=row.phone,
        status_history=tuple(
            StatusChange(
                from_stage=_parse_stage(entry.from_stage, case_id=row.case_id),
                to_stage=_parse_stage(entry.to_stage, case_id=row.case_id),
                changed_by=entry.changed_by,
                changed_at=_parse_timestamp(entry.changed_at_iso),
            )
            for entry in history
        ),
        follow_ups=tuple(
            FollowUp(
                follow_up_id=note.follow_up_id,
                content=note.content,
                created_by=note.created_by,
                created_at=_parse_timestamp(note.created_at_iso) if note.created_at_iso else None,
            )
            for note in follow_ups
        ),
        legacy_follow_up=row.legacy_follow_up,
        notes=row.notes,
        payment_date=row.payment_date,
        created_by=row.created_by,
        month=row.month,
        first_contact=row.first_contact,
        last_contact=row.last_contact,
    )


def case_to_row(case: CollectionCase) -> data_manager.CaseRow:
    """Flatten a case into its ``Cases`` sheet row."""

    return data_manager.CaseRow(
        case_id=case.case_id,
        name=case.name,
        course=case.course,
        email=case.email,
        phone=case.phone,
        amount=case.amount,
        due_date=case.due_date,
        days_overdue=case.days_overdue,
        stage=case.stage.value,
        legacy_follow_up=case.legacy_follow_up,
        notes=case.notes,
        payment_date=case.payment_date,
        created_by=case.created_by,
        month=case.month,
        first_contact=case.first_contact,
        last_contact=case.last_contact,
    )


def history_to_rows(case: CollectionCase) -> List[data_manager.StatusChangeRow]:
    return [
        data_manager.StatusChangeRow(
            case_id=case.case_id,
            from_stage=entry.from_stage.value,
            to_stage=entry.to_stage.value,
            changed_by=entry.changed_by,
            changed_at_iso=entry.changed_at.isoformat(),
        )
        for entry in case.status_history
    ]


def follow_ups_to_rows(case: CollectionCase) -> List[data_manager.FollowUpRow]:
    return [
        data_manager.FollowUpRow(
            follow_up_id=note.follow_up_id,
            case_id=case.case_id,
            content=note.content,
            created_by=note.created_by,
            created_at_iso=note.created_at.isoformat() if note.created_at else "",
        )
        for note in case.follow_ups
    ]


# ---------------------------------------------------------------------------
# Workbook-backed store
# ---------------------------------------------------------------------------


class WorkbookCaseStore(CaseStore):
    """:class:`CaseStore` that keeps everything in the board workbook.

    With ``autosave`` enabled (the default) every successful mutation is
    written to disk immediately; otherwise callers decide when to call
    :func:`persist_context`.

    Each mutation edits the in-memory workbook and then commits. If either
    step fails under ``autosave``, the workbook is reloaded from disk so a
    rejected change can never ride along with a later save.
    """

    def __init__(self, context: RuntimeContext, *, autosave: bool = True) -> None:
        self.context = context
        self.autosave = autosave

    @property
    def workbook(self) -> Workbook:
        return self.context.workbook

    def _commit(self) -> None:
        if self.autosave:
            persist_context(self.context)

    def _restore(self) -> None:
        if not self.autosave:
            log.warning("Workbook edits for '%s' were not rolled back (autosave is off)", self.context.settings.data_file)
            return
        try:
            self.context = refresh_context(self.context)
        except OSError:
            log.exception("Unable to reload workbook '%s' after a failed write", self.context.settings.data_file)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[None]:
        """Apply the edits made in the ``with`` block and commit them, or undo them."""

        try:
            yield
            self._commit()
        except (KeyError, OSError) as exc:
            log.error("Unable to %s: %s", action, exc)
            self._restore()
            raise PersistenceError(f"Unable to {action}: {exc}") from exc

    def _write_case(self, case: CollectionCase) -> None:
        data_manager.replace_case_row(self.workbook, case_to_row(case))
        data_manager.delete_rows_for_case(self.workbook, data_manager.STATUS_HISTORY_SHEET, case.case_id)
        for entry in history_to_rows(case):
            data_manager.append_status_change(self.workbook, entry)
        data_manager.delete_rows_for_case(self.workbook, data_manager.FOLLOW_UPS_SHEET, case.case_id)
        for note in follow_ups_to_rows(case):
            data_manager.append_follow_up(self.workbook, note)

    def _require_case(self, case_id: str) -> None:
        if data_manager.locate_row(self.workbook, data_manager.CASES_SHEET, "CaseID", case_id) is None:
            raise MissingReferenceError(f"Unknown case id: {case_id}")

    async def fetch_all(self) -> List[CollectionCase]:
        try:
            history: Dict[str, List[data_manager.StatusChangeRow]] = defaultdict(list)
            for entry in data_manager.iter_status_history(self.workbook):
                history[entry.case_id].append(entry)
            notes: Dict[str, List[data_manager.FollowUpRow]] = defaultdict(list)
            for note in data_manager.iter_follow_ups(self.workbook):
                notes[note.case_id].append(note)
            cases = [
                build_case(row, history.get(row.case_id, ()), notes.get(row.case_id, ()))
                for row in data_manager.iter_cases(self.workbook)
            ]
        except (KeyError, ValueError) as exc:
            raise PersistenceError(f"Unable to read cases: {exc}") from exc
        log.debug("Fetched %d cases from workbook", len(cases))
        return cases

    async def persist(self, case: CollectionCase) -> None:
        with self._transaction(f"persist case '{case.case_id}'"):
            self._write_case(case)
        log.info("Persisted case '%s'", case.case_id)

    async def persist_all(self, cases: Sequence[CollectionCase]) -> None:
        with self._transaction(f"persist {len(cases)} cases"):
            for case in cases:
                self._write_case(case)
        log.info("Persisted %d cases", len(cases))

    async def remove(self, case_id: str) -> None:
        self._require_case(case_id)
        with self._transaction(f"delete case '{case_id}'"):
            for sheet_name in (
                data_manager.CASES_SHEET,
                data_manager.STATUS_HISTORY_SHEET,
                data_manager.FOLLOW_UPS_SHEET,
            ):
                data_manager.delete_rows_for_case(self.workbook, sheet_name, case_id)
        log.info("Deleted case '%s'", case_id)

    async def append_status_history(
        self,
        case_id: str,
        from_stage: Stage,
        to_stage: Stage,
        actor: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        self._require_case(case_id)
        with self._transaction(f"record stage change for '{case_id}'"):
            data_manager.update_case_row(self.workbook, case_id, field_values={"Stage": to_stage.value})
            data_manager.append_status_change(
                self.workbook,
                data_manager.StatusChangeRow(
                    case_id=case_id,
                    from_stage=from_stage.value,
                    to_stage=to_stage.value,
                    changed_by=actor,
                    changed_at_iso=resolve_timestamp(changed_at).isoformat(),
                ),
            )
        log.info("Recorded stage change for case '%s': %s -> %s by %s", case_id, from_stage.value, to_stage.value, actor)

    async def repair_missing_follow_ups(self, case_id: str) -> bool:
        """Recover follow-ups lost in migration for ``case_id``.

        Rows whose ``CaseID`` Excel turned into a number are re-keyed first;
        failing that, a non-blank legacy follow-up column becomes a record.
        """

        row = next((row for row in data_manager.iter_cases(self.workbook) if row.case_id == case_id), None)
        if row is None:
            log.warning("Follow-up repair requested for unknown case '%s'", case_id)
            return False
        keys = [note.case_id for note in data_manager.iter_follow_ups(self.workbook)]
        if case_id in keys:
            return False
        legacy = row.legacy_follow_up.strip()
        if not legacy and all(data_manager.normalise_case_id(key) != case_id for key in keys):
            return False

        with self._transaction(f"save repaired follow-ups for '{case_id}'"):
            rekeyed = data_manager.rekey_follow_ups(self.workbook, case_id)
            if rekeyed:
                log.info("Re-keyed %d follow-up row(s) for case '%s'", rekeyed, case_id)
            else:
                data_manager.append_follow_up(
                    self.workbook,
                    data_manager.FollowUpRow(
                        follow_up_id=uuid.uuid4().hex,
                        case_id=case_id,
                        content=legacy,
                        created_by=row.created_by,
                        created_at_iso=resolve_timestamp(None).isoformat(),
                    ),
                )
                log.info("Converted legacy follow-up into a follow-up record for case '%s'", case_id)
        return True
