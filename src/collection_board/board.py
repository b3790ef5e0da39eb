"""Stateful board controller.

:class:`CollectionBoard` owns the session's working copy of every case. Each
mutator follows the same saga: check the rules, apply the change to the
working copy immediately, tell listeners, persist through the
:class:`~collection_board.store.CaseStore`, and put the last authoritative
version back if the store fails. Mutators never raise; they return an
:class:`Outcome` that the presentation layer turns into a message.

All entry points are expected to run on a single event loop. The only
concurrency control is a per-case in-flight set: while an operation on case
``X`` is outstanding, a second one on ``X`` is ignored, and operations on
other cases proceed normally.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from . import log
from .constants import PREVIOUS_STAGE, STAGE_TITLES, DenialReason, Stage
from .core_logic import (
    Actor,
    CollectionCase,
    DaysOverdueCalculator,
    PeriodFilter,
    StageView,
    TransitionPolicy,
    can_edit_case_data,
    can_edit_notes,
    check_return,
    filter_payments_for_period,
    group_by_stage,
    record_stage_change,
    resolve_maybe_awaitable,
    resolve_timestamp,
    validate_case_fields,
)
from .store import CaseStore


class OutcomeKind(str, Enum):
    """Enumerate the user-facing results of a board operation."""

    SUCCESS = "success"
    DENIED = "denied"
    FAILED = "failed"
    INFO = "info"
    IGNORED = "ignored"


@dataclass(frozen=True)
class Outcome:
    """Result of a board operation, ready to be shown to the user."""

    kind: OutcomeKind
    message: str
    description: str = ""
    reason: Optional[DenialReason] = None
    case: Optional[CollectionCase] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


DENIAL_MESSAGES: Dict[DenialReason, tuple[str, str]] = {
    DenialReason.MISSING_FOLLOW_UP: (
        "At least one follow-up is required to move this case",
        "Open the case details and add a follow-up before moving it to the next stage.",
    ),
    DenialReason.RETRY_AFTER_REPAIR: (
        "Follow-ups were repaired automatically",
        "Try moving the case again.",
    ),
    DenialReason.MISSING_PAYMENT_DATE: (
        "Payment date is required",
        "Fill in the payment date in the case details before moving it to Payment Made.",
    ),
    DenialReason.NOT_FOUND: (
        "Case not found",
        "Could not find the case to update.",
    ),
    DenialReason.INVALID_TRANSITION: (
        "Invalid stage transition",
        "Cases move forward one stage at a time.",
    ),
    DenialReason.ALREADY_FIRST_STAGE: (
        "Case is already at the first stage",
        "It is not possible to go back any further.",
    ),
    DenialReason.PERMISSION_DENIED: (
        "You are not allowed to edit this case",
        "Only the creator of the case or an administrator may change it.",
    ),
    DenialReason.INVALID_DATA: (
        "Case data is invalid",
        "",
    ),
}

RETRY_HINT = "Check your connection and try again."

ChangeListener = Callable[[CollectionCase], None]
RemovalListener = Callable[[str], None]

_DATA_FIELDS = ("name", "amount", "due_date", "course", "email", "phone")


def _denied(reason: DenialReason, *, case: Optional[CollectionCase] = None, description: Optional[str] = None) -> Outcome:
    message, default_description = DENIAL_MESSAGES[reason]
    return Outcome(
        kind=OutcomeKind.DENIED,
        message=message,
        description=default_description if description is None else description,
        reason=reason,
        case=case,
    )


def _ensure_unique_ids(cases: Sequence[CollectionCase], label: str) -> None:
    seen: Set[str] = set()
    for case in cases:
        if case.case_id in seen:
            raise ValueError(f"Duplicate case id in {label}: {case.case_id}")
        seen.add(case.case_id)


class CollectionBoard:
    """Working-set owner for the collection pipeline board.

    Args:
        store: Persistence collaborator.
        policy: Forward-transition gate; defaults to a policy whose repair step
            is ``store.repair_missing_follow_ups``.
        period_filter: ``(cases, period_key) -> cases`` collaborator, sync or
            async, used for the terminal column.
        today: Clock returning the current calendar date.
        now: Clock returning the timestamp written to audit entries.
    """

    def __init__(
        self,
        store: CaseStore,
        *,
        policy: Optional[TransitionPolicy] = None,
        period_filter: PeriodFilter = filter_payments_for_period,
        today: Callable[[], date] = date.today,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.policy = policy if policy is not None else TransitionPolicy(repair=store.repair_missing_follow_ups)
        self._period_filter = period_filter
        self._today = today
        self._now = now
        self._authoritative: Dict[str, CollectionCase] = {}
        self._working: Dict[str, CollectionCase] = {}
        self._calculator: Optional[DaysOverdueCalculator] = None
        self._in_flight: Set[str] = set()
        self._period_key: Optional[str] = None
        self._period_ids: Optional[frozenset[str]] = None
        self._change_listeners: List[ChangeListener] = []
        self._removal_listeners: List[RemovalListener] = []
        self.has_changes = False
        self.is_saving = False

    # ------------------------------------------------------------------
    # Inputs and observers
    # ------------------------------------------------------------------

    def add_listener(
        self,
        on_changed: Optional[ChangeListener] = None,
        on_removed: Optional[RemovalListener] = None,
    ) -> None:
        """Subscribe to optimistic updates, rollbacks, and confirmed removals."""

        if on_changed is not None:
            self._change_listeners.append(on_changed)
        if on_removed is not None:
            self._removal_listeners.append(on_removed)

    def sync_sources(
        self,
        cases: Sequence[CollectionCase],
        filtered_cases: Optional[Sequence[CollectionCase]] = None,
        *,
        is_filtered: bool = False,
    ) -> None:
        """Replace the authoritative list and rebuild the working set wholesale.

        When ``is_filtered`` is set and ``filtered_cases`` is given, the working
        set is the filtered list; otherwise it is the full list. Derived fields
        are recomputed with the calculator for the current day.

        Raises:
            ValueError: If either list repeats a case id.
        """

        _ensure_unique_ids(cases, "source list")
        source = cases
        if is_filtered and filtered_cases is not None:
            _ensure_unique_ids(filtered_cases, "filtered list")
            source = filtered_cases

        calculator = self._calculator_for_today()
        self._authoritative = {case.case_id: case for case in cases}
        self._working = {case.case_id: calculator.apply(case) for case in source}
        if self._working:
            self.has_changes = True
        log.info("Working set synchronised: %d of %d cases", len(self._working), len(self._authoritative))

    async def load(self) -> None:
        """Fetch every case from the store and make it the working set."""

        cases = await self.store.fetch_all()
        self.sync_sources(cases)
        await self.refresh_period()

    async def apply_period(self, period_key: Optional[str]) -> None:
        """Activate (or clear, with ``None``) the period filter for paid cases."""

        self._period_key = period_key
        await self.refresh_period()

    async def refresh_period(self) -> None:
        """Re-run the period filter over the current working set."""

        if self._period_key is None:
            self._period_ids = None
            return
        try:
            selected = await resolve_maybe_awaitable(
                self._period_filter(list(self._working.values()), self._period_key)
            )
        except Exception:
            log.exception("Period filter failed for '%s'; showing every payment", self._period_key)
            self._period_ids = None
            return
        self._period_ids = frozenset(case.case_id for case in selected)
        log.info("Period filter '%s' matched %d payments", self._period_key, len(self._period_ids))

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def period_key(self) -> Optional[str]:
        return self._period_key

    def cases(self) -> List[CollectionCase]:
        """Return the working set in display order."""

        return list(self._working.values())

    def get(self, case_id: str) -> Optional[CollectionCase]:
        return self._working.get(case_id)

    def is_busy(self, case_id: str) -> bool:
        return case_id in self._in_flight

    def view(self) -> StageView:
        """Group the working set into columns, period-filtering the paid one."""

        return group_by_stage(
            self._working.values(),
            period_ids=self._period_ids,
            total_count=len(self._authoritative),
        )

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def request_transition(self, case_id: str, target: Union[Stage, str], actor: Actor) -> Outcome:
        """Move a case forward one stage after the transition policy allows it."""

        if not self._acquire(case_id):
            return self._ignored(case_id)
        try:
            try:
                target = Stage(target)
            except ValueError:
                log.info("Rejected unknown target stage '%s' for case '%s'", target, case_id)
                return _denied(DenialReason.INVALID_TRANSITION)

            case = self._working.get(case_id)
            if case is None:
                log.warning("Transition requested for unknown case '%s'", case_id)
                return _denied(DenialReason.NOT_FOUND)

            snapshot = self._authoritative.get(case_id, case)
            decision = await self.policy.evaluate(case, target)
            if not decision.allowed:
                reason = decision.reason or DenialReason.INVALID_TRANSITION
                log.info("Transition of case '%s' to '%s' denied: %s", case_id, target.value, reason.value)
                if reason == DenialReason.RETRY_AFTER_REPAIR:
                    case = await self._reload_case(case_id) or case
                return _denied(reason, case=case)

            updated = record_stage_change(case, target, actor, when=self._timestamp())
            return await self._run_optimistic(
                snapshot,
                updated,
                lambda: self.store.append_status_history(
                    case_id,
                    case.stage,
                    target,
                    actor.display_name,
                    changed_at=updated.status_history[-1].changed_at,
                ),
                success=Outcome(
                    kind=OutcomeKind.SUCCESS,
                    message="Case moved successfully",
                    description=f"{case.name} was moved to {STAGE_TITLES[target]}",
                ),
                failure_message="Error moving the case",
            )
        except Exception:
            log.exception("Unexpected error while moving case '%s'", case_id)
            return Outcome(kind=OutcomeKind.FAILED, message="Error moving the case", description=RETRY_HINT)
        finally:
            self._release(case_id)

    async def return_to_previous(self, case_id: str, actor: Actor) -> Outcome:
        """Move a case back one stage; the forward rules do not apply."""

        if not self._acquire(case_id):
            return self._ignored(case_id)
        try:
            case = self._working.get(case_id)
            if case is None:
                log.warning("Return requested for unknown case '%s'", case_id)
                return _denied(DenialReason.NOT_FOUND)

            decision = check_return(case)
            if not decision.allowed:
                message, description = DENIAL_MESSAGES[DenialReason.ALREADY_FIRST_STAGE]
                return Outcome(
                    kind=OutcomeKind.INFO,
                    message=message,
                    description=description,
                    reason=DenialReason.ALREADY_FIRST_STAGE,
                    case=case,
                )

            snapshot = self._authoritative.get(case_id, case)
            previous = PREVIOUS_STAGE[case.stage]
            updated = record_stage_change(case, previous, actor, when=self._timestamp())
            return await self._run_optimistic(
                snapshot,
                updated,
                lambda: self.store.append_status_history(
                    case_id,
                    case.stage,
                    previous,
                    actor.display_name,
                    changed_at=updated.status_history[-1].changed_at,
                ),
                success=Outcome(
                    kind=OutcomeKind.SUCCESS,
                    message="Case returned successfully",
                    description=f"{case.name} was moved to {STAGE_TITLES[previous]}",
                ),
                failure_message="Error moving the case",
            )
        except Exception:
            log.exception("Unexpected error while returning case '%s'", case_id)
            return Outcome(kind=OutcomeKind.FAILED, message="Error moving the case", description=RETRY_HINT)
        finally:
            self._release(case_id)

    async def update_case(self, updated: CollectionCase, actor: Actor) -> Outcome:
        """Replace a case with a free-form edit from the details view.

        Stage and audit trail are owned by the transition operations, so any
        values supplied for them are ignored.
        """

        case_id = updated.case_id
        if not self._acquire(case_id):
            return self._ignored(case_id)
        try:
            current = self._working.get(case_id)
            if current is None:
                log.warning("Update requested for unknown case '%s'", case_id)
                return _denied(DenialReason.NOT_FOUND)

            if updated.notes != current.notes and not can_edit_notes(current, actor):
                log.info("User '%s' may not edit notes of case '%s'", actor.display_name, case_id)
                return _denied(DenialReason.PERMISSION_DENIED, case=current)
            data_changed = any(getattr(updated, name) != getattr(current, name) for name in _DATA_FIELDS)
            if data_changed and not can_edit_case_data(current, actor):
                log.info("User '%s' may not edit data of case '%s'", actor.display_name, case_id)
                return _denied(DenialReason.PERMISSION_DENIED, case=current)

            errors = validate_case_fields(updated)
            if errors:
                log.info("Rejected invalid edit of case '%s': %s", case_id, errors)
                return _denied(DenialReason.INVALID_DATA, case=current, description="; ".join(errors.values()))

            if updated.stage != current.stage or updated.status_history != current.status_history:
                log.warning("Ignoring stage/history changes in edit of case '%s'", case_id)
            updated = replace(updated, stage=current.stage, status_history=current.status_history)
            updated = self._calculator_for_today().apply(updated)

            snapshot = self._authoritative.get(case_id, current)
            return await self._run_optimistic(
                snapshot,
                updated,
                lambda: self.store.persist(updated),
                success=Outcome(
                    kind=OutcomeKind.SUCCESS,
                    message="Case updated successfully",
                    description=f"{updated.name} was saved.",
                ),
                failure_message="Error updating the case",
            )
        except Exception:
            log.exception("Unexpected error while updating case '%s'", case_id)
            return Outcome(kind=OutcomeKind.FAILED, message="Error updating the case", description=RETRY_HINT)
        finally:
            self._release(case_id)

    async def delete_case(self, case_id: str, actor: Actor) -> Outcome:
        """Delete a case once the store confirms it; never optimistic."""

        if not self._acquire(case_id):
            return self._ignored(case_id)
        try:
            case = self._working.get(case_id)
            if case is None:
                log.warning("Deletion requested for unknown case '%s'", case_id)
                return _denied(DenialReason.NOT_FOUND)

            log.info("User '%s' deleting case '%s'", actor.display_name, case_id)
            try:
                await self.store.remove(case_id)
            except Exception:
                log.exception("Deleting case '%s' failed", case_id)
                return Outcome(kind=OutcomeKind.FAILED, message="Error deleting the case", description=RETRY_HINT, case=case)

            self._working.pop(case_id, None)
            self._authoritative.pop(case_id, None)
            self._notify_removed(case_id)
            await self.refresh_period()
            return Outcome(
                kind=OutcomeKind.SUCCESS,
                message="Case deleted successfully",
                description="The case was removed from the board.",
                case=case,
            )
        except Exception:
            log.exception("Unexpected error while deleting case '%s'", case_id)
            return Outcome(kind=OutcomeKind.FAILED, message="Error deleting the case", description=RETRY_HINT)
        finally:
            self._release(case_id)

    async def save_all(self) -> Outcome:
        """Persist the entire working set in one call, dirty or not.

        Refused while any case operation is outstanding, since its working
        copy is not confirmed yet. Every saved case stays busy until the
        store answers, so per-case operations wait for the bulk save.
        """

        if self.is_saving:
            log.info("Save already in progress; ignoring request")
            return Outcome(kind=OutcomeKind.IGNORED, message="Save already in progress")
        if self._in_flight:
            log.info("Save requested while %d case(s) are being processed; ignoring", len(self._in_flight))
            return Outcome(kind=OutcomeKind.IGNORED, message="Other changes are still being saved")
        if not self._working:
            return Outcome(kind=OutcomeKind.INFO, message="There is no data to save")

        cases = list(self._working.values())
        case_ids = {case.case_id for case in cases}
        self.is_saving = True
        self._in_flight |= case_ids
        try:
            log.info("Saving %d cases", len(cases))
            await self.store.persist_all(cases)
        except Exception:
            log.exception("Saving %d cases failed", len(cases))
            return Outcome(kind=OutcomeKind.FAILED, message="Error saving data", description=RETRY_HINT)
        finally:
            self.is_saving = False
            self._in_flight -= case_ids

        for case in cases:
            self._authoritative[case.case_id] = case
        self.has_changes = False
        return Outcome(
            kind=OutcomeKind.SUCCESS,
            message="Data saved successfully",
            description=f"{len(cases)} cases were saved.",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _calculator_for_today(self) -> DaysOverdueCalculator:
        today = self._today()
        if self._calculator is None or self._calculator.today != today:
            log.debug("Starting days-overdue calculator for %s", today.isoformat())
            self._calculator = DaysOverdueCalculator(today)
        return self._calculator

    def _timestamp(self) -> datetime:
        return resolve_timestamp(self._now() if self._now is not None else None)

    def _acquire(self, case_id: str) -> bool:
        if case_id in self._in_flight:
            return False
        self._in_flight.add(case_id)
        return True

    def _release(self, case_id: str) -> None:
        self._in_flight.discard(case_id)

    def _ignored(self, case_id: str) -> Outcome:
        log.info("Case '%s' is already being processed; ignoring request", case_id)
        return Outcome(kind=OutcomeKind.IGNORED, message="Case is already being processed")

    async def _reload_case(self, case_id: str) -> Optional[CollectionCase]:
        """Pick up a case the store changed behind our back (e.g. a repair)."""

        try:
            fresh = next((case for case in await self.store.fetch_all() if case.case_id == case_id), None)
        except Exception:
            log.exception("Reloading case '%s' failed", case_id)
            return None
        if fresh is None:
            return None
        self._authoritative[case_id] = fresh
        fresh = self._put_working(fresh)
        self._notify_changed(fresh)
        return fresh

    def _put_working(self, case: CollectionCase) -> CollectionCase:
        case = self._calculator_for_today().apply(case)
        if case.case_id in self._working:
            self._working[case.case_id] = case
        return case

    async def _run_optimistic(
        self,
        snapshot: CollectionCase,
        updated: CollectionCase,
        persist: Callable[[], Awaitable[None]],
        *,
        success: Outcome,
        failure_message: str,
    ) -> Outcome:
        updated = self._put_working(updated)
        self.has_changes = True
        self._notify_changed(updated)

        try:
            await persist()
        except Exception:
            log.exception("Persisting case '%s' failed; reverting", updated.case_id)
            reverted = self._put_working(snapshot)
            self._notify_changed(reverted)
            await self.refresh_period()
            return Outcome(kind=OutcomeKind.FAILED, message=failure_message, description=RETRY_HINT, case=reverted)

        self._authoritative[updated.case_id] = updated
        await self.refresh_period()
        return replace(success, case=updated)

    def _notify_changed(self, case: CollectionCase) -> None:
        for listener in list(self._change_listeners):
            try:
                listener(case)
            except Exception:
                log.exception("Change listener failed for case '%s'", case.case_id)

    def _notify_removed(self, case_id: str) -> None:
        for listener in list(self._removal_listeners):
            try:
                listener(case_id)
            except Exception:
                log.exception("Removal listener failed for case '%s'", case_id)


def replace_in_list(cases: Iterable[CollectionCase], updated: CollectionCase) -> List[CollectionCase]:
    """Last-write-wins merge of ``updated`` into a parent-held list."""

    return [updated if case.case_id == updated.case_id else case for case in cases]
