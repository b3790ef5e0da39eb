"""Business rules for the collection board.

This module holds the immutable domain model of a collection case together
with the rule engine that decides whether a case may move between pipeline
stages. Everything here is free of I/O: the data access layer lives in
:mod:`collection_board.data_manager`, persistence behind
:mod:`collection_board.store`, and the stateful orchestration in
:mod:`collection_board.board`.
"""

from __future__ import annotations

import inspect
import re
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

from . import log
from .constants import (
    NEXT_STAGE,
    STAGE_ORDER,
    UNIDENTIFIED_USER,
    DenialReason,
    Role,
    Stage,
)


class BoardError(Exception):
    """Base class for collection board failures."""


class PersistenceError(BoardError):
    """Raised by a store when the backing storage rejects an operation."""


class MissingReferenceError(BoardError):
    """Raised when a referenced case is unknown to the store."""


@dataclass(frozen=True)
class FollowUp:
    """A follow-up note attached to a case."""

    follow_up_id: str
    content: str
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class StatusChange:
    """One entry of a case's append-only stage audit trail."""

    from_stage: Stage
    to_stage: Stage
    changed_by: str
    changed_at: datetime


@dataclass(frozen=True)
class CollectionCase:
    """A debtor being tracked through the collection pipeline.

    Instances are immutable; every board mutation produces a new value through
    :func:`dataclasses.replace`, which keeps rollbacks trivial.
    """

    case_id: str
    name: str
    amount: Decimal
    due_date: str
    stage: Stage
    days_overdue: int = 0
    course: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status_history: tuple[StatusChange, ...] = ()
    follow_ups: tuple[FollowUp, ...] = ()
    legacy_follow_up: str = ""
    notes: str = ""
    payment_date: Optional[str] = None
    created_by: Optional[str] = None
    month: str = ""
    first_contact: Optional[str] = None
    last_contact: Optional[str] = None


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf a board operation runs."""

    name: Optional[str] = None
    role: Role = Role.USER

    @property
    def display_name(self) -> str:
        return self.name or UNIDENTIFIED_USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy check: allowed, or denied with a reason."""

    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason) -> "Decision":
        return cls(allowed=False, reason=reason)


RepairCallable = Callable[[str], Union[bool, Awaitable[bool]]]
PeriodFilter = Callable[[Sequence[CollectionCase], str], Union[Sequence[CollectionCase], Awaitable[Sequence[CollectionCase]]]]


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


async def resolve_maybe_awaitable(value: Any) -> Any:
    """Await ``value`` when a collaborator handed back an awaitable."""

    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Status history ledger
# ---------------------------------------------------------------------------


def record_stage_change(
    case: CollectionCase,
    to_stage: Stage,
    actor: Actor,
    *,
    when: Optional[datetime] = None,
) -> CollectionCase:
    """Move ``case`` to ``to_stage`` and append exactly one audit entry.

    The returned copy carries the new stage and the previous history followed
    by a single :class:`StatusChange`. The input value is left untouched, so
    callers can keep it as the pre-mutation snapshot.

    Args:
        case (CollectionCase): Case being moved.
        to_stage (Stage): Destination stage.
        actor (Actor): User responsible for the change.
        when (datetime | None): Timestamp of the change; defaults to now (UTC).

    Returns:
        CollectionCase: Updated copy of ``case``.
    """

    entry = StatusChange(
        from_stage=case.stage,
        to_stage=to_stage,
        changed_by=actor.display_name,
        changed_at=resolve_timestamp(when),
    )
    return replace(case, stage=to_stage, status_history=(*case.status_history, entry))


# ---------------------------------------------------------------------------
# Transition policy
# ---------------------------------------------------------------------------


def has_follow_up(case: CollectionCase) -> bool:
    """Report whether ``case`` has at least one follow-up.

    Cases migrated from the older single-field format keep their note in
    ``legacy_follow_up`` instead of ``follow_ups``; either one counts.
    """

    return bool(case.follow_ups) or bool(case.legacy_follow_up.strip())


def check_transition(case: CollectionCase, target: Stage) -> Decision:
    """Decide whether ``case`` may move forward to ``target``.

    Rules are evaluated in order and the first failure wins:

    0. ``target`` must be the immediate successor of the current stage.
    1. Leaving ``overdue`` requires at least one follow-up.
    2. Entering ``paid`` requires a non-blank payment date.

    This check never has side effects; the repair attempt for rule 1 lives in
    :meth:`TransitionPolicy.evaluate`.
    """

    if NEXT_STAGE.get(case.stage) != target:
        return Decision.deny(DenialReason.INVALID_TRANSITION)
    if case.stage == Stage.OVERDUE and not has_follow_up(case):
        return Decision.deny(DenialReason.MISSING_FOLLOW_UP)
    if target == Stage.PAID and not (case.payment_date or "").strip():
        return Decision.deny(DenialReason.MISSING_PAYMENT_DATE)
    return Decision.allow()


def check_return(case: CollectionCase) -> Decision:
    """Decide whether ``case`` may step back one stage.

    Corrections are never gated by the forward rules; only the first stage
    refuses because there is nothing before it.
    """

    if case.stage == Stage.OVERDUE:
        return Decision.deny(DenialReason.ALREADY_FIRST_STAGE)
    return Decision.allow()


class TransitionPolicy:
    """Forward-transition gate with a single automatic follow-up repair.

    ``repair`` receives a case id and reports whether it changed anything in
    the store. It may be a plain function or a coroutine function.
    """

    def __init__(self, repair: Optional[RepairCallable] = None) -> None:
        self._repair = repair

    async def evaluate(self, case: CollectionCase, target: Stage) -> Decision:
        decision = check_transition(case, target)
        if decision.reason != DenialReason.MISSING_FOLLOW_UP or self._repair is None:
            return decision

        log.info("Case '%s' has no follow-ups; attempting automatic repair", case.case_id)
        try:
            repaired = bool(await resolve_maybe_awaitable(self._repair(case.case_id)))
        except Exception:
            log.exception("Follow-up repair failed for case '%s'", case.case_id)
            repaired = False

        if repaired:
            log.info("Follow-ups repaired for case '%s'; caller must retry", case.case_id)
            return Decision.deny(DenialReason.RETRY_AFTER_REPAIR)
        return decision


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------


def parse_due_date(text: Optional[str]) -> Optional[date]:
    """Parse a ``DD/MM/YYYY`` literal, returning ``None`` when it is unusable."""

    if not text:
        return None
    parts = text.split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
        return date(year, month, day)
    except ValueError:
        return None


def calculate_days_overdue(case: CollectionCase, today: date) -> int:
    """Return how many whole days ``case`` is past its due date.

    Paid cases keep their stored figure so historical reports do not drift,
    and so do cases whose due date is missing or unparseable. Cases not yet
    due report zero.
    """

    if case.stage == Stage.PAID or not case.due_date:
        return case.days_overdue or 0

    due = parse_due_date(case.due_date)
    if due is None:
        log.warning("Could not parse due date '%s' for case '%s'", case.due_date, case.case_id)
        return case.days_overdue or 0

    return max((today - due).days, 0)


class DaysOverdueCalculator:
    """Day-bound memoizing wrapper around :func:`calculate_days_overdue`."""

    def __init__(self, today: date) -> None:
        self.today = today
        self._cache: Dict[tuple[str, str, Stage, int], int] = {}

    def __call__(self, case: CollectionCase) -> int:
        key = (case.case_id, case.due_date, case.stage, case.days_overdue)
        cached = self._cache.get(key)
        if cached is None:
            cached = calculate_days_overdue(case, self.today)
            self._cache[key] = cached
        return cached

    def apply(self, case: CollectionCase) -> CollectionCase:
        days = self(case)
        if days == case.days_overdue:
            return case
        return replace(case, days_overdue=days)


# ---------------------------------------------------------------------------
# Stage index
# ---------------------------------------------------------------------------


@dataclass
class StageView:
    """Cases grouped into pipeline columns for presentation."""

    columns: Dict[Stage, List[CollectionCase]] = field(
        default_factory=lambda: {stage: [] for stage in STAGE_ORDER}
    )
    total_count: int = 0

    @property
    def counts(self) -> Dict[Stage, int]:
        return {stage: len(cases) for stage, cases in self.columns.items()}

    @property
    def visible_count(self) -> int:
        return sum(self.counts.values())


def group_by_stage(
    cases: Iterable[CollectionCase],
    *,
    period_ids: Optional[Iterable[str]] = None,
    total_count: Optional[int] = None,
) -> StageView:
    """Partition ``cases`` into the four pipeline columns.

    Only the terminal ``paid`` column is period-filtered: when ``period_ids``
    is ``None`` no filter is active and every paid case shows; otherwise only
    paid cases whose id is in ``period_ids`` show, so an empty collection
    empties the column.

    Args:
        cases (Iterable[CollectionCase]): Working set in display order.
        period_ids (Iterable[str] | None): Ids produced by the period filter.
        total_count (int | None): Size of the unfiltered source list, used for
            "showing X of Y" indicators. Defaults to the number of cases.

    Returns:
        StageView: Grouped view preserving input order inside each column.
    """

    allowed_paid = set(period_ids) if period_ids is not None else None
    view = StageView()
    seen = 0
    for case in cases:
        seen += 1
        if case.stage == Stage.PAID and allowed_paid is not None and case.case_id not in allowed_paid:
            continue
        view.columns[case.stage].append(case)
    view.total_count = total_count if total_count is not None else seen
    return view


def filter_payments_for_period(cases: Sequence[CollectionCase], period_key: str) -> List[CollectionCase]:
    """Default period filter: paid cases attributed to ``period_key``.

    A paid case belongs to the period when its ``month`` equals the key
    (case-insensitive) or when its payment date falls in the ``MM/YYYY`` key.
    """

    key = period_key.strip().lower()
    selected: List[CollectionCase] = []
    for case in cases:
        if case.stage != Stage.PAID:
            continue
        if case.month.strip().lower() == key:
            selected.append(case)
            continue
        paid_on = parse_due_date(case.payment_date)
        if paid_on is not None and f"{paid_on.month:02d}/{paid_on.year}" == key:
            selected.append(case)
    return selected


# ---------------------------------------------------------------------------
# Permissions and validation
# ---------------------------------------------------------------------------


_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DATE_PATTERN = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")


def can_edit_notes(case: CollectionCase, actor: Actor) -> bool:
    """Notes belong to whoever created the case; admins may always edit."""

    return actor.is_admin or not case.created_by or case.created_by == actor.name


def can_edit_case_data(case: CollectionCase, actor: Actor) -> bool:
    """Report whether ``actor`` may change the case's basic attributes."""

    return actor.is_admin or not case.created_by or case.created_by == actor.name or not actor.name


def validate_case_fields(case: CollectionCase) -> Dict[str, str]:
    """Return a mapping of field name to error message; empty when valid."""

    errors: Dict[str, str] = {}
    if not case.name.strip():
        errors["name"] = "Name is required"
    if case.amount < Decimal("0"):
        errors["amount"] = "Amount must be a number greater than or equal to zero"
    if case.email and case.email.strip() and not _EMAIL_PATTERN.match(case.email.strip()):
        errors["email"] = "Email must be a valid address"
    if case.due_date and case.due_date.strip():
        if not _DATE_PATTERN.match(case.due_date.strip()) or parse_due_date(case.due_date.strip()) is None:
            errors["due_date"] = "Date must use the DD/MM/YYYY format"
    return errors
