"""Enumerations shared across the collection board modules.

Centralises the pipeline definition so that the data access layer, the
business rules, the board controller, and the CLI all agree on stage
identifiers and on the order in which a case may move between them.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Actor name written to the audit trail when the current user is anonymous.
UNIDENTIFIED_USER = "Unidentified user"


class Stage(str, Enum):
    """Enumerate the fixed stages of the collection pipeline."""

    OVERDUE = "overdue"
    SENT = "sent"
    REPLIED = "replied"
    PAID = "paid"


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.OVERDUE,
    Stage.SENT,
    Stage.REPLIED,
    Stage.PAID,
)

NEXT_STAGE: Dict[Stage, Stage] = {
    Stage.OVERDUE: Stage.SENT,
    Stage.SENT: Stage.REPLIED,
    Stage.REPLIED: Stage.PAID,
}

# The first stage maps onto itself: returning from it is a no-op.
PREVIOUS_STAGE: Dict[Stage, Stage] = {
    Stage.OVERDUE: Stage.OVERDUE,
    Stage.SENT: Stage.OVERDUE,
    Stage.REPLIED: Stage.SENT,
    Stage.PAID: Stage.REPLIED,
}

STAGE_TITLES: Dict[Stage, str] = {
    Stage.OVERDUE: "Overdue Students",
    Stage.SENT: "Message Sent",
    Stage.REPLIED: "Reply Received",
    Stage.PAID: "Payment Made",
}


class DenialReason(str, Enum):
    """Enumerate the reasons a requested board operation may be refused."""

    MISSING_FOLLOW_UP = "missing-follow-up"
    MISSING_PAYMENT_DATE = "missing-payment-date"
    RETRY_AFTER_REPAIR = "retry-after-repair"
    NOT_FOUND = "not-found"
    INVALID_TRANSITION = "invalid-transition"
    ALREADY_FIRST_STAGE = "already-first-stage"
    PERMISSION_DENIED = "permission-denied"
    INVALID_DATA = "invalid-data"


class Role(str, Enum):
    """Enumerate the roles a board user may hold."""

    ADMIN = "admin"
    USER = "user"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CASES = "Cases"
    STATUS_HISTORY = "StatusHistory"
    FOLLOW_UPS = "FollowUps"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "UNIDENTIFIED_USER",
    "Stage",
    "STAGE_ORDER",
    "NEXT_STAGE",
    "PREVIOUS_STAGE",
    "STAGE_TITLES",
    "DenialReason",
    "Role",
    "SheetName",
]
