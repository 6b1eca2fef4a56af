"""
Data models for storage layer.

Defines meter events and recalculation audit records.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional


class EventType(Enum):
    """Kinds of balance record."""
    READING = "READING"
    TOPUP = "TOPUP"


class TriggerType(Enum):
    """What caused a cascading recalculation."""
    NEW_BACKDATE_TOPUP = "NEW_BACKDATE_TOPUP"
    EDIT_TOPUP = "EDIT_TOPUP"
    BACKDATE_TOPUP = "BACKDATE_TOPUP"
    DELETE_TOPUP = "DELETE_TOPUP"


@dataclass(frozen=True)
class Event:
    """A dated balance record (meter reading or top-up).

    Events are append-only. Editing voids the old event and inserts a
    replacement linked through supersedes/superseded_by. The balance is the
    only field that changes after insertion, and only through an audited
    recalculation.
    """
    user_id: str
    event_type: EventType
    event_date: datetime
    balance_kwh: float
    purchase_kwh: Optional[float] = None
    token_cost: Optional[float] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    voided: bool = False
    voided_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    supersedes: Optional[int] = None
    superseded_by: Optional[int] = None
    created_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None

    @property
    def is_topup(self) -> bool:
        return self.event_type == EventType.TOPUP

    def with_balance(self, balance_kwh: float) -> "Event":
        """Return a copy carrying a different balance."""
        return replace(self, balance_kwh=balance_kwh)


@dataclass(frozen=True)
class RecalculationAudit:
    """Record of one cascading offset, kept for history and undo."""
    user_id: str
    triggering_event_id: int
    trigger_type: TriggerType
    offset_kwh: float
    affected_event_ids: List[int]
    applied_at: datetime
    undo_deadline: datetime
    balances_before: List[float] = field(default_factory=list)
    id: Optional[int] = None
    undone_at: Optional[datetime] = None
    undo_reason: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def is_undone(self) -> bool:
        return self.undone_at is not None

    def can_undo(self, now: datetime) -> bool:
        """True while the undo window is open and the cascade is not reversed."""
        return self.undone_at is None and now < self.undo_deadline
