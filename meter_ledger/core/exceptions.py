"""
Domain errors for the meter ledger.

Expected user-facing conditions (reading increased, duplicate date, cascade
preview) are returned as typed results. These exceptions cover the cases
where an operation has to abort.
"""

from datetime import datetime
from typing import Optional


class MeterLedgerError(Exception):
    """Base class for all ledger errors."""


class InvalidValue(MeterLedgerError):
    """Raised for malformed or out-of-range input. Never retried."""

    def __init__(self, message: str, value=None):
        self.value = value
        super().__init__(message)


class EventNotFound(MeterLedgerError):
    """Raised when an event id does not exist for the user."""

    def __init__(self, event_id: int, user_id: Optional[str] = None):
        self.event_id = event_id
        self.user_id = user_id
        super().__init__(f"Event {event_id} not found")


class MonotonicityViolation(MeterLedgerError):
    """Raised when a reading is higher than the balance before it.

    Balance only depletes between readings, so a higher value means the
    entry should be recorded as a top-up instead.
    """

    def __init__(self, candidate: float, prior: float):
        self.candidate = candidate
        self.prior = prior
        self.delta = candidate - prior
        super().__init__(
            f"Reading {candidate:.2f} kWh is {self.delta:.2f} kWh higher than the "
            f"previous balance {prior:.2f} kWh; record it as a top-up instead"
        )


class CascadeConflict(MeterLedgerError):
    """Raised when shifting later events would break their ordering."""

    def __init__(self, message: str, earlier_event_id: Optional[int] = None,
                 later_event_id: Optional[int] = None):
        self.earlier_event_id = earlier_event_id
        self.later_event_id = later_event_id
        super().__init__(message)


class StalePreview(MeterLedgerError):
    """Raised when the events after a backdate changed since the preview."""

    def __init__(self, expected_ids, actual_ids):
        self.expected_ids = list(expected_ids)
        self.actual_ids = list(actual_ids)
        super().__init__(
            f"Affected events changed since preview: expected {self.expected_ids}, "
            f"found {self.actual_ids}"
        )


class TransactionFailure(MeterLedgerError):
    """Raised when an atomic write could not complete. Nothing was persisted."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed and was rolled back{detail}")


class IdempotencyReplay(MeterLedgerError):
    """Raised when a request with an already-used idempotency key is detected."""

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency replay detected for key: {idempotency_key}"
        )


class AuditNotFound(MeterLedgerError):
    """Raised when a recalculation audit id does not exist for the user."""

    def __init__(self, audit_id: int):
        self.audit_id = audit_id
        super().__init__(f"Recalculation {audit_id} not found")


class UndoExpired(MeterLedgerError):
    """Raised when undoing a recalculation after its window closed."""

    def __init__(self, audit_id: int, deadline: datetime):
        self.audit_id = audit_id
        self.deadline = deadline
        super().__init__(
            f"Recalculation {audit_id} can no longer be undone "
            f"(window closed at {deadline.isoformat(timespec='minutes')})"
        )


class AlreadyUndone(MeterLedgerError):
    """Raised when undoing a recalculation a second time."""

    def __init__(self, audit_id: int, undone_at: datetime):
        self.audit_id = audit_id
        self.undone_at = undone_at
        super().__init__(
            f"Recalculation {audit_id} was already undone at "
            f"{undone_at.isoformat(timespec='minutes')}"
        )
