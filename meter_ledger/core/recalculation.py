"""
Cascading recalculation.

Applies a kWh offset to every event after a backdated change and records an
audit row that allows exact reversal within a fixed window.

Core guarantees provided:

- Atomicity: balance updates and the audit insert share one transaction.
- Serialization: writes for one user hold a per-user lock plus the SQLite
  write lock (BEGIN IMMEDIATE), so two backdates never interleave.
- Idempotency: an optional key is stored with the audit row and a repeated
  key is rejected before anything changes.
- Explicit signaling: failures raise domain exceptions and leave every row
  as it was.

Validation is not repeated here: callers run the impact analysis first and
only apply cascades that have no blocking issues.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, List, Optional

from .exceptions import (
    AlreadyUndone,
    AuditNotFound,
    EventNotFound,
    IdempotencyReplay,
    MeterLedgerError,
    TransactionFailure,
    UndoExpired,
)
from .impact import shift
from meter_ledger.storage.models import Event, RecalculationAudit, TriggerType
from meter_ledger.storage.repository import EventRepository, user_lock

logger = logging.getLogger(__name__)

DEFAULT_UNDO_WINDOW = timedelta(hours=24)


class RecalculationExecutor:
    """Commits and reverses cascading offsets."""

    def __init__(
        self,
        repository: EventRepository,
        undo_window: timedelta = DEFAULT_UNDO_WINDOW,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.undo_window = undo_window
        self.clock = clock

    @contextmanager
    def _write(self, user_id: str, operation: str,
               conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        """Use the caller's transaction or open a locked one of our own."""
        if conn is not None:
            yield conn
            return
        with user_lock(user_id):
            try:
                with self.repository.transaction() as own:
                    yield own
            except MeterLedgerError:
                raise
            except sqlite3.Error as e:
                logger.warning("%s rolled back: user=%s error=%s", operation, user_id, e)
                raise TransactionFailure(operation, e) from e

    def apply(
        self,
        user_id: str,
        triggering_event_id: int,
        trigger_type: TriggerType,
        affected_events: Iterable[Event],
        offset_kwh: float,
        idempotency_key: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> RecalculationAudit:
        """Shift every affected balance by `offset_kwh` and write the audit row.

        Balances are re-read inside the transaction, so the offset lands on
        the stored values rather than on the caller's snapshot.

        Args:
            user_id: Owning user
            triggering_event_id: Event whose change caused the cascade
            trigger_type: Why the cascade happened
            affected_events: Events to shift, oldest first
            offset_kwh: kWh added to each balance
            idempotency_key: Optional client key; a repeat is rejected
            conn: Join this open transaction instead of opening one

        Returns:
            The stored RecalculationAudit

        Raises:
            IdempotencyReplay: If the key was already used
            TransactionFailure: If any write failed; nothing was changed
        """
        event_ids = [event.id for event in affected_events]

        with self._write(user_id, "recalculation", conn) as c:
            if idempotency_key is not None and self.repository.audit_key_used(idempotency_key, c):
                logger.info("Idempotency replay: key=%s user=%s", idempotency_key, user_id)
                raise IdempotencyReplay(idempotency_key)

            current = self._load(user_id, event_ids, c)
            updates = [(event.id, shift(event.balance_kwh, offset_kwh)) for event in current]
            updated = self.repository.bulk_update_balance(updates, c)
            if updated != len(updates):
                raise TransactionFailure(
                    "recalculation",
                    RuntimeError(f"updated {updated} of {len(updates)} events"),
                )

            applied_at = self.clock()
            audit = self.repository.insert_audit(RecalculationAudit(
                user_id=user_id,
                triggering_event_id=triggering_event_id,
                trigger_type=trigger_type,
                offset_kwh=offset_kwh,
                affected_event_ids=event_ids,
                balances_before=[event.balance_kwh for event in current],
                applied_at=applied_at,
                undo_deadline=applied_at + self.undo_window,
                idempotency_key=idempotency_key,
            ), c)

        logger.info(
            "Recalculation applied: audit=%s user=%s trigger=%s offset=%s events=%d",
            audit.id, user_id, trigger_type.value, offset_kwh, len(event_ids),
        )
        return audit

    def undo(
        self,
        audit_id: int,
        user_id: str,
        reason: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> RecalculationAudit:
        """Reverse a recalculation while its undo window is open.

        Subtracts the recorded offset from the same events and stamps
        undone_at. There is no redo.

        Raises:
            AuditNotFound: If the audit does not exist for this user
            AlreadyUndone: If it was reversed before
            UndoExpired: If the window has closed
            TransactionFailure: If any write failed; nothing was changed
        """
        with self._write(user_id, "undo", conn) as c:
            audit = self.repository.get_audit(audit_id, user_id=user_id, conn=c)
            if audit is None:
                raise AuditNotFound(audit_id)
            if audit.undone_at is not None:
                raise AlreadyUndone(audit_id, audit.undone_at)
            now = self.clock()
            if now >= audit.undo_deadline:
                raise UndoExpired(audit_id, audit.undo_deadline)

            current = self._load(user_id, audit.affected_event_ids, c)
            updates = [(event.id, shift(event.balance_kwh, -audit.offset_kwh)) for event in current]
            self.repository.bulk_update_balance(updates, c)
            self.repository.mark_audit_undone(audit_id, now, reason, c)
            undone = self.repository.get_audit(audit_id, conn=c)

        logger.info("Recalculation undone: audit=%s user=%s", audit_id, user_id)
        return undone

    def pending_undos(self, user_id: str) -> List[RecalculationAudit]:
        """Audits that can still be undone, newest first."""
        return self.repository.fetch_audits(user_id, pending_only=True, now=self.clock())

    def _load(self, user_id: str, event_ids: List[int], conn: sqlite3.Connection) -> List[Event]:
        events = []
        for event_id in event_ids:
            event = self.repository.get_event(event_id, user_id=user_id, conn=conn)
            if event is None:
                raise TransactionFailure("recalculation", EventNotFound(event_id, user_id))
            events.append(event)
        return events
