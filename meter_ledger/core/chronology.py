"""
Chronological context for a candidate event.

Entries can be made out of order, so validation compares against the event
that precedes the candidate's own date rather than the newest entry, and a
backdate's blast radius is everything dated after it.
"""

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from meter_ledger.storage.models import Event
from meter_ledger.storage.repository import EventRepository

logger = logging.getLogger(__name__)


class ChronologyResolver:
    """Read-only lookups over a user's non-voided events."""

    def __init__(self, repository: EventRepository):
        self.repository = repository

    def last_event_before(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        """Most recent non-voided event dated strictly before `date`.

        If the date-scoped query fails with a transient store error, falls
        back to the absolute latest event and logs the degradation. A failure
        of the fallback propagates.
        """
        try:
            return self.repository.fetch_before(user_id, date, conn=conn)
        except sqlite3.OperationalError as e:
            logger.warning(
                "Date-scoped lookup failed, falling back to latest event: user=%s date=%s error=%s",
                user_id, date.isoformat(), e,
            )
            return self.repository.fetch_latest(user_id, conn=conn)

    def events_after(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[Event]:
        """Non-voided events dated strictly after `date`, oldest first.

        An empty list means an event at `date` would be the newest one and
        no recalculation is needed.
        """
        return self.repository.fetch_after(user_id, date, conn=conn)

    def next_event_after(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        later = self.events_after(user_id, date, conn=conn)
        return later[0] if later else None

    def latest_event(self, user_id: str) -> Optional[Event]:
        return self.repository.fetch_latest(user_id)
