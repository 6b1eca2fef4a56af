"""
Duplicate-date conflict detection and resolution.

Only one active event may sit at a given date. When a new entry collides
with an existing one the user decides between editing the existing event and
replacing it; nothing is resolved automatically.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from meter_ledger.storage.models import Event
from meter_ledger.storage.repository import EventRepository

logger = logging.getLogger(__name__)


class Resolution(Enum):
    """Choices offered for a duplicate date."""
    EDIT_EXISTING = "edit_existing"
    REPLACE = "replace"


@dataclass(frozen=True)
class DuplicateConflict:
    """An active event already recorded at the candidate's date."""
    existing: Event
    event_date: datetime
    options: Tuple[Resolution, ...] = (Resolution.EDIT_EXISTING, Resolution.REPLACE)

    @property
    def recorded_at(self) -> Optional[datetime]:
        return self.existing.created_at

    def describe(self) -> str:
        return (
            f"An entry already exists for {self.event_date:%Y-%m-%d %H:%M}: "
            f"{self.existing.event_type.value.lower()} of {self.existing.balance_kwh:.2f} kWh"
        )


class ConflictResolver:
    """Finds same-date collisions and performs the replace option."""

    def __init__(self, repository: EventRepository):
        self.repository = repository

    def check_duplicate(
        self,
        user_id: str,
        date: datetime,
        exclude_event_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[DuplicateConflict]:
        """Return the conflict if an active event exists at exactly `date`.

        Args:
            user_id: Owning user
            date: Candidate event date
            exclude_event_id: Event being edited, which may keep its own date
            conn: Optional open connection to read through
        """
        existing = self.repository.fetch_at(user_id, date, conn=conn)
        if existing is None or existing.id == exclude_event_id:
            return None
        return DuplicateConflict(existing=existing, event_date=date)

    def replace(
        self,
        conflict: DuplicateConflict,
        replacement: Event,
        conn: sqlite3.Connection
    ) -> Event:
        """Void the existing event and insert the replacement.

        Runs inside the caller's transaction. No offset is propagated: a
        replacement means the old entry was wrong, not that later balances
        moved.
        """
        new_event = self.repository.insert_event(replacement, conn=conn)
        self.repository.void_event(
            conflict.existing.id,
            reason="Replaced by a new entry for the same date",
            conn=conn,
            superseded_by=new_event.id,
        )
        logger.info(
            "Duplicate replaced: user=%s old=%s new=%s",
            replacement.user_id, conflict.existing.id, new_event.id,
        )
        return new_event
