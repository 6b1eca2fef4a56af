"""
Repository pattern for data access.

Handles the event table and the recalculation audit table. Reads filter out
voided events unless asked otherwise; writes that must be atomic take the
connection of an open :func:`~meter_ledger.storage.db.transaction`.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp, transaction
from .models import Event, EventType, RecalculationAudit, TriggerType

_EVENT_COLUMNS = """
    id, user_id, event_type, event_date, balance_kwh, purchase_kwh,
    token_cost, notes, voided, voided_reason, voided_at, supersedes,
    superseded_by, created_at, idempotency_key
"""

_AUDIT_COLUMNS = """
    id, user_id, triggering_event_id, trigger_type, offset_kwh,
    affected_event_ids, balances_before, applied_at, undo_deadline,
    undone_at, undo_reason, idempotency_key
"""

# Per-user write locks, each paired with the number of callers holding or
# waiting on it. An entry is dropped when that count reaches zero, so the map
# only holds users with a write in flight.
_user_locks: Dict[str, List] = {}
_user_locks_guard = threading.Lock()


@contextmanager
def user_lock(user_id: str) -> Iterator[None]:
    """Serialize writes for one user inside this process."""
    with _user_locks_guard:
        entry = _user_locks.setdefault(user_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _user_locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _user_locks[user_id]


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        user_id=row["user_id"],
        event_type=EventType(row["event_type"]),
        event_date=from_db_timestamp(row["event_date"]),
        balance_kwh=row["balance_kwh"],
        purchase_kwh=row["purchase_kwh"],
        token_cost=row["token_cost"],
        notes=row["notes"],
        voided=bool(row["voided"]),
        voided_reason=row["voided_reason"],
        voided_at=from_db_timestamp(row["voided_at"]),
        supersedes=row["supersedes"],
        superseded_by=row["superseded_by"],
        created_at=from_db_timestamp(row["created_at"]),
        idempotency_key=row["idempotency_key"],
    )


def _row_to_audit(row: sqlite3.Row) -> RecalculationAudit:
    return RecalculationAudit(
        id=row["id"],
        user_id=row["user_id"],
        triggering_event_id=row["triggering_event_id"],
        trigger_type=TriggerType(row["trigger_type"]),
        offset_kwh=row["offset_kwh"],
        affected_event_ids=json.loads(row["affected_event_ids"]),
        balances_before=json.loads(row["balances_before"]),
        applied_at=from_db_timestamp(row["applied_at"]),
        undo_deadline=from_db_timestamp(row["undo_deadline"]),
        undone_at=from_db_timestamp(row["undone_at"]),
        undo_reason=row["undo_reason"],
        idempotency_key=row["idempotency_key"],
    )


class EventRepository:
    """Repository for meter events and recalculation audits.

    Every query is scoped by user_id; there is no cross-user visibility.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_connection(self.db_path)
        try:
            yield own
        finally:
            own.close()

    def transaction(self):
        """Open a write transaction on this repository's database."""
        return transaction(self.db_path)

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path)

    # ------------------------------------------------------------------
    # Event reads
    # ------------------------------------------------------------------

    def get_event(
        self,
        event_id: int,
        user_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        """Fetch a single event by id, voided or not.

        Args:
            event_id: Event identifier
            user_id: When given, events owned by another user are not returned
            conn: Optional open connection to reuse

        Returns:
            The event, or None when it does not exist for this user
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM meter_event WHERE id = ?"
        params: List = [event_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connection(conn) as c:
            row = c.execute(query, params).fetchone()
        return _row_to_event(row) if row else None

    def fetch_before(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        """Most recent non-voided event strictly before date."""
        with self._connection(conn) as c:
            row = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM meter_event
                WHERE user_id = ? AND voided = 0 AND event_date < ?
                ORDER BY event_date DESC, id DESC LIMIT 1
            """, (user_id, to_db_timestamp(date))).fetchone()
        return _row_to_event(row) if row else None

    def fetch_after(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[Event]:
        """All non-voided events strictly after date, oldest first."""
        with self._connection(conn) as c:
            rows = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM meter_event
                WHERE user_id = ? AND voided = 0 AND event_date > ?
                ORDER BY event_date ASC, id ASC
            """, (user_id, to_db_timestamp(date))).fetchall()
        return [_row_to_event(row) for row in rows]

    def fetch_at(
        self,
        user_id: str,
        date: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        """The non-voided event recorded at exactly date, if any."""
        with self._connection(conn) as c:
            row = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM meter_event
                WHERE user_id = ? AND voided = 0 AND event_date = ?
                ORDER BY id DESC LIMIT 1
            """, (user_id, to_db_timestamp(date))).fetchone()
        return _row_to_event(row) if row else None

    def fetch_latest(
        self,
        user_id: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Event]:
        """The latest non-voided event regardless of date."""
        with self._connection(conn) as c:
            row = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM meter_event
                WHERE user_id = ? AND voided = 0
                ORDER BY event_date DESC, id DESC LIMIT 1
            """, (user_id,)).fetchone()
        return _row_to_event(row) if row else None

    def fetch_between(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[Event]:
        """Non-voided events with start < event_date < end, oldest first."""
        if end < start:
            start, end = end, start
        with self._connection(conn) as c:
            rows = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM meter_event
                WHERE user_id = ? AND voided = 0 AND event_date > ? AND event_date < ?
                ORDER BY event_date ASC, id ASC
            """, (user_id, to_db_timestamp(start), to_db_timestamp(end))).fetchall()
        return [_row_to_event(row) for row in rows]

    def fetch_events(
        self,
        user_id: str,
        include_voided: bool = False,
        limit: Optional[int] = None
    ) -> List[Event]:
        """Get a user's events ordered by event date (oldest first).

        Args:
            user_id: Owning user
            include_voided: Also return voided events (full audit trail)
            limit: Optional cap on the number of most recent events returned

        Returns:
            List of events ordered by event_date ascending
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM meter_event WHERE user_id = ?"
        params: List = [user_id]
        if not include_voided:
            query += " AND voided = 0"
        query += " ORDER BY event_date DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as c:
            rows = c.execute(query, params).fetchall()
        return [_row_to_event(row) for row in reversed(rows)]

    # ------------------------------------------------------------------
    # Event writes
    # ------------------------------------------------------------------

    def insert_event(self, event: Event, conn: Optional[sqlite3.Connection] = None) -> Event:
        """Insert a new event and return it with its id and created_at.

        Raises:
            sqlite3.IntegrityError: If the idempotency key was already used
        """
        created_at = event.created_at or datetime.now()
        with self._connection(conn) as c:
            cursor = c.execute("""
                INSERT INTO meter_event
                (user_id, event_type, event_date, balance_kwh, purchase_kwh,
                 token_cost, notes, supersedes, created_at, idempotency_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.user_id,
                event.event_type.value,
                to_db_timestamp(event.event_date),
                event.balance_kwh,
                event.purchase_kwh,
                event.token_cost,
                event.notes,
                event.supersedes,
                to_db_timestamp(created_at),
                event.idempotency_key,
            ))
            event_id = cursor.lastrowid
        return self.get_event(event_id, conn=conn)

    def void_event(
        self,
        event_id: int,
        reason: str,
        conn: sqlite3.Connection,
        superseded_by: Optional[int] = None,
        voided_at: Optional[datetime] = None
    ) -> bool:
        """Mark an active event voided. Voiding is one-way.

        Returns:
            True if an active event was voided, False if it was missing or
            already voided
        """
        cursor = conn.execute("""
            UPDATE meter_event
            SET voided = 1, voided_reason = ?, voided_at = ?, superseded_by = ?
            WHERE id = ? AND voided = 0
        """, (
            reason,
            to_db_timestamp(voided_at or datetime.now()),
            superseded_by,
            event_id,
        ))
        return cursor.rowcount == 1

    def link_superseded_by(self, event_id: int, superseded_by: int, conn: sqlite3.Connection) -> None:
        """Point an already voided event at the event that replaced it."""
        conn.execute(
            "UPDATE meter_event SET superseded_by = ? WHERE id = ? AND voided = 1",
            (superseded_by, event_id)
        )

    def bulk_update_balance(
        self,
        updates: Sequence[Tuple[int, float]],
        conn: sqlite3.Connection
    ) -> int:
        """Set new balances for a batch of events inside the caller's transaction.

        Balances change only as part of an audited recalculation, so this
        always runs on a connection the caller already holds.

        Args:
            updates: (event_id, new_balance_kwh) pairs
            conn: Connection of an open transaction

        Returns:
            Number of rows updated
        """
        updated = 0
        for event_id, balance in updates:
            cursor = conn.execute(
                "UPDATE meter_event SET balance_kwh = ? WHERE id = ?",
                (balance, event_id)
            )
            updated += cursor.rowcount
        return updated

    # ------------------------------------------------------------------
    # Audits
    # ------------------------------------------------------------------

    def insert_audit(self, audit: RecalculationAudit, conn: sqlite3.Connection) -> RecalculationAudit:
        """Append an audit row inside the caller's transaction.

        Raises:
            sqlite3.IntegrityError: If the idempotency key was already used
        """
        cursor = conn.execute("""
            INSERT INTO recalculation_audit
            (user_id, triggering_event_id, trigger_type, offset_kwh,
             affected_event_ids, balances_before, applied_at, undo_deadline,
             idempotency_key)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            audit.user_id,
            audit.triggering_event_id,
            audit.trigger_type.value,
            audit.offset_kwh,
            json.dumps(list(audit.affected_event_ids)),
            json.dumps(list(audit.balances_before)),
            to_db_timestamp(audit.applied_at),
            to_db_timestamp(audit.undo_deadline),
            audit.idempotency_key,
        ))
        return self.get_audit(cursor.lastrowid, conn=conn)

    def idempotency_key_used(self, idempotency_key: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        """True if an event or audit row already carries this key."""
        with self._connection(conn) as c:
            row = c.execute("""
                SELECT 1 FROM meter_event WHERE idempotency_key = ?
                UNION ALL
                SELECT 1 FROM recalculation_audit WHERE idempotency_key = ?
                LIMIT 1
            """, (idempotency_key, idempotency_key)).fetchone()
        return row is not None

    def audit_key_used(self, idempotency_key: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT 1 FROM recalculation_audit WHERE idempotency_key = ?",
                (idempotency_key,)
            ).fetchone()
        return row is not None

    def get_audit(
        self,
        audit_id: int,
        user_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[RecalculationAudit]:
        query = f"SELECT {_AUDIT_COLUMNS} FROM recalculation_audit WHERE id = ?"
        params: List = [audit_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connection(conn) as c:
            row = c.execute(query, params).fetchone()
        return _row_to_audit(row) if row else None

    def mark_audit_undone(
        self,
        audit_id: int,
        undone_at: datetime,
        reason: Optional[str],
        conn: sqlite3.Connection
    ) -> bool:
        """Stamp undone_at once; a second call changes nothing."""
        cursor = conn.execute("""
            UPDATE recalculation_audit SET undone_at = ?, undo_reason = ?
            WHERE id = ? AND undone_at IS NULL
        """, (to_db_timestamp(undone_at), reason, audit_id))
        return cursor.rowcount == 1

    def fetch_audits(
        self,
        user_id: str,
        pending_only: bool = False,
        now: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[RecalculationAudit]:
        """Get a user's audits, newest first.

        Args:
            user_id: Owning user
            pending_only: Only audits that can still be undone at `now`
            now: Reference time for the undo window (defaults to now)
        """
        query = f"SELECT {_AUDIT_COLUMNS} FROM recalculation_audit WHERE user_id = ?"
        params: List = [user_id]
        if pending_only:
            query += " AND undone_at IS NULL AND undo_deadline > ?"
            params.append(to_db_timestamp(now or datetime.now()))
        query += " ORDER BY applied_at DESC, id DESC"
        with self._connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [_row_to_audit(row) for row in rows]


# Repository instances per database path
_repositories: Dict[str, EventRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> EventRepository:
    """Get a repository instance.

    Instances are cached per database path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of EventRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = EventRepository(db_path)
    return _repositories[db_path]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the event and audit tables if they don't exist.

    Events are never deleted; voiding and supersession keep the full history.
    Audit rows are append-only apart from the one-time undo stamp.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS meter_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                event_type TEXT NOT NULL CHECK (event_type IN ('READING', 'TOPUP')),
                event_date TEXT NOT NULL,
                balance_kwh REAL NOT NULL,
                purchase_kwh REAL,
                token_cost REAL,
                notes TEXT,
                voided INTEGER NOT NULL DEFAULT 0,
                voided_reason TEXT,
                voided_at TEXT,
                supersedes INTEGER REFERENCES meter_event(id),
                superseded_by INTEGER REFERENCES meter_event(id),
                created_at TEXT NOT NULL,
                idempotency_key TEXT UNIQUE
            );
            CREATE INDEX IF NOT EXISTS idx_meter_event_user_date
                ON meter_event (user_id, voided, event_date);
            CREATE TABLE IF NOT EXISTS recalculation_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                triggering_event_id INTEGER NOT NULL REFERENCES meter_event(id),
                trigger_type TEXT NOT NULL,
                offset_kwh REAL NOT NULL,
                affected_event_ids TEXT NOT NULL,
                balances_before TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                undo_deadline TEXT NOT NULL,
                undone_at TEXT,
                undo_reason TEXT,
                idempotency_key TEXT UNIQUE
            );
            CREATE INDEX IF NOT EXISTS idx_recalculation_audit_user
                ON recalculation_audit (user_id, applied_at);
        """)
    finally:
        conn.close()
