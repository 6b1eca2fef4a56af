# meter_ledger/demo/seed_demo_data.py

from datetime import datetime, timedelta
from typing import List, Optional

from meter_ledger.core.exceptions import InvalidValue
from meter_ledger.core.ledger import CommitResult, EventDraft, MeterLedger
from meter_ledger.storage.models import EventType

DEMO_USER = "demo"


def seed_demo_data(ledger: MeterLedger, user_id: str = DEMO_USER,
                   start: Optional[datetime] = None) -> List[CommitResult]:
    """Record ten days of readings and top-ups, ending with a backdated top-up.

    The last entry is dated between existing ones, so it cascades onto the
    two readings after it and leaves an audit that can be undone.
    """
    start = start or (datetime.now() - timedelta(days=10)).replace(
        hour=8, minute=0, second=0, microsecond=0
    )

    drafts = [
        EventDraft(EventType.READING, start, balance_kwh=120.0, notes="Meter check"),
        EventDraft(EventType.READING, start + timedelta(days=2), balance_kwh=104.5),
        EventDraft(EventType.TOPUP, start + timedelta(days=4), purchase_kwh=150.0, token_cost=216705.0),
        EventDraft(EventType.READING, start + timedelta(days=6), balance_kwh=230.2),
        EventDraft(EventType.READING, start + timedelta(days=8), balance_kwh=211.7),
        # forgotten token, entered late
        EventDraft(EventType.TOPUP, start + timedelta(days=5), token_cost=100000.0,
                   notes="Token found in wallet"),
    ]

    results = []
    for draft in drafts:
        submission = ledger.prepare_new(user_id, draft)
        if not submission.can_commit:
            raise InvalidValue(
                f"Demo entry on {draft.event_date:%Y-%m-%d} was not accepted: {submission.status.name}"
            )
        results.append(ledger.commit(submission))
    return results
