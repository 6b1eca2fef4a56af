"""
Shared fixtures: a throwaway database per test and small event builders.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from meter_ledger.core.ledger import MeterLedger
from meter_ledger.storage.models import Event, EventType
from meter_ledger.storage.repository import EventRepository, initialize_schema

BASE_DATE = datetime(2024, 3, 1, 8, 0, 0)


class FakeClock:
    """Settable clock for undo-window tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def day(n: int, hour: int = 8) -> datetime:
    """BASE_DATE shifted by n days."""
    return BASE_DATE.replace(hour=hour) + timedelta(days=n)


def reading(balance: float, date: datetime, user_id: str = "alice", **kwargs) -> Event:
    return Event(user_id=user_id, event_type=EventType.READING,
                 event_date=date, balance_kwh=balance, **kwargs)


def topup(balance: float, purchase: float, date: datetime, user_id: str = "alice", **kwargs) -> Event:
    return Event(user_id=user_id, event_type=EventType.TOPUP, event_date=date,
                 balance_kwh=balance, purchase_kwh=purchase, **kwargs)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def repository(db_path):
    return EventRepository(db_path)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 20, 12, 0, 0))


@pytest.fixture
def ledger(repository, clock):
    return MeterLedger(repository, clock=clock)
