"""
Consumption summary derived from the event chain.

Readings between top-ups show how much energy was used; from that the
average daily use, days of credit left and a monthly cost estimate follow.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from .tariff import TariffConfig, cost_for_kwh
from .validator import KWH_PRECISION
from meter_ledger.storage.models import Event, EventType

SECONDS_PER_DAY = 86400
DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class UsageSummary:
    """Aggregate usage over a user's active events."""
    total_consumption_kwh: float
    total_purchased_kwh: float
    remaining_kwh: float
    avg_daily_kwh: Optional[float]
    days_remaining: Optional[float]
    estimated_monthly_cost: Optional[float]
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def __post_init__(self):
        """Validate the window is logical."""
        if (self.window_start is not None and self.window_end is not None
                and self.window_start > self.window_end):
            raise ValueError("window_start must be before window_end")


def consumption_series(events: Iterable[Event]) -> List[float]:
    """Consumption of each event relative to the one before it.

    Top-ups and the first event contribute 0; a reading contributes the drop
    in balance since the previous event.
    """
    series = []
    previous: Optional[Event] = None
    for event in events:
        if previous is None or event.event_type == EventType.TOPUP:
            series.append(0.0)
        else:
            series.append(round(max(0.0, previous.balance_kwh - event.balance_kwh), KWH_PRECISION))
        previous = event
    return series


def summarize_usage(events: Iterable[Event], tariff: TariffConfig) -> UsageSummary:
    """Summarize usage over active events.

    Args:
        events: Events of one user (voided ones are skipped)
        tariff: Tariff used for the monthly cost estimate

    Returns:
        UsageSummary; averages are None when the events span less than a day
    """
    active = sorted((e for e in events if not e.voided), key=lambda e: e.event_date)
    if not active:
        return UsageSummary(
            total_consumption_kwh=0.0,
            total_purchased_kwh=0.0,
            remaining_kwh=0.0,
            avg_daily_kwh=None,
            days_remaining=None,
            estimated_monthly_cost=None,
        )

    total = round(sum(consumption_series(active)), KWH_PRECISION)
    purchased = round(sum(e.purchase_kwh or 0.0 for e in active if e.is_topup), KWH_PRECISION)
    remaining = active[-1].balance_kwh
    window_start = active[0].event_date
    window_end = active[-1].event_date
    span_days = (window_end - window_start).total_seconds() / SECONDS_PER_DAY

    avg_daily = None
    days_remaining = None
    monthly_cost = None
    if span_days >= 1:
        avg_daily = round(total / span_days, KWH_PRECISION)
        if avg_daily > 0:
            days_remaining = round(remaining / avg_daily, 1)
        monthly_cost = cost_for_kwh(avg_daily * DAYS_PER_MONTH, tariff)

    return UsageSummary(
        total_consumption_kwh=total,
        total_purchased_kwh=purchased,
        remaining_kwh=remaining,
        avg_daily_kwh=avg_daily,
        days_remaining=days_remaining,
        estimated_monthly_cost=monthly_cost,
        window_start=window_start,
        window_end=window_end,
    )
