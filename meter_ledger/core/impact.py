"""
Backdate impact analysis.

Computes what a kWh offset introduced at a past date does to every later
event, before anything is written.

Analysis mirrors the commit but with these key differences:
1. No side effects (read-only operations only)
2. No exceptions for rule violations (issues collected instead)
3. Deterministic results for the same events and offset
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Iterable, List, Optional

from .chronology import ChronologyResolver
from .exceptions import CascadeConflict
from .validator import KWH_PRECISION
from meter_ledger.storage.models import Event, EventType


class IssueSeverity(Enum):
    """Severity of an analysis issue, in increasing order."""
    WARN = auto()   # Shown to the user, does not stop the cascade
    BLOCK = auto()  # The cascade must not be applied


class IssueType(Enum):
    ORDERING_VIOLATION = "ordering_violation"
    NEGATIVE_BALANCE = "negative_balance"
    LARGE_OFFSET = "large_offset"


@dataclass(frozen=True)
class Issue:
    """A problem found while analyzing a cascade.

    For ordering violations `event_id` is the earlier event of the pair and
    `related_event_id` the later reading that would sit above it.
    """
    issue_type: IssueType
    severity: IssueSeverity
    message: str
    event_id: Optional[int] = None
    related_event_id: Optional[int] = None


@dataclass(frozen=True)
class AffectedPreview:
    """Before/after balance of one event touched by the cascade."""
    event_id: int
    event_date: datetime
    event_type: EventType
    before: float
    after: float
    offset: float


@dataclass
class ImpactAnalysis:
    """Result of analyzing a backdated offset."""
    backdate: datetime
    offset_kwh: float
    affected_events: List[Event] = field(default_factory=list)
    preview: List[AffectedPreview] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)

    @property
    def affected_ids(self) -> List[int]:
        return [event.id for event in self.affected_events]

    @property
    def requires_cascade(self) -> bool:
        return bool(self.affected_events) and self.offset_kwh != 0

    @property
    def blocking_issues(self) -> List[Issue]:
        return [i for i in self.issues if i.severity == IssueSeverity.BLOCK]

    @property
    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if i.severity == IssueSeverity.WARN]

    @property
    def has_blocking(self) -> bool:
        return bool(self.blocking_issues)

    def ensure_applicable(self) -> None:
        """Raise CascadeConflict for the first blocking issue, if any."""
        if not self.has_blocking:
            return
        issue = self.blocking_issues[0]
        raise CascadeConflict(issue.message, issue.event_id, issue.related_event_id)


def shift(balance: float, offset_kwh: float) -> float:
    return round(balance + offset_kwh, KWH_PRECISION)


def assess_impact(
    affected_events: Iterable[Event],
    backdate: datetime,
    offset_kwh: float,
    large_offset_warning_kwh: Optional[float] = None,
    anchor: Optional[Event] = None
) -> ImpactAnalysis:
    """Build the preview and issue list for shifting events by an offset.

    Rules:
    - BLOCK ORDERING_VIOLATION: after the shift, a READING sits above the
      event right before it in the chain. The first affected event is
      compared with `anchor`, the entry that will sit right before it. A
      uniform offset keeps relative order among the affected events, so there
      it surfaces an inconsistency the cascade would otherwise carry forward;
      the pair is named so the user can fix it first.
    - BLOCK NEGATIVE_BALANCE: a shifted balance drops below zero (reduced
      or deleted top-ups).
    - WARN LARGE_OFFSET: the offset exceeds the configured threshold.

    Args:
        affected_events: Non-voided events after the backdate, oldest first
        backdate: Date the offset is introduced at
        offset_kwh: kWh added to every affected balance (may be negative)
        large_offset_warning_kwh: Optional threshold for LARGE_OFFSET
        anchor: Unshifted event that will precede the first affected one

    Returns:
        ImpactAnalysis with preview and issues
    """
    events = list(affected_events)
    analysis = ImpactAnalysis(backdate=backdate, offset_kwh=offset_kwh, affected_events=events)

    previous: Optional[AffectedPreview] = None
    if anchor is not None:
        previous = AffectedPreview(
            event_id=anchor.id,
            event_date=anchor.event_date,
            event_type=anchor.event_type,
            before=anchor.balance_kwh,
            after=anchor.balance_kwh,
            offset=0.0,
        )
    for event in events:
        entry = AffectedPreview(
            event_id=event.id,
            event_date=event.event_date,
            event_type=event.event_type,
            before=event.balance_kwh,
            after=shift(event.balance_kwh, offset_kwh),
            offset=offset_kwh,
        )
        analysis.preview.append(entry)

        if entry.after < 0:
            analysis.issues.append(Issue(
                issue_type=IssueType.NEGATIVE_BALANCE,
                severity=IssueSeverity.BLOCK,
                message=(
                    f"Balance on {entry.event_date:%Y-%m-%d %H:%M} would become "
                    f"negative ({entry.after:.2f} kWh)"
                ),
                event_id=entry.event_id,
            ))

        if (previous is not None
                and entry.event_type == EventType.READING
                and entry.after > previous.after):
            analysis.issues.append(Issue(
                issue_type=IssueType.ORDERING_VIOLATION,
                severity=IssueSeverity.BLOCK,
                message=(
                    f"Reading on {entry.event_date:%Y-%m-%d %H:%M} ({entry.after:.2f} kWh) "
                    f"would be higher than the balance on "
                    f"{previous.event_date:%Y-%m-%d %H:%M} ({previous.after:.2f} kWh)"
                ),
                event_id=previous.event_id,
                related_event_id=entry.event_id,
            ))
        previous = entry

    if (large_offset_warning_kwh is not None
            and events
            and abs(offset_kwh) > large_offset_warning_kwh):
        analysis.issues.append(Issue(
            issue_type=IssueType.LARGE_OFFSET,
            severity=IssueSeverity.WARN,
            message=(
                f"Offset of {offset_kwh:+.2f} kWh is larger than "
                f"{large_offset_warning_kwh:.2f} kWh; check the purchase amount"
            ),
        ))

    return analysis


class BackdateImpactAnalyzer:
    """Previews a backdated offset against the stored events."""

    def __init__(
        self,
        chronology: ChronologyResolver,
        large_offset_warning_kwh: Optional[float] = None
    ):
        self.chronology = chronology
        self.large_offset_warning_kwh = large_offset_warning_kwh

    def analyze(
        self,
        user_id: str,
        backdate: datetime,
        offset_kwh: float,
        exclude_event_ids: Iterable[int] = (),
        anchor: Optional[Event] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> ImpactAnalysis:
        """Analyze introducing `offset_kwh` at `backdate` for a user.

        Read-only and safe to call repeatedly while the entry is composed.

        Args:
            user_id: Owning user
            backdate: Date of the new or edited top-up
            offset_kwh: Purchase amount, or new minus old purchase for an edit
            exclude_event_ids: Events to leave out (the version being replaced)
            anchor: Entry that will precede the affected events after the change
            conn: Optional open connection to read through

        Returns:
            ImpactAnalysis with issues and a preview per affected event
        """
        excluded = set(exclude_event_ids)
        affected = [
            event for event in self.chronology.events_after(user_id, backdate, conn=conn)
            if event.id not in excluded
        ]
        return assess_impact(affected, backdate, offset_kwh, self.large_offset_warning_kwh, anchor)
