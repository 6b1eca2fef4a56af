"""
Tests for backdate impact analysis.
"""

import pytest

from conftest import day, reading, topup
from meter_ledger.core.chronology import ChronologyResolver
from meter_ledger.core.exceptions import CascadeConflict
from meter_ledger.core.impact import (
    BackdateImpactAnalyzer,
    IssueSeverity,
    IssueType,
    assess_impact,
    shift
)


def _analyzer(repository, threshold=None):
    return BackdateImpactAnalyzer(ChronologyResolver(repository), large_offset_warning_kwh=threshold)


class TestAnalyze:
    """Test analysis against stored events."""

    def test_preview_for_backdated_topup(self, repository):
        """A 40 kWh top-up before readings [45, 30, 10] shifts them to [85, 70, 50]."""
        repository.insert_event(reading(60.0, day(0)))
        later = [repository.insert_event(reading(b, day(n))) for n, b in [(2, 45.0), (3, 30.0), (4, 10.0)]]

        analysis = _analyzer(repository).analyze("alice", day(1), 40.0)

        assert analysis.affected_ids == [e.id for e in later]
        assert [p.before for p in analysis.preview] == [45.0, 30.0, 10.0]
        assert [p.after for p in analysis.preview] == [85.0, 70.0, 50.0]
        assert analysis.issues == []
        assert analysis.requires_cascade
        analysis.ensure_applicable()

    def test_inconsistent_pair_blocks_and_is_named(self, repository):
        """A later reading above the one before it blocks the cascade."""
        repository.insert_event(reading(60.0, day(0)))
        repository.insert_event(reading(45.0, day(2)))
        repository.insert_event(reading(30.0, day(3)))
        third = repository.insert_event(reading(10.0, day(4)))
        fourth = repository.insert_event(reading(20.0, day(5)))

        analysis = _analyzer(repository).analyze("alice", day(1), 40.0)

        assert analysis.has_blocking
        issue = analysis.blocking_issues[0]
        assert issue.issue_type == IssueType.ORDERING_VIOLATION
        assert (issue.event_id, issue.related_event_id) == (third.id, fourth.id)
        with pytest.raises(CascadeConflict) as exc_info:
            analysis.ensure_applicable()
        assert exc_info.value.earlier_event_id == third.id
        assert exc_info.value.later_event_id == fourth.id

    def test_no_later_events_means_no_cascade(self, repository):
        repository.insert_event(reading(60.0, day(0)))

        analysis = _analyzer(repository).analyze("alice", day(1), 40.0)

        assert analysis.affected_events == []
        assert not analysis.requires_cascade

    def test_excluded_events_are_left_out(self, repository):
        target = repository.insert_event(topup(100.0, 50.0, day(1)))
        after = repository.insert_event(reading(90.0, day(2)))

        analysis = _analyzer(repository).analyze("alice", day(0), 10.0, exclude_event_ids=[target.id])

        assert analysis.affected_ids == [after.id]

    def test_other_users_are_not_affected(self, repository):
        repository.insert_event(reading(90.0, day(2), user_id="bob"))
        assert _analyzer(repository).analyze("alice", day(1), 10.0).affected_events == []


class TestAssessImpact:
    """Test the pure rules."""

    def test_negative_balance_blocks(self):
        events = [reading(30.0, day(2), id=1), reading(10.0, day(3), id=2)]

        analysis = assess_impact(events, day(1), -20.0)

        assert [i.issue_type for i in analysis.blocking_issues] == [IssueType.NEGATIVE_BALANCE]
        assert analysis.blocking_issues[0].event_id == 2

    def test_large_offset_only_warns(self):
        events = [reading(30.0, day(2), id=1)]

        analysis = assess_impact(events, day(1), 600.0, large_offset_warning_kwh=500.0)

        assert not analysis.has_blocking
        assert [i.severity for i in analysis.warnings] == [IssueSeverity.WARN]
        assert analysis.warnings[0].issue_type == IssueType.LARGE_OFFSET

    def test_topup_after_reading_is_not_an_ordering_problem(self):
        events = [reading(30.0, day(2), id=1), topup(130.0, 100.0, day(3), id=2)]
        assert assess_impact(events, day(1), 5.0).issues == []

    def test_analysis_is_deterministic(self):
        events = [reading(30.0, day(2), id=1), reading(25.0, day(3), id=2)]
        first = assess_impact(events, day(1), 12.5)
        second = assess_impact(events, day(1), 12.5)
        assert first.preview == second.preview
        assert first.issues == second.issues

    def test_first_reading_checked_against_anchor(self):
        """A shifted reading above the entry that will precede it is named with that entry."""
        anchor = topup(10.0, 40.0, day(1), id=9)
        events = [reading(45.0, day(2), id=1), reading(30.0, day(3), id=2)]

        analysis = assess_impact(events, day(1), 40.0, anchor=anchor)

        issue = analysis.blocking_issues[0]
        assert issue.issue_type == IssueType.ORDERING_VIOLATION
        assert (issue.event_id, issue.related_event_id) == (9, 1)

    def test_anchor_at_or_above_first_reading_passes(self):
        anchor = topup(100.0, 40.0, day(1), id=9)
        events = [reading(45.0, day(2), id=1), reading(30.0, day(3), id=2)]

        assert assess_impact(events, day(1), 40.0, anchor=anchor).issues == []


def test_shift_rounds_to_four_places():
    assert shift(0.1, 0.2) == 0.3
    assert shift(10.00001, 0.00002) == 10.0
