"""
Tests for duplicate-date detection and replacement.
"""

from conftest import day, reading, topup
from meter_ledger.core.conflicts import ConflictResolver, Resolution


class TestCheckDuplicate:

    def test_same_date_is_a_conflict(self, repository):
        existing = repository.insert_event(reading(50.0, day(1)))

        conflict = ConflictResolver(repository).check_duplicate("alice", day(1))

        assert conflict.existing.id == existing.id
        assert conflict.options == (Resolution.EDIT_EXISTING, Resolution.REPLACE)
        assert conflict.recorded_at == existing.created_at
        assert "reading of 50.00 kWh" in conflict.describe()

    def test_other_time_same_day_is_not_a_conflict(self, repository):
        repository.insert_event(reading(50.0, day(1, hour=8)))
        assert ConflictResolver(repository).check_duplicate("alice", day(1, hour=20)) is None

    def test_edited_event_may_keep_its_date(self, repository):
        existing = repository.insert_event(reading(50.0, day(1)))
        resolver = ConflictResolver(repository)
        assert resolver.check_duplicate("alice", day(1), exclude_event_id=existing.id) is None

    def test_voided_event_is_not_a_conflict(self, repository):
        existing = repository.insert_event(reading(50.0, day(1)))
        with repository.transaction() as conn:
            repository.void_event(existing.id, "typo", conn)
        assert ConflictResolver(repository).check_duplicate("alice", day(1)) is None


class TestReplace:

    def test_replace_voids_and_links(self, repository):
        existing = repository.insert_event(reading(50.0, day(1)))
        resolver = ConflictResolver(repository)
        conflict = resolver.check_duplicate("alice", day(1))

        with repository.transaction() as conn:
            new_event = resolver.replace(conflict, topup(150.0, 100.0, day(1), supersedes=existing.id), conn)

        old = repository.get_event(existing.id)
        assert old.voided
        assert old.superseded_by == new_event.id
        assert new_event.supersedes == existing.id
        assert repository.fetch_at("alice", day(1)).id == new_event.id

    def test_replace_does_not_cascade(self, repository):
        existing = repository.insert_event(reading(50.0, day(1)))
        after = repository.insert_event(reading(40.0, day(2)))
        resolver = ConflictResolver(repository)
        conflict = resolver.check_duplicate("alice", day(1))

        with repository.transaction() as conn:
            resolver.replace(conflict, reading(48.0, day(1), supersedes=existing.id), conn)

        assert repository.get_event(after.id).balance_kwh == 40.0
        assert repository.fetch_audits("alice") == []
