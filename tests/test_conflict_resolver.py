"""Tests for last-commit-wins conflict resolution."""

from datetime import datetime, timedelta, timezone

from branchsync.models.sync_ledger import EntityVersion, SyncLedgerEntry
from branchsync.services.conflict_resolver import ConflictResolver, Resolution

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(hours=1)


def _entry(sync_id, operation, at, entity_id="7"):
    return SyncLedgerEntry(
        sync_id=sync_id,
        transaction_type="inventory_adjust",
        entity_type="product",
        entity_id=entity_id,
        operation=operation,
        data={},
        timestamp=at,
    )


class TestConflictResolver:
    def test_create_always_applies(self, db_session):
        resolver = ConflictResolver()
        decision = resolver.resolve(db_session, _entry("a", "create", T0), NOW)
        assert decision.resolution is Resolution.APPLY
        assert decision.sequence is None
        assert db_session.query(EntityVersion).count() == 0

    def test_first_update_creates_version(self, db_session):
        decision = ConflictResolver().resolve(db_session, _entry("a", "update", T0), NOW)
        assert decision.should_apply
        assert decision.sequence == 1
        version = db_session.query(EntityVersion).one()
        assert version.last_sync_id == "a"

    def test_newer_update_wins_and_bumps_sequence(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("a", "update", T0), NOW)
        decision = resolver.resolve(db_session, _entry("b", "update", T0 + timedelta(minutes=1)), NOW)
        assert decision.should_apply
        assert decision.sequence == 2

    def test_older_update_is_superseded(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("b", "update", T0 + timedelta(minutes=1)), NOW)
        decision = resolver.resolve(db_session, _entry("a", "delete", T0), NOW)
        assert decision.resolution is Resolution.SUPERSEDED
        assert decision.winner_sync_id == "b"
        assert db_session.query(EntityVersion).one().sequence == 1

    def test_equal_timestamps_later_arrival_wins(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("a", "update", T0), NOW)
        decision = resolver.resolve(db_session, _entry("b", "update", T0), NOW)
        assert decision.should_apply

    def test_entities_are_independent(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("a", "update", T0 + timedelta(minutes=5), entity_id="1"), NOW)
        decision = resolver.resolve(db_session, _entry("b", "update", T0, entity_id="2"), NOW)
        assert decision.should_apply

    def test_future_timestamp_is_clamped(self, db_session):
        resolver = ConflictResolver(max_clock_skew_seconds=300)
        far_future = NOW + timedelta(days=1)
        assert resolver.effective_timestamp(far_future, NOW) == NOW
        near_future = NOW + timedelta(seconds=60)
        assert resolver.effective_timestamp(near_future, NOW) == near_future

        # A fast clock cannot lock out writes that really happened later
        resolver.resolve(db_session, _entry("fast", "update", far_future), NOW)
        decision = resolver.resolve(
            db_session, _entry("honest", "update", NOW + timedelta(minutes=1)), NOW + timedelta(minutes=1)
        )
        assert decision.should_apply

    def test_naive_timestamps_are_treated_as_utc(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("a", "update", T0.replace(tzinfo=None)), NOW)
        decision = resolver.resolve(db_session, _entry("b", "update", T0 - timedelta(seconds=1)), NOW)
        assert decision.resolution is Resolution.SUPERSEDED


class TestAdditiveWrites:
    def test_additive_write_advances_version_without_sequence(self, db_session):
        resolver = ConflictResolver()
        assert resolver.record_additive(db_session, "product", "7", "sale-1", T0 + timedelta(minutes=5)) is None

        version = db_session.query(EntityVersion).one()
        assert version.last_sync_id == "sale-1"
        assert version.sequence == 0
        assert version.replaced_at is None

    def test_older_update_loses_to_newer_additive_write(self, db_session):
        resolver = ConflictResolver()
        resolver.record_additive(db_session, "product", "7", "sale-1", T0 + timedelta(minutes=5))
        decision = resolver.resolve(db_session, _entry("count-1", "update", T0), NOW)
        assert decision.resolution is Resolution.SUPERSEDED
        assert decision.winner_sync_id == "sale-1"

    def test_older_additive_write_never_rewinds_version(self, db_session):
        resolver = ConflictResolver()
        resolver.record_additive(db_session, "product", "7", "sale-2", T0 + timedelta(minutes=5))
        resolver.record_additive(db_session, "product", "7", "sale-1", T0)
        assert db_session.query(EntityVersion).one().last_sync_id == "sale-2"

    def test_additive_write_older_than_update_reports_it(self, db_session):
        resolver = ConflictResolver()
        resolver.resolve(db_session, _entry("count-1", "update", T0 + timedelta(minutes=5)), NOW)
        assert resolver.record_additive(db_session, "product", "7", "sale-1", T0) == "count-1"
        assert resolver.record_additive(
            db_session, "product", "7", "sale-2", T0 + timedelta(minutes=6)
        ) is None
