"""Tests for the free-signal quota tracker."""
from datetime import datetime

from dealfinder.models.signal_usage import SignalUsage
from dealfinder.services.quota import QuotaTracker, ResetPolicy, month_start


class TestLifetimeQuota:
    def test_new_identity_has_full_quota(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, clock=clock)
        assert tracker.get_remaining("user-1") == 3

    def test_consume_saturates_at_limit(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, reset_policy=ResetPolicy.LIFETIME, clock=clock)

        used = [tracker.consume("user-1") for _ in range(5)]

        assert used == [1, 2, 3, 3, 3]
        assert tracker.get_remaining("user-1") == 0

    def test_remaining_reaches_zero_after_third(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, clock=clock)
        remaining = []
        for _ in range(5):
            tracker.consume("user-1")
            remaining.append(tracker.get_remaining("user-1"))
        assert remaining == [2, 1, 0, 0, 0]

    def test_identities_are_independent(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, clock=clock)
        tracker.consume("user-1")
        assert tracker.get_remaining("user-2") == 3

    def test_lifetime_never_resets_on_its_own(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=1, reset_policy=ResetPolicy.LIFETIME, clock=clock)
        tracker.consume("user-1")
        clock.advance(days=400)
        assert tracker.get_remaining("user-1") == 0

    def test_usage_is_persisted(self, db_session, clock):
        QuotaTracker(db_session, limit=3, clock=clock).consume("user-1")
        usage = db_session.query(SignalUsage).filter(SignalUsage.identity_id == "user-1").one()
        assert usage.count == 1
        assert usage.first_used_at == clock.now

    def test_reset(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, clock=clock)
        for _ in range(3):
            tracker.consume("user-1")
        tracker.reset("user-1")
        assert tracker.get_remaining("user-1") == 3

    def test_zero_limit(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=0, clock=clock)
        assert tracker.consume("user-1") == 0
        assert tracker.get_remaining("user-1") == 0


class TestMonthlyQuota:
    def test_count_resets_in_new_month(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, reset_policy=ResetPolicy.MONTHLY, clock=clock)
        for _ in range(3):
            tracker.consume("user-1")
        assert tracker.get_remaining("user-1") == 0

        clock.advance(days=31)
        assert tracker.get_remaining("user-1") == 3
        assert tracker.consume("user-1") == 1

    def test_same_month_keeps_count(self, db_session, clock):
        tracker = QuotaTracker(db_session, limit=3, reset_policy="monthly", clock=clock)
        tracker.consume("user-1")
        clock.advance(days=2)
        assert tracker.get_remaining("user-1") == 2

    def test_month_start(self):
        assert month_start(datetime(2026, 5, 17, 8, 30)) == datetime(2026, 5, 1)
