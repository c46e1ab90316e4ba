from datetime import date

import pytest

from ledger.errors import UserNotFoundError, ValidationError
from ledger.models import PointSource


class TestUserSummary:
    def test_totals_and_sources(self, system, make_user, clock):
        user_id = make_user()
        system.earning.earn_by_admin(user_id, 100, "seed")
        clock.advance(days=1)
        system.earning.earn_by_daily_checkin(user_id)
        system.consumption.spend_for_purchase(user_id, 30, "Book")

        summary = system.statistics.user_summary(user_id)

        assert summary.current_balance == 75
        assert summary.total_income == 105
        assert summary.total_expense == 30
        assert summary.today_income == 5
        assert summary.today_expense == 30
        assert summary.month_income == 105
        assert {s.source: s.total for s in summary.income_sources} == {
            PointSource.ADMIN_ADD: 100,
            PointSource.DAILY_CHECKIN: 5,
        }
        assert summary.expense_sources[0].source == PointSource.EXPENSE_PURCHASE
        assert summary.consecutive_checkins == 1

    def test_unknown_user(self, system):
        with pytest.raises(UserNotFoundError):
            system.statistics.user_summary(4242)


class TestCheckinStreak:
    def test_unbroken_run(self, system, make_user, clock):
        user_id = make_user()
        for _ in range(3):
            system.earning.earn_by_daily_checkin(user_id)
            clock.advance(days=1)

        # Today's check-in is still open, so the run ending yesterday counts
        assert system.statistics.consecutive_checkins(user_id) == 3

    def test_gap_resets_streak(self, system, make_user, clock):
        user_id = make_user()
        system.earning.earn_by_daily_checkin(user_id)
        clock.advance(days=2)
        system.earning.earn_by_daily_checkin(user_id)

        assert system.statistics.consecutive_checkins(user_id) == 1

    def test_no_checkins(self, system, make_user):
        assert system.statistics.consecutive_checkins(make_user()) == 0


class TestTrend:
    def test_zero_filled_oldest_first(self, system, make_user, clock):
        user_id = make_user()
        system.earning.earn_by_admin(user_id, 50, "seed")
        clock.advance(days=2)
        system.consumption.spend_for_purchase(user_id, 20, "Pen")
        system.earning.earn_by_admin(user_id, 5, "tip")

        trend = system.statistics.points_trend(user_id, days=4)

        assert [p.day for p in trend] == [
            date(2024, 3, 13), date(2024, 3, 14), date(2024, 3, 15), date(2024, 3, 16),
        ]
        assert [(p.income, p.expense, p.net) for p in trend] == [
            (0, 0, 0), (50, 0, 50), (0, 0, 0), (5, 20, -15),
        ]

    @pytest.mark.parametrize("days", [0, 366])
    def test_day_range(self, system, make_user, days):
        with pytest.raises(ValidationError):
            system.statistics.points_trend(make_user(), days=days)

    def test_flow_trend_counts_active_users(self, system, make_user):
        first, second = make_user(), make_user()
        system.earning.earn_by_admin(first, 10, "a")
        system.earning.earn_by_admin(second, 10, "b")
        system.earning.earn_by_admin(second, 10, "c")

        today = system.statistics.flow_trend(days=1)[-1]

        assert today.active_users == 2
        assert today.income == 30


class TestSystemStats:
    def test_overview(self, system, make_user):
        rich = make_user(balance=2000)
        make_user(balance=50)
        make_user()
        system.consumption.spend_for_purchase(rich, 500, "Console")

        stats = system.statistics.system_stats()

        assert stats.total_users == 3
        assert stats.new_users_today == 3
        assert stats.total_points == 1550
        assert stats.total_income == 2050
        assert stats.total_expense == 500
        assert stats.active_users_today == 2
        buckets = {b.label: b.count for b in stats.balance_distribution}
        assert buckets["0"] == 1
        assert buckets["1-100"] == 1
        assert buckets["1001-5000"] == 1
        assert sum(buckets.values()) == 3


class TestRankings:
    def test_top_earners_and_spenders(self, system, make_user):
        low, high = make_user(balance=10), make_user(balance=90)
        system.consumption.spend_for_purchase(low, 10, "all in")

        earners = system.statistics.top_earners(limit=5)
        spenders = system.statistics.top_spenders(limit=5)

        assert [e.user_id for e in earners] == [high, low]
        assert earners[0].total == 90
        assert [s.user_id for s in spenders] == [low]

    def test_balance_ranking_is_dense(self, system, make_user):
        a = make_user(balance=300)
        b = make_user(balance=300)
        c = make_user(balance=100)
        make_user()

        ranking = system.statistics.balance_ranking(limit=10)

        assert [(r.user_id, r.rank) for r in ranking] == [(a, 1), (b, 1), (c, 2)]
