"""
Tests for concurrent writers against the file-backed database

1. Parallel spends never overdraw
2. Mixed earn and spend keep the balance equal to the ledger sum
3. Parallel daily check-ins credit once
"""

import threading
from concurrent.futures import ThreadPoolExecutor

from ledger.errors import AlreadyRewardedError, InsufficientBalanceError


def run_together(count, action):
    """Starts count calls of action(i) at the same moment; returns results or raised errors."""
    barrier = threading.Barrier(count)

    def _call(i):
        barrier.wait()
        try:
            return action(i)
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(_call, range(count)))


class TestParallelSpend:
    def test_no_overdraft(self, system, make_user):
        """Test 20 spends of 10 against a balance of 100 let exactly 10 through."""
        user_id = make_user(balance=100)

        outcomes = run_together(
            20, lambda i: system.consumption.spend_for_purchase(user_id, 10, f"item {i}")
        )

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(failures) == 10
        assert all(isinstance(f, InsufficientBalanceError) for f in failures)
        check = system.ledger.reconcile(user_id)
        assert check.consistent
        assert check.cached_balance == 0
        assert check.record_count == 11

    def test_mixed_earn_and_spend(self, system, make_user):
        """Test interleaved credits and debits serialize on the user."""
        user_id = make_user(balance=50)

        def _act(i):
            if i % 2:
                return system.earning.earn_by_admin(user_id, 5, f"bonus {i}")
            return system.consumption.spend_for_purchase(user_id, 15, f"item {i}")

        outcomes = run_together(16, _act)

        assert all(
            not isinstance(o, Exception) or isinstance(o, InsufficientBalanceError)
            for o in outcomes
        )
        check = system.ledger.reconcile(user_id)
        assert check.consistent
        records = system.ledger.list_records(user_id, page_size=100).entries
        assert all(r.balance_after >= 0 for r in records)
        assert records[0].balance_after == check.cached_balance


class TestParallelCheckin:
    def test_single_record(self, system, make_user):
        user_id = make_user()

        outcomes = run_together(8, lambda i: system.earning.earn_by_daily_checkin(user_id))

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(failures) == 7
        assert all(isinstance(f, AlreadyRewardedError) for f in failures)
        assert system.ledger.list_records(user_id).total_count == 1
        assert system.ledger.get_balance(user_id) == 5
