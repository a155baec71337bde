import datetime as dt
import unittest

from server.promptpm.billing.buckets import (
    Buckets,
    add_months,
    check_invariant,
    month_start_after,
    period_key,
    plan_monthly_reset,
    split_spend,
)
from server.promptpm.billing.errors import BillingError, InvariantViolation


class TestSplitSpend(unittest.TestCase):
    def test_monthly_then_rollover_then_purchased(self) -> None:
        buckets = Buckets(monthly_credits=3, monthly_credits_used=0, rollover_credits=2, purchased_credits=10)
        split = split_spend(buckets, 8)
        self.assertEqual(split.as_dict(), {"monthly": 3, "rollover": 2, "purchased": 3})
        self.assertEqual(split.total, 8)

    def test_partially_used_monthly_counts_only_remaining(self) -> None:
        buckets = Buckets(monthly_credits=10, monthly_credits_used=7, rollover_credits=0, purchased_credits=5)
        self.assertEqual(split_spend(buckets, 4).as_dict(), {"monthly": 3, "rollover": 0, "purchased": 1})

    def test_exact_total_drains_everything(self) -> None:
        buckets = Buckets(monthly_credits=1, monthly_credits_used=0, rollover_credits=1, purchased_credits=1)
        self.assertEqual(split_spend(buckets, 3).as_dict(), {"monthly": 1, "rollover": 1, "purchased": 1})

    def test_shortfall_raises(self) -> None:
        buckets = Buckets(monthly_credits=0, monthly_credits_used=0, rollover_credits=0, purchased_credits=2)
        with self.assertRaises(ValueError):
            split_spend(buckets, 3)


class TestMonthlyResetPlan(unittest.TestCase):
    def test_unused_monthly_rolls_over_and_old_rollover_expires(self) -> None:
        buckets = Buckets(monthly_credits=200, monthly_credits_used=50, rollover_credits=30, purchased_credits=5)
        plan = plan_monthly_reset(buckets, allocation=200, rollover_cap=200)
        self.assertEqual(plan.unused_monthly, 150)
        self.assertEqual(plan.new_rollover, 150)
        self.assertEqual(plan.expired_rollover, 30)
        # before: 150 monthly + 30 rollover; after: 200 monthly + 150 rollover
        self.assertEqual(plan.balance_change, 170)

    def test_rollover_is_capped(self) -> None:
        buckets = Buckets(monthly_credits=200, monthly_credits_used=0, rollover_credits=0, purchased_credits=0)
        plan = plan_monthly_reset(buckets, allocation=200, rollover_cap=100)
        self.assertEqual(plan.new_rollover, 100)
        self.assertEqual(plan.balance_change, 100)

    def test_first_reset_without_allocation(self) -> None:
        buckets = Buckets(monthly_credits=0, monthly_credits_used=0, rollover_credits=0, purchased_credits=5)
        plan = plan_monthly_reset(buckets, allocation=200, rollover_cap=200)
        self.assertEqual(plan.balance_change, 200)
        self.assertEqual(plan.as_metadata()["new_rollover"], 0)


class TestInvariant(unittest.TestCase):
    def test_matching_balance_passes(self) -> None:
        check_invariant(12, Buckets(monthly_credits=10, monthly_credits_used=3, rollover_credits=0, purchased_credits=5))

    def test_drift_is_reported(self) -> None:
        with self.assertRaises(InvariantViolation) as ctx:
            check_invariant(13, Buckets(monthly_credits=10, monthly_credits_used=3, rollover_credits=0, purchased_credits=5))
        self.assertIsInstance(ctx.exception, BillingError)
        self.assertNotIsInstance(ctx.exception, AssertionError)

    def test_overused_monthly_is_reported(self) -> None:
        with self.assertRaises(InvariantViolation):
            check_invariant(0, Buckets(monthly_credits=1, monthly_credits_used=2, rollover_credits=1, purchased_credits=0))


class TestCalendar(unittest.TestCase):
    def test_add_months_clamps_to_month_end(self) -> None:
        self.assertEqual(add_months(dt.datetime(2026, 1, 31, 9, 30)), dt.datetime(2026, 2, 28, 9, 30))
        self.assertEqual(add_months(dt.datetime(2028, 1, 31)), dt.datetime(2028, 2, 29))

    def test_add_months_crosses_year(self) -> None:
        self.assertEqual(add_months(dt.datetime(2026, 12, 15, tzinfo=dt.UTC)), dt.datetime(2027, 1, 15, tzinfo=dt.UTC))
        self.assertEqual(add_months(dt.datetime(2026, 11, 30), 3), dt.datetime(2027, 2, 28))

    def test_month_start_after_and_period_key(self) -> None:
        ts = dt.datetime(2026, 12, 19, 17, 5, tzinfo=dt.UTC)
        self.assertEqual(month_start_after(ts), dt.datetime(2027, 1, 1, tzinfo=dt.UTC))
        self.assertEqual(period_key(ts), "2026-12")


if __name__ == "__main__":
    unittest.main()
