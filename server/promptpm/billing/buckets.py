"""Credit bucket arithmetic shared by every ledger implementation.

Credits live in three buckets. Spending drains them in a fixed order
(monthly allocation, then rollover, then purchased) and the account balance
always equals the sum of what is left in each.
"""

from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass

from server.promptpm.billing.errors import InvariantViolation


@dataclass(frozen=True)
class Buckets:
    monthly_credits: int
    monthly_credits_used: int
    rollover_credits: int
    purchased_credits: int

    @property
    def monthly_remaining(self) -> int:
        return self.monthly_credits - self.monthly_credits_used

    @property
    def total(self) -> int:
        return self.monthly_remaining + self.rollover_credits + self.purchased_credits


@dataclass(frozen=True)
class SpendSplit:
    monthly: int
    rollover: int
    purchased: int

    @property
    def total(self) -> int:
        return self.monthly + self.rollover + self.purchased

    def as_dict(self) -> dict[str, int]:
        return {"monthly": self.monthly, "rollover": self.rollover, "purchased": self.purchased}


@dataclass(frozen=True)
class ResetPlan:
    allocation: int
    unused_monthly: int
    new_rollover: int
    expired_rollover: int
    balance_change: int

    def as_metadata(self) -> dict[str, int]:
        return {
            "allocation": self.allocation,
            "unused_monthly": self.unused_monthly,
            "new_rollover": self.new_rollover,
            "expired_rollover": self.expired_rollover,
        }


def split_spend(buckets: Buckets, amount: int) -> SpendSplit:
    """Return how much of ``amount`` each bucket pays, monthly first.

    The caller checks the balance beforehand; a shortfall here means the
    buckets and the balance disagree.
    """
    remaining = amount
    from_monthly = min(remaining, max(buckets.monthly_remaining, 0))
    remaining -= from_monthly
    from_rollover = min(remaining, max(buckets.rollover_credits, 0))
    remaining -= from_rollover
    from_purchased = min(remaining, max(buckets.purchased_credits, 0))
    remaining -= from_purchased
    if remaining:
        raise ValueError(f"buckets hold {buckets.total} credits, cannot cover {amount}")
    return SpendSplit(monthly=from_monthly, rollover=from_rollover, purchased=from_purchased)


def plan_monthly_reset(buckets: Buckets, *, allocation: int, rollover_cap: int) -> ResetPlan:
    unused = max(buckets.monthly_remaining, 0)
    new_rollover = min(unused, rollover_cap)
    before = unused + buckets.rollover_credits
    after = allocation + new_rollover
    return ResetPlan(
        allocation=allocation,
        unused_monthly=unused,
        new_rollover=new_rollover,
        expired_rollover=buckets.rollover_credits,
        balance_change=after - before,
    )


def check_invariant(balance: int, buckets: Buckets) -> None:
    if min(balance, buckets.monthly_credits, buckets.monthly_credits_used,
           buckets.rollover_credits, buckets.purchased_credits) < 0:
        raise InvariantViolation(f"negative credit field: balance={balance} buckets={buckets}")
    if buckets.monthly_credits_used > buckets.monthly_credits:
        raise InvariantViolation(f"monthly usage exceeds allocation: {buckets}")
    if balance != buckets.total:
        raise InvariantViolation(f"balance {balance} != bucket total {buckets.total}")


def add_months(ts: dt.datetime, months: int = 1) -> dt.datetime:
    month_index = ts.month - 1 + months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


def month_start_after(ts: dt.datetime) -> dt.datetime:
    return add_months(ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0), 1)


def period_key(ts: dt.datetime) -> str:
    return ts.strftime("%Y-%m")
