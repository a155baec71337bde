"""In-process ledger and cost governor for tests of callers.

Both keep their state in dicts behind one ``threading.Lock`` and share the
bucket arithmetic with the SQL implementations, so a caller tested against
them sees the same balances, errors and throttling decisions.
"""

from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from server.promptpm.billing.buckets import (
    Buckets,
    add_months,
    check_invariant,
    month_start_after,
    period_key,
    plan_monthly_reset,
    split_spend,
)
from server.promptpm.billing.errors import AccountNotFound, InsufficientCredits, ValidationError
from server.promptpm.billing.governance import percent_of, require_cost, require_throttle_source
from server.promptpm.billing.ledger import history_window, require_credit_amount, transaction_kind
from server.promptpm.billing.types import (
    AffordDecision,
    CostStatus,
    CreditBalance,
    LedgerEntry,
    MonthlyBreakdown,
    RolloverBreakdown,
    TransactionPage,
)
from server.promptpm.core.models import AlertType, ThrottleSource, Tier, TransactionType


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class _Account:
    user_id: str
    balance: int = 0
    monthly_credits: int = 0
    monthly_credits_used: int = 0
    monthly_reset_at: dt.datetime | None = None
    rollover_credits: int = 0
    rollover_expires_at: dt.datetime | None = None
    purchased_credits: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    lifetime_purchased: int = 0
    org_id: str | None = None

    def buckets(self) -> Buckets:
        return Buckets(
            monthly_credits=self.monthly_credits,
            monthly_credits_used=self.monthly_credits_used,
            rollover_credits=self.rollover_credits,
            purchased_credits=self.purchased_credits,
        )


class InMemoryLedger:
    def __init__(
        self,
        *,
        signup_credits: int = 5,
        monthly_credits: int = 200,
        rollover_cap: int | None = None,
        history_page_limit: int = 50,
    ) -> None:
        self.signup_credits = signup_credits
        self.history_page_limit = history_page_limit
        self.monthly_credits = monthly_credits
        self.rollover_cap = monthly_credits if rollover_cap is None else rollover_cap
        self._lock = threading.Lock()
        self._accounts: dict[str, _Account] = {}
        self._log: list[LedgerEntry] = []

    def _account(self, user_id: str) -> _Account:
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    def _append(self, account: _Account, kind: str, amount: int, description: str, **extra: Any) -> LedgerEntry:
        check_invariant(account.balance, account.buckets())
        entry = LedgerEntry(
            id=len(self._log) + 1,
            user_id=account.user_id,
            amount=amount,
            balance_after=account.balance,
            type=kind,
            description=description,
            metadata=dict(extra.pop("metadata", None) or {}),
            created_at=_now(),
            **extra,
        )
        self._log.append(entry)
        return entry

    def entries(self, user_id: str) -> list[LedgerEntry]:
        with self._lock:
            return [e for e in self._log if e.user_id == user_id]

    def initialize_account(self, user_id: str) -> bool:
        with self._lock:
            if user_id in self._accounts:
                return False
            grant = self.signup_credits
            account = _Account(
                user_id=user_id,
                balance=grant,
                purchased_credits=grant,
                lifetime_earned=grant,
                lifetime_purchased=grant,
            )
            self._accounts[user_id] = account
            if grant > 0:
                self._append(account, TransactionType.signup.value, grant, "Signup bonus")
            return True

    def get_balance(self, user_id: str) -> CreditBalance:
        self.initialize_account(user_id)
        with self._lock:
            a = self._account(user_id)
            return CreditBalance(
                balance=a.balance,
                monthly=MonthlyBreakdown(
                    allocated=a.monthly_credits,
                    used=a.monthly_credits_used,
                    remaining=a.monthly_credits - a.monthly_credits_used,
                    reset_at=a.monthly_reset_at,
                ),
                rollover=RolloverBreakdown(amount=a.rollover_credits, expires_at=a.rollover_expires_at),
                purchased=a.purchased_credits,
            )

    def can_afford(self, user_id: str, amount: int) -> bool:
        return self.get_balance(user_id).balance >= amount

    def spend(
        self,
        user_id: str,
        amount: int,
        session_id: str | None,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        amount = require_credit_amount(amount)
        with self._lock:
            a = self._account(user_id)
            if a.balance < amount:
                raise InsufficientCredits(user_id, required=amount, available=a.balance)
            split = split_spend(a.buckets(), amount)
            a.monthly_credits_used += split.monthly
            a.rollover_credits -= split.rollover
            a.purchased_credits -= split.purchased
            a.balance -= amount
            a.lifetime_spent += amount
            return self._append(
                a,
                TransactionType.spend.value,
                -amount,
                description,
                metadata={**(metadata or {}), "breakdown": split.as_dict()},
                session_id=session_id,
            )

    def add(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        amount = require_credit_amount(amount)
        kind = str(getattr(type, "value", type))
        if kind not in {"purchase", "bonus", "monthly", "admin"}:
            raise ValidationError(f"Cannot add credits of type {kind!r}")
        meta = dict(metadata or {})
        purchase_id = meta.get("purchase_id")
        with self._lock:
            a = self._account(user_id)
            if purchase_id:
                for entry in self._log:
                    if entry.user_id == user_id and entry.purchase_id == purchase_id:
                        return entry
            if kind in {"purchase", "bonus"}:
                a.purchased_credits += amount
                a.lifetime_purchased += amount
            elif kind == "monthly":
                a.monthly_credits += amount
            else:
                a.purchased_credits += amount
            a.balance += amount
            a.lifetime_earned += amount
            return self._append(
                a, kind, amount, description, metadata=meta, purchase_id=purchase_id, org_id=meta.get("org_id")
            )

    def grant_monthly_credits(self, user_id: str, org_id: str | None = None) -> LedgerEntry:
        with self._lock:
            a = self._account(user_id)
            replaced = a.monthly_credits - a.monthly_credits_used
            delta = self.monthly_credits - replaced
            a.monthly_credits = self.monthly_credits
            a.monthly_credits_used = 0
            a.monthly_reset_at = add_months(_now())
            a.org_id = org_id or a.org_id
            a.balance += delta
            a.lifetime_earned += max(delta, 0)
            return self._append(
                a,
                TransactionType.monthly.value,
                delta,
                "Monthly credits allocated",
                metadata={"allocation": self.monthly_credits, "replaced_remaining": replaced},
                org_id=org_id,
            )

    def remove_monthly_credits(self, user_id: str) -> None:
        with self._lock:
            a = self._account(user_id)
            remaining = a.monthly_credits - a.monthly_credits_used
            if remaining > 0:
                expires_at = a.monthly_reset_at or add_months(_now())
                a.rollover_credits += remaining
                if a.rollover_expires_at is None or a.rollover_expires_at < expires_at:
                    a.rollover_expires_at = expires_at
            a.monthly_credits = 0
            a.monthly_credits_used = 0
            a.monthly_reset_at = None
            check_invariant(a.balance, a.buckets())

    def get_transaction_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: str | None = None,
    ) -> TransactionPage:
        limit, offset = history_window(limit, offset, self.history_page_limit)
        kind = transaction_kind(type)
        with self._lock:
            rows = [e for e in self._log if e.user_id == user_id and (kind is None or e.type == kind)]
        rows.reverse()
        return TransactionPage(transactions=rows[offset : offset + limit], total=len(rows))

    def due_monthly_resets(self, now: dt.datetime) -> list[str]:
        with self._lock:
            return [a.user_id for a in self._accounts.values() if a.monthly_reset_at and a.monthly_reset_at <= now]

    def apply_monthly_reset(self, user_id: str, now: dt.datetime) -> bool:
        with self._lock:
            a = self._account(user_id)
            if a.monthly_reset_at is None or a.monthly_reset_at > now:
                return False
            plan = plan_monthly_reset(a.buckets(), allocation=self.monthly_credits, rollover_cap=self.rollover_cap)
            a.monthly_credits = plan.allocation
            a.monthly_credits_used = 0
            a.monthly_reset_at = add_months(now)
            a.rollover_credits = plan.new_rollover
            a.rollover_expires_at = add_months(now)
            a.balance += plan.balance_change
            a.lifetime_earned += plan.allocation
            self._append(
                a, TransactionType.monthly.value, plan.balance_change, "Monthly credits reset", metadata=plan.as_metadata()
            )
            return True

    def due_rollover_expirations(self, now: dt.datetime) -> list[str]:
        with self._lock:
            return [
                a.user_id
                for a in self._accounts.values()
                if a.rollover_expires_at and a.rollover_expires_at <= now and a.rollover_credits > 0
            ]

    def apply_rollover_expiration(self, user_id: str, now: dt.datetime) -> bool:
        with self._lock:
            a = self._account(user_id)
            if a.rollover_expires_at is None or a.rollover_expires_at > now or a.rollover_credits <= 0:
                return False
            expired = a.rollover_credits
            a.balance -= expired
            a.rollover_credits = 0
            a.rollover_expires_at = None
            self._append(
                a, TransactionType.expire.value, -expired, "Rollover credits expired", metadata={"expired": expired}
            )
            return True


@dataclass
class _CostAccount:
    user_id: str
    tier: str = Tier.free.value
    current_month_cost: Decimal = Decimal("0")
    lifetime_cost: Decimal = Decimal("0")
    is_throttled: bool = False
    throttled_reason: str | None = None
    throttled_at: dt.datetime | None = None
    throttle_source: str | None = None
    reset_at: dt.datetime = field(default_factory=lambda: month_start_after(_now()))


_DEFAULT_LIMITS = {
    Tier.free.value: Decimal("0.50"),
    Tier.plus_individual.value: Decimal("5.00"),
    Tier.plus_org.value: Decimal("2.50"),
}


class InMemoryCostGovernor:
    def __init__(self, limits: dict[str, Decimal] | None = None, *, default_limit: Decimal = Decimal("0.50")) -> None:
        self.limits = dict(_DEFAULT_LIMITS if limits is None else limits)
        self.default_limit = default_limit
        self._lock = threading.Lock()
        self._users: dict[str, _CostAccount] = {}
        self.alerts: list[tuple[str, str, str]] = []
        self.events: list[tuple[str, Decimal, dict[str, Any]]] = []

    def add_user(self, user_id: str, *, tier: str = Tier.free.value, current_month_cost: Any = 0) -> None:
        with self._lock:
            self._users[user_id] = _CostAccount(
                user_id=user_id, tier=tier, current_month_cost=require_cost(current_month_cost)
            )

    def _user(self, user_id: str) -> _CostAccount:
        user = self._users.get(user_id)
        if user is None:
            raise AccountNotFound(user_id, "user")
        return user

    def _status(self, u: _CostAccount) -> CostStatus:
        limit = self.limits.get(u.tier, self.default_limit)
        return CostStatus(
            user_id=u.user_id,
            current_month_cost=u.current_month_cost,
            cost_limit=limit,
            percent_used=percent_of(u.current_month_cost, limit),
            is_throttled=u.is_throttled,
            throttled_reason=u.throttled_reason,
            tier=u.tier,
        )

    def _alert(self, user_id: str, alert_type: AlertType) -> None:
        key = (user_id, alert_type.value, period_key(_now()))
        if key not in self.alerts:
            self.alerts.append(key)

    def _throttle(self, u: _CostAccount, reason: str, source: str) -> None:
        u.is_throttled = True
        u.throttled_reason = reason
        u.throttled_at = _now()
        u.throttle_source = source
        self._alert(u.user_id, AlertType.throttled)

    def get_user_cost_status(self, user_id: str) -> CostStatus:
        with self._lock:
            return self._status(self._user(user_id))

    def can_afford_request(self, user_id: str, estimated_cost: Any) -> AffordDecision:
        estimated = require_cost(estimated_cost)
        with self._lock:
            u = self._user(user_id)
            status = self._status(u)
            if u.is_throttled:
                return AffordDecision(False, status, u.throttled_reason or "API usage is currently throttled")
            if status.current_month_cost + estimated > status.cost_limit:
                self._throttle(u, f"Would exceed {u.tier} monthly API cost limit", ThrottleSource.limit.value)
                return AffordDecision(
                    False, self._status(u), f"This request would exceed your monthly API cost limit of ${status.cost_limit}"
                )
            return AffordDecision(True, status)

    def record_cost(self, user_id: str, cost: Any, metadata: dict[str, Any] | None = None) -> None:
        cost = require_cost(cost)
        with self._lock:
            u = self._user(user_id)
            u.current_month_cost += cost
            u.lifetime_cost += cost
            self.events.append((user_id, cost, dict(metadata or {})))
            percent = self._status(u).percent_used
            for threshold, alert_type in ((50, AlertType.warning_50), (75, AlertType.warning_75), (90, AlertType.warning_90)):
                if percent >= threshold:
                    self._alert(user_id, alert_type)

    def throttle_user(self, user_id: str, reason: str, *, source: str = ThrottleSource.manual.value) -> None:
        with self._lock:
            self._throttle(self._user(user_id), reason, require_throttle_source(source))

    def unthrottle_user(self, user_id: str) -> None:
        with self._lock:
            u = self._user(user_id)
            u.is_throttled = False
            u.throttled_reason = None
            u.throttled_at = None
            u.throttle_source = None

    def reset_monthly_costs(self, now: dt.datetime | None = None) -> int:
        now = now or _now()
        count = 0
        with self._lock:
            for u in self._users.values():
                if u.reset_at > now:
                    continue
                if u.is_throttled and u.throttle_source == ThrottleSource.limit.value:
                    u.is_throttled = False
                    u.throttled_reason = None
                    u.throttled_at = None
                    u.throttle_source = None
                u.current_month_cost = Decimal("0")
                u.reset_at = month_start_after(now)
                count += 1
        return count
