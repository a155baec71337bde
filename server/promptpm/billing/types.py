from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class MonthlyBreakdown:
    allocated: int
    used: int
    remaining: int
    reset_at: dt.datetime | None


@dataclass(frozen=True)
class RolloverBreakdown:
    amount: int
    expires_at: dt.datetime | None


@dataclass(frozen=True)
class CreditBalance:
    balance: int
    monthly: MonthlyBreakdown
    rollover: RolloverBreakdown
    purchased: int

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "monthly": {
                "allocated": self.monthly.allocated,
                "used": self.monthly.used,
                "remaining": self.monthly.remaining,
                "reset_at": self.monthly.reset_at.isoformat() if self.monthly.reset_at else None,
            },
            "rollover": {
                "amount": self.rollover.amount,
                "expires_at": self.rollover.expires_at.isoformat() if self.rollover.expires_at else None,
            },
            "purchased": self.purchased,
        }


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    user_id: str
    amount: int
    balance_after: int
    type: str
    description: str
    metadata: dict[str, Any]
    created_at: dt.datetime
    session_id: str | None = None
    purchase_id: str | None = None
    org_id: str | None = None


@dataclass(frozen=True)
class TransactionPage:
    transactions: list[LedgerEntry]
    total: int


@dataclass(frozen=True)
class CostEstimate:
    estimated_cost: Decimal
    input_tokens: int
    output_tokens: int
    model: str


@dataclass(frozen=True)
class CostStatus:
    user_id: str
    current_month_cost: Decimal
    cost_limit: Decimal
    percent_used: Decimal
    is_throttled: bool
    throttled_reason: str | None
    tier: str


@dataclass(frozen=True)
class AffordDecision:
    allowed: bool
    status: CostStatus
    reason: str | None = None


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    failed_users: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0
