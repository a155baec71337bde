from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Protocol

from server.promptpm.billing.types import (
    AffordDecision,
    CostStatus,
    CreditBalance,
    LedgerEntry,
    TransactionPage,
)


class Ledger(Protocol):
    def initialize_account(self, user_id: str) -> bool: ...

    def get_balance(self, user_id: str) -> CreditBalance: ...

    def can_afford(self, user_id: str, amount: int) -> bool: ...

    def spend(
        self,
        user_id: str,
        amount: int,
        session_id: str | None,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry: ...

    def add(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry: ...

    def grant_monthly_credits(self, user_id: str, org_id: str | None = None) -> LedgerEntry: ...

    def remove_monthly_credits(self, user_id: str) -> None: ...

    def get_transaction_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: str | None = None,
    ) -> TransactionPage: ...

    # Per-account lifecycle steps; batch iteration lives in billing.lifecycle.
    def due_monthly_resets(self, now: dt.datetime) -> list[str]: ...

    def apply_monthly_reset(self, user_id: str, now: dt.datetime) -> bool: ...

    def due_rollover_expirations(self, now: dt.datetime) -> list[str]: ...

    def apply_rollover_expiration(self, user_id: str, now: dt.datetime) -> bool: ...


class CostGovernor(Protocol):
    def get_user_cost_status(self, user_id: str) -> CostStatus: ...

    def can_afford_request(self, user_id: str, estimated_cost: Decimal) -> AffordDecision: ...

    def record_cost(self, user_id: str, cost: Decimal, metadata: dict[str, Any] | None = None) -> None: ...

    def throttle_user(self, user_id: str, reason: str, *, source: str = "manual") -> None: ...

    def unthrottle_user(self, user_id: str) -> None: ...

    def reset_monthly_costs(self, now: dt.datetime | None = None) -> int: ...
