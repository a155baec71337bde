from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for ledger and cost-governance failures."""


class ValidationError(BillingError, ValueError):
    """Caller passed an amount, type or request the ledger cannot accept."""


class InsufficientCredits(BillingError):
    def __init__(self, user_id: str, *, required: int, available: int) -> None:
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Need {required} but have {available}.")


class InsufficientBudget(BillingError):
    def __init__(self, user_id: str, reason: str, *, status: Any = None) -> None:
        self.user_id = user_id
        self.reason = reason
        self.status = status
        super().__init__(reason)


class InvariantViolation(BillingError):
    """Balance and bucket fields disagree; the write that produced them is refused."""


class AccountNotFound(BillingError, LookupError):
    def __init__(self, user_id: str, what: str = "credit account") -> None:
        self.user_id = user_id
        super().__init__(f"No {what} for user {user_id!r}.")
