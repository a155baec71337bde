from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from server.promptpm.billing.costing import calculate_actual_cost, calculate_cost
from server.promptpm.billing.errors import InsufficientBudget, InsufficientCredits
from server.promptpm.billing.interfaces import CostGovernor, Ledger
from server.promptpm.billing.ledger import require_credit_amount
from server.promptpm.billing.types import CostEstimate, LedgerEntry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderUsage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class PaidExecution:
    result: Any
    charge: LedgerEntry
    estimate: CostEstimate
    actual_cost: Decimal


def run_paid_execution(
    ledger: Ledger,
    governor: CostGovernor,
    *,
    user_id: str,
    model: str | None,
    estimated_tokens: int,
    credits: int,
    session_id: str | None,
    execute: Callable[[], tuple[Any, ProviderUsage]],
    description: str | None = None,
) -> PaidExecution:
    """Gate a paid model call on the USD budget and the credit balance, then bill it.

    Credits are charged from the pre-call estimate; the USD cost is recorded
    from the token counts the provider reports, whether or not the credit
    charge succeeds. Nothing is charged or recorded when ``execute`` raises.
    """
    credits = require_credit_amount(credits)
    estimate = calculate_cost(estimated_tokens, model)

    decision = governor.can_afford_request(user_id, estimate.estimated_cost)
    if not decision.allowed:
        log.info("Blocked %s request for user %s: %s", estimate.model, user_id, decision.reason)
        raise InsufficientBudget(user_id, decision.reason or "Monthly API cost limit reached", status=decision.status)

    # First run for a user: the signup grant must exist before the credit gate.
    ledger.initialize_account(user_id)
    if not ledger.can_afford(user_id, credits):
        available = ledger.get_balance(user_id).balance
        raise InsufficientCredits(user_id, required=credits, available=available)

    result, usage = execute()
    actual = calculate_actual_cost(usage.input_tokens, usage.output_tokens, estimate.model)

    # The provider has been paid at this point; its cost counts against the
    # monthly limit even when the credit charge loses a race and fails.
    try:
        charge = ledger.spend(
            user_id,
            credits,
            session_id,
            description or f"Playground run ({estimate.model})",
            {"model": estimate.model, "estimated_tokens": estimated_tokens},
        )
    except InsufficientCredits:
        log.warning("Credit charge failed after %s run for user %s; recording cost %s", estimate.model, user_id, actual)
        raise
    finally:
        governor.record_cost(
            user_id,
            actual,
            {
                "model": estimate.model,
                "session_id": session_id,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "estimated_cost": str(estimate.estimated_cost),
            },
        )
    return PaidExecution(result=result, charge=charge, estimate=estimate, actual_cost=actual)
