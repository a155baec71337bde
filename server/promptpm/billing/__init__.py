from __future__ import annotations

__all__ = [
    "CreditLedger",
    "CostMonitor",
    "InMemoryLedger",
    "InMemoryCostGovernor",
    "calculate_cost",
    "calculate_actual_cost",
    "estimate_credits",
    "estimate_request_credits",
    "process_monthly_reset",
    "expire_rollover_credits",
    "reset_monthly_costs",
    "run_paid_execution",
]

from server.promptpm.billing.costing import calculate_actual_cost, calculate_cost
from server.promptpm.billing.governance import CostMonitor
from server.promptpm.billing.ledger import CreditLedger
from server.promptpm.billing.lifecycle import expire_rollover_credits, process_monthly_reset, reset_monthly_costs
from server.promptpm.billing.memory import InMemoryCostGovernor, InMemoryLedger
from server.promptpm.billing.playground import run_paid_execution
from server.promptpm.billing.pricing import estimate_credits, estimate_request_credits
