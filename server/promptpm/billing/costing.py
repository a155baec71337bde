from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP

from server.promptpm.billing.errors import ValidationError
from server.promptpm.billing.pricing import normalize_model, resolve_pricing
from server.promptpm.billing.types import CostEstimate

# Share of a pre-call token estimate assumed to be prompt (input) tokens.
INPUT_SHARE = Decimal("0.6")
OUTPUT_SHARE = Decimal("0.4")


def format_usd(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP)}"


def calculate_cost(total_tokens: int, model: str | None) -> CostEstimate:
    """Estimate USD cost before a call, splitting tokens 60/40 input/output."""
    if total_tokens < 0:
        raise ValidationError("total_tokens must be >= 0")
    input_tokens = math.ceil(Decimal(total_tokens) * INPUT_SHARE)
    output_tokens = math.ceil(Decimal(total_tokens) * OUTPUT_SHARE)
    pricing = resolve_pricing(model)
    return CostEstimate(
        estimated_cost=input_tokens * pricing.input + output_tokens * pricing.output,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        model=normalize_model(model),
    )


def calculate_actual_cost(input_tokens: int, output_tokens: int, model: str | None) -> Decimal:
    if input_tokens < 0 or output_tokens < 0:
        raise ValidationError("token counts must be >= 0")
    pricing = resolve_pricing(model)
    return Decimal(input_tokens) * pricing.input + Decimal(output_tokens) * pricing.output
