from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from server.promptpm.billing.errors import ValidationError
from server.promptpm.core.config import Settings

_PER_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    input: Decimal
    output: Decimal
    credit_multiplier: Decimal


def _per_million(input_usd: str, output_usd: str, multiplier: str) -> ModelPricing:
    return ModelPricing(
        input=Decimal(input_usd) / _PER_MILLION,
        output=Decimal(output_usd) / _PER_MILLION,
        credit_multiplier=Decimal(multiplier),
    )


# USD per token, from provider list prices per 1M tokens.
PRICING_TABLE: dict[str, ModelPricing] = {
    "sonnet": _per_million("3.00", "15.00", "1"),
    "opus": _per_million("15.00", "75.00", "5"),
    "gpt-4o": _per_million("5.00", "20.00", "2"),
    "gpt-4o-mini": _per_million("0.60", "2.40", "0.5"),
    "gpt-4-turbo": _per_million("10.00", "30.00", "2"),
}

DEFAULT_MODEL = "sonnet"


def normalize_model(model: str | None) -> str:
    key = (model or "").strip().lower()
    return key if key in PRICING_TABLE else DEFAULT_MODEL


def resolve_pricing(model: str | None) -> ModelPricing:
    return PRICING_TABLE[normalize_model(model)]


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price_cents: int

    @property
    def price_display(self) -> str:
        return f"${self.price_cents / 100:.2f}"


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    "small": CreditPackage(id="small", credits=100, price_cents=500),
    "medium": CreditPackage(id="medium", credits=250, price_cents=1000),
    "large": CreditPackage(id="large", credits=600, price_cents=2000),
}


def get_credit_package(package_id: str) -> CreditPackage:
    package = CREDIT_PACKAGES.get((package_id or "").strip().lower())
    if package is None:
        raise ValidationError(f"Unknown credit package {package_id!r}; expected one of {sorted(CREDIT_PACKAGES)}")
    return package


def estimate_tokens(prompt_chars: int, input_chars: int, history: Iterable[str] = ()) -> int:
    # ~4 characters per token, plus 30% headroom for the response
    history_chars = sum(len(message) for message in history)
    total_chars = max(prompt_chars, 0) + max(input_chars, 0) + history_chars
    return math.ceil(Decimal(total_chars) / 4 * Decimal("1.3"))


def estimate_credits(
    prompt_chars: int,
    input_chars: int,
    model: str | None,
    *,
    history: Iterable[str] = (),
    tokens_per_credit: int = 5000,
    max_tokens_per_request: int = 20000,
) -> int:
    tokens = estimate_tokens(prompt_chars, input_chars, history)
    if tokens > max_tokens_per_request:
        raise ValidationError(
            f"Request too large: {tokens} tokens exceeds maximum of {max_tokens_per_request} tokens per request"
        )
    base = math.ceil(tokens / tokens_per_credit)
    credits = math.ceil(Decimal(base) * resolve_pricing(model).credit_multiplier)
    return max(1, credits)


def estimate_request_credits(
    settings: Settings,
    prompt_chars: int,
    input_chars: int,
    model: str | None,
    *,
    history: Iterable[str] = (),
) -> int:
    return estimate_credits(
        prompt_chars,
        input_chars,
        model,
        history=history,
        tokens_per_credit=settings.tokens_per_credit,
        max_tokens_per_request=settings.max_tokens_per_request,
    )
