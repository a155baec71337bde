from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except Exception as e:
            raise ValueError(f"Invalid integer value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value} (got {value})")
    return value


def _env_decimal(name: str, default: str, *, min_value: Decimal | None = None) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = Decimal(default)
    else:
        try:
            value = Decimal(raw.strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid decimal value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


@dataclass(frozen=True)
class Settings:
    db_url: str
    db_echo: bool
    log_level: str

    signup_credits: int
    monthly_credits: int
    rollover_cap: int
    history_page_limit: int

    default_monthly_cost_limit: Decimal
    tokens_per_credit: int
    max_tokens_per_request: int

    @classmethod
    def from_env(cls) -> "Settings":
        db_url = _env_str("PROMPTPM_DB_URL", "sqlite:///./data/promptpm.db")
        db_echo = _env_bool("PROMPTPM_DB_ECHO", False)
        log_level = _env_str("PROMPTPM_LOG_LEVEL", "INFO")

        signup_credits = _env_int("PROMPTPM_SIGNUP_CREDITS", 5, min_value=0, max_value=100000)
        monthly_credits = _env_int("PROMPTPM_MONTHLY_CREDITS", 200, min_value=1, max_value=1000000)
        rollover_cap = _env_int("PROMPTPM_ROLLOVER_CAP", monthly_credits, min_value=0, max_value=1000000)
        history_page_limit = _env_int("PROMPTPM_HISTORY_PAGE_LIMIT", 50, min_value=1, max_value=1000)

        default_monthly_cost_limit = _env_decimal(
            "PROMPTPM_DEFAULT_MONTHLY_COST_LIMIT", "0.50", min_value=Decimal("0")
        )
        tokens_per_credit = _env_int("PROMPTPM_TOKENS_PER_CREDIT", 5000, min_value=1)
        max_tokens_per_request = _env_int("PROMPTPM_MAX_TOKENS_PER_REQUEST", 20000, min_value=1)

        return cls(
            db_url=db_url,
            db_echo=db_echo,
            log_level=log_level,
            signup_credits=signup_credits,
            monthly_credits=monthly_credits,
            rollover_cap=rollover_cap,
            history_page_limit=history_page_limit,
            default_monthly_cost_limit=default_monthly_cost_limit,
            tokens_per_credit=tokens_per_credit,
            max_tokens_per_request=max_tokens_per_request,
        )
