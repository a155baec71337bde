"""Read-only cost reporting for the admin dashboard.

Per-user rows combine the cost counters on the user record with request
counts from ``api_cost_events`` and the subscription price of the user's tier.
Nothing here takes locks or writes.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from server.promptpm.billing.errors import ValidationError
from server.promptpm.billing.tiers import active_cost_limits, tier_for, verified_org_member_ids
from server.promptpm.core.models import ApiCostEvent, User

RISK_LEVELS = ("safe", "low_risk", "medium_risk", "high_risk")

# Lower bounds (exclusive) on current-month USD cost, highest first.
_RISK_BANDS = (
    (Decimal("5.00"), "high_risk"),
    (Decimal("2.50"), "medium_risk"),
    (Decimal("1.00"), "low_risk"),
)

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class UserCostAnalytics:
    user_id: str
    email: str
    tier: str
    current_month_cost: Decimal
    lifetime_cost: Decimal
    current_month_requests: int
    total_requests: int
    avg_cost_per_request: Decimal | None
    monthly_revenue: Decimal
    margin_percent: Decimal | None
    is_throttled: bool
    risk_level: str
    last_request_at: dt.datetime | None


@dataclass(frozen=True)
class AggregateCostMetrics:
    total_monthly_revenue: Decimal
    total_monthly_cost: Decimal
    overall_margin: Decimal
    active_users: int
    throttled_users: int
    high_risk_users: int
    average_cost_per_user: Decimal


def _dec(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def risk_level(current_month_cost: Decimal) -> str:
    for floor, level in _RISK_BANDS:
        if current_month_cost > floor:
            return level
    return "safe"


def margin_percent(revenue: Decimal, cost: Decimal) -> Decimal | None:
    if cost <= 0 or revenue <= 0:
        return None
    return ((revenue - cost) / revenue * 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def _month_start(now: dt.datetime) -> dt.datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def collect_user_analytics(
    db: Session,
    *,
    now: dt.datetime | None = None,
    risk: str | None = None,
    limit: int | None = None,
) -> list[UserCostAnalytics]:
    if risk is not None and risk not in RISK_LEVELS:
        raise ValidationError(f"Unknown risk level {risk!r}; expected one of {list(RISK_LEVELS)}")
    if limit is not None and limit <= 0:
        raise ValidationError("limit must be positive")

    month_start = _month_start(now or dt.datetime.now(dt.UTC))
    in_month = ApiCostEvent.created_at >= month_start
    request_stats = {
        row.user_id: row
        for row in db.execute(
            select(
                ApiCostEvent.user_id,
                func.count(ApiCostEvent.id).label("total_requests"),
                func.count(case((in_month, ApiCostEvent.id))).label("month_requests"),
                func.avg(case((in_month, ApiCostEvent.cost))).label("avg_cost"),
                func.max(ApiCostEvent.created_at).label("last_request_at"),
            ).group_by(ApiCostEvent.user_id)
        )
    }
    verified = verified_org_member_ids(db)
    limits = active_cost_limits(db)

    rows: list[UserCostAnalytics] = []
    users = db.scalars(select(User).order_by(User.current_month_api_cost.desc(), User.id))
    for user in users:
        current = _dec(user.current_month_api_cost)
        level = risk_level(current)
        if risk is not None and level != risk:
            continue
        tier = tier_for(user.subscription_status, in_verified_org=user.id in verified)
        tier_row = limits.get(tier)
        revenue = _dec(tier_row.monthly_price) if tier_row is not None else Decimal("0")
        stats = request_stats.get(user.id)
        rows.append(
            UserCostAnalytics(
                user_id=user.id,
                email=user.email,
                tier=tier,
                current_month_cost=current,
                lifetime_cost=_dec(user.lifetime_api_cost),
                current_month_requests=int(stats.month_requests) if stats else 0,
                total_requests=int(stats.total_requests) if stats else 0,
                avg_cost_per_request=_dec(stats.avg_cost) if stats and stats.avg_cost is not None else None,
                monthly_revenue=revenue,
                margin_percent=margin_percent(revenue, current),
                is_throttled=bool(user.is_throttled),
                risk_level=level,
                last_request_at=stats.last_request_at if stats else None,
            )
        )
        if limit is not None and len(rows) >= limit:
            break
    return rows


def aggregate_metrics(rows: list[UserCostAnalytics]) -> AggregateCostMetrics:
    revenue = sum((row.monthly_revenue for row in rows), Decimal("0"))
    cost = sum((row.current_month_cost for row in rows), Decimal("0"))
    overall = ((revenue - cost) / revenue * 100).quantize(_CENT, rounding=ROUND_HALF_UP) if revenue > 0 else Decimal("0")
    average = (cost / len(rows)) if rows else Decimal("0")
    return AggregateCostMetrics(
        total_monthly_revenue=revenue,
        total_monthly_cost=cost,
        overall_margin=overall,
        active_users=len(rows),
        throttled_users=sum(1 for row in rows if row.is_throttled),
        high_risk_users=sum(1 for row in rows if row.risk_level == "high_risk"),
        average_cost_per_user=average,
    )
