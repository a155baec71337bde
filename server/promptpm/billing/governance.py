from __future__ import annotations

import datetime as dt
import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from server.promptpm.billing import analytics
from server.promptpm.billing.buckets import month_start_after, period_key
from server.promptpm.billing.errors import AccountNotFound, ValidationError
from server.promptpm.billing.tiers import resolve_tier
from server.promptpm.billing.types import AffordDecision, CostStatus
from server.promptpm.core.config import Settings
from server.promptpm.core.db import session_scope
from server.promptpm.core.models import AlertType, ApiCostEvent, CostAlert, CostLimit, ThrottleSource, User

log = logging.getLogger(__name__)

_ALERT_THRESHOLDS = (
    (Decimal("50"), AlertType.warning_50),
    (Decimal("75"), AlertType.warning_75),
    (Decimal("90"), AlertType.warning_90),
)
_CENT = Decimal("0.01")


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _dec(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def require_cost(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid USD cost {value!r}")
    try:
        cost = _dec(value)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid USD cost {value!r}") from e
    if not cost.is_finite() or cost < 0:
        raise ValidationError(f"USD cost must be a finite value >= 0 (got {value!r})")
    return cost


def percent_of(current: Decimal, limit: Decimal) -> Decimal:
    if limit <= 0:
        return Decimal("0")
    return (current / limit * 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def require_throttle_source(source: Any) -> str:
    source = str(getattr(source, "value", source))
    if source not in {s.value for s in ThrottleSource}:
        raise ValidationError(f"Unknown throttle source {source!r}")
    return source


class CostMonitor:
    """Per-user USD spend against the monthly limit of the user's tier.

    Cost counters and throttle state live on the ``users`` row; every write
    locks that row first.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _lock_user(self, db: Session, user_id: str) -> User:
        user = db.scalar(select(User).where(User.id == user_id).with_for_update())
        if user is None:
            raise AccountNotFound(user_id, "user")
        return user

    def _limit_row(self, db: Session, tier: str) -> CostLimit | None:
        return db.scalar(select(CostLimit).where(CostLimit.tier_name == tier, CostLimit.is_active.is_(True)))

    def _status(self, db: Session, user: User) -> tuple[CostStatus, bool]:
        tier = resolve_tier(db, user)
        row = self._limit_row(db, tier)
        limit = _dec(row.monthly_cost_limit) if row is not None else self.settings.default_monthly_cost_limit
        throttle_on_exceed = row.throttle_on_exceed if row is not None else True
        current = _dec(user.current_month_api_cost)
        status = CostStatus(
            user_id=user.id,
            current_month_cost=current,
            cost_limit=limit,
            percent_used=percent_of(current, limit),
            is_throttled=bool(user.is_throttled),
            throttled_reason=user.throttled_reason,
            tier=tier,
        )
        return status, throttle_on_exceed

    def _create_alert(self, db: Session, user_id: str, alert_type: AlertType, status: CostStatus, now: dt.datetime) -> bool:
        try:
            with db.begin_nested():
                db.add(
                    CostAlert(
                        user_id=user_id,
                        alert_type=alert_type.value,
                        period_key=period_key(now),
                        threshold_amount=status.cost_limit,
                        current_amount=status.current_month_cost,
                        created_at=now,
                    )
                )
        except IntegrityError:
            # Unique (user, type, month): this alert already went out.
            return False
        except SQLAlchemyError:
            log.exception("Failed to record %s alert for user %s", alert_type.value, user_id)
            return False
        return True

    def _throttle(self, db: Session, user: User, reason: str, source: str, now: dt.datetime) -> CostStatus:
        user.is_throttled = True
        user.throttled_reason = reason
        user.throttled_at = now
        user.throttle_source = source
        user.updated_at = now
        status, _ = self._status(db, user)
        self._create_alert(db, user.id, AlertType.throttled, status, now)
        log.warning("Throttled user %s (source=%s): %s", user.id, source, reason)
        return status

    def get_user_cost_status(self, user_id: str) -> CostStatus:
        with session_scope(self.settings) as db:
            user = db.get(User, user_id)
            if user is None:
                raise AccountNotFound(user_id, "user")
            status, _ = self._status(db, user)
            return status

    def can_afford_request(self, user_id: str, estimated_cost: Any) -> AffordDecision:
        estimated = require_cost(estimated_cost)
        with session_scope(self.settings) as db:
            user = self._lock_user(db, user_id)
            status, throttle_on_exceed = self._status(db, user)
            if status.is_throttled:
                return AffordDecision(
                    allowed=False,
                    status=status,
                    reason=status.throttled_reason or "API usage is currently throttled",
                )

            if status.current_month_cost + estimated > status.cost_limit:
                limit_text = f"${status.cost_limit.quantize(_CENT)}"
                if throttle_on_exceed:
                    status = self._throttle(
                        db,
                        user,
                        f"Would exceed {status.tier} monthly API cost limit ({limit_text})",
                        ThrottleSource.limit.value,
                        _now(),
                    )
                else:
                    log.info("User %s over %s limit; tier does not throttle", user_id, status.tier)
                return AffordDecision(
                    allowed=False,
                    status=status,
                    reason=f"This request would exceed your monthly API cost limit of {limit_text}",
                )
            return AffordDecision(allowed=True, status=status)

    def record_cost(self, user_id: str, cost: Any, metadata: dict[str, Any] | None = None) -> None:
        cost = require_cost(cost)
        meta = dict(metadata or {})
        now = _now()
        with session_scope(self.settings) as db:
            user = self._lock_user(db, user_id)
            user.current_month_api_cost = _dec(user.current_month_api_cost) + cost
            user.lifetime_api_cost = _dec(user.lifetime_api_cost) + cost
            user.updated_at = now
            db.add(
                ApiCostEvent(
                    user_id=user_id,
                    cost=cost,
                    model=meta.get("model"),
                    session_id=meta.get("session_id"),
                    input_tokens=meta.get("input_tokens"),
                    output_tokens=meta.get("output_tokens"),
                    metadata_json=json.dumps(meta, default=str, sort_keys=True),
                    created_at=now,
                )
            )
            db.flush()

            status, _ = self._status(db, user)
            for threshold, alert_type in _ALERT_THRESHOLDS:
                if status.percent_used >= threshold and self._create_alert(db, user_id, alert_type, status, now):
                    log.info(
                        "Cost alert %s for user %s (%s%% of %s)",
                        alert_type.value,
                        user_id,
                        status.percent_used,
                        status.cost_limit,
                    )
        log.info("Recorded API cost %s for user %s (month=%s)", cost, user_id, status.current_month_cost)

    def throttle_user(self, user_id: str, reason: str, *, source: str = ThrottleSource.manual.value) -> None:
        source = require_throttle_source(source)
        with session_scope(self.settings) as db:
            user = self._lock_user(db, user_id)
            self._throttle(db, user, reason, source, _now())

    def unthrottle_user(self, user_id: str) -> None:
        with session_scope(self.settings) as db:
            user = self._lock_user(db, user_id)
            user.is_throttled = False
            user.throttled_reason = None
            user.throttled_at = None
            user.throttle_source = None
            user.updated_at = _now()
        log.info("Unthrottled user %s", user_id)

    def reset_monthly_costs(self, now: dt.datetime | None = None) -> int:
        """Zero the monthly counter of every user whose cost period has ended.

        Throttles set by the limit check are lifted for the same users;
        manual throttles stay until ``unthrottle_user``.
        """
        now = now or _now()
        due = User.current_month_cost_reset_at <= now
        with session_scope(self.settings) as db:
            cleared = db.execute(
                update(User)
                .where(due, User.is_throttled.is_(True), User.throttle_source == ThrottleSource.limit.value)
                .values(is_throttled=False, throttled_reason=None, throttled_at=None, throttle_source=None)
                .execution_options(synchronize_session=False)
            ).rowcount
            count = db.execute(
                update(User)
                .where(due)
                .values(
                    current_month_api_cost=Decimal("0"),
                    current_month_cost_reset_at=month_start_after(now),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
        log.info("Monthly API costs reset for %s users (%s limit throttles cleared)", count, cleared)
        return int(count or 0)

    def get_cost_analytics(
        self,
        risk_level: str | None = None,
        limit: int | None = None,
        *,
        now: dt.datetime | None = None,
    ) -> list[analytics.UserCostAnalytics]:
        with session_scope(self.settings) as db:
            return analytics.collect_user_analytics(db, now=now, risk=risk_level, limit=limit)

    def get_aggregate_cost_metrics(self, *, now: dt.datetime | None = None) -> analytics.AggregateCostMetrics:
        with session_scope(self.settings) as db:
            return analytics.aggregate_metrics(analytics.collect_user_analytics(db, now=now))
