from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from server.promptpm.core.db import Base


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _next_month_start() -> dt.datetime:
    now = _utcnow()
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


USD = Numeric(12, 6)


class TransactionType(str, Enum):
    signup = "signup"
    spend = "spend"
    purchase = "purchase"
    monthly = "monthly"
    bonus = "bonus"
    admin = "admin"
    expire = "expire"


class AlertType(str, Enum):
    warning_50 = "warning_50"
    warning_75 = "warning_75"
    warning_90 = "warning_90"
    throttled = "throttled"


class Tier(str, Enum):
    free = "free"
    plus_individual = "plus_individual"
    plus_org = "plus_org"


class ThrottleSource(str, Enum):
    limit = "limit"
    manual = "manual"


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    subscription_status: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)

    # Cost governance state lives on the user row.
    current_month_api_cost: Mapped[Decimal] = mapped_column(USD, default=Decimal("0"))
    current_month_cost_reset_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=_next_month_start, index=True
    )
    lifetime_api_cost: Mapped[Decimal] = mapped_column(USD, default=Decimal("0"))
    is_throttled: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    throttled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    throttled_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    throttle_source: Mapped[str | None] = mapped_column(String(16), nullable=True)

    memberships: Mapped[list["OrganizationMember"]] = relationship(back_populates="user")
    credits: Mapped["CreditAccount | None"] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("current_month_api_cost >= 0", name="ck_users_month_cost_nonneg"),
        CheckConstraint("lifetime_api_cost >= 0", name="ck_users_lifetime_cost_nonneg"),
    )


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)

    members: Mapped[list["OrganizationMember"]] = relationship(back_populates="organization")


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String(32), ForeignKey("organizations.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    role: Mapped[str] = mapped_column(String(32), default="member")

    organization: Mapped["Organization"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="memberships")


class CreditAccount(Base):
    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_nonneg"),
        CheckConstraint("monthly_credits >= 0", name="ck_credit_monthly_nonneg"),
        CheckConstraint(
            "monthly_credits_used >= 0 AND monthly_credits_used <= monthly_credits",
            name="ck_credit_monthly_used_range",
        ),
        CheckConstraint("rollover_credits >= 0", name="ck_credit_rollover_nonneg"),
        CheckConstraint("purchased_credits >= 0", name="ck_credit_purchased_nonneg"),
        CheckConstraint(
            "balance = (monthly_credits - monthly_credits_used) + rollover_credits + purchased_credits",
            name="ck_credit_balance_sum",
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), unique=True, index=True)
    org_id: Mapped[str | None] = mapped_column(String(32), ForeignKey("organizations.id"), nullable=True)

    balance: Mapped[int] = mapped_column(Integer, default=0)
    monthly_credits: Mapped[int] = mapped_column(Integer, default=0)
    monthly_credits_used: Mapped[int] = mapped_column(Integer, default=0)
    monthly_reset_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    rollover_credits: Mapped[int] = mapped_column(Integer, default=0)
    rollover_expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    purchased_credits: Mapped[int] = mapped_column(Integer, default=0)

    lifetime_earned: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_spent: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_purchased: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)

    user: Mapped["User"] = relationship(back_populates="credits")


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_tx_balance_after_nonneg"),
        Index("ix_credit_tx_user_created", "user_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    org_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    purchase_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow, index=True)


class CostLimit(Base):
    __tablename__ = "cost_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tier_name: Mapped[str] = mapped_column(String(32), unique=True)
    monthly_cost_limit: Mapped[Decimal] = mapped_column(USD)
    monthly_price: Mapped[Decimal] = mapped_column(USD, default=Decimal("0"))
    throttle_on_exceed: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class CostAlert(Base):
    __tablename__ = "cost_alerts"
    __table_args__ = (
        UniqueConstraint("user_id", "alert_type", "period_key", name="uq_cost_alert_user_type_period"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    alert_type: Mapped[str] = mapped_column(String(16))
    period_key: Mapped[str] = mapped_column(String(7))
    threshold_amount: Mapped[Decimal] = mapped_column(USD)
    current_amount: Mapped[Decimal] = mapped_column(USD)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow)


class ApiCostEvent(Base):
    __tablename__ = "api_cost_events"
    __table_args__ = (Index("ix_api_cost_events_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id"), index=True)
    cost: Mapped[Decimal] = mapped_column(USD)
    model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_utcnow, index=True)
