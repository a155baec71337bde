"""Baseline schema from SQLAlchemy models, with default tier cost limits.

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01 00:00:00
"""
from __future__ import annotations

from decimal import Decimal

from alembic import op

from server.promptpm.core import models
from server.promptpm.core.db import Base

# revision identifiers, used by Alembic.
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


DEFAULT_COST_LIMITS = [
    {
        "tier_name": "free",
        "monthly_cost_limit": Decimal("0.50"),
        "monthly_price": Decimal("0"),
        "throttle_on_exceed": True,
        "is_active": True,
        "description": "Free tier: signup credits only, max $0.50/month API cost",
    },
    {
        "tier_name": "plus_individual",
        "monthly_cost_limit": Decimal("5.00"),
        "monthly_price": Decimal("6.00"),
        "throttle_on_exceed": True,
        "is_active": True,
        "description": "Individual subscriber: $6/month, max $5/month API cost",
    },
    {
        "tier_name": "plus_org",
        "monthly_cost_limit": Decimal("2.50"),
        "monthly_price": Decimal("3.00"),
        "throttle_on_exceed": True,
        "is_active": True,
        "description": "Verified organization member: $3/month, max $2.50/month API cost",
    },
    {
        "tier_name": "unlimited",
        "monthly_cost_limit": Decimal("999999.99"),
        "monthly_price": Decimal("0"),
        "throttle_on_exceed": False,
        "is_active": True,
        "description": "Admin/unlimited tier",
    },
]


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)
    op.bulk_insert(models.CostLimit.__table__, DEFAULT_COST_LIMITS)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
