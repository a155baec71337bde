from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from server.promptpm.core.models import CostLimit, Organization, OrganizationMember, Tier, User

ACTIVE_SUBSCRIPTION = "active"


def tier_for(subscription_status: str | None, *, in_verified_org: bool) -> str:
    if (subscription_status or "").lower() != ACTIVE_SUBSCRIPTION:
        return Tier.free.value
    if in_verified_org:
        return Tier.plus_org.value
    return Tier.plus_individual.value


def _verified_membership():
    return (
        select(OrganizationMember.user_id)
        .join(Organization, Organization.id == OrganizationMember.org_id)
        .where(Organization.is_verified.is_(True))
    )


def resolve_tier(db: Session, user: User) -> str:
    if (user.subscription_status or "").lower() != ACTIVE_SUBSCRIPTION:
        return Tier.free.value
    member = db.scalar(_verified_membership().where(OrganizationMember.user_id == user.id).limit(1))
    return tier_for(user.subscription_status, in_verified_org=member is not None)


def verified_org_member_ids(db: Session) -> set[str]:
    return set(db.scalars(_verified_membership().distinct()))


def active_cost_limits(db: Session) -> dict[str, CostLimit]:
    rows = db.scalars(select(CostLimit).where(CostLimit.is_active.is_(True)))
    return {row.tier_name: row for row in rows}
