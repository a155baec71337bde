from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from server.promptpm.billing import lifecycle
from server.promptpm.billing.buckets import (
    Buckets,
    add_months,
    check_invariant,
    plan_monthly_reset,
    split_spend,
)
from server.promptpm.billing.errors import AccountNotFound, InsufficientCredits, ValidationError
from server.promptpm.billing.pricing import get_credit_package
from server.promptpm.billing.types import (
    BatchResult,
    CreditBalance,
    LedgerEntry,
    MonthlyBreakdown,
    RolloverBreakdown,
    TransactionPage,
)
from server.promptpm.core.config import Settings
from server.promptpm.core.db import session_scope
from server.promptpm.core.models import CreditAccount, CreditTransaction, TransactionType

log = logging.getLogger(__name__)

_PURCHASED_BUCKET_TYPES = {TransactionType.purchase.value, TransactionType.bonus.value}
_ADD_TYPES = _PURCHASED_BUCKET_TYPES | {TransactionType.monthly.value, TransactionType.admin.value}


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _as_utc(ts: dt.datetime | None) -> dt.datetime | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=dt.UTC)
    return ts


def require_credit_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"Credit amounts must be whole numbers (got {amount!r})")
    if amount <= 0:
        raise ValidationError(f"Credit amounts must be positive (got {amount})")
    return amount


def history_window(limit: Any, offset: Any, default_limit: int) -> tuple[int, int]:
    if limit is None:
        limit = default_limit
    for name, value in (("limit", limit), ("offset", offset)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{name} must be an integer (got {value!r})")
        if value < 0:
            raise ValidationError(f"{name} must be >= 0 (got {value})")
    return limit, offset


def transaction_kind(type: Any) -> str | None:
    if not type:
        return None
    kind = str(getattr(type, "value", type))
    if kind not in {t.value for t in TransactionType}:
        raise ValidationError(f"Unknown transaction type {kind!r}")
    return kind


def _buckets(account: CreditAccount) -> Buckets:
    return Buckets(
        monthly_credits=account.monthly_credits,
        monthly_credits_used=account.monthly_credits_used,
        rollover_credits=account.rollover_credits,
        purchased_credits=account.purchased_credits,
    )


def _balance_of(account: CreditAccount) -> CreditBalance:
    return CreditBalance(
        balance=account.balance,
        monthly=MonthlyBreakdown(
            allocated=account.monthly_credits,
            used=account.monthly_credits_used,
            remaining=account.monthly_credits - account.monthly_credits_used,
            reset_at=account.monthly_reset_at,
        ),
        rollover=RolloverBreakdown(amount=account.rollover_credits, expires_at=account.rollover_expires_at),
        purchased=account.purchased_credits,
    )


def _entry(txn: CreditTransaction) -> LedgerEntry:
    try:
        metadata = json.loads(txn.metadata_json) if txn.metadata_json else {}
    except ValueError:
        metadata = {}
    return LedgerEntry(
        id=txn.id,
        user_id=txn.user_id,
        amount=txn.amount,
        balance_after=txn.balance_after,
        type=txn.kind,
        description=txn.description,
        metadata=metadata,
        created_at=txn.created_at,
        session_id=txn.session_id,
        purchase_id=txn.purchase_id,
        org_id=txn.org_id,
    )


class CreditLedger:
    """Credit balances and their append-only transaction log, stored in SQL.

    Every mutation runs in one transaction that locks the user's account row
    first, so concurrent writes for the same user serialize while different
    users never contend.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _lock_account(self, db: Session, user_id: str) -> CreditAccount:
        account = db.scalar(
            select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
        )
        if account is None:
            raise AccountNotFound(user_id)
        return account

    def _append(
        self,
        db: Session,
        account: CreditAccount,
        *,
        kind: str,
        amount: int,
        description: str,
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
        purchase_id: str | None = None,
        org_id: str | None = None,
    ) -> CreditTransaction:
        check_invariant(account.balance, _buckets(account))
        account.updated_at = _now()
        txn = CreditTransaction(
            user_id=account.user_id,
            org_id=org_id,
            amount=amount,
            balance_after=account.balance,
            kind=kind,
            description=description,
            metadata_json=json.dumps(metadata or {}, default=str, sort_keys=True),
            session_id=session_id,
            purchase_id=purchase_id,
            created_at=_now(),
        )
        db.add(txn)
        db.flush()
        return txn

    def _account_exists(self, user_id: str) -> bool:
        with session_scope(self.settings) as db:
            return db.scalar(select(CreditAccount.id).where(CreditAccount.user_id == user_id)) is not None

    def initialize_account(self, user_id: str) -> bool:
        """Create the account with the signup grant. Returns False if it already existed."""
        grant = self.settings.signup_credits
        try:
            with session_scope(self.settings) as db:
                if db.scalar(select(CreditAccount.id).where(CreditAccount.user_id == user_id)) is not None:
                    return False
                account = CreditAccount(
                    user_id=user_id,
                    balance=grant,
                    monthly_credits=0,
                    monthly_credits_used=0,
                    rollover_credits=0,
                    purchased_credits=grant,
                    lifetime_earned=grant,
                    lifetime_spent=0,
                    lifetime_purchased=grant,
                )
                db.add(account)
                db.flush()
                if grant > 0:
                    self._append(
                        db,
                        account,
                        kind=TransactionType.signup.value,
                        amount=grant,
                        description=f"Welcome! Here are {grant} free playground credits to get you started.",
                    )
        except IntegrityError as e:
            # Lost the race on the unique user_id to a concurrent initializer,
            # or the user row itself does not exist.
            if self._account_exists(user_id):
                return False
            raise AccountNotFound(user_id, "user") from e
        log.info("Initialized credit account for user %s (signup_credits=%s)", user_id, grant)
        return True

    def _read_account(self, user_id: str) -> CreditAccount | None:
        with session_scope(self.settings) as db:
            return db.scalar(select(CreditAccount).where(CreditAccount.user_id == user_id))

    def get_balance(self, user_id: str) -> CreditBalance:
        account = self._read_account(user_id)
        if account is None:
            self.initialize_account(user_id)
            account = self._read_account(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return _balance_of(account)

    def can_afford(self, user_id: str, amount: int) -> bool:
        # Advisory only; spend() re-checks under the row lock.
        try:
            return self.get_balance(user_id).balance >= amount
        except AccountNotFound:
            return False

    def spend(
        self,
        user_id: str,
        amount: int,
        session_id: str | None,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        amount = require_credit_amount(amount)
        with session_scope(self.settings) as db:
            account = self._lock_account(db, user_id)
            if account.balance < amount:
                log.info("Rejected spend of %s credits for user %s (balance=%s)", amount, user_id, account.balance)
                raise InsufficientCredits(user_id, required=amount, available=account.balance)

            split = split_spend(_buckets(account), amount)
            account.monthly_credits_used += split.monthly
            account.rollover_credits -= split.rollover
            account.purchased_credits -= split.purchased
            account.balance -= amount
            account.lifetime_spent += amount

            txn = self._append(
                db,
                account,
                kind=TransactionType.spend.value,
                amount=-amount,
                description=description,
                metadata={**(metadata or {}), "breakdown": split.as_dict()},
                session_id=session_id,
            )
            entry = _entry(txn)
        log.info(
            "Spent %s credits for user %s (balance=%s, breakdown=%s, session=%s)",
            amount,
            user_id,
            entry.balance_after,
            split.as_dict(),
            session_id,
        )
        return entry

    spend_credits = spend

    def add(
        self,
        user_id: str,
        amount: int,
        type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        amount = require_credit_amount(amount)
        kind = str(getattr(type, "value", type))
        if kind not in _ADD_TYPES:
            raise ValidationError(f"Cannot add credits of type {kind!r}; expected one of {sorted(_ADD_TYPES)}")
        meta = dict(metadata or {})
        purchase_id = meta.get("purchase_id") or meta.get("stripe_payment_intent_id")
        org_id = meta.get("org_id")

        with session_scope(self.settings) as db:
            account = self._lock_account(db, user_id)
            if purchase_id:
                existing = db.scalar(
                    select(CreditTransaction).where(
                        CreditTransaction.user_id == user_id,
                        CreditTransaction.purchase_id == purchase_id,
                    )
                )
                if existing is not None:
                    log.info("Purchase %s already credited to user %s", purchase_id, user_id)
                    return _entry(existing)

            if kind in _PURCHASED_BUCKET_TYPES:
                account.purchased_credits += amount
                account.lifetime_purchased += amount
            elif kind == TransactionType.monthly.value:
                account.monthly_credits += amount
            else:
                account.purchased_credits += amount
            account.balance += amount
            account.lifetime_earned += amount

            txn = self._append(
                db,
                account,
                kind=kind,
                amount=amount,
                description=description,
                metadata=meta,
                purchase_id=purchase_id,
                org_id=org_id,
            )
            entry = _entry(txn)
        log.info("Added %s %s credits for user %s (balance=%s)", amount, kind, user_id, entry.balance_after)
        return entry

    add_credits = add

    def record_purchase(
        self,
        user_id: str,
        package_id: str,
        purchase_id: str,
        *,
        org_id: str | None = None,
    ) -> LedgerEntry:
        """Credit a completed package purchase; replays of the same purchase_id are no-ops."""
        package = get_credit_package(package_id)
        if not purchase_id:
            raise ValidationError("purchase_id is required to record a purchase")
        self.initialize_account(user_id)
        return self.add(
            user_id,
            package.credits,
            TransactionType.purchase.value,
            f"Purchased {package.credits} credits ({package.id} package)",
            {
                "purchase_id": purchase_id,
                "package": package.id,
                "price_cents": package.price_cents,
                "org_id": org_id,
            },
        )

    def grant_monthly_credits(self, user_id: str, org_id: str | None = None) -> LedgerEntry:
        allocation = self.settings.monthly_credits
        with session_scope(self.settings) as db:
            account = self._lock_account(db, user_id)
            now = _now()
            replaced = account.monthly_credits - account.monthly_credits_used
            delta = allocation - replaced

            account.monthly_credits = allocation
            account.monthly_credits_used = 0
            account.monthly_reset_at = add_months(now)
            if org_id:
                account.org_id = org_id
            account.balance += delta
            account.lifetime_earned += max(delta, 0)

            txn = self._append(
                db,
                account,
                kind=TransactionType.monthly.value,
                amount=delta,
                description="Monthly credits allocated",
                metadata={"allocation": allocation, "replaced_remaining": replaced},
                org_id=org_id,
            )
            entry = _entry(txn)
        log.info("Granted monthly credits to user %s (org=%s, allocation=%s)", user_id, org_id, allocation)
        return entry

    def remove_monthly_credits(self, user_id: str) -> None:
        """Stop the monthly allocation; what is left of it becomes rollover for the paid-up period."""
        with session_scope(self.settings) as db:
            account = self._lock_account(db, user_id)
            remaining = account.monthly_credits - account.monthly_credits_used
            if remaining > 0:
                expires_at = _as_utc(account.monthly_reset_at) or add_months(_now())
                current = _as_utc(account.rollover_expires_at)
                account.rollover_credits += remaining
                if current is None or current < expires_at:
                    account.rollover_expires_at = expires_at
            account.monthly_credits = 0
            account.monthly_credits_used = 0
            account.monthly_reset_at = None
            check_invariant(account.balance, _buckets(account))
            account.updated_at = _now()
        log.info("Removed monthly allocation for user %s (carried=%s)", user_id, max(remaining, 0))

    def get_transaction_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        type: str | None = None,
    ) -> TransactionPage:
        limit, offset = history_window(limit, offset, self.settings.history_page_limit)
        kind = transaction_kind(type)
        filters = [CreditTransaction.user_id == user_id]
        if kind:
            filters.append(CreditTransaction.kind == kind)

        with session_scope(self.settings) as db:
            rows = (
                db.execute(
                    select(CreditTransaction)
                    .where(*filters)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            total = db.scalar(select(func.count()).select_from(CreditTransaction).where(*filters)) or 0
            return TransactionPage(transactions=[_entry(row) for row in rows], total=int(total))

    def due_monthly_resets(self, now: dt.datetime) -> list[str]:
        with session_scope(self.settings) as db:
            return list(
                db.scalars(
                    select(CreditAccount.user_id)
                    .where(CreditAccount.monthly_reset_at.is_not(None), CreditAccount.monthly_reset_at <= now)
                    .order_by(CreditAccount.monthly_reset_at)
                )
            )

    def apply_monthly_reset(self, user_id: str, now: dt.datetime) -> bool:
        with session_scope(self.settings) as db:
            # Re-check the due date under the lock so overlapping runs skip done accounts.
            account = db.scalar(
                select(CreditAccount)
                .where(
                    CreditAccount.user_id == user_id,
                    CreditAccount.monthly_reset_at.is_not(None),
                    CreditAccount.monthly_reset_at <= now,
                )
                .with_for_update()
            )
            if account is None:
                return False
            plan = plan_monthly_reset(
                _buckets(account),
                allocation=self.settings.monthly_credits,
                rollover_cap=self.settings.rollover_cap,
            )
            account.monthly_credits = plan.allocation
            account.monthly_credits_used = 0
            account.monthly_reset_at = add_months(now)
            account.rollover_credits = plan.new_rollover
            account.rollover_expires_at = add_months(now)
            account.balance += plan.balance_change
            account.lifetime_earned += plan.allocation

            self._append(
                db,
                account,
                kind=TransactionType.monthly.value,
                amount=plan.balance_change,
                description="Monthly credits reset",
                metadata=plan.as_metadata(),
            )
        log.info(
            "Monthly credits reset for user %s (unused=%s, rollover=%s, expired_rollover=%s)",
            user_id,
            plan.unused_monthly,
            plan.new_rollover,
            plan.expired_rollover,
        )
        return True

    def due_rollover_expirations(self, now: dt.datetime) -> list[str]:
        with session_scope(self.settings) as db:
            return list(
                db.scalars(
                    select(CreditAccount.user_id).where(
                        CreditAccount.rollover_expires_at.is_not(None),
                        CreditAccount.rollover_expires_at <= now,
                        CreditAccount.rollover_credits > 0,
                    )
                )
            )

    def apply_rollover_expiration(self, user_id: str, now: dt.datetime) -> bool:
        with session_scope(self.settings) as db:
            account = db.scalar(
                select(CreditAccount)
                .where(
                    CreditAccount.user_id == user_id,
                    CreditAccount.rollover_expires_at.is_not(None),
                    CreditAccount.rollover_expires_at <= now,
                    CreditAccount.rollover_credits > 0,
                )
                .with_for_update()
            )
            if account is None:
                return False
            expired = account.rollover_credits
            account.balance -= expired
            account.rollover_credits = 0
            account.rollover_expires_at = None
            self._append(
                db,
                account,
                kind=TransactionType.expire.value,
                amount=-expired,
                description="Rollover credits expired",
                metadata={"expired": expired},
            )
        log.info("Expired %s rollover credits for user %s", expired, user_id)
        return True

    def process_monthly_reset(self, now: dt.datetime | None = None) -> BatchResult:
        return lifecycle.process_monthly_reset(self, now=now)

    def expire_rollover_credits(self, now: dt.datetime | None = None) -> BatchResult:
        return lifecycle.expire_rollover_credits(self, now=now)
