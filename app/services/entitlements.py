"""Monthly quota ledger and subscription entitlements.

Quota rows are keyed by ``(user_id, month_utc)``. Each row carries two
counters, ``paid_remaining`` and ``free_remaining``, plus the
``watermark_exempt`` flag. Generations consume paid allowance first and free
allowance second; the flag is tracked separately so a plan change mid-month
can flip it without touching the remaining counts.

A new month starts from a fresh row (unused allowance does not carry over).
Users with an active paid subscription get their tier's paid allowance and
the watermark exemption on the new row straight away.

All methods are synchronous and meant to run through ``asyncio.to_thread``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import Settings
from app.db import Database
from app.models import AuditLog, PlanTier, Quota, Subscription

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})


class PlanDefaults(NamedTuple):
    monthly_quota: int
    watermark_exempt: bool


PAID_PLAN_DEFAULTS: dict[PlanTier, PlanDefaults] = {
    PlanTier.BASIC_50: PlanDefaults(50, True),
    PlanTier.PLUS_200: PlanDefaults(200, True),
    PlanTier.PRO_1000: PlanDefaults(1000, True),
}


class QuotaExceededError(Exception):
    """Both paid and free allowance are used up for the current month."""


class UsageSnapshot(NamedTuple):
    month: str
    tier: PlanTier
    free_remaining: int
    paid_remaining: int
    watermark_exempt: bool


def month_utc(dt: datetime | None = None) -> str:
    """Format the month of ``dt`` (default now) in UTC as ``YYYY-MM``."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m")


def plan_from_price_id(price_id: str | None, cfg: Settings) -> PlanTier:
    if not price_id:
        return PlanTier.FREE
    mapping = {
        cfg.price_id_basic_50: PlanTier.BASIC_50,
        cfg.price_id_plus_200: PlanTier.PLUS_200,
        cfg.price_id_pro_1000: PlanTier.PRO_1000,
    }
    mapping.pop(None, None)
    return mapping.get(price_id, PlanTier.FREE)


class QuotaLedger:
    def __init__(self, db: Database, cfg: Settings) -> None:
        self._db = db
        self._cfg = cfg

    def plan_defaults(self, tier: PlanTier) -> PlanDefaults:
        if tier == PlanTier.FREE:
            return PlanDefaults(self._cfg.free_monthly_limit, False)
        return PAID_PLAN_DEFAULTS[tier]

    def _active_tier(self, db: Session, user_id: int) -> PlanTier:
        sub = (
            db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(ACTIVE_STATUSES),
            )
            .order_by(Subscription.updated_at.desc())
            .first()
        )
        if sub is None:
            return PlanTier.FREE
        try:
            return PlanTier(sub.plan_tier)
        except ValueError:
            return PlanTier.FREE

    def get_or_create(self, db: Session, user_id: int, month: str | None = None) -> Quota:
        """Return the quota row for ``month``, creating it from the user's plan."""
        month = month or month_utc()
        quota = db.query(Quota).filter_by(user_id=user_id, month_utc=month).first()
        if quota is not None:
            return quota

        tier = self._active_tier(db, user_id)
        paid = self.plan_defaults(tier) if tier != PlanTier.FREE else PlanDefaults(0, False)
        # Concurrent first requests of the month race here; the unique
        # constraint keeps exactly one row.
        db.execute(
            text(
                "INSERT INTO quotas (user_id, month_utc, free_remaining, paid_remaining, "
                "watermark_exempt, created_at, updated_at) "
                "VALUES (:uid, :month, :free, :paid, :exempt, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP) "
                "ON CONFLICT (user_id, month_utc) DO NOTHING"
            ),
            {
                "uid": user_id,
                "month": month,
                "free": self._cfg.free_monthly_limit,
                "paid": paid.monthly_quota,
                "exempt": paid.watermark_exempt,
            },
        )
        return db.query(Quota).filter_by(user_id=user_id, month_utc=month).one()

    def decrement(self, user_id: int) -> Quota:
        """Consume one generation: paid allowance first, then free."""
        month = month_utc()
        with self._db.session() as db:
            self.get_or_create(db, user_id, month)
            params = {"uid": user_id, "month": month}
            for column in ("paid_remaining", "free_remaining"):
                # Single conditional UPDATE so concurrent requests cannot
                # push the counter below zero.
                result = db.execute(
                    text(
                        f"UPDATE quotas SET {column} = {column} - 1, "
                        "updated_at = CURRENT_TIMESTAMP "
                        f"WHERE user_id = :uid AND month_utc = :month AND {column} > 0"
                    ),
                    params,
                )
                if result.rowcount == 1:
                    db.commit()
                    quota = db.query(Quota).filter_by(user_id=user_id, month_utc=month).one()
                    db.refresh(quota)
                    return quota
            db.rollback()
        raise QuotaExceededError("Quota exceeded for the current month")

    def is_watermark_exempt(self, user_id: int) -> bool:
        with self._db.session() as db:
            exempt = bool(self.get_or_create(db, user_id).watermark_exempt)
            db.commit()
            return exempt

    def usage(self, user_id: int) -> UsageSnapshot:
        month = month_utc()
        with self._db.session() as db:
            quota = self.get_or_create(db, user_id, month)
            db.commit()
            return UsageSnapshot(
                month=month,
                tier=self._active_tier(db, user_id),
                free_remaining=quota.free_remaining or 0,
                paid_remaining=quota.paid_remaining or 0,
                watermark_exempt=bool(quota.watermark_exempt),
            )

    def apply_subscription(
        self,
        *,
        user_id: int,
        status: str,
        stripe_customer_id: str | None = None,
        stripe_subscription_id: str | None = None,
        stripe_price_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
    ) -> PlanTier:
        """Sync subscription state from billing into plan and quota rows.

        An active or trialing subscription with a known price grants that
        tier's paid allowance for the current month; anything else reverts
        the user to FREE without raising their free allowance above the
        monthly default.
        """
        tier = (
            plan_from_price_id(stripe_price_id, self._cfg)
            if status in ACTIVE_STATUSES
            else PlanTier.FREE
        )
        month = month_utc()
        with self._db.session() as db:
            sub = None
            if stripe_subscription_id:
                sub = (
                    db.query(Subscription)
                    .filter_by(stripe_subscription_id=stripe_subscription_id)
                    .first()
                )
            if sub is None:
                sub = Subscription(
                    user_id=user_id, stripe_subscription_id=stripe_subscription_id
                )
                db.add(sub)
            sub.user_id = user_id
            sub.status = status
            sub.plan_tier = tier.value
            if stripe_customer_id:
                sub.stripe_customer_id = stripe_customer_id
            if stripe_price_id:
                sub.stripe_price_id = stripe_price_id
            if current_period_start:
                sub.current_period_start = current_period_start
            if current_period_end:
                sub.current_period_end = current_period_end
            db.flush()

            quota = self.get_or_create(db, user_id, month)
            if tier == PlanTier.FREE:
                quota.free_remaining = min(
                    quota.free_remaining or 0, self._cfg.free_monthly_limit
                )
                quota.paid_remaining = 0
                quota.watermark_exempt = False
            else:
                defaults = self.plan_defaults(tier)
                quota.paid_remaining = defaults.monthly_quota
                quota.watermark_exempt = defaults.watermark_exempt
            db.add(quota)

            db.add(
                AuditLog(
                    user_id=user_id,
                    action="ENTITLEMENTS_SYNC",
                    context={
                        "status": status,
                        "stripeCustomerId": stripe_customer_id,
                        "stripeSubscriptionId": stripe_subscription_id,
                        "stripePriceId": stripe_price_id,
                        "resolvedTier": tier.value,
                        "month": month,
                    },
                )
            )
            db.commit()
        logger.info(
            "entitlements synced",
            extra={"user_id": user_id, "plan_tier": tier.value},
        )
        return tier

    def customer_id_for(self, user_id: int) -> str | None:
        with self._db.session() as db:
            sub = (
                db.query(Subscription)
                .filter(
                    Subscription.user_id == user_id,
                    Subscription.stripe_customer_id.isnot(None),
                )
                .order_by(Subscription.updated_at.desc())
                .first()
            )
            return sub.stripe_customer_id if sub else None

    def user_id_for_customer(self, customer_id: str | None) -> int | None:
        if not customer_id:
            return None
        with self._db.session() as db:
            sub = db.query(Subscription).filter_by(stripe_customer_id=customer_id).first()
            return sub.user_id if sub else None


__all__ = [
    "ACTIVE_STATUSES",
    "PAID_PLAN_DEFAULTS",
    "PlanDefaults",
    "QuotaExceededError",
    "QuotaLedger",
    "UsageSnapshot",
    "month_utc",
    "plan_from_price_id",
]
