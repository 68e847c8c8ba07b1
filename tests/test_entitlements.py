from datetime import datetime, timedelta, timezone

import pytest

from app.models import AuditLog, PlanTier, Quota, Subscription
from app.services.entitlements import (
    QuotaExceededError,
    QuotaLedger,
    month_utc,
    plan_from_price_id,
)


@pytest.fixture
def ledger(db, settings):
    return QuotaLedger(db, settings)


def _quota(db, user_id, month=None):
    with db.session() as session:
        return session.query(Quota).filter_by(user_id=user_id, month_utc=month or month_utc()).one()


def _activate(ledger, user_id=1, price="price_basic", status="active"):
    now = datetime.now(timezone.utc)
    return ledger.apply_subscription(
        user_id=user_id,
        status=status,
        stripe_customer_id=f"cus_{user_id}",
        stripe_subscription_id=f"sub_{user_id}",
        stripe_price_id=price,
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
    )


def test_month_utc_uses_utc():
    dt = datetime(2026, 3, 1, 0, 30, tzinfo=timezone(timedelta(hours=2)))
    assert month_utc(dt) == "2026-02"


def test_plan_from_price_id(settings):
    assert plan_from_price_id("price_basic", settings) == PlanTier.BASIC_50
    assert plan_from_price_id("price_plus", settings) == PlanTier.PLUS_200
    assert plan_from_price_id("price_pro", settings) == PlanTier.PRO_1000
    assert plan_from_price_id("price_unknown", settings) == PlanTier.FREE
    assert plan_from_price_id(None, settings) == PlanTier.FREE


def test_new_free_user_gets_monthly_default(ledger):
    usage = ledger.usage(1)
    assert usage.tier == PlanTier.FREE
    assert usage.free_remaining == 5
    assert usage.paid_remaining == 0
    assert usage.watermark_exempt is False


def test_free_decrement_stops_at_zero(ledger, db):
    for expected in (4, 3, 2, 1, 0):
        assert ledger.decrement(1).free_remaining == expected
    with pytest.raises(QuotaExceededError):
        ledger.decrement(1)
    quota = _quota(db, 1)
    assert quota.free_remaining == 0
    assert quota.paid_remaining == 0


def test_paid_allowance_is_consumed_before_free(ledger):
    _activate(ledger)
    quota = ledger.decrement(1)
    assert quota.paid_remaining == 49
    assert quota.free_remaining == 5


def test_free_used_once_paid_runs_out(ledger, db):
    _activate(ledger)
    with db.session() as session:
        session.query(Quota).filter_by(user_id=1).update({"paid_remaining": 1})
        session.commit()
    assert ledger.decrement(1).paid_remaining == 0
    quota = ledger.decrement(1)
    assert quota.paid_remaining == 0
    assert quota.free_remaining == 4


def test_active_subscription_grants_tier(ledger, db):
    assert _activate(ledger, price="price_plus") == PlanTier.PLUS_200
    quota = _quota(db, 1)
    assert quota.paid_remaining == 200
    assert quota.watermark_exempt is True
    assert ledger.is_watermark_exempt(1) is True
    with db.session() as session:
        sub = session.query(Subscription).filter_by(stripe_subscription_id="sub_1").one()
        assert sub.plan_tier == "PLUS_200"
        audit = session.query(AuditLog).filter_by(user_id=1).one()
        assert audit.action == "ENTITLEMENTS_SYNC"
        assert audit.context["resolvedTier"] == "PLUS_200"


def test_canceled_subscription_reverts_to_free(ledger, db):
    _activate(ledger)
    assert _activate(ledger, status="canceled") == PlanTier.FREE
    quota = _quota(db, 1)
    assert quota.paid_remaining == 0
    assert quota.free_remaining == 5
    assert quota.watermark_exempt is False
    with db.session() as session:
        assert session.query(Subscription).filter_by(user_id=1).count() == 1


def test_downgrade_never_raises_free_above_default(ledger, db):
    ledger.decrement(1)
    ledger.decrement(1)
    _activate(ledger, status="past_due")
    assert _quota(db, 1).free_remaining == 3


def test_unknown_price_is_free(ledger):
    assert _activate(ledger, price="price_legacy") == PlanTier.FREE
    assert ledger.is_watermark_exempt(1) is False


def test_new_month_row_seeded_from_active_plan(ledger, db):
    _activate(ledger, price="price_pro")
    with db.session() as session:
        quota = ledger.get_or_create(session, 1, "2099-01")
        session.commit()
        assert quota.paid_remaining == 1000
        assert quota.free_remaining == 5
        assert quota.watermark_exempt is True


def test_get_or_create_is_idempotent(ledger, db):
    with db.session() as session:
        first = ledger.get_or_create(session, 2)
        second = ledger.get_or_create(session, 2)
        session.commit()
        assert first.id == second.id
    with db.session() as session:
        assert session.query(Quota).filter_by(user_id=2).count() == 1


def test_customer_lookups(ledger):
    assert ledger.customer_id_for(1) is None
    _activate(ledger)
    assert ledger.customer_id_for(1) == "cus_1"
    assert ledger.user_id_for_customer("cus_1") == 1
    assert ledger.user_id_for_customer("cus_unknown") is None
    assert ledger.user_id_for_customer(None) is None
