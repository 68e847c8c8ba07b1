"""Stripe integration: webhook verification, entitlement sync, checkout and portal."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy.exc import IntegrityError

from app.config import Settings
from app.db import Database
from app.models import WebhookEvent

from .entitlements import QuotaLedger

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_failed",
    }
)


class BillingNotConfiguredError(RuntimeError):
    """A Stripe key, webhook secret or price id is missing."""


class InvalidWebhookError(ValueError):
    """Payload or signature failed verification."""


def _get(obj: Any, *path: str) -> Any:
    """Walk nested Stripe objects or dicts; ``None`` when any step is missing."""
    cur = obj
    for key in path:
        if cur is None:
            return None
        try:
            cur = cur[key]
        except (KeyError, IndexError, TypeError):
            return None
    return cur


def _id_of(value: Any) -> str | None:
    """Stripe expands references either as an id string or as an object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def _epoch(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _first_item(sub: Any) -> Any:
    data = _get(sub, "items", "data")
    return data[0] if data else None


def subscription_details(sub: Any) -> dict[str, Any]:
    """Normalize a subscription object into the fields entitlement sync needs."""
    item = _first_item(sub)
    # Newer API versions report the billing period on the item
    period_start = _get(sub, "current_period_start") or _get(item, "current_period_start")
    period_end = _get(sub, "current_period_end") or _get(item, "current_period_end")
    metadata_user = _get(sub, "metadata", "user_id")
    return {
        "status": _get(sub, "status"),
        "stripe_customer_id": _id_of(_get(sub, "customer")),
        "stripe_subscription_id": _get(sub, "id"),
        "stripe_price_id": _get(item, "price", "id"),
        "current_period_start": _epoch(period_start),
        "current_period_end": _epoch(period_end),
        "metadata_user_id": int(metadata_user) if metadata_user else None,
    }


def _invoice_subscription_id(invoice: Any) -> str | None:
    sub = _get(invoice, "subscription")
    if sub is None:
        sub = _get(invoice, "parent", "subscription_details", "subscription")
    return _id_of(sub)


def first_of_next_month_utc(now: datetime | None = None) -> int:
    """Billing anchor: today if it is the 1st (UTC), otherwise the next 1st."""
    now = now or datetime.now(timezone.utc)
    if now.day == 1:
        anchor = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    elif now.month == 12:
        anchor = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        anchor = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return int(anchor.timestamp())


class StripeBilling:
    def __init__(self, cfg: Settings) -> None:
        self._cfg = cfg

    def _api_key(self) -> str:
        if not self._cfg.stripe_secret_key:
            raise BillingNotConfiguredError("STRIPE_SECRET_KEY is not set")
        return self._cfg.stripe_secret_key

    def verify_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the decoded event."""
        secret = self._cfg.stripe_webhook_secret
        if not secret:
            raise BillingNotConfiguredError("STRIPE_WEBHOOK_SECRET is not set")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise InvalidWebhookError(str(exc)) from exc
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return stripe.Subscription.retrieve(subscription_id, api_key=self._api_key())

    def price_for_plan(self, plan: str) -> str:
        price = {
            "basic": self._cfg.price_id_basic_50,
            "plus": self._cfg.price_id_plus_200,
            "pro": self._cfg.price_id_pro_1000,
        }.get(plan)
        if not price:
            raise BillingNotConfiguredError(f"Price ID not configured for plan '{plan}'")
        return price

    def create_checkout_url(
        self,
        *,
        plan: str,
        user_id: int,
        email: str | None,
        customer_id: str | None,
        origin: str,
    ) -> str:
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": self.price_for_plan(plan), "quantity": 1}],
            "allow_promotion_codes": True,
            "client_reference_id": str(user_id),
            "metadata": {"user_id": str(user_id)},
            "success_url": f"{origin}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/pricing?canceled=true",
            "subscription_data": {
                "billing_cycle_anchor": first_of_next_month_utc(),
                "proration_behavior": "create_prorations",
                "metadata": {"user_id": str(user_id)},
            },
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email
        session = stripe.checkout.Session.create(api_key=self._api_key(), **params)
        return session["url"]

    def create_portal_url(self, customer_id: str, origin: str) -> str:
        session = stripe.billing_portal.Session.create(
            api_key=self._api_key(),
            customer=customer_id,
            return_url=f"{origin}/dashboard",
        )
        return session["url"]


def record_webhook_event(db: Database, event: dict[str, Any]) -> bool:
    """Insert the event id; ``False`` if it was already received.

    A previously ``failed`` event is reset and handed out again so a
    redelivery can finish the work.
    """
    with db.session() as session:
        session.add(
            WebhookEvent(
                stripe_event_id=event["id"],
                type=event.get("type", ""),
                payload=event,
                status="received",
            )
        )
        try:
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
        existing = session.query(WebhookEvent).filter_by(stripe_event_id=event["id"]).one()
        if existing.status != "failed":
            return False
        claimed = (
            session.query(WebhookEvent)
            .filter_by(stripe_event_id=event["id"], status="failed")
            .update({"status": "received"})
        )
        session.commit()
        return claimed == 1


def mark_webhook_event(db: Database, event_id: str, status: str) -> None:
    with db.session() as session:
        session.query(WebhookEvent).filter_by(stripe_event_id=event_id).update(
            {"status": status, "processed_at": datetime.now(timezone.utc)}
        )
        session.commit()


def sync_entitlements_for_event(
    event: dict[str, Any], billing: StripeBilling, ledger: QuotaLedger
) -> int | None:
    """Apply a subscription-related event to plan and quota rows.

    Returns the user id that was updated, or ``None`` when the event type is
    not handled or no user could be resolved.
    """
    event_type = event.get("type")
    obj = _get(event, "data", "object")
    status_override: str | None = None
    reference_user: int | None = None

    if event_type == "checkout.session.completed":
        sub_id = _id_of(_get(obj, "subscription"))
        if not sub_id:
            return None
        ref = _get(obj, "client_reference_id") or _get(obj, "metadata", "user_id")
        reference_user = int(ref) if ref else None
        details = subscription_details(billing.retrieve_subscription(sub_id))
    elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        details = subscription_details(obj)
    elif event_type == "invoice.payment_failed":
        sub_id = _invoice_subscription_id(obj)
        if not sub_id:
            return None
        details = subscription_details(billing.retrieve_subscription(sub_id))
        status_override = "past_due"
    else:
        return None

    user_id = (
        reference_user
        or details.pop("metadata_user_id", None)
        or ledger.user_id_for_customer(details["stripe_customer_id"])
    )
    details.pop("metadata_user_id", None)
    if user_id is None:
        logger.warning(
            "no user for Stripe customer %s",
            details["stripe_customer_id"],
            extra={"stripe_event_id": event.get("id")},
        )
        return None
    if status_override:
        details["status"] = status_override
    ledger.apply_subscription(user_id=user_id, **details)
    return user_id


__all__ = [
    "BillingNotConfiguredError",
    "HANDLED_EVENT_TYPES",
    "InvalidWebhookError",
    "StripeBilling",
    "first_of_next_month_utc",
    "mark_webhook_event",
    "record_webhook_event",
    "subscription_details",
    "sync_entitlements_for_event",
]
