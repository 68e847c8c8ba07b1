from __future__ import annotations

import asyncio
import json
import logging
from typing import Literal

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from app.dependencies import ErrorResponse, get_services, require_user
from app.metrics import webhook_events_total
from app.models import ErrorCode, User
from app.services.billing import (
    HANDLED_EVENT_TYPES,
    BillingNotConfiguredError,
    InvalidWebhookError,
    mark_webhook_event,
    record_webhook_event,
    sync_entitlements_for_event,
)
from app.services.container import Services
from app.services.rate_limit import RateLimiterUnavailable, stripe_event_lock_key

logger = logging.getLogger(__name__)

router = APIRouter()


class UsageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    month: str
    tier: str
    free_remaining: int
    paid_remaining: int
    watermark_exempt: bool


class CheckoutRequest(BaseModel):
    plan: Literal["basic", "plus", "pro"]


class RedirectUrl(BaseModel):
    url: str


def _billing_not_configured(exc: Exception) -> HTTPException:
    logger.error("billing not configured: %s", exc)
    err = ErrorResponse(
        code=ErrorCode.BILLING_NOT_CONFIGURED, message="Billing is not configured"
    )
    return HTTPException(status_code=500, detail=err.model_dump())


def _billing_error(exc: Exception) -> HTTPException:
    logger.exception("Stripe request failed: %s", exc)
    err = ErrorResponse(code=ErrorCode.BILLING_ERROR, message="Billing provider error")
    return HTTPException(status_code=502, detail=err.model_dump())


@router.get(
    "/usage",
    response_model=UsageResponse,
    responses={401: {"model": ErrorResponse}},
)
async def usage(
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    snapshot = await asyncio.to_thread(services.ledger.usage, user_id)
    return UsageResponse(
        month=snapshot.month,
        tier=snapshot.tier.value,
        free_remaining=snapshot.free_remaining,
        paid_remaining=snapshot.paid_remaining,
        watermark_exempt=snapshot.watermark_exempt,
    )


@router.post(
    "/billing/checkout",
    response_model=RedirectUrl,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def checkout(
    request: Request,
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    try:
        body = CheckoutRequest.model_validate(await request.json())
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Unknown plan")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    def _db_call() -> tuple[str | None, str | None]:
        with services.db.session() as db:
            user = db.get(User, user_id)
            email = user.email if user else None
        return email, services.ledger.customer_id_for(user_id)

    email, customer_id = await asyncio.to_thread(_db_call)
    try:
        url = await asyncio.to_thread(
            services.billing.create_checkout_url,
            plan=body.plan,
            user_id=user_id,
            email=email,
            customer_id=customer_id,
            origin=services.settings.public_base_url.rstrip("/"),
        )
    except BillingNotConfiguredError as exc:
        raise _billing_not_configured(exc) from exc
    except stripe.StripeError as exc:
        raise _billing_error(exc) from exc
    return RedirectUrl(url=url)


@router.post(
    "/billing/portal",
    response_model=RedirectUrl,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def portal(
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    customer_id = await asyncio.to_thread(services.ledger.customer_id_for, user_id)
    if not customer_id:
        err = ErrorResponse(code=ErrorCode.NOT_FOUND, message="No billing account")
        raise HTTPException(status_code=404, detail=err.model_dump())
    try:
        url = await asyncio.to_thread(
            services.billing.create_portal_url,
            customer_id,
            services.settings.public_base_url.rstrip("/"),
        )
    except BillingNotConfiguredError as exc:
        raise _billing_not_configured(exc) from exc
    except stripe.StripeError as exc:
        raise _billing_error(exc) from exc
    return RedirectUrl(url=url)


@router.post(
    "/billing/webhook",
    status_code=200,
    responses={
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def stripe_webhook(
    request: Request,
    services: Services = Depends(get_services),
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    raw_body = await request.body()
    if not stripe_signature:
        webhook_events_total.labels(outcome="rejected").inc()
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Missing Stripe-Signature")
        raise HTTPException(status_code=400, detail=err.model_dump())

    try:
        event = services.billing.verify_event(raw_body, stripe_signature)
    except BillingNotConfiguredError as exc:
        raise _billing_not_configured(exc) from exc
    except InvalidWebhookError as exc:
        logger.warning("audit: invalid Stripe webhook: %s", exc)
        webhook_events_total.labels(outcome="rejected").inc()
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Invalid webhook signature")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    event_id = event.get("id") if isinstance(event, dict) else None
    if not event_id:
        webhook_events_total.labels(outcome="rejected").inc()
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Event without id")
        raise HTTPException(status_code=400, detail=err.model_dump())
    log_extra = {"stripe_event_id": event_id}

    lock_key = stripe_event_lock_key(event_id)
    try:
        fresh = await services.rate_limiter.acquire_once(
            lock_key, services.settings.webhook_lock_ttl_s
        )
    except RateLimiterUnavailable as exc:
        err = ErrorResponse(
            code=ErrorCode.SERVICE_UNAVAILABLE, message="Idempotency store unavailable"
        )
        raise HTTPException(status_code=503, detail=err.model_dump()) from exc
    if not fresh:
        webhook_events_total.labels(outcome="deduped").inc()
        logger.info("duplicate webhook", extra=log_extra)
        return {"ok": True, "deduped": True, "via": "redis"}

    recorded = await asyncio.to_thread(record_webhook_event, services.db, event)
    if not recorded:
        webhook_events_total.labels(outcome="deduped").inc()
        logger.info("duplicate webhook", extra=log_extra)
        return {"ok": True, "deduped": True, "via": "db"}

    if event.get("type") not in HANDLED_EVENT_TYPES:
        await asyncio.to_thread(mark_webhook_event, services.db, event_id, "ignored")
        webhook_events_total.labels(outcome="ignored").inc()
        return {"ok": True, "ignored": True}

    try:
        user_id = await asyncio.to_thread(
            sync_entitlements_for_event, event, services.billing, services.ledger
        )
    except Exception as exc:
        logger.exception("webhook processing failed", extra=log_extra)
        await asyncio.to_thread(mark_webhook_event, services.db, event_id, "failed")
        await services.rate_limiter.release(lock_key)
        webhook_events_total.labels(outcome="failed").inc()
        err = ErrorResponse(code=ErrorCode.BILLING_ERROR, message="Webhook processing failed")
        raise HTTPException(status_code=500, detail=err.model_dump()) from exc

    await asyncio.to_thread(mark_webhook_event, services.db, event_id, "processed")
    webhook_events_total.labels(outcome="processed").inc()
    logger.info(
        "webhook %s processed", event.get("type"), extra={**log_extra, "user_id": user_id}
    )
    return {"ok": True}
