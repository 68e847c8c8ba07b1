"""Image job lifecycle: persistence, status transitions and the generation run.

Jobs move ``QUEUED -> PROCESSING -> {COMPLETED, BLOCKED, FAILED}``. Every
transition is a compare-and-set on the current status and writes a
``generation_events`` row in the same transaction, so a job can never reach
two terminal states.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from app.db import Database
from app.metrics import (
    generation_latency_seconds,
    job_terminal_total,
    quota_reject_total,
    rate_limited_total,
)
from app.models import BlockedReason, GenerationEvent, ImageJob, JobStatus, Style

from .entitlements import QuotaExceededError
from .generator import SafetyBlockedError
from .imaging import ext_from_content_type, prepare_input
from .rate_limit import RateLimiterUnavailable, rate_limit_key
from .storage import output_key

if TYPE_CHECKING:
    from .container import Services

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.BLOCKED, JobStatus.FAILED}
    ),
}
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.BLOCKED, JobStatus.FAILED})


class InvalidTransitionError(Exception):
    """Requested status change is not allowed from the job's current status."""


class InputFetchError(Exception):
    """The input image could not be downloaded."""


def create_job(
    db: Database,
    *,
    user_id: int,
    input_url: str,
    style: Style,
    prompt_variant: str | None = None,
    output_format: str = "png",
) -> ImageJob:
    with db.session() as session:
        job = ImageJob(
            user_id=user_id,
            input_url=input_url,
            style=style,
            prompt_variant=prompt_variant,
            output_format=output_format,
            status=JobStatus.QUEUED,
        )
        session.add(job)
        session.flush()
        session.add(
            GenerationEvent(
                job_id=job.id,
                step="queued",
                detail={"style": Style(style).value, "outputFormat": output_format},
            )
        )
        session.commit()
        return job


def get_job(db: Database, job_id: str) -> ImageJob | None:
    with db.session() as session:
        return session.get(ImageJob, job_id)


def record_event(
    db: Database, job_id: str, step: str, detail: dict[str, Any] | None = None
) -> None:
    with db.session() as session:
        session.add(GenerationEvent(job_id=job_id, step=step, detail=detail))
        session.commit()


def transition(
    db: Database,
    job_id: str,
    from_status: JobStatus,
    to_status: JobStatus,
    *,
    blocked_reason: BlockedReason | None = None,
    output_url: str | None = None,
    output_key: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Move ``job_id`` from ``from_status`` to ``to_status`` or raise."""
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransitionError(f"{from_status.value} -> {to_status.value}")

    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {"status": to_status, "updated_at": now}
    if blocked_reason is not None:
        values["blocked_reason"] = blocked_reason.value
    if output_url is not None:
        values["output_url"] = output_url
    if output_key is not None:
        values["output_key"] = output_key
    if to_status in TERMINAL_STATUSES:
        values["completed_at"] = now

    with db.session() as session:
        updated = (
            session.query(ImageJob)
            .filter(ImageJob.id == job_id, ImageJob.status == from_status)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            session.rollback()
            raise InvalidTransitionError(
                f"job {job_id} is not {from_status.value}"
            )
        event_detail = dict(detail or {})
        if blocked_reason is not None:
            event_detail["reason"] = blocked_reason.value
        session.add(
            GenerationEvent(
                job_id=job_id,
                step=to_status.value.lower(),
                detail=event_detail or None,
            )
        )
        session.commit()


async def fetch_input(http: httpx.AsyncClient, url: str, max_bytes: int) -> bytes:
    try:
        resp = await http.get(url, follow_redirects=True)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        raise InputFetchError(f"failed to fetch input: {exc}") from exc
    if len(resp.content) > max_bytes:
        raise InputFetchError("input image too large")
    return resp.content


@dataclass(frozen=True)
class _Outcome:
    status: JobStatus
    reason: BlockedReason | None = None
    output_url: str | None = None
    output_key: str | None = None


async def _produce_output(services: Services, job: ImageJob) -> _Outcome:
    cfg = services.settings
    db = services.db

    await asyncio.to_thread(record_event, db, job.id, "download_input_start")
    raw = await fetch_input(services.http, job.input_url, cfg.upload_max_bytes)
    prepared = await asyncio.to_thread(prepare_input, raw, cfg.image_max_edge)
    await asyncio.to_thread(
        record_event, db, job.id, "download_input_ok", {"bytes": len(prepared)}
    )

    try:
        generated = await asyncio.to_thread(
            services.generator.generate,
            prepared,
            job.style,
            output_format=job.output_format,
            prompt_variant=job.prompt_variant,
        )
    except SafetyBlockedError as exc:
        logger.info("model refused job: %s", exc, extra={"job_id": job.id})
        return _Outcome(JobStatus.BLOCKED, BlockedReason.SAFETY)
    except Exception:
        logger.exception("model call failed", extra={"job_id": job.id})
        return _Outcome(JobStatus.FAILED, BlockedReason.MODEL_ERROR)

    if not services.storage.configured:
        logger.error("S3 storage is not configured", extra={"job_id": job.id})
        return _Outcome(JobStatus.FAILED, BlockedReason.UPLOAD_NOT_CONFIGURED)

    key = output_key(job.id, ext_from_content_type(generated.content_type))
    stored = await services.storage.put(key, generated.data, generated.content_type)
    return _Outcome(JobStatus.COMPLETED, output_url=stored.url, output_key=stored.key)


async def _finish(db: Database, job_id: str, outcome: _Outcome) -> JobStatus:
    await asyncio.to_thread(
        transition,
        db,
        job_id,
        JobStatus.PROCESSING,
        outcome.status,
        blocked_reason=outcome.reason,
        output_url=outcome.output_url,
        output_key=outcome.output_key,
    )
    reason = outcome.reason.value if outcome.reason else ""
    job_terminal_total.labels(status=outcome.status.value, reason=reason).inc()
    logger.info(
        "job finished as %s %s",
        outcome.status.value,
        reason,
        extra={"job_id": job_id, "step": outcome.status.value.lower()},
    )
    return outcome.status


async def run_generation(services: Services, job: ImageJob) -> JobStatus:
    """Drive a freshly queued job to a terminal status.

    Failures are recorded on the job, never raised to the caller.
    """
    db = services.db
    cfg = services.settings
    start = time.perf_counter()
    await asyncio.to_thread(transition, db, job.id, JobStatus.QUEUED, JobStatus.PROCESSING)

    try:
        decision = await services.rate_limiter.hit(
            rate_limit_key("gen", job.user_id),
            cfg.generate_rate_window_s,
            cfg.generate_rate_limit,
        )
        allowed = decision.allowed
    except RateLimiterUnavailable:
        allowed = False
    except Exception:
        logger.exception("rate limiter failed", extra={"job_id": job.id})
        allowed = False
    if not allowed:
        rate_limited_total.inc()
        return await _finish(
            db, job.id, _Outcome(JobStatus.FAILED, BlockedReason.RATE_LIMITED)
        )

    try:
        await asyncio.to_thread(services.ledger.decrement, job.user_id)
    except QuotaExceededError:
        quota_reject_total.inc()
        return await _finish(
            db, job.id, _Outcome(JobStatus.FAILED, BlockedReason.QUOTA_EXCEEDED)
        )
    except Exception:
        logger.exception("quota decrement failed", extra={"job_id": job.id})
        return await _finish(
            db, job.id, _Outcome(JobStatus.FAILED, BlockedReason.QUOTA_EXCEEDED)
        )

    try:
        outcome = await _produce_output(services, job)
    except Exception:
        logger.exception("generation failed", extra={"job_id": job.id})
        outcome = _Outcome(JobStatus.FAILED, BlockedReason.INPUT_OR_UNKNOWN_ERROR)
    status = await _finish(db, job.id, outcome)
    generation_latency_seconds.observe(time.perf_counter() - start)
    return status


__all__ = [
    "ALLOWED_TRANSITIONS",
    "InputFetchError",
    "InvalidTransitionError",
    "TERMINAL_STATUSES",
    "create_job",
    "fetch_input",
    "get_job",
    "record_event",
    "run_generation",
    "transition",
]
