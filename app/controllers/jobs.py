from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from app.dependencies import ErrorResponse, get_services, require_user
from app.metrics import generation_requests_total, watermark_applied_total
from app.models import ErrorCode, ImageJob, JobStatus, Style
from app.services import jobs as job_service
from app.services.container import Services
from app.services.imaging import apply_watermark, ext_from_content_type
from app.services.prompts import MAX_VARIANT_LENGTH
from app.services.storage import StorageError, StorageNotConfiguredError

logger = logging.getLogger(__name__)

router = APIRouter()


class GenerateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    input_url: str
    style: Style
    prompt_variant: str | None = Field(None, max_length=MAX_VARIANT_LENGTH)
    output_format: Literal["png", "webp"] = "png"

    @field_validator("input_url")
    @classmethod
    def _uploaded_image(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("inputUrl must be an http(s) URL")
        if "/uploads/" not in value:
            raise ValueError("inputUrl must point to an uploaded image")
        return value


class GenerateResponse(BaseModel):
    id: str


class JobView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    status: JobStatus
    input_url: str
    output_url: str | None = None
    style: Style
    blocked_reason: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


def _not_found() -> HTTPException:
    err = ErrorResponse(code=ErrorCode.NOT_FOUND, message="Job not found")
    return HTTPException(status_code=404, detail=err.model_dump())


async def _owned_job(services: Services, job_id: str, user_id: int) -> ImageJob:
    job = await asyncio.to_thread(job_service.get_job, services.db, job_id)
    if job is None:
        raise _not_found()
    if job.user_id != user_id:
        err = ErrorResponse(code=ErrorCode.FORBIDDEN, message="Job belongs to another user")
        raise HTTPException(status_code=403, detail=err.model_dump())
    return job


@router.post(
    "/generate",
    response_model=GenerateResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def generate(
    request: Request,
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Invalid JSON payload")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    try:
        body = GenerateRequest.model_validate(payload)
    except ValidationError as exc:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Invalid generation request")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    generation_requests_total.inc()
    job = await asyncio.to_thread(
        job_service.create_job,
        services.db,
        user_id=user_id,
        input_url=body.input_url,
        style=body.style,
        prompt_variant=body.prompt_variant,
        output_format=body.output_format,
    )
    logger.info("job queued", extra={"job_id": job.id, "user_id": user_id})
    await job_service.run_generation(services, job)
    return GenerateResponse(id=job.id)


@router.get(
    "/jobs/{job_id}",
    response_model=JobView,
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_job(
    job_id: str,
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    job = await _owned_job(services, job_id, user_id)
    return JobView(
        id=job.id,
        status=job.status,
        input_url=job.input_url,
        output_url=job.output_url,
        style=job.style,
        blocked_reason=job.blocked_reason,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.get(
    "/download/{job_id}",
    response_class=Response,
    responses={
        200: {"content": {"image/png": {}, "image/webp": {}}},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def download(
    job_id: str,
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    job = await _owned_job(services, job_id, user_id)
    if job.status != JobStatus.COMPLETED or not job.output_key:
        err = ErrorResponse(code=ErrorCode.NOT_READY, message="Job output is not ready")
        raise HTTPException(status_code=409, detail=err.model_dump())

    try:
        fetched = await services.storage.get(job.output_key)
    except StorageNotConfiguredError as exc:
        err = ErrorResponse(
            code=ErrorCode.STORAGE_NOT_CONFIGURED, message="Output storage not configured"
        )
        raise HTTPException(status_code=500, detail=err.model_dump()) from exc
    except StorageError as exc:
        err = ErrorResponse(code=ErrorCode.STORAGE_ERROR, message="Output is unreadable")
        raise HTTPException(status_code=502, detail=err.model_dump()) from exc

    data, content_type = fetched.data, fetched.content_type
    # Exemption is re-read on every download so plan changes apply at once
    exempt = await asyncio.to_thread(services.ledger.is_watermark_exempt, user_id)
    if not exempt:
        try:
            data, content_type = await asyncio.to_thread(
                apply_watermark, data, services.settings.watermark_text
            )
        except OSError as exc:
            logger.exception("watermark failed", extra={"job_id": job.id})
            err = ErrorResponse(code=ErrorCode.STORAGE_ERROR, message="Output is unreadable")
            raise HTTPException(status_code=502, detail=err.model_dump()) from exc
        watermark_applied_total.inc()

    ext = ext_from_content_type(content_type)
    return Response(
        content=data,
        media_type=content_type,
        headers={
            "Content-Disposition": f'inline; filename="touchfeets-{job.id}.{ext}"',
            "Cache-Control": "private, max-age=0, no-store",
        },
    )
