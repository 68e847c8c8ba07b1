from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.dependencies import ErrorResponse, get_services, require_user
from app.models import ErrorCode
from app.services.container import Services
from app.services.storage import StorageError, upload_key

logger = logging.getLogger(__name__)

OPTIONAL_FILE = File(None)
ALLOWED_UPLOAD_TYPES = frozenset(
    {"image/jpeg", "image/png", "image/webp", "image/heic", "image/heif"}
)

router = APIRouter()


class UploadResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    pathname: str
    content_type: str
    size: int


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        415: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def upload(
    file: UploadFile | None = OPTIONAL_FILE,
    user_id: int = Depends(require_user),
    services: Services = Depends(get_services),
):
    if file is None:
        err = ErrorResponse(code=ErrorCode.BAD_REQUEST, message="Missing file")
        raise HTTPException(status_code=400, detail=err.model_dump())

    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in ALLOWED_UPLOAD_TYPES:
        err = ErrorResponse(
            code=ErrorCode.UNSUPPORTED_MEDIA_TYPE,
            message=f"Unsupported content type '{content_type or 'unknown'}'",
        )
        raise HTTPException(status_code=415, detail=err.model_dump())

    limit = services.settings.upload_max_bytes
    too_large = ErrorResponse(
        code=ErrorCode.PAYLOAD_TOO_LARGE, message="File exceeds the upload limit"
    )
    if file.size is not None and file.size > limit:
        raise HTTPException(status_code=413, detail=too_large.model_dump())
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=too_large.model_dump())

    if not services.storage.configured:
        err = ErrorResponse(
            code=ErrorCode.STORAGE_NOT_CONFIGURED, message="Upload storage not configured"
        )
        raise HTTPException(status_code=500, detail=err.model_dump())

    key = upload_key(user_id, file.filename)
    try:
        stored = await services.storage.put(key, data, content_type)
    except StorageError as exc:
        err = ErrorResponse(code=ErrorCode.STORAGE_ERROR, message="Upload failed")
        raise HTTPException(status_code=502, detail=err.model_dump()) from exc

    logger.info("upload stored at %s", stored.key, extra={"user_id": user_id})
    return UploadResponse(
        url=stored.url,
        pathname=stored.key,
        content_type=stored.content_type,
        size=stored.size,
    )
