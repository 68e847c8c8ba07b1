from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from pydantic import BaseModel

from app.models import ErrorCode
from app.services.container import Services

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


def get_services(request: Request) -> Services:
    return request.app.state.services


async def require_user(request: Request) -> int:
    """Return the signed-in user's id from the session cookie."""
    user_id = request.session.get("user_id")
    if not user_id:
        err = ErrorResponse(
            code=ErrorCode.UNAUTHORIZED, message="Authentication required"
        )
        raise HTTPException(status_code=401, detail=err.model_dump())
    try:
        return int(user_id)
    except (TypeError, ValueError) as exc:
        request.session.pop("user_id", None)
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="Invalid session")
        raise HTTPException(status_code=401, detail=err.model_dump()) from exc
