"""Google sign-in and the session cookie."""
from __future__ import annotations

import asyncio
import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse

from app.dependencies import ErrorResponse, get_services
from app.models import ErrorCode, User
from app.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")


def _google_or_404(services: Services):
    client = services.oauth.create_client("google")
    if client is None:
        err = ErrorResponse(
            code=ErrorCode.AUTH_NOT_CONFIGURED, message="Google login is not configured"
        )
        raise HTTPException(status_code=404, detail=err.model_dump())
    return client


def upsert_user(services: Services, email: str, name: str | None, image_url: str | None) -> int:
    with services.db.session() as db:
        user = db.query(User).filter_by(email=email).first()
        if user is None:
            user = User(email=email)
            db.add(user)
        if name:
            user.name = name
        if image_url:
            user.image_url = image_url
        db.commit()
        return user.id


@router.get("/login/google")
async def login_google(request: Request, services: Services = Depends(get_services)):
    google = _google_or_404(services)
    base = services.settings.public_base_url.rstrip("/")
    return await google.authorize_redirect(request, f"{base}/auth/callback/google")


@router.get("/callback/google")
async def callback_google(request: Request, services: Services = Depends(get_services)):
    google = _google_or_404(services)
    try:
        token = await google.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("Google OAuth callback error: %s", exc)
        err = ErrorResponse(code=ErrorCode.UNAUTHORIZED, message="Login failed")
        raise HTTPException(status_code=400, detail=err.model_dump()) from exc

    user_info = token.get("userinfo") or {}
    if not user_info:
        user_info = await google.userinfo(token=token)

    email = (user_info.get("email") or "").strip().lower()
    if not email:
        err = ErrorResponse(
            code=ErrorCode.BAD_REQUEST, message="Google profile is missing an email"
        )
        raise HTTPException(status_code=400, detail=err.model_dump())

    user_id = await asyncio.to_thread(
        upsert_user, services, email, user_info.get("name"), user_info.get("picture")
    )
    request.session["user_id"] = user_id
    logger.info("signed in", extra={"user_id": user_id})
    return RedirectResponse(url="/", status_code=302)


@router.post("/logout")
async def logout(request: Request):
    request.session.pop("user_id", None)
    return {"ok": True}


@router.get("/me")
async def me(request: Request, services: Services = Depends(get_services)):
    """Current user from the session, or ``authenticated: false``."""
    user_id = request.session.get("user_id")
    if not user_id:
        return {"authenticated": False}

    def _db_call() -> User | None:
        with services.db.session() as db:
            return db.get(User, int(user_id))

    user = await asyncio.to_thread(_db_call)
    if user is None:
        request.session.pop("user_id", None)
        return {"authenticated": False}
    return {
        "authenticated": True,
        "user": {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "imageUrl": user.image_url,
        },
    }
