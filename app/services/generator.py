"""Stylized inpainting through the OpenAI image edit API."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass

import httpx
from openai import BadRequestError, OpenAI, OpenAIError

from app.models import Style

from .imaging import normalize_output
from .prompts import build_prompt

logger = logging.getLogger(__name__)

# Error codes the API uses when moderation rejects the prompt or image
_SAFETY_CODES = frozenset({"moderation_blocked", "content_policy_violation"})


class SafetyBlockedError(Exception):
    """The model refused the request on safety grounds."""


class ModelError(Exception):
    """Any other failure to obtain an image from the model."""


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    content_type: str


def _is_safety_rejection(exc: OpenAIError) -> bool:
    code = getattr(exc, "code", None)
    if code in _SAFETY_CODES:
        return True
    return "safety" in str(exc).lower()


class ImageGenerator:
    """Holds the OpenAI client for one process; calls are blocking."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._client: OpenAI | None = None
        self._http_client: httpx.Client | None = None

    def _get_client(self) -> OpenAI:
        """Lazily build and cache the OpenAI client."""
        if self._client is None:
            if not self._api_key:
                raise ModelError("OPENAI_API_KEY is not configured")
            mounts: dict[str, httpx.HTTPTransport] = {}
            http_proxy = os.environ.get("HTTP_PROXY")
            https_proxy = os.environ.get("HTTPS_PROXY")
            if http_proxy:
                mounts["http://"] = httpx.HTTPTransport(proxy=http_proxy)
            if https_proxy:
                mounts["https://"] = httpx.HTTPTransport(proxy=https_proxy)

            self._http_client = httpx.Client(mounts=mounts) if mounts else None
            self._client = OpenAI(
                api_key=self._api_key,
                http_client=self._http_client,
                timeout=self._timeout,
            )
        return self._client

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
        self._http_client = None
        self._client = None

    def generate(
        self,
        image_png: bytes,
        style: Style,
        *,
        output_format: str = "png",
        prompt_variant: str | None = None,
    ) -> GeneratedImage:
        """Send a prepared PNG and the style prompt; return the normalized result.

        Raises :class:`SafetyBlockedError` when moderation rejects the
        request and :class:`ModelError` for every other failure.
        """
        prompt = build_prompt(style, prompt_variant)
        client = self._get_client()
        try:
            response = client.images.edit(
                model=self.model,
                image=("input.png", image_png, "image/png"),
                prompt=prompt,
            )
        except BadRequestError as exc:
            if _is_safety_rejection(exc):
                raise SafetyBlockedError(str(exc)) from exc
            raise ModelError("Image edit request rejected") from exc
        except OpenAIError as exc:
            raise ModelError("OpenAI request failed") from exc

        try:
            payload = response.data[0].b64_json
            if not payload:
                raise ValueError("empty image payload")
            raw = base64.b64decode(payload, validate=True)
        except (IndexError, TypeError, ValueError, binascii.Error) as exc:
            raise ModelError("Model did not return an image payload") from exc

        try:
            data, content_type = normalize_output(raw, output_format)
        except OSError as exc:
            raise ModelError("Model returned an unreadable image") from exc
        logger.info("model %s returned %d bytes", self.model, len(data))
        return GeneratedImage(data=data, content_type=content_type)


__all__ = ["GeneratedImage", "ImageGenerator", "ModelError", "SafetyBlockedError"]
