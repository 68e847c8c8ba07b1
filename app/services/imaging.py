"""Pillow helpers: input normalization, output encoding and the visible watermark."""
from __future__ import annotations

import io
import logging

import pillow_heif
from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps

logger = logging.getLogger(__name__)

pillow_heif.register_heif_opener()

_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "HEIC": "image/heic",
    "HEIF": "image/heif",
}

_OUTPUT_FORMATS = {"png": ("PNG", "image/png"), "webp": ("WEBP", "image/webp")}

WATERMARK_FONT = "DejaVuSans.ttf"


def ext_from_content_type(content_type: str | None) -> str:
    mime = (content_type or "").lower()
    if "jpeg" in mime or "jpg" in mime:
        return "jpg"
    if "webp" in mime:
        return "webp"
    if "heic" in mime:
        return "heic"
    if "heif" in mime:
        return "heif"
    return "png"


def prepare_input(data: bytes, max_edge: int = 1024) -> bytes:
    """Fit the image inside ``max_edge`` (never enlarging) and re-encode as PNG."""
    with Image.open(io.BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        img.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="PNG")
    return out.getvalue()


def normalize_output(data: bytes, output_format: str = "png") -> tuple[bytes, str]:
    """Re-encode model output into the requested format; returns bytes and MIME type."""
    pil_format, mime = _OUTPUT_FORMATS.get(output_format, _OUTPUT_FORMATS["png"])
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        out = io.BytesIO()
        img.save(out, format=pil_format)
    return out.getvalue(), mime


def _load_font(size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    try:
        return ImageFont.truetype(WATERMARK_FONT, size)
    except OSError:
        return ImageFont.load_default(size=size)


def apply_watermark(
    data: bytes,
    text: str = "touchfeets.com",
    *,
    opacity: float = 0.55,
    margin_pct: float = 0.05,
    font_size_pct: float = 0.045,
    fill: tuple[int, int, int] = (255, 255, 255),
) -> tuple[bytes, str]:
    """Draw ``text`` bottom-centre with a soft shadow.

    The input format is kept for PNG, WebP and JPEG; anything else is
    re-encoded as PNG. Returns the new bytes and their MIME type.
    """
    opacity = min(1.0, max(0.0, opacity))
    with Image.open(io.BytesIO(data)) as src:
        fmt = (src.format or "PNG").upper()
        base = ImageOps.exif_transpose(src).convert("RGBA")

    width, height = base.size
    font_size = max(16, round(width * font_size_pct))
    y_margin = max(8, round(height * margin_pct))
    font = _load_font(font_size)
    alpha = round(255 * opacity)

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    shadow = Image.new("RGBA", base.size, (0, 0, 0, 0))
    anchor_xy = (width / 2, height - y_margin)
    # "ms": horizontally centred, baseline at y
    ImageDraw.Draw(shadow).text(anchor_xy, text, font=font, fill=(0, 0, 0, alpha), anchor="ms")
    shadow = shadow.filter(ImageFilter.GaussianBlur(max(0.6, font_size * 0.07)))
    ImageDraw.Draw(overlay).text(anchor_xy, text, font=font, fill=(*fill, alpha), anchor="ms")

    marked = Image.alpha_composite(Image.alpha_composite(base, shadow), overlay)
    if fmt not in ("PNG", "WEBP", "JPEG"):
        fmt = "PNG"
    if fmt == "JPEG":
        marked = marked.convert("RGB")
    out = io.BytesIO()
    marked.save(out, format=fmt)
    return out.getvalue(), _FORMAT_TO_MIME[fmt]


__all__ = [
    "apply_watermark",
    "ext_from_content_type",
    "normalize_output",
    "prepare_input",
]
