"""Instruction prompts for the inpainting model."""
from __future__ import annotations

from app.models import Style

_BASE = (
    "Analyze the input image and automatically select regions for seamless inpainting. "
    "Localize human feet and preserve their visibility, toes, placement, perspective, "
    "shadows, and proportions. "
    "Integrate a tasteful, respectful depiction of Jesus Christ into the scene with "
    "natural composition and blending. "
    "Do not crop or obscure the feet. Match scene lighting, color palette, depth of "
    "field, and camera perspective. "
    "Avoid grotesque or offensive elements. High quality, photoreal or stylized per "
    "art direction."
)

_ART_DIRECTION = {
    Style.BYZANTINE: (
        "Art direction: Byzantine iconography, gold leaf halos, flat stylization, "
        "sacred motifs; icon-like composition."
    ),
    Style.GOTHIC: (
        "Art direction: Gothic illuminated manuscript, intricate linework, stained "
        "glass color palette; ornamental details."
    ),
    Style.CYBERPUNK: (
        "Art direction: Cyberpunk neon glow, holographic halo, futuristic garments, "
        "moody ambient lighting; cinematic contrast."
    ),
}

_CONSTRAINTS = (
    "Constraints: fully automatic masking and inpainting; no user mask; no foot "
    "occlusion; preserve composition; seamless integration."
)

MAX_VARIANT_LENGTH = 200


def build_prompt(style: Style, prompt_variant: str | None = None) -> str:
    """Compose base instructions, art direction, optional variant and constraints."""
    variant = (prompt_variant or "").strip()[:MAX_VARIANT_LENGTH]
    parts = [
        _BASE,
        _ART_DIRECTION[Style(style)],
        f"Creative direction: {variant}" if variant else "",
        _CONSTRAINTS,
    ]
    return " ".join(p for p in parts if p)


__all__ = ["MAX_VARIANT_LENGTH", "build_prompt"]
