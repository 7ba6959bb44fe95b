from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError


class ImageEnhancementError(RuntimeError):
    pass


_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


@dataclass(frozen=True, slots=True)
class EnhanceConfig:
    contrast: float = 1.3
    sharpen: bool = True
    grayscale: bool = False


def is_enhanceable(mime_type: str) -> bool:
    return mime_type.casefold() in _FORMATS


def enhance_for_ocr(data: bytes, mime_type: str, *, config: EnhanceConfig | None = None) -> bytes:
    """Boost contrast and sharpen edges of a scanned invoice image; the output keeps the input format."""
    cfg = config or EnhanceConfig()
    fmt = _FORMATS.get(mime_type.casefold())
    if fmt is None:
        raise ImageEnhancementError(f"Unsupported image type: {mime_type}")

    try:
        with Image.open(io.BytesIO(data)) as opened:
            image = ImageOps.exif_transpose(opened)
            image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageEnhancementError(f"Could not decode image: {exc}") from exc

    if image.mode not in ("RGB", "RGBA", "L") or (fmt == "JPEG" and image.mode == "RGBA"):
        image = image.convert("RGB")
    if cfg.grayscale:
        image = image.convert("L")
    if cfg.contrast != 1.0:
        image = ImageEnhance.Contrast(image).enhance(cfg.contrast)
    if cfg.sharpen:
        image = image.filter(ImageFilter.SHARPEN)

    out = io.BytesIO()
    save_kwargs = {"quality": 95} if fmt in ("JPEG", "WEBP") else {}
    try:
        image.save(out, format=fmt, **save_kwargs)
    except (OSError, ValueError) as exc:
        raise ImageEnhancementError(f"Could not encode enhanced image: {exc}") from exc
    return out.getvalue()
