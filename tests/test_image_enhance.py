import io

import pytest
from PIL import Image

from invoice_audit.preprocessing.image_enhance import (
    EnhanceConfig,
    ImageEnhancementError,
    enhance_for_ocr,
    is_enhanceable,
)


def _image_bytes(mode: str, fmt: str, color: object) -> bytes:
    out = io.BytesIO()
    Image.new(mode, (24, 16), color).save(out, format=fmt)
    return out.getvalue()


def test_enhanced_png_keeps_format_and_size() -> None:
    data = _image_bytes("RGB", "PNG", (120, 120, 120))

    enhanced = enhance_for_ocr(data, "image/png")

    with Image.open(io.BytesIO(enhanced)) as image:
        assert image.format == "PNG"
        assert image.size == (24, 16)


def test_rgba_input_is_flattened_for_jpeg() -> None:
    data = _image_bytes("RGBA", "PNG", (10, 20, 30, 128))

    enhanced = enhance_for_ocr(data, "image/jpeg", config=EnhanceConfig(grayscale=True))

    with Image.open(io.BytesIO(enhanced)) as image:
        assert image.format == "JPEG"
        assert image.mode == "L"


def test_undecodable_or_unsupported_input_raises() -> None:
    with pytest.raises(ImageEnhancementError):
        enhance_for_ocr(b"not an image", "image/png")

    with pytest.raises(ImageEnhancementError):
        enhance_for_ocr(b"%PDF-1.4", "application/pdf")


def test_only_raster_images_are_enhanceable() -> None:
    assert is_enhanceable("image/JPEG")
    assert is_enhanceable("image/png")
    assert not is_enhanceable("application/pdf")
