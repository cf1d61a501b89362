"""Unit tests for image normalisation."""

import io

import pytest
from PIL import Image

from services.ocr.preprocess import preprocess_image
from services.shared.errors import PermanentError


def _encode(image: Image.Image, fmt: str = "PNG") -> bytes:
    output = io.BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


def test_output_is_grayscale_png() -> None:
    data = _encode(Image.new("RGB", (40, 20), color=(200, 10, 10)), fmt="JPEG")

    with Image.open(io.BytesIO(preprocess_image(data))) as result:
        assert result.format == "PNG"
        assert result.mode == "L"
        assert result.size == (40, 20)


def test_transparency_is_flattened_onto_white() -> None:
    data = _encode(Image.new("RGBA", (10, 10), color=(0, 0, 0, 0)))

    with Image.open(io.BytesIO(preprocess_image(data, autocontrast=False))) as result:
        assert result.getpixel((5, 5)) == 255


def test_colour_can_be_kept() -> None:
    data = _encode(Image.new("RGB", (10, 10), color="white"))

    with Image.open(io.BytesIO(preprocess_image(data, grayscale=False))) as result:
        assert result.mode == "RGB"


def test_undecodable_bytes_are_malformed() -> None:
    with pytest.raises(PermanentError) as exc_info:
        preprocess_image(b"%PDF-1.7 not an image")

    assert exc_info.value.code == "MALFORMED_DOCUMENT"
