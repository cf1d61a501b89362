"""Unit tests for the Tesseract recognition engine.

Tests cover:
- Text and confidence assembly from Tesseract's TSV output
- Error handling for unreadable images and missing binaries
- Engine factory
"""

import io
from unittest.mock import MagicMock, patch

import pytest
import pytesseract
from PIL import Image

from services.ocr.factory import create_recognition_engine
from services.ocr.service import TesseractRecognitionEngine
from services.shared.config import Settings

TSV = {
    "block_num": [0, 1, 1, 1, 1],
    "par_num": [0, 1, 1, 1, 1],
    "line_num": [0, 1, 1, 2, 2],
    "text": ["", "FAKTURA", "VAT", "FV/2025/001", " "],
    "conf": ["-1", "96.0", "90.0", "84.0", "-1"],
}


@pytest.fixture
def png_bytes() -> bytes:
    output = io.BytesIO()
    Image.new("L", (200, 50), color=255).save(output, format="PNG")
    return output.getvalue()


@pytest.fixture
def engine() -> TesseractRecognitionEngine:
    return TesseractRecognitionEngine(Settings(_env_file=None, ocr_language="pol+eng"))


@patch("services.ocr.service.pytesseract.image_to_data")
def test_recognize_joins_lines_and_averages_confidence(
    mock_data: MagicMock, engine: TesseractRecognitionEngine, png_bytes: bytes
) -> None:
    """Layout rows without words are ignored for both text and confidence."""
    mock_data.return_value = TSV

    result = engine.recognize(png_bytes)

    assert result.success is True
    assert result.text == "FAKTURA VAT\nFV/2025/001"
    assert result.confidence == 90.0
    assert result.language == "pol+eng"
    assert mock_data.call_args.kwargs["lang"] == "pol+eng"


@patch("services.ocr.service.pytesseract.image_to_data")
def test_blank_page_has_zero_confidence(
    mock_data: MagicMock, engine: TesseractRecognitionEngine, png_bytes: bytes
) -> None:
    mock_data.return_value = {
        "block_num": [0], "par_num": [0], "line_num": [0], "text": [""], "conf": ["-1"]
    }

    result = engine.recognize(png_bytes)

    assert result.success is True
    assert result.text == ""
    assert result.confidence == 0.0


def test_unreadable_image_is_permanent(engine: TesseractRecognitionEngine) -> None:
    result = engine.recognize(b"definitely not an image")

    assert result.success is False
    assert result.retryable is False
    assert "Unreadable image" in str(result.error)


@patch("services.ocr.service.pytesseract.image_to_data")
def test_missing_binary_is_retryable(
    mock_data: MagicMock, engine: TesseractRecognitionEngine, png_bytes: bytes
) -> None:
    mock_data.side_effect = pytesseract.TesseractNotFoundError()

    result = engine.recognize(png_bytes)

    assert result.success is False
    assert result.retryable is True
    assert "Tesseract not available" in str(result.error)


@patch("services.ocr.service.pytesseract.get_tesseract_version")
def test_is_available(mock_version: MagicMock, engine: TesseractRecognitionEngine) -> None:
    mock_version.return_value = "5.3.0"
    assert engine.is_available() is True

    mock_version.side_effect = pytesseract.TesseractNotFoundError()
    assert engine.is_available() is False


@patch.dict("os.environ", {"TESSERACT_CMD": "/opt/tesseract/bin/tesseract"})
def test_tesseract_cmd_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pytesseract.pytesseract, "tesseract_cmd", "tesseract")

    TesseractRecognitionEngine(Settings(_env_file=None))

    assert pytesseract.pytesseract.tesseract_cmd == "/opt/tesseract/bin/tesseract"


@patch("services.ocr.service.pytesseract.get_tesseract_version", return_value="5.3.0")
def test_factory_creates_tesseract_engine(mock_version: MagicMock) -> None:
    engine = create_recognition_engine(Settings(_env_file=None))
    assert isinstance(engine, TesseractRecognitionEngine)
