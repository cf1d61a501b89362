"""Recognition engine using Tesseract.

Production-grade OCR implementation with:
- Configurable Tesseract path via environment variables
- Mean word confidence from Tesseract's TSV output
- Type-safe results using Pydantic

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import io
import os

import pytesseract
from PIL import Image, UnidentifiedImageError

from services.ocr.factory import RecognitionResult
from services.shared.config import Settings


class TesseractRecognitionEngine:
    """Recognition engine backed by the Tesseract binary.

    Handles text extraction from images with proper error handling
    and configuration management.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize recognition engine.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from environment.

        Allows overriding default Tesseract path via TESSERACT_CMD environment variable.
        Common paths:
        - Linux: /usr/bin/tesseract
        - macOS: /opt/homebrew/bin/tesseract or /usr/local/bin/tesseract
        - Windows: C:\\Program Files\\Tesseract-OCR\\tesseract.exe
        """
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def is_available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
            return True
        except (pytesseract.TesseractNotFoundError, OSError):
            return False

    def recognize(self, image: bytes) -> RecognitionResult:
        """Recognize text in an image.

        Args:
            image: Encoded raster image (PNG, JPEG, WebP, ...)

        Returns:
            RecognitionResult with text and mean word confidence, or error information
        """
        language = self.settings.ocr_language
        try:
            with Image.open(io.BytesIO(image)) as img:
                data = pytesseract.image_to_data(
                    img, lang=language, output_type=pytesseract.Output.DICT
                )
        except UnidentifiedImageError as e:
            return RecognitionResult(
                success=False, error=f"Unreadable image: {str(e)}", retryable=False
            )
        except pytesseract.TesseractNotFoundError as e:
            return RecognitionResult(success=False, error=f"Tesseract not available: {str(e)}")
        except Exception as e:
            return RecognitionResult(success=False, error=f"OCR processing failed: {str(e)}")

        return RecognitionResult(
            text=_join_lines(data),
            confidence=_mean_confidence(data),
            language=language,
            success=True,
        )


def _mean_confidence(data: dict[str, list]) -> float:
    # Tesseract reports -1 for layout rows that carry no word
    scores = [
        float(conf)
        for conf, word in zip(data.get("conf", []), data.get("text", []))
        if float(conf) >= 0 and str(word).strip()
    ]
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 2)


def _join_lines(data: dict[str, list]) -> str:
    lines: dict[tuple[int, int, int], list[str]] = {}
    for i, word in enumerate(data.get("text", [])):
        if not str(word).strip():
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(str(word))
    return "\n".join(" ".join(words) for _, words in sorted(lines.items()))
