"""Recognition engine interface and factory.

The orchestrator only depends on the ``RecognitionEngine`` protocol, so the
engine can be swapped by configuration (or by a deterministic fake in tests).
"""

import logging
from typing import Protocol

from pydantic import BaseModel, Field

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class RecognitionResult(BaseModel):
    """Result of a recognition call.

    Attributes:
        text: Recognized text content
        confidence: Mean word confidence on a 0-100 scale
        language: Language pack(s) used for recognition
        success: Whether the call succeeded
        error: Error message if the call failed
        retryable: Whether a failure is worth retrying (engine hiccup vs. bad input)
    """

    text: str = ""
    confidence: float = Field(0.0, ge=0, le=100)
    language: str | None = None
    success: bool
    error: str | None = None
    retryable: bool = True


class RecognitionEngine(Protocol):
    """Protocol for recognition engines."""

    def recognize(self, image: bytes) -> RecognitionResult:
        """Recognize text in a preprocessed raster image."""
        ...

    def is_available(self) -> bool:
        """Check if the engine can be used."""
        ...


def create_recognition_engine(settings: Settings) -> RecognitionEngine:
    """Factory function to create the recognition engine based on configuration.

    Args:
        settings: Application settings with ocr_provider field

    Returns:
        Configured recognition engine instance

    Raises:
        ValueError: If configured provider is unknown
    """
    provider = settings.ocr_provider

    if provider == "tesseract":
        from services.ocr.service import TesseractRecognitionEngine

        engine = TesseractRecognitionEngine(settings)
        if not engine.is_available():
            logger.warning("Tesseract binary not found. Set TESSERACT_CMD or install tesseract-ocr")
        logger.info("Created recognition engine: tesseract")
        return engine

    raise ValueError(f"Unknown OCR provider: '{provider}'. Available: tesseract")
