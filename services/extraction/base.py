"""Abstract base class for extraction services.

Enables switching between different extraction providers while maintaining a
consistent interface and type safety. Tests plug in a deterministic fake.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        invoice: Extracted invoice or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        retryable: Whether a failure may succeed on a later attempt
        provider: Name of provider that performed extraction (e.g., 'openai')
    """

    invoice: ExtractedInvoice | None
    success: bool
    error: str | None = None
    retryable: bool = True
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    All extraction services must implement this interface to ensure
    consistent behavior and type safety.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice_fields(
        self, ocr_text: str, hints: dict[str, str] | None = None
    ) -> ExtractionResult:
        """Extract structured invoice data from recognized text.

        Args:
            ocr_text: Raw text from the recognition engine
            hints: Optional locale or context hints (e.g. {"locale": "pl-PL"})

        Returns:
            ExtractionResult with structured invoice data or error
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai')
        """
        pass
