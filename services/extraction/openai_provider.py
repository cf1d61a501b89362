"""OpenAI-based extraction provider for Polish invoice field extraction.

Uses the OpenAI API with function calling to turn recognized invoice text
into an ExtractedInvoice with per-section confidences.

Includes retry logic with exponential backoff for transient API errors.
"""

import json
import logging
import os
from decimal import Decimal
from typing import Any

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    OpenAIError,
    RateLimitError,
)
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings

logger = logging.getLogger(__name__)

TRANSIENT_API_ERRORS = (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)

_CONFIDENCE = {"type": ["number", "null"], "minimum": 0, "maximum": 1}
_TEXT = {"type": ["string", "null"]}
_NUMBER = {"type": ["number", "null"]}
_FIELD_CONFIDENCE = {"type": "object", "additionalProperties": _CONFIDENCE}

_PARTY_SCHEMA = {
    "type": "object",
    "properties": {
        "name": _TEXT,
        "tax_id": _TEXT,
        "address": _TEXT,
        "country_code": _TEXT,
        "confidence": _CONFIDENCE,
        "field_confidence": _FIELD_CONFIDENCE,
    },
}


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Uses OpenAI API with function calling for structured outputs.
    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def extract_invoice_fields(
        self, ocr_text: str, hints: dict[str, str] | None = None
    ) -> ExtractionResult:
        """Extract structured invoice data from recognized text using OpenAI.

        Missing configuration and empty text are reported as non-retryable;
        API failures that survive the client-side retries are retryable.

        Args:
            ocr_text: Raw text from the recognition engine
            hints: Optional context hints passed into the prompt

        Returns:
            ExtractionResult with structured invoice data or error, provider='openai'
        """
        if not self.is_available():
            return self._failure("OPENAI_API_KEY environment variable not set", retryable=False)

        if not ocr_text or not ocr_text.strip():
            return self._failure("Empty OCR text provided", retryable=False)

        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = OpenAI(api_key=api_key)

        prompt = self._build_extraction_prompt(ocr_text, hints or {})
        try:
            response = self._call_openai_with_retry(prompt)
        except OpenAIError as e:
            logger.warning(f"OpenAI extraction call failed: {e}")
            return self._failure(f"Extraction failed: {str(e)}", retryable=True)

        message = response.choices[0].message
        if message.function_call is None:
            return self._failure("No function call in API response", retryable=True)

        try:
            # Decimal keeps amounts exact
            payload = json.loads(message.function_call.arguments, parse_float=Decimal)
            invoice = ExtractedInvoice.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as e:
            return self._failure(f"Malformed extraction response: {str(e)}", retryable=True)

        return ExtractionResult(invoice=invoice, success=True, provider=self.provider_name)

    def _failure(self, error: str, retryable: bool) -> ExtractionResult:
        return ExtractionResult(
            invoice=None,
            success=False,
            error=error,
            retryable=retryable,
            provider=self.provider_name,
        )

    @retry(
        retry=retry_if_exception_type(TRANSIENT_API_ERRORS),
        wait=wait_exponential_jitter(initial=1, max=60),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _call_openai_with_retry(self, prompt: str) -> Any:
        """Call OpenAI API with retry logic for transient errors.

        Uses exponential backoff with jitter to handle rate limits and temporary failures.

        Args:
            prompt: Extraction prompt for the LLM

        Returns:
            OpenAI API response

        Raises:
            OpenAIError: After all retry attempts are exhausted
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        return self._client.chat.completions.create(  # type: ignore[call-overload]
            model=self.settings.openai_model,
            messages=[
                {
                    "role": "system",
                    "content": "You extract data from Polish VAT invoices (faktury VAT).",
                },
                {"role": "user", "content": prompt},
            ],
            functions=[self._get_invoice_schema()],
            function_call={"name": "extract_invoice_data"},
            temperature=0,
        )

    def _build_extraction_prompt(self, ocr_text: str, hints: dict[str, str]) -> str:
        """Build prompt for LLM extraction.

        Args:
            ocr_text: Raw OCR text
            hints: Context hints rendered as key/value lines

        Returns:
            Formatted prompt string
        """
        hint_lines = "\n".join(f"- {key}: {value}" for key, value in sorted(hints.items()))
        return f"""Extract the invoice below into the extract_invoice_data structure.

Polish invoice vocabulary:
- "Sprzedawca" is the seller, "Nabywca" is the buyer
- "NIP" is the 10-digit tax identifier; return digits only, without "PL" or dashes
- "Data wystawienia" is the issue date, "Termin płatności" is the due date
- "Wartość netto" is net, "Kwota VAT" is VAT, "Wartość brutto" / "Do zapłaty" is gross
- VAT rates are "23", "8", "5", "0", "zw" (exempt) or "np" (not subject)

Rules:
- Dates as YYYY-MM-DD
- Amounts as plain numbers; "1 234,56" -> 1234.56
- Currency as ISO 4217 code, "zł" -> "PLN"
- Return null for any value not clearly present; never guess
- Give every section a confidence between 0 and 1, and use field_confidence
  to lower individual fields you are unsure about
- Give every line item its own confidence

Context:
{hint_lines or "- none"}

Invoice text:
{ocr_text}"""

    def _get_invoice_schema(self) -> dict[str, Any]:
        """Get OpenAI function calling schema for ExtractedInvoice.

        Returns:
            Function definition dict for OpenAI API
        """
        return {
            "name": "extract_invoice_data",
            "description": "Extract structured Polish invoice data with confidences",
            "parameters": {
                "type": "object",
                "properties": {
                    "header": {
                        "type": "object",
                        "properties": {
                            "invoice_number": _TEXT,
                            "issue_date": {"type": ["string", "null"], "format": "date"},
                            "due_date": {"type": ["string", "null"], "format": "date"},
                            "currency": _TEXT,
                            "confidence": _CONFIDENCE,
                            "field_confidence": _FIELD_CONFIDENCE,
                        },
                    },
                    "seller": _PARTY_SCHEMA,
                    "buyer": _PARTY_SCHEMA,
                    "totals": {
                        "type": "object",
                        "properties": {
                            "net_amount": _NUMBER,
                            "vat_amount": _NUMBER,
                            "gross_amount": _NUMBER,
                            "confidence": _CONFIDENCE,
                            "field_confidence": _FIELD_CONFIDENCE,
                        },
                    },
                    "line_items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "description": _TEXT,
                                "quantity": _NUMBER,
                                "unit": _TEXT,
                                "unit_price": _NUMBER,
                                "net_amount": _NUMBER,
                                "vat_rate": _TEXT,
                                "vat_amount": _NUMBER,
                                "gross_amount": _NUMBER,
                                "confidence": _CONFIDENCE,
                            },
                        },
                    },
                    "overall_confidence": _CONFIDENCE,
                },
                "required": ["header", "seller", "buyer", "totals", "line_items"],
            },
        }
