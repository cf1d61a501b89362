"""Extraction provider selection.

Providers register under the name used by ``APP_EXTRACTION_PROVIDER``; the
pipeline context asks for one instance at startup.
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Name to class mapping for extraction providers."""

    _providers: dict[str, type[ExtractionProvider]] = {"openai": OpenAIExtractionProvider}

    @classmethod
    def register(cls, name: str, provider_class: type[ExtractionProvider]) -> None:
        cls._providers[name] = provider_class
        logger.info(f"Registered extraction provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[ExtractionProvider]:
        """Look up a provider class.

        Raises:
            ValueError: If nothing is registered under ``name``
        """
        try:
            return cls._providers[name]
        except KeyError:
            raise ValueError(
                f"Unknown extraction provider: '{name}'. "
                f"Available providers: {', '.join(sorted(cls._providers))}"
            ) from None

    @classmethod
    def list_providers(cls) -> list[str]:
        return sorted(cls._providers)


def create_extraction_provider(settings: Settings) -> ExtractionProvider:
    """Instantiate the configured provider.

    An unconfigured provider (no API key) is still returned so the API can
    start; extraction jobs then fail permanently with a clear error.
    """
    name = settings.extraction_provider
    provider = ProviderRegistry.get_provider_class(name)(settings)
    if not provider.is_available():
        logger.warning(f"Extraction provider '{name}' is not fully available, check its API key")
    logger.info(f"Created extraction provider: {name}")
    return provider
