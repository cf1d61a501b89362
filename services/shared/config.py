"""Shared configuration management for the invoice pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="ksef-invoice-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Recognition engine configuration
    ocr_provider: Literal["tesseract"] = Field(
        default="tesseract",
        description="Recognition engine used for raster invoices",
    )
    ocr_language: str = Field(
        default="pol+eng",
        description="Tesseract language packs passed to the engine",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai"] = Field(
        default="openai",
        description="Structured field extraction provider",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="Model used by the OpenAI extraction provider",
    )

    # Queue configuration (arq / Redis)
    queue_enabled: bool = Field(
        default=False,
        description="Dispatch events through Redis (arq) instead of in-process",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the event queue and record store",
    )
    queue_max_jobs: int = Field(default=10, description="Concurrent jobs per worker")
    queue_job_timeout: int = Field(default=300, description="Job timeout in seconds")
    resume_interval_seconds: int = Field(
        default=30,
        description="How often the worker resumes due retries from persisted state",
    )

    # Storage configuration (S3-compatible object storage)
    storage_enabled: bool = Field(
        default=False,
        description="Store documents and receipts in S3-compatible storage (MinIO)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Default bucket name for document storage",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    local_storage_dir: str = Field(
        default="./data/blobs",
        description="Filesystem directory used when object storage is disabled",
    )

    # Pipeline policy
    extraction_max_retries: int = Field(
        default=3, ge=0, description="Automatic retries of a failed extraction job"
    )
    submission_max_attempts: int = Field(
        default=3, ge=1, description="Submission attempts before a submission is abandoned"
    )
    retry_backoff_base_seconds: float = Field(
        default=2.0, gt=0, description="First retry delay; doubled on every further retry"
    )
    retry_backoff_max_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound for a single retry delay"
    )
    review_confidence_threshold: float = Field(
        default=0.80, ge=0, le=1, description="Overall confidence below which review is required"
    )
    ocr_min_confidence: float = Field(
        default=60.0,
        ge=0,
        le=100,
        description="Recognition confidence (0-100) below which text is tagged low-confidence",
    )
    amount_tolerance: Decimal = Field(
        default=Decimal("1.00"),
        description="Allowed difference between net + VAT and gross before approval is blocked",
    )
    stale_job_seconds: int = Field(
        default=900,
        description="In-flight jobs untouched for this long are treated as abandoned by a crash",
    )
    submission_poll_interval_seconds: float = Field(
        default=10.0, gt=0, description="Delay between platform status polls"
    )
    submission_max_polls: int = Field(
        default=30, ge=1, description="Status polls before a pending submission counts as failed"
    )

    # KSeF (national e-invoicing platform)
    ksef_environment: Literal["test", "demo", "production"] = Field(
        default="test",
        description="KSeF environment; unsigned documents are refused in production",
    )
    ksef_base_url: str | None = Field(
        default=None,
        description="Override for the KSeF API base URL",
    )
    ksef_nip: str = Field(
        default="",
        description="Default tenant NIP used when a tenant has no explicit mapping",
    )
    tenant_tax_ids: dict[str, str] = Field(
        default_factory=dict,
        description="Tenant id to NIP mapping (JSON in APP_TENANT_TAX_IDS)",
    )
    ksef_cert_path: str | None = Field(
        default=None,
        description="Path to the PKCS#12 (.pfx/.p12) signing certificate",
    )
    ksef_cert_password: str = Field(
        default="",
        description="Signing certificate password (use env var APP_KSEF_CERT_PASSWORD)",
    )
    ksef_tenant_cert_paths: dict[str, str] = Field(
        default_factory=dict,
        description="Tenant id to certificate path mapping for tenant-scoped signing",
    )
    ksef_session_ttl_seconds: int = Field(
        default=3600,
        description="Session lifetime assumed when the platform does not report one",
    )
    ksef_timeout_seconds: float = Field(
        default=30.0,
        description="HTTP timeout for platform requests",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
