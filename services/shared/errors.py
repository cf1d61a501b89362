"""Exception hierarchy for the invoice pipeline.

Hierarchy:
    PipelineError (base)
    ├── TransientError              retried with backoff
    │   └── PlatformTransientError
    ├── PermanentError              surfaced immediately, never retried
    │   ├── DocumentBuildError
    │   ├── SigningError
    │   ├── PlatformRejectedError
    │   ├── ReferenceCollisionError
    │   └── UnsignedSubmissionError
    ├── NotFoundError
    ├── DuplicateRecordError        uniqueness constraint hit
    ├── ConcurrentUpdateError       optimistic version mismatch
    ├── InvalidTransitionError      state machine violation
    ├── CorrectionValidationError
    ├── InvoiceNotEditableError
    └── ApprovalError

Every error carries a machine-readable ``code`` and ``details`` so the owning
record can keep them for support diagnosis.
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message (safe to show to users).
        code: Machine-readable error code.
        details: Additional context for diagnosis.
    """

    code = "PIPELINE_ERROR"

    def __init__(
        self, message: str, code: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransientError(PipelineError):
    """Network, timeout or storage hiccup; the operation may succeed later."""

    code = "TRANSIENT_ERROR"


class PermanentError(PipelineError):
    """Malformed input or a rejected document; retrying cannot help."""

    code = "PERMANENT_ERROR"


class NotFoundError(PipelineError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}", details={"id": record_id})


class DuplicateRecordError(PipelineError):
    """Raised when a second record is created for an invoice that already owns one."""

    code = "DUPLICATE_RECORD"

    def __init__(self, kind: str, invoice_id: str) -> None:
        super().__init__(
            f"{kind} already exists for invoice {invoice_id}",
            details={"kind": kind, "invoice_id": invoice_id},
        )
        self.kind = kind
        self.invoice_id = invoice_id


class ConcurrentUpdateError(PipelineError):
    code = "CONCURRENT_UPDATE"

    def __init__(self, kind: str, record_id: str, expected_version: int) -> None:
        super().__init__(
            f"{kind} {record_id} was modified concurrently",
            details={"id": record_id, "expected_version": expected_version},
        )


class InvalidTransitionError(PipelineError):
    code = "INVALID_TRANSITION"

    def __init__(self, kind: str, current: str, target: str) -> None:
        super().__init__(
            f"{kind} cannot move from {current} to {target}",
            details={"kind": kind, "from": current, "to": target},
        )
        self.current = current
        self.target = target


class CorrectionValidationError(PipelineError):
    code = "CORRECTION_INVALID"

    def __init__(self, errors: dict[str, str]) -> None:
        super().__init__("One or more corrections are invalid", details={"fields": errors})
        self.errors = errors


class InvoiceNotEditableError(PipelineError):
    code = "INVOICE_NOT_EDITABLE"

    def __init__(self, invoice_id: str, status: str) -> None:
        super().__init__(
            f"Invoice {invoice_id} cannot be edited in status {status}",
            details={"invoice_id": invoice_id, "status": status},
        )


class ApprovalError(PipelineError):
    code = "APPROVAL_BLOCKED"

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            f"Invoice has {len(errors)} outstanding validation error(s)",
            details={"errors": errors},
        )
        self.errors = errors


class DocumentBuildError(PermanentError):
    code = "DOCUMENT_INCOMPLETE"

    def __init__(self, field: str, reason: str = "Required field is missing") -> None:
        super().__init__(f"{reason}: {field}", details={"field": field})
        self.field = field


class SigningError(PermanentError):
    code = "SIGNING_FAILED"


class UnsignedSubmissionError(PermanentError):
    code = "UNSIGNED_DOCUMENT"

    def __init__(self) -> None:
        super().__init__("Unsigned documents cannot be submitted in production")


class ReferenceCollisionError(PermanentError):
    code = "REFERENCE_COLLISION"

    def __init__(self, reference: str, owner: str) -> None:
        super().__init__(
            f"Reference number {reference} is already assigned to another invoice",
            details={"reference_number": reference, "owner_invoice_id": owner},
        )


class PlatformTransientError(TransientError):
    code = "PLATFORM_UNAVAILABLE"


class PlatformRejectedError(PermanentError):
    """Structured rejection returned by the national platform."""

    code = "PLATFORM_REJECTED"
