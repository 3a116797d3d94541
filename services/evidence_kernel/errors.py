"""
Stable error taxonomy for the evidence kernel.

Services raise EvidenceKernelError; the API layer renders it into the
error envelope. The error_code strings are a client contract: never
rename one, add a new code instead.
"""

from __future__ import annotations

from typing import Any, Optional

# Validation gate
ERR_UNKNOWN_INGESTION_METHOD = "UNKNOWN_INGESTION_METHOD"
ERR_VALIDATION_FAILED = "VALIDATION_FAILED"
ERR_UNSUPPORTED_COMBINATION = "UNSUPPORTED_METHOD_DATASET_COMBINATION"
ERR_MISSING_REQUIRED_METADATA = "MISSING_REQUIRED_METADATA"
ERR_ATTESTOR_FORGERY = "ATTESTOR_FORGERY_ATTEMPT"
ERR_CLIENT_HASH_REJECTED = "CLIENT_HASH_REJECTED"
ERR_INVALID_SOURCE_FOR_METHOD = "INVALID_SOURCE_FOR_METHOD"
ERR_INVALID_DATASET_SCOPE = "INVALID_DATASET_SCOPE_COMBINATION"
ERR_MISSING_SCOPE_TARGET_ID = "MISSING_SCOPE_TARGET_ID"
ERR_SCOPE_TARGET_NOT_ALLOWED = "SCOPE_TARGET_NOT_ALLOWED"
ERR_MISSING_UNLINKED_REASON = "MISSING_UNLINKED_REASON"
ERR_INVALID_RESOLUTION_DATE = "INVALID_RESOLUTION_DATE"
ERR_INVALID_ATTESTATION_NOTES = "INVALID_ATTESTATION_NOTES"
ERR_METHOD_DISALLOWS_FILE = "METHOD_DISALLOWS_FILE"
ERR_MISSING_GDPR_BASIS = "MISSING_GDPR_BASIS"
ERR_INVALID_RETENTION_POLICY = "INVALID_RETENTION_POLICY"
ERR_INVALID_PAYLOAD = "INVALID_PAYLOAD"
ERR_CLIENT_PAYLOAD_NOT_ALLOWED = "CLIENT_PAYLOAD_NOT_ALLOWED"
ERR_PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
ERR_FIXTURE_BLOCKED_IN_LIVE = "FIXTURE_BLOCKED_IN_LIVE"

# Lifecycle
ERR_NOT_FOUND = "NOT_FOUND"
ERR_IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
ERR_SCOPE_IMMUTABLE_AFTER_PAYLOAD = "SCOPE_IMMUTABLE_AFTER_PAYLOAD"
ERR_DRAFT_NOT_EDITABLE = "DRAFT_NOT_EDITABLE"
ERR_DRAFT_NOT_SEALABLE = "DRAFT_NOT_SEALABLE"
ERR_SEALED_IMMUTABLE = "SEALED_IMMUTABLE"
ERR_MISSING_PAYLOAD = "MISSING_PAYLOAD"
ERR_UNAUTHORIZED_ROLE = "UNAUTHORIZED_ROLE"
ERR_WORK_ITEM_ALREADY_RESOLVED = "WORK_ITEM_ALREADY_RESOLVED"


class EvidenceKernelError(Exception):
    """A client-visible failure with a stable code and HTTP status."""

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        *,
        field: Optional[str] = None,
        **extra: Any,
    ) -> None:
        super().__init__(f"{error_code}: {message}")
        self.status_code = int(status_code)
        self.error_code = error_code
        self.message = message
        self.field = field
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": False,
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.field:
            body["field"] = self.field
        body.update(self.extra)
        return body


def validation_error(
    error_code: str, message: str, *, field: Optional[str] = None, **extra: Any
) -> EvidenceKernelError:
    return EvidenceKernelError(422, error_code, message, field=field, **extra)


def conflict(error_code: str, message: str, **extra: Any) -> EvidenceKernelError:
    return EvidenceKernelError(409, error_code, message, **extra)


def not_found(entity: str) -> EvidenceKernelError:
    # Foreign-tenant rows take this path too; the message never says which.
    return EvidenceKernelError(404, ERR_NOT_FOUND, f"{entity} not found")


def forbidden(error_code: str, message: str, **extra: Any) -> EvidenceKernelError:
    return EvidenceKernelError(403, error_code, message, **extra)
