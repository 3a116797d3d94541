"""
Validation gate for evidence declarations and payloads.

Checks run in a fixed order so the same invalid input always fails with
the same error code:

   1. ingestion method known
   2. dataset type known
   3. method x dataset compatibility
   4. request_id present
   5. no client attestation, no client hashes
   6. per-method required fields
   7. source system (forced for MANUAL_ENTRY)
   8. scope rules
   9. MANUAL_ENTRY notes and file metadata
  10. GDPR basis
  11. retention policy
  12. inline payload

Nothing here touches the database. The gate is pure so the client wizard
can run the same tables locally.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

from services.canonical import canonical_json_bytes, parse_date, sha256_hex, utcnow
from services.evidence_kernel import contracts as c
from services.evidence_kernel.errors import (
    ERR_ATTESTOR_FORGERY,
    ERR_CLIENT_HASH_REJECTED,
    ERR_CLIENT_PAYLOAD_NOT_ALLOWED,
    ERR_INVALID_ATTESTATION_NOTES,
    ERR_INVALID_DATASET_SCOPE,
    ERR_INVALID_PAYLOAD,
    ERR_INVALID_RESOLUTION_DATE,
    ERR_INVALID_RETENTION_POLICY,
    ERR_INVALID_SOURCE_FOR_METHOD,
    ERR_METHOD_DISALLOWS_FILE,
    ERR_MISSING_GDPR_BASIS,
    ERR_MISSING_REQUIRED_METADATA,
    ERR_MISSING_SCOPE_TARGET_ID,
    ERR_MISSING_UNLINKED_REASON,
    ERR_PAYLOAD_TOO_LARGE,
    ERR_SCOPE_TARGET_NOT_ALLOWED,
    ERR_UNKNOWN_INGESTION_METHOD,
    ERR_UNSUPPORTED_COMBINATION,
    ERR_VALIDATION_FAILED,
    EvidenceKernelError,
    forbidden,
    validation_error,
)

log = logging.getLogger("supplylens.evidence_kernel.validation")

REQUEST_ID_MAX_LEN = 128


@dataclass(frozen=True)
class PreparedPayload:
    kind: str
    data: bytes
    sha256: str
    file_name: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class GateResult:
    declaration: dict[str, Any]
    payload: Optional[PreparedPayload] = None


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _text(decl: Mapping[str, Any], key: str) -> Optional[str]:
    value = decl.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise validation_error(
            ERR_VALIDATION_FAILED, f"{key} must be a string", field=key
        )
    value = value.strip()
    return value or None


def _present(decl: Mapping[str, Any], key: str) -> bool:
    value = decl.get(key)
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _request_id(decl: Mapping[str, Any]) -> Optional[str]:
    rid = _text(decl, "request_id")
    if rid is None:
        rid = _text(decl, "command_id")
    return rid


PAYLOAD_KEYS = ("payload", "payload_bytes")


def inline_payload(decl: Mapping[str, Any]) -> Any:
    """
    The inline payload of a declaration. `payload_bytes` is the ingest wire
    name and an alias of `payload`; sending both is ambiguous.
    """
    given = [k for k in PAYLOAD_KEYS if decl.get(k) is not None]
    if len(given) > 1:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            "send the payload as either payload or payload_bytes, not both",
            field="payload_bytes",
        )
    return decl.get(given[0]) if given else None


def find_placeholder(value: Any, path: str = "") -> Optional[tuple[str, str]]:
    """Return (path, value) of the first placeholder string at any depth."""
    if isinstance(value, str):
        if value.strip().lower() in c.PLACEHOLDER_VALUES:
            return path or "payload", value
        return None
    if isinstance(value, Mapping):
        for key in sorted(value, key=str):
            hit = find_placeholder(value[key], f"{path}.{key}" if path else str(key))
            if hit:
                return hit
        return None
    if isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            hit = find_placeholder(item, f"{path}[{idx}]")
            if hit:
                return hit
    return None


def _check_size(size: int, max_bytes: int) -> None:
    if size > max_bytes:
        raise EvidenceKernelError(
            413,
            ERR_PAYLOAD_TOO_LARGE,
            f"payload is {size} bytes; limit is {max_bytes}",
            field="payload",
            max_bytes=max_bytes,
        )


# ---------------------------------------------------------------------------
# Payload checks
# ---------------------------------------------------------------------------


def check_payload(method: str, payload: Any, *, max_bytes: int) -> PreparedPayload:
    """
    Validate an inline payload for `method` and return the exact bytes that
    will be hashed and stored.
    """
    contract = c.contract_for(method)
    if contract is None:
        raise validation_error(
            ERR_UNKNOWN_INGESTION_METHOD,
            f"Unknown ingestion_method: {method}",
            field="ingestion_method",
        )

    if not contract.accepts_client_payload:
        raise validation_error(
            ERR_CLIENT_PAYLOAD_NOT_ALLOWED,
            f"{method} does not accept client payload (server-side fetch only)",
            field="payload",
        )

    if payload is None:
        raise validation_error(ERR_INVALID_PAYLOAD, "payload is required", field="payload")

    if contract.payload_mode == "structured_json":
        parsed = payload
        if isinstance(payload, str):
            try:
                parsed = json.loads(payload)
            except ValueError:
                raise validation_error(
                    ERR_INVALID_PAYLOAD, "payload must be valid JSON", field="payload"
                ) from None
        if not isinstance(parsed, dict):
            raise validation_error(
                ERR_INVALID_PAYLOAD,
                "payload must be a JSON object (not array or primitive)",
                field="payload",
            )
        if not parsed:
            raise validation_error(
                ERR_INVALID_PAYLOAD, "payload object is empty", field="payload"
            )
        _reject_placeholders(parsed)
        data = canonical_json_bytes(parsed)
        _check_size(len(data), max_bytes)
        return PreparedPayload(kind=c.PAYLOAD_JSON, data=data, sha256=sha256_hex(data))

    # raw_or_file: pasted text, or a JSON document sent inline
    if isinstance(payload, (dict, list)):
        _reject_placeholders(payload)
        data = canonical_json_bytes(payload)
        kind = c.PAYLOAD_JSON
    elif isinstance(payload, str):
        if not payload.strip():
            raise validation_error(
                ERR_INVALID_PAYLOAD, "payload text is empty", field="payload"
            )
        _reject_placeholders(payload)
        data = payload.encode("utf-8")
        kind = c.PAYLOAD_TEXT
    else:
        raise validation_error(
            ERR_INVALID_PAYLOAD,
            f"{method} payload must be text or a JSON document",
            field="payload",
        )
    _check_size(len(data), max_bytes)
    return PreparedPayload(kind=kind, data=data, sha256=sha256_hex(data))


def _reject_placeholders(value: Any) -> None:
    hit = find_placeholder(value)
    if hit:
        path, raw = hit
        raise validation_error(
            ERR_INVALID_PAYLOAD,
            f'Placeholder value not allowed for {path}: "{raw}"',
            field="payload",
        )


def check_file(
    method: str,
    data: bytes,
    *,
    file_name: Optional[str],
    content_type: Optional[str],
    max_bytes: int,
) -> PreparedPayload:
    contract = c.contract_for(method)
    if contract is None or not contract.allows_file:
        raise validation_error(
            ERR_METHOD_DISALLOWS_FILE,
            f"{method} does not allow file upload",
            field="file",
        )
    name = (file_name or "").strip()
    if not name:
        raise validation_error(
            ERR_MISSING_REQUIRED_METADATA, "file name is required", field="file_name"
        )
    if not data:
        raise validation_error(ERR_INVALID_PAYLOAD, "file is empty", field="file")
    _check_size(len(data), max_bytes)
    return PreparedPayload(
        kind=c.PAYLOAD_FILE,
        data=bytes(data),
        sha256=sha256_hex(bytes(data)),
        file_name=name[:256],
        content_type=(content_type or "application/octet-stream")[:128],
    )


def server_fetch_payload(declaration: Mapping[str, Any]) -> PreparedPayload:
    """
    ERP_API records carry no client bytes. The stored payload is the fetch
    descriptor, so the hash still pins what was pulled and when.
    """
    descriptor = {
        "connector_reference": declaration.get("connector_reference"),
        "snapshot_datetime_utc": declaration.get("snapshot_datetime_utc"),
        "source_system": declaration.get("source_system"),
        "dataset_type": declaration.get("dataset_type"),
    }
    data = canonical_json_bytes(descriptor)
    return PreparedPayload(
        kind=c.PAYLOAD_SERVER_FETCH, data=data, sha256=sha256_hex(data)
    )


def fixture_blocked(origin: Optional[str], data_mode: str) -> bool:
    return data_mode == "LIVE" and origin == "TEST_FIXTURE"


# ---------------------------------------------------------------------------
# Declaration gate
# ---------------------------------------------------------------------------


def validate_declaration(
    decl: Mapping[str, Any],
    *,
    max_payload_bytes: int,
    today: Optional[date] = None,
) -> GateResult:
    """
    Run the full gate over a draft declaration.

    Returns the normalized declaration (source system forced, defaults
    filled) plus the prepared inline payload when one was supplied.
    Raises EvidenceKernelError on the first failing check.
    """
    # 1. method
    method = _text(decl, "ingestion_method")
    contract = c.contract_for(method or "")
    if contract is None:
        raise validation_error(
            ERR_UNKNOWN_INGESTION_METHOD,
            f"Unknown ingestion_method: {method}",
            field="ingestion_method",
            allowed_values=list(c.INGESTION_METHODS),
        )

    # 2. dataset (missing is reported by the required-field check)
    dataset_type = _text(decl, "dataset_type")
    if dataset_type is not None and dataset_type not in c.DATASET_TYPES:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            f"Unknown dataset_type: {dataset_type}",
            field="dataset_type",
            allowed_values=list(c.DATASET_TYPES),
        )

    # 3. method x dataset, before anything else is looked at
    if dataset_type is not None:
        allowed = c.allowed_methods_for(dataset_type)
        if method not in allowed:
            raise validation_error(
                ERR_UNSUPPORTED_COMBINATION,
                f"{method} is not supported for {dataset_type}. To protect audit "
                f"integrity, this dataset must be ingested via: {', '.join(allowed)}.",
                field="ingestion_method",
                allowed_methods=list(allowed),
                recommended_method=allowed[0],
                dataset_type=dataset_type,
                ingestion_method=method,
            )

    # 4. idempotency key
    request_id = _request_id(decl)
    if not request_id:
        raise validation_error(
            ERR_MISSING_REQUIRED_METADATA,
            "request_id is required for audit trail",
            field="request_id",
        )
    if len(request_id) > REQUEST_ID_MAX_LEN:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            f"request_id exceeds {REQUEST_ID_MAX_LEN} characters",
            field="request_id",
        )

    # 5. server-side-only fields
    forged = [k for k in c.ATTESTATION_FIELDS if _present(decl, k)]
    if forged:
        raise forbidden(
            ERR_ATTESTOR_FORGERY,
            "Client cannot set attestation fields (server-side only)",
            field=forged[0],
        )
    hashes = [k for k in c.CLIENT_HASH_FIELDS if _present(decl, k)]
    if hashes:
        raise validation_error(
            ERR_CLIENT_HASH_REJECTED,
            "Client-provided hashes rejected (server-computed only)",
            field=hashes[0],
        )

    # 6. required fields
    for key in contract.required_fields:
        if not _present(decl, key):
            raise validation_error(
                ERR_MISSING_REQUIRED_METADATA,
                f"{method} requires: {key}",
                field=key,
            )

    # 7. source system
    if contract.forced_source_system:
        source_system = contract.forced_source_system
    else:
        source_system = _text(decl, "source_system")
        if source_system not in contract.allowed_source_systems:
            raise validation_error(
                ERR_INVALID_SOURCE_FOR_METHOD,
                f"{method} requires source_system from: "
                f"{', '.join(contract.allowed_source_systems)}. Got: {source_system}",
                field="source_system",
                allowed_values=list(contract.allowed_source_systems),
            )

    # 8. scope
    scope = _text(decl, "declared_scope")
    if scope not in c.DECLARED_SCOPES:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            f"Unknown declared_scope: {scope}",
            field="declared_scope",
            allowed_values=list(c.DECLARED_SCOPES),
        )
    if method == "MANUAL_ENTRY":
        allowed_scopes = c.MANUAL_ENTRY_DATASET_SCOPES.get(dataset_type or "", ())
        if scope not in allowed_scopes:
            raise validation_error(
                ERR_INVALID_DATASET_SCOPE,
                f"{scope} scope not allowed for {dataset_type}. Allowed: "
                f"{', '.join(s for s in allowed_scopes if s != 'UNKNOWN')}. "
                "Or select UNKNOWN to quarantine.",
                field="declared_scope",
            )

    scope_target_id = _text(decl, "scope_target_id")
    if scope in c.SCOPES_REQUIRING_TARGET and not scope_target_id:
        raise validation_error(
            ERR_MISSING_SCOPE_TARGET_ID,
            f"declared_scope={scope} requires scope_target_id",
            field="scope_target_id",
        )
    if scope == "ENTIRE_ORGANIZATION" and scope_target_id:
        raise validation_error(
            ERR_SCOPE_TARGET_NOT_ALLOWED,
            "declared_scope=ENTIRE_ORGANIZATION cannot have scope_target_id",
            field="scope_target_id",
        )

    unlinked_reason = _text(decl, "unlinked_reason")
    resolution_due: Optional[date] = None
    if scope == "UNKNOWN":
        if not unlinked_reason or len(unlinked_reason) < c.UNLINKED_REASON_MIN_LEN:
            raise validation_error(
                ERR_MISSING_UNLINKED_REASON,
                f"declared_scope=UNKNOWN requires unlinked_reason "
                f"(min {c.UNLINKED_REASON_MIN_LEN} chars)",
                field="unlinked_reason",
            )
        resolution_due = parse_date(decl.get("resolution_due_date"))
        day = today or utcnow().date()
        if (
            resolution_due is None
            or resolution_due <= day
            or resolution_due > day + timedelta(days=c.RESOLUTION_WINDOW_DAYS)
        ):
            raise validation_error(
                ERR_INVALID_RESOLUTION_DATE,
                "resolution_due_date must be between tomorrow and "
                f"{c.RESOLUTION_WINDOW_DAYS} days from now",
                field="resolution_due_date",
            )

    # 9. MANUAL_ENTRY attestation notes, no files
    entry_notes = _text(decl, "entry_notes")
    if method == "MANUAL_ENTRY":
        if not entry_notes or len(entry_notes) < c.ENTRY_NOTES_MIN_LEN:
            raise validation_error(
                ERR_INVALID_ATTESTATION_NOTES,
                f"entry_notes must be at least {c.ENTRY_NOTES_MIN_LEN} characters "
                "(no placeholders)",
                field="entry_notes",
            )
        if any(_present(decl, k) for k in c.FILE_METADATA_FIELDS):
            raise validation_error(
                ERR_METHOD_DISALLOWS_FILE,
                "MANUAL_ENTRY does not allow file upload",
                field="file_metadata",
            )

    # 10. GDPR
    contains_personal = decl.get("contains_personal_data")
    if contains_personal is None:
        contains_personal = False
    if not isinstance(contains_personal, bool):
        raise validation_error(
            ERR_VALIDATION_FAILED,
            "contains_personal_data must be a boolean",
            field="contains_personal_data",
        )
    gdpr_basis = _text(decl, "gdpr_legal_basis")
    if contains_personal and not gdpr_basis:
        raise validation_error(
            ERR_MISSING_GDPR_BASIS,
            "gdpr_legal_basis required when contains_personal_data=true",
            field="gdpr_legal_basis",
        )
    if gdpr_basis and gdpr_basis not in c.GDPR_LEGAL_BASES:
        raise validation_error(
            ERR_VALIDATION_FAILED,
            f"Unknown gdpr_legal_basis: {gdpr_basis}",
            field="gdpr_legal_basis",
            allowed_values=sorted(c.GDPR_LEGAL_BASES),
        )

    # 11. retention
    retention_policy = _text(decl, "retention_policy") or c.DEFAULT_RETENTION_POLICY
    custom_days = decl.get("retention_custom_days")
    if retention_policy not in c.RETENTION_POLICIES:
        raise validation_error(
            ERR_INVALID_RETENTION_POLICY,
            f"Invalid retention_policy: {retention_policy}",
            field="retention_policy",
            allowed_values=list(c.RETENTION_POLICIES),
        )
    if retention_policy == "CUSTOM":
        if (
            isinstance(custom_days, bool)
            or not isinstance(custom_days, int)
            or not (
                c.CUSTOM_RETENTION_MIN_DAYS
                <= custom_days
                <= c.CUSTOM_RETENTION_MAX_DAYS
            )
        ):
            raise validation_error(
                ERR_INVALID_RETENTION_POLICY,
                "CUSTOM retention requires retention_custom_days between "
                f"{c.CUSTOM_RETENTION_MIN_DAYS} and {c.CUSTOM_RETENTION_MAX_DAYS}",
                field="retention_custom_days",
            )
    else:
        custom_days = None

    snapshot = _text(decl, "snapshot_datetime_utc")
    if snapshot is not None:
        try:
            datetime.fromisoformat(snapshot.replace("Z", "+00:00"))
        except ValueError:
            raise validation_error(
                ERR_VALIDATION_FAILED,
                "snapshot_datetime_utc must be an ISO-8601 timestamp",
                field="snapshot_datetime_utc",
            ) from None

    purpose_tags = decl.get("purpose_tags") or []
    if not isinstance(purpose_tags, list) or not all(
        isinstance(t, str) for t in purpose_tags
    ):
        raise validation_error(
            ERR_VALIDATION_FAILED,
            "purpose_tags must be a list of strings",
            field="purpose_tags",
        )

    origin = _text(decl, "origin") or "USER_SUBMITTED"
    if origin not in c.ORIGINS:
        raise validation_error(
            ERR_VALIDATION_FAILED, f"Unknown origin: {origin}", field="origin"
        )

    declaration: dict[str, Any] = {
        "request_id": request_id,
        "ingestion_method": method,
        "source_system": source_system,
        "dataset_type": dataset_type,
        "declared_scope": scope,
        "scope_target_id": scope_target_id if scope != "UNKNOWN" else None,
        "scope_target_name": _text(decl, "scope_target_name"),
        "primary_intent": _text(decl, "primary_intent"),
        "purpose_tags": sorted({t.strip() for t in purpose_tags if t.strip()}),
        "retention_policy": retention_policy,
        "retention_custom_days": custom_days,
        "contains_personal_data": contains_personal,
        "gdpr_legal_basis": gdpr_basis,
        "unlinked_reason": unlinked_reason if scope == "UNKNOWN" else None,
        "resolution_due_date": resolution_due,
        "entry_notes": entry_notes,
        "origin": origin,
        "external_reference_id": _text(decl, "external_reference_id"),
        "export_job_id": _text(decl, "export_job_id"),
        "connector_reference": _text(decl, "connector_reference"),
        "snapshot_datetime_utc": snapshot,
    }

    # 12. inline payload
    payload: Optional[PreparedPayload] = None
    inline = inline_payload(decl)
    if inline is not None:
        payload = check_payload(method, inline, max_bytes=max_payload_bytes)

    return GateResult(declaration=declaration, payload=payload)


def declaration_fingerprint(
    declaration: Mapping[str, Any], payload: Optional[PreparedPayload] = None
) -> str:
    """Hash of a normalized declaration; same input, same fingerprint."""
    body = {k: v for k, v in declaration.items() if k != "request_id"}
    if isinstance(body.get("resolution_due_date"), date):
        body["resolution_due_date"] = body["resolution_due_date"].isoformat()
    body["payload_sha256"] = payload.sha256 if payload else None
    return sha256_hex(canonical_json_bytes(body))
