"""
Ingestion method contracts and the lookup tables the validation gate and
the client wizard share.

Tables are the single source of truth for:
  - which ingestion methods may carry which dataset types
  - which scopes MANUAL_ENTRY may declare per dataset
  - source system allow-lists per method (or the forced value)
  - per-method required declaration fields
  - trust level per method
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

INGESTION_METHODS = (
    "MANUAL_ENTRY",
    "FILE_UPLOAD",
    "API_PUSH",
    "ERP_EXPORT",
    "ERP_API",
)

DATASET_TYPES = (
    "SUPPLIER_MASTER",
    "PRODUCT_MASTER",
    "BOM",
    "CERTIFICATE",
    "TEST_REPORT",
    "TRANSACTION_LOG",
)

DECLARED_SCOPES = (
    "ENTIRE_ORGANIZATION",
    "LEGAL_ENTITY",
    "SITE",
    "PRODUCT_FAMILY",
    "UNKNOWN",
)

SCOPES_REQUIRING_TARGET = frozenset({"LEGAL_ENTITY", "SITE", "PRODUCT_FAMILY"})

RETENTION_POLICIES = ("STANDARD_1_YEAR", "3_YEARS", "7_YEARS", "CUSTOM")
RETENTION_YEARS = {"STANDARD_1_YEAR": 1, "3_YEARS": 3, "7_YEARS": 7}
DEFAULT_RETENTION_POLICY = "STANDARD_1_YEAR"
CUSTOM_RETENTION_MIN_DAYS = 1
CUSTOM_RETENTION_MAX_DAYS = 3650

GDPR_LEGAL_BASES = frozenset(
    {
        "CONSENT",
        "CONTRACT",
        "LEGAL_OBLIGATION",
        "VITAL_INTERESTS",
        "PUBLIC_TASK",
        "LEGITIMATE_INTERESTS",
    }
)

ORIGINS = ("USER_SUBMITTED", "TEST_FIXTURE")
DATA_MODES = ("LIVE", "SANDBOX")

DRAFT_DRAFT = "DRAFT"
DRAFT_READY = "READY_TO_SEAL"
DRAFT_SEALED = "SEALED"
DRAFT_QUARANTINED = "QUARANTINED"
DRAFT_CANCELLED = "CANCELLED"
DRAFT_STATUSES = (
    DRAFT_DRAFT,
    DRAFT_READY,
    DRAFT_SEALED,
    DRAFT_QUARANTINED,
    DRAFT_CANCELLED,
)
SEALABLE_STATUSES = (DRAFT_DRAFT, DRAFT_READY)
TERMINAL_DRAFT_STATUSES = frozenset({DRAFT_QUARANTINED, DRAFT_CANCELLED})

LEDGER_INGESTED = "INGESTED"
LEDGER_SEALED = "SEALED"

REVIEW_NOT_REVIEWED = "NOT_REVIEWED"

# ---------------------------------------------------------------------------
# Method x dataset
# ---------------------------------------------------------------------------

_ALL_METHODS = ("MANUAL_ENTRY", "FILE_UPLOAD", "ERP_EXPORT", "ERP_API", "API_PUSH")

# First entry is the recommended method for the dataset.
METHOD_DATASET_ALLOWED: dict[str, tuple[str, ...]] = {
    "SUPPLIER_MASTER": _ALL_METHODS,
    "PRODUCT_MASTER": _ALL_METHODS,
    "BOM": _ALL_METHODS,
    "CERTIFICATE": ("FILE_UPLOAD",),
    "TEST_REPORT": ("FILE_UPLOAD",),
    "TRANSACTION_LOG": ("API_PUSH", "FILE_UPLOAD", "ERP_EXPORT", "ERP_API"),
}

# MANUAL_ENTRY only. UNKNOWN is always accepted and quarantines the mapping.
MANUAL_ENTRY_DATASET_SCOPES: dict[str, tuple[str, ...]] = {
    "SUPPLIER_MASTER": ("ENTIRE_ORGANIZATION", "LEGAL_ENTITY", "UNKNOWN"),
    "PRODUCT_MASTER": (
        "ENTIRE_ORGANIZATION",
        "LEGAL_ENTITY",
        "PRODUCT_FAMILY",
        "UNKNOWN",
    ),
    "BOM": ("LEGAL_ENTITY", "PRODUCT_FAMILY", "SITE", "UNKNOWN"),
}

# ---------------------------------------------------------------------------
# Source systems
# ---------------------------------------------------------------------------

MANUAL_SOURCE_SYSTEM = "INTERNAL_MANUAL"

ERP_SOURCE_SYSTEMS = ("SAP", "MICROSOFT_DYNAMICS", "ODOO", "ORACLE", "NETSUITE")
KNOWN_SOURCE_SYSTEMS = frozenset(
    ERP_SOURCE_SYSTEMS + ("OTHER", "SUPPLIER_PORTAL", MANUAL_SOURCE_SYSTEM)
)

# ---------------------------------------------------------------------------
# Payload handling
# ---------------------------------------------------------------------------

PAYLOAD_JSON = "JSON"
PAYLOAD_TEXT = "TEXT"
PAYLOAD_FILE = "FILE"
PAYLOAD_SERVER_FETCH = "SERVER_FETCH"

PLACEHOLDER_VALUES = frozenset({"test", "asdf", "xxx", "-", "n/a", "tbd"})

ENTRY_NOTES_MIN_LEN = 20
UNLINKED_REASON_MIN_LEN = 30
RESOLUTION_WINDOW_DAYS = 90

# Server-side only. Any of these in a request body is a forgery attempt.
ATTESTATION_FIELDS = (
    "attestor_user_id",
    "attested_by_email",
    "attestation_method",
    "attested_at_utc",
    "created_by_user_id",
)
CLIENT_HASH_FIELDS = (
    "payload_hash_sha256",
    "metadata_hash_sha256",
    "declaration_hash",
)
FILE_METADATA_FIELDS = ("file_metadata", "original_filename", "file_name")

# Fields a PATCH may change once a payload is attached: everything but scope.
SCOPE_FIELDS = (
    "declared_scope",
    "scope_target_id",
    "scope_target_name",
    "unlinked_reason",
    "resolution_due_date",
)

# Canonical metadata hashed at seal time.
METADATA_FIELDS = (
    "ingestion_method",
    "source_system",
    "dataset_type",
    "declared_scope",
    "scope_target_id",
    "primary_intent",
    "purpose_tags",
    "contains_personal_data",
    "gdpr_legal_basis",
    "retention_policy",
    "retention_custom_days",
    "external_reference_id",
    "export_job_id",
    "connector_reference",
    "snapshot_datetime_utc",
)


@dataclass(frozen=True)
class MethodContract:
    method: str
    required_fields: tuple[str, ...]
    trust_level: str
    payload_mode: str  # structured_json | raw_or_file | server_fetch_only
    allowed_source_systems: tuple[str, ...] = ()
    forced_source_system: str | None = None
    allows_file: bool = False

    @property
    def accepts_client_payload(self) -> bool:
        return self.payload_mode != "server_fetch_only"


_BASE_REQUIRED = ("dataset_type", "declared_scope", "primary_intent")

METHOD_CONTRACTS: dict[str, MethodContract] = {
    "MANUAL_ENTRY": MethodContract(
        method="MANUAL_ENTRY",
        required_fields=("entry_notes",) + _BASE_REQUIRED,
        trust_level="LOW",
        payload_mode="structured_json",
        forced_source_system=MANUAL_SOURCE_SYSTEM,
    ),
    "FILE_UPLOAD": MethodContract(
        method="FILE_UPLOAD",
        required_fields=_BASE_REQUIRED,
        trust_level="MEDIUM",
        payload_mode="raw_or_file",
        allowed_source_systems=("OTHER",) + ERP_SOURCE_SYSTEMS,
        allows_file=True,
    ),
    "API_PUSH": MethodContract(
        method="API_PUSH",
        required_fields=("external_reference_id",) + _BASE_REQUIRED,
        trust_level="MEDIUM",
        payload_mode="structured_json",
        allowed_source_systems=("OTHER",) + ERP_SOURCE_SYSTEMS,
    ),
    "ERP_EXPORT": MethodContract(
        method="ERP_EXPORT",
        required_fields=("export_job_id", "snapshot_datetime_utc") + _BASE_REQUIRED,
        trust_level="HIGH",
        payload_mode="raw_or_file",
        allowed_source_systems=ERP_SOURCE_SYSTEMS + ("OTHER",),
        allows_file=True,
    ),
    "ERP_API": MethodContract(
        method="ERP_API",
        required_fields=("connector_reference", "snapshot_datetime_utc")
        + _BASE_REQUIRED,
        trust_level="HIGH",
        payload_mode="server_fetch_only",
        allowed_source_systems=ERP_SOURCE_SYSTEMS,
    ),
}


def contract_for(method: str) -> MethodContract | None:
    return METHOD_CONTRACTS.get(method)


def allowed_methods_for(dataset_type: str) -> tuple[str, ...]:
    return METHOD_DATASET_ALLOWED.get(dataset_type, ())


def trust_level_for(method: str) -> str:
    contract = METHOD_CONTRACTS[method]
    return contract.trust_level
