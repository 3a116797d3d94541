from __future__ import annotations

from prometheus_client import REGISTRY, Counter


def _build_counter(name: str, documentation: str, labelnames=()):
    # Re-importing under a second module name (tests, reload) must not crash
    # on duplicate registration; the first collector keeps counting.
    try:
        return Counter(name, documentation, list(labelnames))
    except ValueError:
        existing = REGISTRY._names_to_collectors.get(name)
        if existing is None:
            raise
        return existing


SEALS_TOTAL = _build_counter(
    "supplylens_evidence_sealed_total",
    "Evidence records sealed, by ingestion method",
    ["ingestion_method"],
)
SEAL_CONFLICTS_TOTAL = _build_counter(
    "supplylens_seal_conflicts_total",
    "Seal attempts rejected because the draft was already sealed",
)
IDEMPOTENT_REPLAYS_TOTAL = _build_counter(
    "supplylens_idempotent_replays_total",
    "Requests answered from an existing draft or record",
    ["kind"],
)
IDEMPOTENCY_CONFLICTS_TOTAL = _build_counter(
    "supplylens_idempotency_conflicts_total",
    "Requests reusing a request_id with different content",
    ["kind"],
)
GATE_REJECTIONS_TOTAL = _build_counter(
    "supplylens_validation_rejections_total",
    "Declarations and payloads rejected by the validation gate",
    ["error_code"],
)
AUDIT_SEQUENCE_RETRIES = _build_counter(
    "supplylens_audit_sequence_retries_total",
    "Audit appends retried after losing a sequence race",
)
API_ERRORS_TOTAL = _build_counter(
    "supplylens_api_errors_total",
    "Error envelopes emitted by the API, by error code",
    ["status_code", "error_code"],
)
