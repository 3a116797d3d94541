from __future__ import annotations

from datetime import date, timedelta

import pytest

from services.evidence_kernel.errors import EvidenceKernelError
from services.evidence_kernel.validation import (
    check_file,
    check_payload,
    declaration_fingerprint,
    fixture_blocked,
    inline_payload,
    server_fetch_payload,
    validate_declaration,
)

MAX = 5 * 1024 * 1024
TODAY = date(2026, 3, 1)


def _gate(decl, **kw):
    kw.setdefault("max_payload_bytes", MAX)
    kw.setdefault("today", TODAY)
    return validate_declaration(decl, **kw)


def _code(decl, **kw) -> EvidenceKernelError:
    with pytest.raises(EvidenceKernelError) as exc:
        _gate(decl, **kw)
    return exc.value


@pytest.mark.parametrize(
    "method", ["MANUAL_ENTRY", "FILE_UPLOAD", "API_PUSH", "ERP_EXPORT", "ERP_API"]
)
def test_baseline_declarations_pass(declaration, method):
    result = _gate(declaration(method))
    assert result.declaration["ingestion_method"] == method
    assert result.declaration["request_id"] == f"req-{method.lower()}-0001"


def test_unknown_method_rejected_first(declaration):
    err = _code(declaration("MANUAL_ENTRY", ingestion_method="CARRIER_PIGEON", request_id=None))
    assert err.status_code == 422
    assert err.error_code == "UNKNOWN_INGESTION_METHOD"
    assert err.field == "ingestion_method"


def test_combination_checked_before_request_id(declaration):
    decl = declaration("MANUAL_ENTRY", dataset_type="CERTIFICATE", request_id=None)
    err = _code(decl)
    assert err.error_code == "UNSUPPORTED_METHOD_DATASET_COMBINATION"
    assert err.extra["allowed_methods"] == ["FILE_UPLOAD"]
    assert err.extra["recommended_method"] == "FILE_UPLOAD"


def test_combination_checked_before_forgery(declaration):
    decl = declaration(
        "MANUAL_ENTRY", dataset_type="TEST_REPORT", attestor_user_id="mallory"
    )
    assert _code(decl).error_code == "UNSUPPORTED_METHOD_DATASET_COMBINATION"


def test_manual_entry_not_allowed_for_transaction_log(declaration):
    decl = declaration("MANUAL_ENTRY", dataset_type="TRANSACTION_LOG")
    assert _code(decl).error_code == "UNSUPPORTED_METHOD_DATASET_COMBINATION"


def test_missing_request_id(declaration):
    err = _code(declaration("FILE_UPLOAD", request_id=None))
    assert err.error_code == "MISSING_REQUIRED_METADATA"
    assert err.field == "request_id"


def test_command_id_is_accepted_as_request_id(declaration):
    decl = declaration("FILE_UPLOAD", request_id=None, command_id="cmd-77")
    assert _gate(decl).declaration["request_id"] == "cmd-77"


def test_request_id_length_limit(declaration):
    err = _code(declaration("FILE_UPLOAD", request_id="r" * 129))
    assert err.error_code == "VALIDATION_FAILED"
    assert err.field == "request_id"


@pytest.mark.parametrize(
    "field", ["attestor_user_id", "attested_by_email", "attestation_method", "created_by_user_id"]
)
def test_attestation_fields_are_forgery(declaration, field):
    err = _code(declaration("FILE_UPLOAD", **{field: "someone-else"}))
    assert err.status_code == 403
    assert err.error_code == "ATTESTOR_FORGERY_ATTEMPT"
    assert err.field == field


def test_forgery_checked_before_required_fields(declaration):
    decl = declaration("API_PUSH", external_reference_id=None, attestor_user_id="x")
    assert _code(decl).error_code == "ATTESTOR_FORGERY_ATTEMPT"


def test_client_hash_rejected(declaration):
    err = _code(declaration("FILE_UPLOAD", payload_hash_sha256="ab" * 32))
    assert err.status_code == 422
    assert err.error_code == "CLIENT_HASH_REJECTED"


@pytest.mark.parametrize(
    "method,missing",
    [
        ("MANUAL_ENTRY", "entry_notes"),
        ("API_PUSH", "external_reference_id"),
        ("ERP_EXPORT", "export_job_id"),
        ("ERP_EXPORT", "snapshot_datetime_utc"),
        ("ERP_API", "connector_reference"),
        ("FILE_UPLOAD", "primary_intent"),
        ("FILE_UPLOAD", "declared_scope"),
    ],
)
def test_required_fields_per_method(declaration, method, missing):
    err = _code(declaration(method, **{missing: None}))
    assert err.error_code == "MISSING_REQUIRED_METADATA"
    assert err.field == missing


def test_manual_entry_source_system_is_forced(declaration):
    result = _gate(declaration("MANUAL_ENTRY", source_system="SAP"))
    assert result.declaration["source_system"] == "INTERNAL_MANUAL"


def test_erp_api_rejects_non_erp_source(declaration):
    err = _code(declaration("ERP_API", source_system="OTHER"))
    assert err.error_code == "INVALID_SOURCE_FOR_METHOD"
    assert "SAP" in err.extra["allowed_values"]


def test_missing_source_system_for_file_upload(declaration):
    assert _code(declaration("FILE_UPLOAD", source_system=None)).error_code == (
        "INVALID_SOURCE_FOR_METHOD"
    )


def test_manual_entry_dataset_scope_matrix(declaration):
    err = _code(declaration("MANUAL_ENTRY", dataset_type="BOM"))
    assert err.error_code == "INVALID_DATASET_SCOPE_COMBINATION"
    assert "UNKNOWN" in err.message


def test_scope_target_required(declaration):
    err = _code(declaration("FILE_UPLOAD", scope_target_id=None))
    assert err.error_code == "MISSING_SCOPE_TARGET_ID"


def test_scope_target_not_allowed_for_entire_org(declaration):
    err = _code(declaration("API_PUSH", scope_target_id="LE-1"))
    assert err.error_code == "SCOPE_TARGET_NOT_ALLOWED"


def _unknown_scope(declaration, **kw):
    base = dict(
        declared_scope="UNKNOWN",
        unlinked_reason="Supplier legal entity still being confirmed by procurement",
        resolution_due_date=(TODAY + timedelta(days=30)).isoformat(),
    )
    base.update(kw)
    return declaration("MANUAL_ENTRY", **base)


def test_unknown_scope_accepted_with_reason_and_date(declaration):
    result = _gate(_unknown_scope(declaration))
    assert result.declaration["declared_scope"] == "UNKNOWN"
    assert result.declaration["resolution_due_date"] == TODAY + timedelta(days=30)


def test_unknown_scope_requires_long_reason(declaration):
    err = _code(_unknown_scope(declaration, unlinked_reason="too short"))
    assert err.error_code == "MISSING_UNLINKED_REASON"


@pytest.mark.parametrize("offset", [0, -1, 91])
def test_unknown_scope_resolution_window(declaration, offset):
    due = (TODAY + timedelta(days=offset)).isoformat()
    err = _code(_unknown_scope(declaration, resolution_due_date=due))
    assert err.error_code == "INVALID_RESOLUTION_DATE"


def test_unknown_scope_resolution_window_upper_bound(declaration):
    due = (TODAY + timedelta(days=90)).isoformat()
    assert _gate(_unknown_scope(declaration, resolution_due_date=due))


def test_manual_entry_notes_minimum(declaration):
    err = _code(declaration("MANUAL_ENTRY", entry_notes="short note"))
    assert err.error_code == "INVALID_ATTESTATION_NOTES"


def test_manual_entry_rejects_file_metadata(declaration):
    err = _code(declaration("MANUAL_ENTRY", file_name="supplier.pdf"))
    assert err.error_code == "METHOD_DISALLOWS_FILE"


def test_gdpr_basis_required(declaration):
    err = _code(declaration("FILE_UPLOAD", contains_personal_data=True))
    assert err.error_code == "MISSING_GDPR_BASIS"
    ok = _gate(
        declaration(
            "FILE_UPLOAD", contains_personal_data=True, gdpr_legal_basis="CONTRACT"
        )
    )
    assert ok.declaration["gdpr_legal_basis"] == "CONTRACT"


def test_retention_defaults_to_one_year(declaration):
    assert _gate(declaration("FILE_UPLOAD")).declaration["retention_policy"] == (
        "STANDARD_1_YEAR"
    )


def test_retention_policy_unknown(declaration):
    err = _code(declaration("FILE_UPLOAD", retention_policy="FOREVER"))
    assert err.error_code == "INVALID_RETENTION_POLICY"


@pytest.mark.parametrize("days", [None, 0, 3651, "30", True])
def test_custom_retention_bounds(declaration, days):
    decl = declaration("FILE_UPLOAD", retention_policy="CUSTOM")
    decl["retention_custom_days"] = days
    err = _code(decl)
    assert err.error_code == "INVALID_RETENTION_POLICY"


def test_custom_retention_accepted(declaration):
    decl = declaration("FILE_UPLOAD", retention_policy="CUSTOM", retention_custom_days=45)
    assert _gate(decl).declaration["retention_custom_days"] == 45


def test_custom_days_dropped_for_fixed_policy(declaration):
    decl = declaration("FILE_UPLOAD", retention_policy="7_YEARS", retention_custom_days=45)
    assert _gate(decl).declaration["retention_custom_days"] is None


def test_purpose_tags_are_deduplicated_and_sorted(declaration):
    decl = declaration("FILE_UPLOAD", purpose_tags=["csrd", "audit", "csrd", " "])
    assert _gate(decl).declaration["purpose_tags"] == ["audit", "csrd"]


@pytest.mark.parametrize("payload", [[1, 2, 3], "not json at all", 42, {}])
def test_structured_payload_must_be_object(declaration, payload):
    err = _code(declaration("MANUAL_ENTRY", payload=payload))
    assert err.error_code == "INVALID_PAYLOAD"
    assert err.field == "payload"


def test_structured_payload_as_json_string(declaration):
    result = _gate(declaration("API_PUSH", payload='{"b": 1, "a": 2}'))
    assert result.payload.data == b'{"a":2,"b":1}'
    assert result.payload.kind == "JSON"


def test_payload_bytes_is_an_alias_of_payload(declaration):
    decl = declaration("API_PUSH", payload=None, payload_bytes='{"b": 1, "a": 2}')
    result = _gate(decl)
    assert result.payload.data == b'{"a":2,"b":1}'
    assert "payload_bytes" not in result.declaration


def test_payload_and_payload_bytes_together_rejected(declaration):
    err = _code(declaration("API_PUSH", payload_bytes='{"a": 1}'))
    assert err.error_code == "VALIDATION_FAILED"
    assert err.field == "payload_bytes"


def test_payload_bytes_free_prose_for_manual_entry(declaration):
    err = _code(declaration("MANUAL_ENTRY", payload=None, payload_bytes="hello world, free prose"))
    assert err.error_code == "INVALID_PAYLOAD"


def test_payload_bytes_rejected_for_erp_api(declaration):
    err = _code(declaration("ERP_API", payload_bytes='{"x": 1}'))
    assert err.error_code == "CLIENT_PAYLOAD_NOT_ALLOWED"


def test_inline_payload_picks_whichever_key_is_set():
    assert inline_payload({"payload_bytes": "abc"}) == "abc"
    assert inline_payload({"payload": {"a": 1}, "payload_bytes": None}) == {"a": 1}
    assert inline_payload({}) is None


def test_placeholder_rejected_at_depth(declaration):
    payload = {"supplier": {"contacts": [{"name": "Jane"}, {"name": "TBD"}]}}
    err = _code(declaration("MANUAL_ENTRY", payload=payload))
    assert err.error_code == "INVALID_PAYLOAD"
    assert "supplier.contacts[1].name" in err.message


def test_erp_api_rejects_client_payload(declaration):
    err = _code(declaration("ERP_API", payload={"rows": 10}))
    assert err.error_code == "CLIENT_PAYLOAD_NOT_ALLOWED"


def test_payload_too_large(declaration):
    err = _code(
        declaration("FILE_UPLOAD", payload="x" * 2048), max_payload_bytes=1024
    )
    assert err.status_code == 413
    assert err.error_code == "PAYLOAD_TOO_LARGE"
    assert err.extra["max_bytes"] == 1024


def test_raw_text_payload_kept_verbatim(declaration):
    result = _gate(declaration("ERP_EXPORT"))
    assert result.payload.kind == "TEXT"
    assert result.payload.data == b"part,qty\nA-100,4\nB-200,2\n"


def test_snapshot_must_be_iso(declaration):
    err = _code(declaration("ERP_EXPORT", snapshot_datetime_utc="yesterday"))
    assert err.error_code == "VALIDATION_FAILED"
    assert err.field == "snapshot_datetime_utc"


def test_unknown_origin_rejected(declaration):
    err = _code(declaration("FILE_UPLOAD", origin="IMPORTED"))
    assert err.field == "origin"


def test_check_file_rules():
    prepared = check_file(
        "FILE_UPLOAD",
        b"%PDF-1.7 ...",
        file_name="iso9001.pdf",
        content_type="application/pdf",
        max_bytes=MAX,
    )
    assert prepared.kind == "FILE"
    assert prepared.size == 12
    with pytest.raises(EvidenceKernelError) as exc:
        check_file("API_PUSH", b"x", file_name="a.csv", content_type=None, max_bytes=MAX)
    assert exc.value.error_code == "METHOD_DISALLOWS_FILE"
    with pytest.raises(EvidenceKernelError) as exc:
        check_file("FILE_UPLOAD", b"", file_name="a.csv", content_type=None, max_bytes=MAX)
    assert exc.value.error_code == "INVALID_PAYLOAD"


def test_check_payload_none_is_invalid():
    with pytest.raises(EvidenceKernelError) as exc:
        check_payload("FILE_UPLOAD", None, max_bytes=MAX)
    assert exc.value.error_code == "INVALID_PAYLOAD"


def test_server_fetch_payload_is_deterministic(declaration):
    decl = _gate(declaration("ERP_API")).declaration
    first = server_fetch_payload(decl)
    assert first.kind == "SERVER_FETCH"
    assert first.sha256 == server_fetch_payload(dict(decl)).sha256


def test_fingerprint_ignores_request_id_but_not_content(declaration):
    a = _gate(declaration("API_PUSH"))
    b = _gate(declaration("API_PUSH", request_id="another-request"))
    c = _gate(declaration("API_PUSH", payload={"po_number": "4500099999"}))
    assert declaration_fingerprint(a.declaration, a.payload) == declaration_fingerprint(
        b.declaration, b.payload
    )
    assert declaration_fingerprint(a.declaration, a.payload) != declaration_fingerprint(
        c.declaration, c.payload
    )


def test_fixture_blocked_only_in_live():
    assert fixture_blocked("TEST_FIXTURE", "LIVE")
    assert not fixture_blocked("TEST_FIXTURE", "SANDBOX")
    assert not fixture_blocked("USER_SUBMITTED", "LIVE")
