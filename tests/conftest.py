from __future__ import annotations

import os
import tempfile

# Set deterministic, writable defaults before importing modules that may touch DB paths.
os.environ.setdefault("SL_ENV", "test")
os.environ.setdefault("SL_KEY_PEPPER", "ci-test-pepper")
os.environ.setdefault(
    "SL_SQLITE_PATH", os.path.join(tempfile.gettempdir(), "supplylens-conftest.db")
)
# Argon2 at production cost makes every mint_key() take hundreds of ms.
os.environ.setdefault("SL_KEY_HASH_TIME_COST", "1")
os.environ.setdefault("SL_KEY_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("SL_KEY_HASH_PARALLELISM", "1")

from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

from api.auth_scopes import mint_key as _mint_key
from api.db import init_db, reset_engine_cache
from api.main import build_app as _build_app

ALL_SCOPES = (
    "evidence:read",
    "evidence:write",
    "evidence:seal",
    "review:write",
    "audit:read",
    "admin:write",
)

SAMPLE_PAYLOAD = {"supplier_id": "SUP-0042", "name": "Acme Components GmbH"}


@pytest.fixture(autouse=True)
def _restore_env():
    before = dict(os.environ)
    yield
    os.environ.clear()
    os.environ.update(before)


@pytest.fixture(autouse=True)
def sqlite_path(tmp_path, monkeypatch: pytest.MonkeyPatch) -> str:
    """
    Every test gets its own sqlite file, so mint_key() and direct service
    calls see the same schema the app does.
    """
    db_path = str(tmp_path / "sl-test.db")
    monkeypatch.setenv("SL_ENV", "test")
    monkeypatch.setenv("SL_SQLITE_PATH", db_path)
    monkeypatch.setenv("SL_KEY_PEPPER", "ci-test-pepper")
    monkeypatch.setenv("SL_AUTH_ENABLED", "1")
    monkeypatch.setenv("SL_DEFAULT_DATA_MODE", "LIVE")
    monkeypatch.delenv("SL_DB_URL", raising=False)
    monkeypatch.delenv("SL_MAX_PAYLOAD_BYTES", raising=False)

    reset_engine_cache()
    init_db(sqlite_path=db_path)
    yield db_path
    reset_engine_cache()


@pytest.fixture()
def build_app(sqlite_path: str, monkeypatch: pytest.MonkeyPatch):
    """
    Factory fixture so tests can build an app with controlled env.
    """

    def _factory(
        auth_enabled: bool = True,
        default_data_mode: str = "LIVE",
        max_payload_bytes: int | None = None,
    ):
        monkeypatch.setenv("SL_AUTH_ENABLED", "1" if auth_enabled else "0")
        monkeypatch.setenv("SL_DEFAULT_DATA_MODE", default_data_mode)
        if max_payload_bytes is not None:
            monkeypatch.setenv("SL_MAX_PAYLOAD_BYTES", str(max_payload_bytes))
        return _build_app()

    return _factory


@pytest.fixture
def app(build_app):
    return build_app(auth_enabled=True)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def mint_key() -> Callable[..., str]:
    """
    mint_key(tenant_id, *scopes, role=..., user_id=..., email=...)

    No scopes means every scope the API knows about.
    """

    def _mint(
        tenant_id: str = "tenant-a",
        *scopes: str,
        role: str = "admin",
        user_id: str | None = None,
        email: str | None = None,
    ) -> str:
        uid = user_id or f"{role}-{tenant_id}"
        return _mint_key(
            *(scopes or ALL_SCOPES),
            tenant_id=tenant_id,
            user_id=uid,
            email=email or f"{uid}@example.com",
            role=role,
        )

    return _mint


@pytest.fixture
def auth_headers(mint_key) -> Callable[..., dict[str, str]]:
    def _headers(tenant_id: str = "tenant-a", *scopes: str, **kw: Any) -> dict[str, str]:
        return {"X-API-Key": mint_key(tenant_id, *scopes, **kw)}

    return _headers


@pytest.fixture
def declaration() -> Callable[..., dict[str, Any]]:
    """
    Factory for declarations that pass the gate, one baseline per method.
    Keyword overrides replace fields; a value of None removes the field.
    """

    def _make(method: str = "MANUAL_ENTRY", **overrides: Any) -> dict[str, Any]:
        base: dict[str, Any]
        if method == "MANUAL_ENTRY":
            base = {
                "ingestion_method": "MANUAL_ENTRY",
                "dataset_type": "SUPPLIER_MASTER",
                "declared_scope": "ENTIRE_ORGANIZATION",
                "primary_intent": "Supplier onboarding due diligence",
                "entry_notes": "Entered from the signed supplier questionnaire v2",
                "payload": dict(SAMPLE_PAYLOAD),
            }
        elif method == "FILE_UPLOAD":
            base = {
                "ingestion_method": "FILE_UPLOAD",
                "dataset_type": "CERTIFICATE",
                "source_system": "OTHER",
                "declared_scope": "LEGAL_ENTITY",
                "scope_target_id": "LE-DE-001",
                "primary_intent": "ISO 9001 certificate for supplier audit",
            }
        elif method == "API_PUSH":
            base = {
                "ingestion_method": "API_PUSH",
                "dataset_type": "TRANSACTION_LOG",
                "source_system": "SAP",
                "declared_scope": "ENTIRE_ORGANIZATION",
                "primary_intent": "Purchase order feed",
                "external_reference_id": "PO-BATCH-2026-10",
                "payload": {"po_number": "4500012345", "amount": 1200},
            }
        elif method == "ERP_EXPORT":
            base = {
                "ingestion_method": "ERP_EXPORT",
                "dataset_type": "BOM",
                "source_system": "SAP",
                "declared_scope": "SITE",
                "scope_target_id": "SITE-MUC",
                "primary_intent": "Bill of materials snapshot",
                "export_job_id": "EXP-77",
                "snapshot_datetime_utc": "2026-01-01T00:00:00Z",
                "payload": "part,qty\nA-100,4\nB-200,2\n",
            }
        elif method == "ERP_API":
            base = {
                "ingestion_method": "ERP_API",
                "dataset_type": "PRODUCT_MASTER",
                "source_system": "ODOO",
                "declared_scope": "ENTIRE_ORGANIZATION",
                "primary_intent": "Product master sync",
                "connector_reference": "odoo-prod-connector",
                "snapshot_datetime_utc": "2026-01-01T00:00:00Z",
            }
        else:
            base = {"ingestion_method": method}

        base["request_id"] = f"req-{method.lower()}-0001"
        for key, value in overrides.items():
            if value is None:
                base.pop(key, None)
            else:
                base[key] = value
        return base

    return _make
