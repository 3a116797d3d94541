"""
HTTP client for the evidence kernel.

Every call returns a KernelResult; transport failures and error envelopes
are data, not exceptions, so the wizard can decide whether a retry is
safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from typing import Any, Optional

import httpx

log = logging.getLogger("supplylens.client")

CREATE_TIMEOUT_SECONDS = 15.0
SEAL_TIMEOUT_SECONDS = 20.0
DEFAULT_TIMEOUT_SECONDS = 10.0

ERR_TIMEOUT = "TIMEOUT"
ERR_NETWORK = "NETWORK_ERROR"
ERR_BAD_RESPONSE = "BAD_RESPONSE"


@dataclass
class KernelResult:
    ok: bool
    status_code: Optional[int] = None
    data: dict[str, Any] = dataclass_field(default_factory=dict)
    error_code: Optional[str] = None
    message: Optional[str] = None
    field: Optional[str] = None
    correlation_id: Optional[str] = None
    timed_out: bool = False
    idempotent_replay: bool = False

    @property
    def retryable(self) -> bool:
        return self.timed_out or self.error_code == ERR_NETWORK or (
            self.status_code is not None and self.status_code >= 500
        )

    @classmethod
    def local_failure(
        cls, error_code: str, message: str, field: Optional[str] = None
    ) -> "KernelResult":
        return cls(ok=False, error_code=error_code, message=message, field=field)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "KernelResult":
        correlation_id = response.headers.get("X-Correlation-ID")
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return cls(
                ok=False,
                status_code=response.status_code,
                error_code=ERR_BAD_RESPONSE,
                message=f"non-JSON response (HTTP {response.status_code})",
                correlation_id=correlation_id,
            )
        correlation_id = body.get("correlation_id") or correlation_id
        if response.is_success and body.get("ok", True):
            return cls(
                ok=True,
                status_code=response.status_code,
                data=body,
                correlation_id=correlation_id,
                idempotent_replay=response.headers.get("Idempotent-Replay") == "true",
            )
        return cls(
            ok=False,
            status_code=response.status_code,
            data=body,
            error_code=body.get("error_code") or f"HTTP_{response.status_code}",
            message=body.get("message"),
            field=body.get("field"),
            correlation_id=correlation_id,
        )


class EvidenceKernelClient:
    def __init__(
        self,
        base_url: str = "",
        api_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"X-API-Key": api_key} if api_key else {}
        if http_client is not None:
            self._http = http_client
            self._extra_headers = headers
        else:
            self._http = httpx.Client(
                base_url=base_url,
                headers=headers,
                transport=transport,
                timeout=DEFAULT_TIMEOUT_SECONDS,
            )
            self._extra_headers = {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "EvidenceKernelClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> KernelResult:
        merged = dict(self._extra_headers)
        if headers:
            merged.update(headers)
        try:
            response = self._http.request(
                method, path, headers=merged, timeout=timeout, **kwargs
            )
        except httpx.TimeoutException:
            log.warning("kernel.timeout method=%s path=%s timeout=%s", method, path, timeout)
            return KernelResult(
                ok=False,
                error_code=ERR_TIMEOUT,
                message=f"no response within {timeout:g}s",
                timed_out=True,
            )
        except httpx.TransportError as exc:
            log.warning("kernel.network_error method=%s path=%s err=%s", method, path, exc)
            return KernelResult(ok=False, error_code=ERR_NETWORK, message=str(exc))
        return KernelResult.from_response(response)

    # drafts

    def create_draft(self, declaration: dict[str, Any]) -> KernelResult:
        return self._request(
            "POST", "/evidence/drafts", json=declaration, timeout=CREATE_TIMEOUT_SECONDS
        )

    def get_draft(self, draft_id: str) -> KernelResult:
        return self._request("GET", f"/evidence/drafts/{draft_id}")

    def update_draft(self, draft_id: str, patch: dict[str, Any]) -> KernelResult:
        return self._request("PATCH", f"/evidence/drafts/{draft_id}", json=patch)

    def attach_payload(self, draft_id: str, payload: Any) -> KernelResult:
        return self._request(
            "POST", f"/evidence/drafts/{draft_id}/payload", json={"payload": payload}
        )

    def attach_file(
        self,
        draft_id: str,
        data: bytes,
        *,
        file_name: str,
        content_type: str = "application/octet-stream",
    ) -> KernelResult:
        return self._request(
            "POST",
            f"/evidence/drafts/{draft_id}/file",
            content=data,
            headers={"X-Filename": file_name, "Content-Type": content_type},
        )

    def quarantine_draft(self, draft_id: str, reason: str) -> KernelResult:
        return self._request(
            "POST", f"/evidence/drafts/{draft_id}/quarantine", json={"reason": reason}
        )

    def cancel_draft(self, draft_id: str) -> KernelResult:
        return self._request("POST", f"/evidence/drafts/{draft_id}/cancel")

    def seal(self, draft_id: str) -> KernelResult:
        return self._request(
            "POST", f"/evidence/drafts/{draft_id}/seal", timeout=SEAL_TIMEOUT_SECONDS
        )

    def ingest(self, declaration: dict[str, Any]) -> KernelResult:
        return self._request(
            "POST", "/evidence/ingest", json=declaration, timeout=SEAL_TIMEOUT_SECONDS
        )

    # records, work items, audit

    def list_records(self, **filters: Any) -> KernelResult:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/evidence/records", params=params)

    def get_record(self, evidence_id: str, *, include_payload: bool = False) -> KernelResult:
        params = {"include_payload": "true"} if include_payload else None
        return self._request("GET", f"/evidence/records/{evidence_id}", params=params)

    def list_work_items(self, **filters: Any) -> KernelResult:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/work-items", params=params)

    def resolve_work_item(
        self, work_item_id: str, resolution: str, note: Optional[str] = None
    ) -> KernelResult:
        return self._request(
            "POST",
            f"/work-items/{work_item_id}/resolve",
            json={"resolution": resolution, "note": note},
        )

    def audit_events(self, **filters: Any) -> KernelResult:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/audit/events", params=params)

    def verify_audit_chain(self) -> KernelResult:
        return self._request("GET", "/audit/verify")

    def tenant_profile(self) -> KernelResult:
        return self._request("GET", "/tenants/me")
