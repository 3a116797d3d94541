"""
Resumable sealing wizard.

  DECLARE --create draft--> PAYLOAD --attach--> RETENTION --patch--> REVIEW --seal--> SEALED

Forward moves run the same validation tables the server uses before any
network call; the server stays authoritative. Backward moves are allowed
until the draft is sealed. State survives restarts through a
WizardStateStore and is cleared on seal or cancel.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from api.config.settings import DEFAULT_MAX_PAYLOAD_BYTES
from client.kernel import EvidenceKernelClient, KernelResult
from client.state_store import MemoryWizardStateStore, WizardState, WizardStateStore
from services.evidence_kernel.errors import (
    ERR_SEALED_IMMUTABLE,
    ERR_VALIDATION_FAILED,
    EvidenceKernelError,
)
from services.evidence_kernel.validation import (
    PAYLOAD_KEYS,
    check_file,
    check_payload,
    validate_declaration,
)

log = logging.getLogger("supplylens.client.wizard")

STEPS = ("DECLARE", "PAYLOAD", "RETENTION", "REVIEW", "SEALED")
STEP_DECLARE, STEP_PAYLOAD, STEP_RETENTION, STEP_REVIEW, STEP_SEALED = range(len(STEPS))

FROZEN_AFTER_CREATE = ("request_id", "command_id", "ingestion_method", "origin")
RETENTION_KEYS = (
    "retention_policy",
    "retention_custom_days",
    "contains_personal_data",
    "gdpr_legal_basis",
)


class WizardBusy(RuntimeError):
    """A submission from this wizard is still in flight."""


class WizardStepError(RuntimeError):
    """The requested move is not valid from the current step."""


class SealingWizard:
    def __init__(
        self,
        client: EvidenceKernelClient,
        *,
        name: str = "default",
        store: Optional[WizardStateStore] = None,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
    ) -> None:
        self.client = client
        self.store = store or MemoryWizardStateStore()
        self.max_payload_bytes = max_payload_bytes
        self.state = self.store.load(name) or WizardState(name=name)
        self.retry_available = False
        self.last_result: Optional[KernelResult] = None
        self._inflight = threading.Lock()

    @property
    def step(self) -> int:
        return self.state.step

    @property
    def step_name(self) -> str:
        return STEPS[self.state.step]

    @property
    def is_sealed(self) -> bool:
        return self.state.step == STEP_SEALED

    # -- plumbing ---------------------------------------------------------

    @contextmanager
    def _submission(self) -> Iterator[None]:
        if not self._inflight.acquire(blocking=False):
            raise WizardBusy("a submission is already in progress")
        try:
            yield
        finally:
            self._inflight.release()

    def _expect(self, step: int) -> None:
        if self.state.step != step:
            raise WizardStepError(
                f"{STEPS[step]} action called while at {self.step_name}"
            )

    def _finish(self, result: KernelResult) -> KernelResult:
        self.last_result = result
        self.retry_available = result.retryable
        return result

    def _advance(self, step: int) -> None:
        self.state.step = step
        self.store.save(self.state)

    def _local_gate(self, declaration: Mapping[str, Any]) -> Optional[KernelResult]:
        try:
            validate_declaration(declaration, max_payload_bytes=self.max_payload_bytes)
        except EvidenceKernelError as exc:
            return KernelResult.local_failure(exc.error_code, exc.message, exc.field)
        return None

    @property
    def _method(self) -> Optional[str]:
        return self.state.declaration.get("ingestion_method")

    # -- steps ------------------------------------------------------------

    def declare(self, declaration: Mapping[str, Any]) -> KernelResult:
        """DECLARE -> PAYLOAD. Creates the draft, or patches it after a back()."""
        with self._submission():
            self._expect(STEP_DECLARE)
            decl = dict(declaration)
            inline = [k for k in PAYLOAD_KEYS if k in decl]
            if inline:
                return self._finish(
                    KernelResult.local_failure(
                        ERR_VALIDATION_FAILED,
                        "attach the payload in the PAYLOAD step",
                        inline[0],
                    )
                )
            decl["request_id"] = (
                decl.get("request_id") or self.state.request_id or str(uuid.uuid4())
            )
            for key in RETENTION_KEYS:
                if key not in decl and key in self.state.declaration:
                    decl[key] = self.state.declaration[key]

            if self.state.draft_id:
                for key in FROZEN_AFTER_CREATE:
                    if key in decl and decl.get(key) != self.state.declaration.get(key):
                        return self._finish(
                            KernelResult.local_failure(
                                ERR_VALIDATION_FAILED,
                                f"{key} cannot change after the draft exists",
                                key,
                            )
                        )

            failure = self._local_gate(decl)
            if failure is not None:
                return self._finish(failure)

            if self.state.draft_id:
                patch = {
                    k: v
                    for k, v in decl.items()
                    if k not in FROZEN_AFTER_CREATE
                    and self.state.declaration.get(k) != v
                }
                result = self.client.update_draft(self.state.draft_id, patch)
            else:
                # Persist the idempotency key first: a retry after a timeout
                # or a restart must reuse it.
                self.state.request_id = decl["request_id"]
                self.state.declaration = decl
                self.store.save(self.state)
                result = self.client.create_draft(decl)

            if result.ok:
                self.state.request_id = decl["request_id"]
                self.state.declaration = decl
                self.state.draft_id = result.data["draft"]["draft_id"]
                self._advance(STEP_PAYLOAD)
            return self._finish(result)

    def attach(
        self,
        payload: Any = None,
        *,
        data: Optional[bytes] = None,
        file_name: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> KernelResult:
        """
        PAYLOAD -> RETENTION. Inline JSON/text via `payload`, or a file via
        `data` + `file_name`. ERP_API drafts carry no client payload and
        advance without a call.
        """
        with self._submission():
            self._expect(STEP_PAYLOAD)
            method = self._method or ""
            if method == "ERP_API" and payload is None and data is None:
                self._advance(STEP_RETENTION)
                return self._finish(KernelResult(ok=True))

            try:
                if data is not None:
                    check_file(
                        method,
                        data,
                        file_name=file_name,
                        content_type=content_type,
                        max_bytes=self.max_payload_bytes,
                    )
                else:
                    check_payload(method, payload, max_bytes=self.max_payload_bytes)
            except EvidenceKernelError as exc:
                return self._finish(
                    KernelResult.local_failure(exc.error_code, exc.message, exc.field)
                )

            draft_id = self.state.draft_id or ""
            if data is not None:
                result = self.client.attach_file(
                    draft_id, data, file_name=file_name or "", content_type=content_type
                )
            else:
                result = self.client.attach_payload(draft_id, payload)
            if result.ok:
                self._advance(STEP_RETENTION)
            return self._finish(result)

    def set_retention(
        self,
        retention_policy: str,
        *,
        retention_custom_days: Optional[int] = None,
        contains_personal_data: bool = False,
        gdpr_legal_basis: Optional[str] = None,
    ) -> KernelResult:
        """RETENTION -> REVIEW."""
        with self._submission():
            self._expect(STEP_RETENTION)
            patch = {
                "retention_policy": retention_policy,
                "retention_custom_days": retention_custom_days,
                "contains_personal_data": contains_personal_data,
                "gdpr_legal_basis": gdpr_legal_basis,
            }
            merged = dict(self.state.declaration)
            merged.update(patch)
            failure = self._local_gate(merged)
            if failure is not None:
                return self._finish(failure)

            result = self.client.update_draft(self.state.draft_id or "", patch)
            if result.ok:
                self.state.declaration = merged
                self._advance(STEP_REVIEW)
            return self._finish(result)

    def seal(self) -> KernelResult:
        """REVIEW -> SEALED. Clears the stored state on success."""
        with self._submission():
            self._expect(STEP_REVIEW)
            result = self.client.seal(self.state.draft_id or "")
            if (
                not result.ok
                and result.error_code == ERR_SEALED_IMMUTABLE
                and result.data.get("evidence_id")
            ):
                # An earlier attempt sealed it before its response was lost.
                result = KernelResult(
                    ok=True,
                    status_code=result.status_code,
                    data=result.data,
                    correlation_id=result.correlation_id,
                    idempotent_replay=True,
                )
            if result.ok:
                self.state.evidence_id = result.data.get("evidence_id")
                self.state.step = STEP_SEALED
                self.store.clear(self.state.name)
                log.info(
                    "wizard.sealed name=%s draft=%s evidence=%s",
                    self.state.name,
                    self.state.draft_id,
                    self.state.evidence_id,
                )
            return self._finish(result)

    def back(self) -> int:
        if self.is_sealed:
            raise WizardStepError("sealed evidence cannot be revisited")
        if self.state.step > STEP_DECLARE:
            self._advance(self.state.step - 1)
        return self.state.step

    def cancel(self) -> Optional[KernelResult]:
        with self._submission():
            if self.is_sealed:
                raise WizardStepError("sealed evidence cannot be cancelled")
            result = None
            if self.state.draft_id:
                result = self._finish(self.client.cancel_draft(self.state.draft_id))
                if not result.ok and not result.retryable:
                    log.warning(
                        "wizard.cancel_rejected name=%s draft=%s code=%s",
                        self.state.name,
                        self.state.draft_id,
                        result.error_code,
                    )
                if result.retryable:
                    return result
            self.store.clear(self.state.name)
            self.state = WizardState(name=self.state.name)
            return result
