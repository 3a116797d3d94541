from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Mapping

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.middleware.correlation import CORRELATION_HEADER, correlation_id_from_scope
from services.error_sanitizer import sanitize_error_detail
from services.evidence_kernel.errors import EvidenceKernelError
from services.evidence_kernel.metrics import API_ERRORS_TOTAL

log = logging.getLogger("supplylens.exception_shield")

_CTRL_RE = re.compile(r"[\x00-\x1f\x7f]")
_PROD_ENVS = {"prod", "production", "staging"}

_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_FAILED",
    429: "RATE_LIMITED",
}

INTERNAL_ERROR = "INTERNAL_ERROR"


# Invariants:
# - Every error leaves as {"ok": false, "error_code", "message", ...,
#   "correlation_id"} with X-Correlation-ID set.
# - Never swallow non-HTTP errors in the middleware (re-raise); the
#   Exception handler turns them into a generic 500.
# - Never emit a second response after http.response.start has been sent.
class SLExceptionShieldMiddleware:
    """
    Catches HTTPExceptions that escape routing (dependencies in middleware,
    ExceptionGroups from task groups) and renders them in the envelope.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def tracked_send(message):
            nonlocal response_started
            if message.get("type") == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, tracked_send)
            return
        except HTTPException as exc:
            target_exc = exc
        except ExceptionGroup as exc_group:
            target_exc = _first_http_exception(exc_group)
            if target_exc is None:
                raise

        correlation_id = correlation_id_from_scope(scope)
        body = _http_exception_body(target_exc.status_code, target_exc.detail)
        if response_started:
            _log_event(
                event="exception_shield_response_started",
                status_code=target_exc.status_code,
                error_code=body["error_code"],
                scope=scope,
                correlation_id=correlation_id,
            )
            raise target_exc

        response = _envelope(
            target_exc.status_code,
            body,
            correlation_id,
            headers=target_exc.headers,
        )
        _log_event(
            event="exception_shield",
            status_code=target_exc.status_code,
            error_code=body["error_code"],
            scope=scope,
            correlation_id=correlation_id,
        )
        await response(scope, receive, send)


def _first_http_exception(exc_group: BaseException) -> HTTPException | None:
    if isinstance(exc_group, HTTPException):
        return exc_group

    nested = getattr(exc_group, "exceptions", None)
    if not isinstance(nested, tuple):
        return None

    for ex in nested:
        found = _first_http_exception(ex)
        if found is not None:
            return found
    return None


def _safe_message(detail: Any) -> str:
    if isinstance(detail, str):
        text = detail
    elif detail is None:
        text = "error"
    else:
        text = str(detail)
    text = sanitize_error_detail(_CTRL_RE.sub("", text)) or ""
    return text.strip()[:256] or "error"


def _http_exception_body(status_code: int, detail: Any) -> dict[str, Any]:
    if isinstance(detail, Mapping) and detail.get("error_code"):
        body = {str(k): v for k, v in detail.items()}
        body["message"] = _safe_message(body.get("message"))
        body["ok"] = False
        return body
    env = (os.getenv("SL_ENV") or "").strip().lower()
    message = _safe_message(detail)
    if env in _PROD_ENVS and not isinstance(detail, str):
        message = "error"
    return {
        "ok": False,
        "error_code": _STATUS_CODES.get(int(status_code), f"HTTP_{int(status_code)}"),
        "message": message,
    }


def _envelope(
    status_code: int,
    body: dict[str, Any],
    correlation_id: str | None,
    *,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    content = dict(body)
    content["correlation_id"] = correlation_id
    out_headers: dict[str, str] = {}
    if headers:
        out_headers.update({str(k): str(v) for k, v in headers.items()})
    if correlation_id:
        out_headers[CORRELATION_HEADER] = correlation_id
    API_ERRORS_TOTAL.labels(
        status_code=str(int(status_code)), error_code=str(content.get("error_code"))
    ).inc()
    return JSONResponse(status_code=status_code, content=content, headers=out_headers)


def _log_event(
    *,
    event: str,
    status_code: int,
    error_code: str,
    scope: Mapping[str, Any],
    correlation_id: str | None,
    detail: str | None = None,
) -> None:
    payload = {
        "event": event,
        "status_code": int(status_code),
        "error_code": error_code,
        "path": str(scope.get("path") or ""),
        "method": str(scope.get("method") or ""),
        "correlation_id": correlation_id,
    }
    if detail:
        payload["detail"] = detail
    line = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    if status_code >= 500:
        log.error(line)
    else:
        log.info(line)


def _validation_body(exc: RequestValidationError) -> tuple[int, dict[str, Any]]:
    errors = exc.errors()
    first = errors[0] if errors else {}
    if first.get("type") == "json_invalid":
        return 400, {
            "ok": False,
            "error_code": "INVALID_JSON",
            "message": "Request body is not valid JSON",
        }
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "header", "path")]
    body: dict[str, Any] = {
        "ok": False,
        "error_code": "VALIDATION_FAILED",
        "message": _safe_message(first.get("msg") or "Request validation failed"),
    }
    if loc:
        body["field"] = ".".join(loc)
    return 422, body


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EvidenceKernelError)
    async def _kernel_error(request: Request, exc: EvidenceKernelError):
        cid = correlation_id_from_scope(request.scope)
        _log_event(
            event="kernel_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            scope=request.scope,
            correlation_id=cid,
        )
        return _envelope(exc.status_code, exc.to_dict(), cid)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        cid = correlation_id_from_scope(request.scope)
        body = _http_exception_body(exc.status_code, exc.detail)
        _log_event(
            event="http_error",
            status_code=exc.status_code,
            error_code=body["error_code"],
            scope=request.scope,
            correlation_id=cid,
        )
        return _envelope(exc.status_code, body, cid, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        cid = correlation_id_from_scope(request.scope)
        status_code, body = _validation_body(exc)
        _log_event(
            event="request_validation",
            status_code=status_code,
            error_code=body["error_code"],
            scope=request.scope,
            correlation_id=cid,
        )
        return _envelope(status_code, body, cid)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        cid = correlation_id_from_scope(request.scope)
        _log_event(
            event="unhandled_exception",
            status_code=500,
            error_code=INTERNAL_ERROR,
            scope=request.scope,
            correlation_id=cid,
            detail=sanitize_error_detail(f"{type(exc).__name__}: {exc}"),
        )
        return _envelope(
            500,
            {"ok": False, "error_code": INTERNAL_ERROR, "message": "Internal server error"},
            cid,
        )
