from __future__ import annotations

import re
import uuid
from typing import Any

CORRELATION_HEADER = "X-Correlation-ID"
_INBOUND_HEADERS = (b"x-correlation-id", b"x-request-id")
_VALID_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _inbound_id(scope: dict[str, Any]) -> str | None:
    headers = dict(scope.get("headers") or [])
    for name in _INBOUND_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        value = raw.decode("latin-1").strip()
        if _VALID_ID_RE.match(value):
            return value
    return None


def correlation_id_from_scope(scope: dict[str, Any]) -> str | None:
    state = scope.get("state")
    if isinstance(state, dict):
        cid = state.get("correlation_id")
        if isinstance(cid, str) and cid:
            return cid
    return None


# Invariants:
# - Every HTTP response carries X-Correlation-ID.
# - A well-formed inbound id is echoed; anything else is replaced by a uuid4.
# - The id is on request.state before any route or handler runs.
class CorrelationIdMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        cid = _inbound_id(scope) or str(uuid.uuid4())
        scope.setdefault("state", {})
        scope["state"]["correlation_id"] = cid
        header = (CORRELATION_HEADER.lower().encode("latin-1"), cid.encode("latin-1"))

        async def send_with_id(message):
            if message.get("type") == "http.response.start":
                headers = [
                    (k, v)
                    for k, v in message.get("headers", [])
                    if k.lower() != header[0]
                ]
                headers.append(header)
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_id)
