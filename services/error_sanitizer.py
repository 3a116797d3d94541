"""
Error detail sanitizer.

Strips API keys, database URLs, credentials and stack traces from error
strings before they reach a log line, an audit event or an error envelope.

Covers:
  - SupplyLens API keys (slk<prefix>.<token>.<secret>) anywhere in the text
  - X-API-Key and Authorization header values
  - Database URLs (sqlite paths, user:password@host DSNs)
  - key=value secrets such as pepper=..., token=..., password=...
  - Python traceback blocks and frames
"""
from __future__ import annotations

import re
from typing import Optional

# Applied in order; earlier patterns win over later, broader ones.
_SANITIZE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (
        re.compile(
            r"Traceback \(most recent call last\):[\s\S]*?(?=\n\n|\n[A-Z]|\Z)",
            re.MULTILINE,
        ),
        "[REDACTED-TRACEBACK]",
    ),
    (
        re.compile(r'File "[^"]+", line \d+,? in \w[^\n]*'),
        "[REDACTED-TRACEBACK-FRAME]",
    ),
    (
        re.compile(r"\bslk[0-9a-f]{8}\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
        "[REDACTED-API-KEY]",
    ),
    (
        re.compile(r"(?i)\bsqlite(?:\+\w+)?:/{2,4}[^\s\"'<>]*"),
        "[REDACTED-DB-URL]",
    ),
    (
        re.compile(
            r"[a-zA-Z][a-zA-Z0-9+\-.]*://[^\s@/:\"'<>]+:[^\s@/:\"'<>]+@[^\s\"'<>]+"
        ),
        "[REDACTED-DB-URL]",
    ),
    (
        re.compile(r"(?i)((?:X-API-Key|Authorization)\s*[:=]\s*)(?:\w+\s+)?\S+"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)\b(api[_-]?key|pepper|token|secret|password|passwd)([=:])"
            r"[^\s&\"'<>#,]+"
        ),
        r"\1\2[REDACTED]",
    ),
]


def sanitize_error_detail(text: Optional[str]) -> Optional[str]:
    """Return `text` with known secret shapes replaced; None stays None."""
    if text is None:
        return None

    result = str(text)
    for pattern, replacement in _SANITIZE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result
