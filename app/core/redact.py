"""Reachline — Secret Redaction.

Bearer tokens must never reach logs, cache keys or diagnostic payloads.
"""

import hashlib
import hmac
import re
from typing import Any

REDACTED = "REDACTED"

_QUERY_TOKEN_RE = re.compile(r"(access_token=)[^&\s\"']+", re.IGNORECASE)
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE)


def redact_token(text: str) -> str:
    """Replace every access token value in a URL or message with a placeholder."""
    if not text:
        return text
    text = _QUERY_TOKEN_RE.sub(rf"\g<1>{REDACTED}", text)
    return _BEARER_RE.sub(rf"\g<1>{REDACTED}", text)


def redact_payload(value: Any) -> Any:
    """Recursively redact strings inside a JSON-like payload."""
    if isinstance(value, str):
        return redact_token(value)
    if isinstance(value, dict):
        return {
            k: (REDACTED if k == "access_token" else redact_payload(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact_payload(v) for v in value]
    return value


def short_detail(value: Any, limit: int = 180) -> str:
    """Redacted, length-capped text for error payloads."""
    text = "" if value is None else str(value).strip()
    text = redact_token(text)
    return f"{text[:limit]}…" if len(text) > limit else text


def token_fingerprint(token: str, salt: str) -> str:
    """Salted fingerprint used in cache keys instead of the raw token."""
    digest = hmac.new(salt.encode(), token.encode(), hashlib.sha256).hexdigest()
    return digest[:16]
