"""Reachline — Error Taxonomy.

`AppError` is what routes raise for fatal-for-request conditions; the
exception handler in `app.main` renders it as `{"ok": false, "error": code}`.
`GraphAPIError` and its subclasses describe upstream failures.
"""

from typing import Any, Dict, Optional

from app.core.redact import short_detail

RATE_LIMIT_CODES = {4, 17, 32, 613}
AUTH_ERROR_CODES = {102, 190}
RATE_LIMIT_PHRASES = (
    "rate limit",
    "too many",
    "reduce the amount",
    "(#4)",
    "request limit reached",
)
METRIC_REJECTION_PHRASES = ("unsupported", "invalid", "metric")


class AppError(Exception):
    """Structured application error with a stable string code."""

    def __init__(
        self,
        code: str,
        status_code: int = 400,
        message: str | None = None,
        **extra: Any,
    ):
        self.code = code
        self.status_code = status_code
        self.message = message
        self.extra = extra
        super().__init__(message or code)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "error": self.code}
        if self.message:
            payload["message"] = self.message
        payload.update(self.extra)
        return payload


class GraphAPIError(Exception):
    """Raised when the Graph API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_subcode: int = 0,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_subcode = error_subcode
        super().__init__(message)


class GraphRateLimitError(GraphAPIError):
    """Upstream asked us to back off. Retryable later, never immediately."""

    def __init__(self, message: str, retry_after: int = 120, **kwargs: Any):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class GraphTimeoutError(GraphAPIError):
    """The request-level timeout expired before the upstream answered."""


class GraphMetricRejectedError(GraphAPIError):
    """The upstream refused the requested metric combination."""


class GraphTokenError(GraphAPIError):
    """A page access token could not be derived from the user token."""


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def classify_graph_error(
    body: Optional[Dict[str, Any]], status_code: int, fallback_message: str = ""
) -> GraphAPIError:
    """Map an upstream error body onto the matching GraphAPIError subclass."""
    body = body if isinstance(body, dict) else {}
    err = body.get("error") if isinstance(body.get("error"), dict) else {}
    code = _as_int(err.get("code", body.get("code")))
    subcode = _as_int(err.get("error_subcode", body.get("error_subcode")))
    message = (
        err.get("message")
        or body.get("message")
        or fallback_message
        or f"graph_error_http_{status_code}"
    )
    combined = " ".join(
        str(s)
        for s in (
            err.get("message"),
            body.get("message"),
            err.get("error_user_msg"),
            err.get("error_user_title"),
            fallback_message,
        )
        if isinstance(s, str) and s
    ).lower()

    kwargs = {"status_code": status_code, "error_code": code, "error_subcode": subcode}
    if (
        status_code == 429
        or code in RATE_LIMIT_CODES
        or subcode == 4
        or any(p in combined for p in RATE_LIMIT_PHRASES)
    ):
        return GraphRateLimitError(str(message), **kwargs)
    if code in AUTH_ERROR_CODES:
        return GraphAPIError(str(message), **kwargs)
    if code == 100 or any(p in combined for p in METRIC_REJECTION_PHRASES):
        return GraphMetricRejectedError(str(message), **kwargs)
    return GraphAPIError(str(message), **kwargs)


def graph_error_to_app_error(exc: GraphAPIError, **extra: Any) -> AppError:
    """Translate an upstream failure into the caller-facing structured error."""
    detail = short_detail(str(exc))
    if isinstance(exc, GraphRateLimitError):
        return AppError(
            "rate_limited", 429, detail, retry_after=exc.retry_after, **extra
        )
    if isinstance(exc, GraphTimeoutError):
        return AppError("upstream_timeout", 504, detail, **extra)
    if isinstance(exc, GraphMetricRejectedError):
        return AppError("graph_metric_rejected", 400, detail, **extra)
    return AppError(
        "graph_fetch_failed", 502, detail, upstream_status=exc.status_code, **extra
    )
