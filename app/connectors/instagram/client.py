"""Reachline — Instagram Graph API Client.

Handles request-level timeouts, bounded retry on transient failures, error
classification and token redaction. Rate limits are never retried here;
they surface as `GraphRateLimitError` so callers can back off.
"""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import httpx

from app.config import settings
from app.core.dates import unix_bounds
from app.core.errors import (
    GraphAPIError,
    GraphRateLimitError,
    GraphTimeoutError,
    GraphTokenError,
    classify_graph_error,
)
from app.core.logging import get_logger
from app.core.redact import redact_token

logger = get_logger("instagram.client")

RETRY_BASE_DELAY = 1  # seconds


class GraphClient:
    """Async HTTP client for the Instagram Graph insights endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.graph_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.graph_request_timeout_s
        self.max_retries = max(1, max_retries or settings.graph_max_retries)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "GraphClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Core Request Method ──

    async def _get(self, path: str, params: Dict[str, Any], token: str) -> Dict[str, Any]:
        """GET with transient-error retry. Rate limits and 4xx raise immediately."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        query = {**params, "access_token": token}
        client = await self._get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.get(url, params=query)
            except httpx.TimeoutException as e:
                # Not retried: the request-level timeout bounds the whole call
                logger.warning(f"Graph timeout on {path} after {self.timeout}s")
                raise GraphTimeoutError(
                    f"graph_request_timeout after {self.timeout}s", status_code=504
                ) from e
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(f"Request error: {redact_token(str(e))}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise GraphAPIError(
                    f"Connection failed after {self.max_retries} retries: {redact_token(str(e))}"
                ) from e

            body = _safe_json(resp)
            if resp.is_success:
                return body if isinstance(body, dict) else {}

            error = classify_graph_error(body, resp.status_code, resp.reason_phrase)
            if isinstance(error, GraphRateLimitError):
                logger.warning(
                    f"Graph rate limited on {path}: {redact_token(str(error))}",
                    extra={"status_code": resp.status_code},
                )
                raise error

            if resp.status_code >= 500 and attempt < self.max_retries:
                wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(f"Server error {resp.status_code}. Retrying in {wait}s")
                await asyncio.sleep(wait)
                continue

            logger.error(
                f"Graph error on {redact_token(str(resp.request.url))}: {redact_token(str(error))}",
                extra={"status_code": resp.status_code},
            )
            raise error

        raise GraphAPIError("Max retries exhausted")

    # ── Page Token ──

    async def get_page_access_token(self, page_id: str, user_token: str) -> str:
        """Exchange a user token for the page-scoped token of `page_id`."""
        try:
            body = await self._get(page_id, {"fields": "access_token"}, user_token)
        except GraphRateLimitError:
            raise
        except GraphAPIError as e:
            raise GraphTokenError(
                f"failed_to_get_page_access_token: {e}",
                status_code=e.status_code,
                error_code=e.error_code,
            ) from e
        token = body.get("access_token")
        if not isinstance(token, str) or not token.strip():
            raise GraphTokenError("failed_to_get_page_access_token: empty token")
        return token.strip()

    # ── Insights ──

    async def fetch_insights(
        self,
        ig_user_id: str,
        metrics: Sequence[str],
        since: date,
        until: date,
        token: str,
        metric_type: str | None = None,
    ) -> List[Dict[str, Any]]:
        """One insights call for the inclusive day window [since, until].

        Returns the raw `data` list. Callers keep windows within the
        upstream's maximum span.
        """
        since_ts, until_ts = unix_bounds((since, until))
        params: Dict[str, Any] = {
            "metric": ",".join(metrics),
            "period": "day",
            "since": since_ts,
            "until": until_ts,
        }
        if metric_type:
            params["metric_type"] = metric_type
        body = await self._get(f"{ig_user_id}/insights", params, token)
        data = body.get("data")
        return data if isinstance(data, list) else []


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
