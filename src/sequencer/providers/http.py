"""Async REST transport shared by the GCP and Kubernetes clients.

Maps HTTP outcomes onto the sequencer error hierarchy:

  404                    -> ResourceNotFound
  409                    -> ResourceAlreadyExists
  408, 429, 5xx, timeout -> TransientError (Retry-After honoured)
  other 4xx              -> PermanentError

Retries are not performed here: the step executor owns the retry budget
so every attempt is counted and logged in one place.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import (
    PermanentError,
    ResourceAlreadyExists,
    ResourceNotFound,
    TransientError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Client ───────────────────────────────────────────────────────


class RestClient:
    """Bearer-authenticated JSON client for one API base URL."""

    def __init__(
        self,
        *,
        base_url: str,
        bearer_token: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._bearer_token = bearer_token
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _auth_headers(self) -> dict[str, str]:
        if not self._bearer_token:
            return {}
        return {"Authorization": f"Bearer {self._bearer_token}"}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        resource_id: str | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (or None)."""
        url = path if path.startswith("https://") else f"{self._base_url}{path}"
        merged = self._auth_headers()
        if headers:
            merged.update(headers)

        try:
            resp = await self._client.request(
                method,
                url,
                headers=merged,
                json=json,
                params=params,
                content=content,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientError(
                f"{method} {path} timed out", resource_id=resource_id,
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"{method} {path} transport error: {e}", resource_id=resource_id,
            ) from e

        raise_for_status(resp, resource_id=resource_id)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None


def _retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def raise_for_status(resp: httpx.Response, *, resource_id: str | None = None) -> None:
    """Translate an HTTP error response into a sequencer error."""
    if resp.status_code < 400:
        return

    body = resp.text
    message = body[:200] if body else f"HTTP {resp.status_code}"
    payload: Any = body
    try:
        payload = resp.json()
        if isinstance(payload, dict):
            error = payload.get("error", payload.get("message", message))
            if isinstance(error, dict):
                error = error.get("message", message)
            message = str(error)
    except ValueError:
        pass

    status = resp.status_code
    message = f"HTTP {status}: {message}"
    kwargs: dict[str, Any] = {
        "resource_id": resource_id,
        "status_code": status,
        "payload": payload,
    }
    if status == 404:
        raise ResourceNotFound(message, **kwargs)
    if status == 409:
        raise ResourceAlreadyExists(message, **kwargs)
    if status in _TRANSIENT_STATUS_CODES:
        raise TransientError(message, retry_after=_retry_after(resp), **kwargs)
    raise PermanentError(message, **kwargs)
