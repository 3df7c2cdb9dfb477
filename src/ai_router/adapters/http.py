"""Shared httpx plumbing for HTTP-based provider adapters.

Handles authentication headers, deadline-bounded retries with exponential
backoff for 429/5xx responses and network errors, and translation of HTTP
failures into the AdapterError taxonomy.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..errors import (
    AdapterTimeoutError,
    AuthenticationError,
    MalformedResponseError,
    QuotaExceededError,
    RateLimitError,
    TransportError,
)
from .base import ProviderAdapter

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class HttpProviderAdapter(ProviderAdapter):
    """Base class for adapters talking JSON over HTTP.

    Subclasses build payloads and parse responses; this class owns the
    transport. A single ``httpx.AsyncClient`` is reused for the adapter's
    lifetime and closed by ``aclose()``.
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        api_key: Optional[str] = None,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the adapter.

        Args:
            provider_id: Provider identifier used in errors and logs.
            base_url: API root, e.g. "https://api.openai.com/v1".
            api_key: Bearer token; requests are sent unauthenticated if None.
            max_retries: Extra attempts for retryable failures.
            backoff_base_seconds: First backoff delay; doubles per retry.
            client: Pre-built client (tests inject one with a MockTransport).
        """
        super().__init__(provider_id)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._max_retries = max_retries
        self._backoff_base = backoff_base_seconds
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    @staticmethod
    def _remaining(deadline: float) -> float:
        return deadline - asyncio.get_running_loop().time()

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthenticationError(f"authentication failed ({status})", provider_id=self.provider_id)
        if status == 402:
            raise QuotaExceededError("quota or credit exhausted", provider_id=self.provider_id)
        if status == 429:
            retry_after = response.headers.get("Retry-After", "")
            raise RateLimitError(
                "rate limit exceeded",
                provider_id=self.provider_id,
                retry_after=float(retry_after) if retry_after.isdigit() else None,
            )
        raise TransportError(
            f"HTTP {status}: {response.text[:200]}",
            provider_id=self.provider_id,
            status_code=status,
        )

    async def _backoff(self, attempt: int, deadline: float, retry_after: Optional[float]) -> bool:
        """Sleep before the next retry. Returns False if the deadline forbids it."""
        delay = retry_after if retry_after is not None else self._backoff_base * (2 ** attempt)
        if delay >= self._remaining(deadline):
            return False
        logger.debug("Retrying %s in %.2fs (attempt %d)", self.provider_id, delay, attempt + 1)
        await asyncio.sleep(delay)
        return True

    async def _request(
        self,
        method: str,
        path: str,
        deadline: float,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request with retries, bounded by ``deadline``.

        Raises:
            AdapterError: Translated failure once retries are exhausted.
        """
        attempt = 0
        while True:
            remaining = self._remaining(deadline)
            if remaining <= 0:
                raise AdapterTimeoutError("deadline exceeded", provider_id=self.provider_id)

            retry_after: Optional[float] = None
            try:
                response = await self._client.request(
                    method,
                    self._url(path),
                    headers=self._headers(),
                    json=json,
                    timeout=remaining,
                )
                if response.status_code not in RETRYABLE_STATUS or attempt >= self._max_retries:
                    self._raise_for_status(response)
                    return response
                if response.status_code == 429:
                    header = response.headers.get("Retry-After", "")
                    retry_after = float(header) if header.isdigit() else None
            except httpx.TimeoutException as e:
                raise AdapterTimeoutError(f"request timed out: {e}", provider_id=self.provider_id) from e
            except httpx.HTTPError as e:
                if attempt >= self._max_retries:
                    raise TransportError(f"request failed: {e}", provider_id=self.provider_id) from e

            if not await self._backoff(attempt, deadline, retry_after):
                raise AdapterTimeoutError(
                    "deadline leaves no room for another retry",
                    provider_id=self.provider_id,
                )
            attempt += 1

    async def _post_json(self, path: str, payload: Dict[str, Any], deadline: float) -> Dict[str, Any]:
        response = await self._request("POST", path, deadline, json=payload)
        return self._decode(response)

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"invalid JSON: {e}", provider_id=self.provider_id) from e
        if not isinstance(data, dict):
            raise MalformedResponseError("expected a JSON object", provider_id=self.provider_id)
        return data

    @property
    def supports_ping(self) -> bool:
        return True

    async def ping(self, deadline: float) -> None:
        """Probe the provider's model listing endpoint."""
        start = time.monotonic()
        await self._request("GET", "models", deadline)
        logger.debug("Ping %s ok in %dms", self.provider_id, int((time.monotonic() - start) * 1000))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
