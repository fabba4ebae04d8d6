"""
HttpProvider — provider backed by a JSON-over-HTTP endpoint.

Request body::

    {"input": ..., "schema": {...} | null, "options": {...}}

Expected response body::

    {"value": ..., "tokens_in": 0, "tokens_out": 0, "cost_usd": 0.0, "model": "..."}

Non-2xx responses become ProviderError with the status code and any
Retry-After header, so the resilience layer can classify them.
Transport failures become retryable ProviderErrors.
"""

from __future__ import annotations

from typing import Any

import httpx

from docflow.core.config import settings
from docflow.core.constants import ProviderCapability
from docflow.core.errors import InvalidResponseError, ProviderError
from docflow.core.logging import get_logger
from docflow.providers.base import BaseProvider, ProviderResult

logger = get_logger(__name__)


def _retry_after_ms(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if not header:
        return None
    try:
        return float(header) * 1000
    except ValueError:
        # HTTP-date form is not honoured
        return None


class HttpProvider(BaseProvider):
    """
    Calls a remote provider endpoint with httpx.

    Pass `client` to share a connection pool (or a MockTransport in
    tests); otherwise a client is opened per call.
    """

    def __init__(
        self,
        name: str,
        capability: ProviderCapability | str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        expected_status_codes: list[int] | None = None,
    ) -> None:
        super().__init__(name, capability)
        self._url = url
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._timeout = timeout if timeout is not None else settings.HTTP_PROVIDER_TIMEOUT_S
        self._client = client
        self._expected_status = expected_status_codes or [200, 201, 202]

    async def invoke(
        self,
        input: Any,
        schema: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> ProviderResult:
        body = {"input": input, "schema": schema, "options": options or {}}

        logger.debug("Calling provider endpoint", provider=self.key, url=self._url)

        try:
            if self._client is not None:
                response = await self._client.post(
                    self._url, json=body, headers=self._headers, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=body, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"Request to {self.key} timed out: {exc}",
                provider_key=self.key,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Network error calling {self.key}: {exc}",
                provider_key=self.key,
            ) from exc

        if response.status_code not in self._expected_status:
            raise ProviderError(
                f"{self.key} returned HTTP {response.status_code}",
                provider_key=self.key,
                status_code=response.status_code,
                retry_after_ms=_retry_after_ms(response),
                response_body=response.text[:2000],
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise InvalidResponseError(
                f"{self.key} returned a non-JSON body",
                provider_key=self.key,
                status_code=response.status_code,
                response_body=response.text[:2000],
            ) from exc

        if not isinstance(data, dict) or "value" not in data:
            raise InvalidResponseError(
                f"{self.key} response has no 'value' field",
                provider_key=self.key,
                status_code=response.status_code,
            )

        return ProviderResult(
            value=data["value"],
            tokens_in=int(data.get("tokens_in") or 0),
            tokens_out=int(data.get("tokens_out") or 0),
            cost_usd=float(data.get("cost_usd") or 0.0),
            model=data.get("model") or self.model,
            provider_key=self.key,
        )
