from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from accessvault.core.errors import ProviderAPIError
from accessvault.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class ProviderClient:
    # Non-2xx and transport failures raise ProviderAPIError with the raw body; nothing is retried.
    provider: str = "provider"

    def __init__(
        self,
        *,
        timeout_s: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> httpx.Response:
        http = client or self._get_client()
        start = time.monotonic()
        try:
            response = await http.request(method, url, headers=headers, json=json, params=params)
        except httpx.HTTPError as exc:
            self._record(operation, start, success=False)
            logger.warning("provider_call_failed provider=%s operation=%s", self.provider, operation)
            raise ProviderAPIError(self.provider, None, str(exc) or exc.__class__.__name__) from exc
        if response.status_code >= 400:
            self._record(operation, start, success=False)
            logger.warning(
                "provider_call_rejected provider=%s operation=%s status=%s",
                self.provider,
                operation,
                response.status_code,
            )
            raise ProviderAPIError(self.provider, response.status_code, response.text)
        self._record(operation, start, success=True)
        return response

    def _record(self, operation: str, start: float, *, success: bool) -> None:
        record_external_call(
            provider=self.provider,
            operation=operation,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )


def parse_json(response: httpx.Response) -> dict[str, Any]:
    # Some endpoints answer 200/204 with an empty body.
    if not response.content:
        return {}
    payload = response.json()
    if isinstance(payload, dict):
        return payload
    return {"items": payload}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
