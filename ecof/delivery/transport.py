"""
ECOF Delivery - Transport Adapters
==================================
Pluggable senders used by the delivery pipeline.

- WebhookTransport: signed JSON batch to a subscriber URL; any 2xx is success.
- ErpTransport: one document operation against the ERP's synchronous API;
  the JSON answer is mapped onto a local ERP status.

Transports translate every receiver behaviour (timeouts, refused
connections, error statuses) into a DeliveryOutcome instead of raising.
"""

import asyncio
import logging
import time
from typing import Protocol

import httpx

from .models import DeliveryOutcome, Envelope, ErpStatus
from .signing import IDEMPOTENCY_HEADER, SIGNATURE_HEADER

logger = logging.getLogger("ecof.delivery.transport")

# ERP answers that must not be retried
PERMANENT_HTTP_CODES = frozenset({400, 404, 409, 422})
PERMANENT_ERROR_CODES = frozenset({"ValidationError", "InvalidPayload", "UnsupportedDocumentType"})


class Transport(Protocol):
    """Capability: send(envelope) -> outcome."""

    async def send(self, envelope: Envelope) -> DeliveryOutcome: ...

    async def aclose(self) -> None: ...


def map_erp_status(value: str | None) -> str | None:
    """Map a receiver status string onto ErpStatus, case-insensitively."""
    if not value:
        return None
    for status in ErpStatus:
        if status.value.lower() == str(value).strip().lower():
            return status.value
    return None


class _HttpTransport:
    """Shared httpx client handling."""

    def __init__(self, timeout: float = 15.0, client: httpx.AsyncClient | None = None):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, envelope: Envelope, headers: dict[str, str]) -> tuple[httpx.Response | None, DeliveryOutcome | None, int]:
        start_time = time.monotonic()
        try:
            # httpx timeouts apply per read; the whole call is capped here
            response = await asyncio.wait_for(
                self.client().post(url, content=envelope.body, headers=headers),
                timeout=self.timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning(f"POST {url} timed out after {elapsed_ms}ms")
            return None, DeliveryOutcome.failure(f"Timeout after {self.timeout}s", elapsed_ms=elapsed_ms), elapsed_ms
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning(f"POST {url} failed: {e.__class__.__name__}: {e}")
            return None, DeliveryOutcome.failure(f"Transport error: {e.__class__.__name__}: {e}", elapsed_ms=elapsed_ms), elapsed_ms
        return response, None, int((time.monotonic() - start_time) * 1000)


class WebhookTransport(_HttpTransport):
    """POST signed batches to subscriber endpoints."""

    async def send(self, envelope: Envelope) -> DeliveryOutcome:
        headers = {"content-type": "application/json", **envelope.headers}
        headers[IDEMPOTENCY_HEADER] = envelope.idempotency_key
        if envelope.signature:
            headers[SIGNATURE_HEADER] = envelope.signature

        response, failed, elapsed_ms = await self._post(envelope.endpoint, envelope, headers)
        if failed is not None:
            return failed

        if 200 <= response.status_code < 300:
            return DeliveryOutcome.success(response.status_code, elapsed_ms=elapsed_ms)

        return DeliveryOutcome.failure(
            f"Webhook HTTP {response.status_code}: {response.text[:500]}",
            status_code=response.status_code,
            permanent=400 <= response.status_code < 500,
            elapsed_ms=elapsed_ms,
        )


class ErpTransport(_HttpTransport):
    """Synchronous per-document operations against the ERP API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.base_url = base_url.rstrip("/")
        self.token = token

    async def send(self, envelope: Envelope) -> DeliveryOutcome:
        headers = {"content-type": "application/json", IDEMPOTENCY_HEADER: envelope.idempotency_key}
        headers.update(envelope.headers)
        if self.token:
            headers["authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}{envelope.endpoint}"
        response, failed, elapsed_ms = await self._post(url, envelope, headers)
        if failed is not None:
            return failed

        code = response.status_code
        if code >= 500:
            return DeliveryOutcome.failure(f"ERP HTTP {code}: {response.text[:500]}", status_code=code, elapsed_ms=elapsed_ms)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error_code = data.get("errorCode")
        error_message = data.get("errorMessage") or response.text[:500]

        if code in PERMANENT_HTTP_CODES:
            return DeliveryOutcome.failure(
                f"ERP rejected ({code}{', ' + error_code if error_code else ''}): {error_message}",
                status_code=code,
                permanent=True,
                status=ErpStatus.ERROR.value,
                elapsed_ms=elapsed_ms,
            )
        if code >= 400:
            return DeliveryOutcome.failure(f"ERP HTTP {code}: {error_message}", status_code=code, elapsed_ms=elapsed_ms)

        if not data.get("success"):
            return DeliveryOutcome.failure(
                f"{error_code or 'ERPError'}: {error_message or 'ERP operation failed'}",
                status_code=code,
                permanent=error_code in PERMANENT_ERROR_CODES,
                status=ErpStatus.ERROR.value,
                elapsed_ms=elapsed_ms,
            )

        return DeliveryOutcome.success(
            code,
            external_ref=data.get("externalRef") or data.get("documentRef"),
            status=map_erp_status(data.get("status")),
            elapsed_ms=elapsed_ms,
        )
