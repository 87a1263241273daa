"""Async client for the remote telemetry collector.

Posts one JSON envelope per event, exception or metric. Every envelope
carries the device context with the host-identifying fields scrubbed.
"""

import asyncio
import logging
import traceback
from datetime import UTC, datetime

import httpx
from httpx import RemoteProtocolError

from filetrace.schemas.telemetry import DeviceIdentity

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 1.0

SCRUBBED = "<scrubbed>"
ANONYMOUS_IP = "0.0.0.0"


async def _retry_on_disconnect(coro_fn, *args, **kwargs):
    """Retry an async call on ``RemoteProtocolError`` (server disconnect).

    Retries up to ``MAX_RETRIES`` times with a fixed delay between attempts.
    """
    for attempt in range(MAX_RETRIES + 1):
        try:
            return await coro_fn(*args, **kwargs)
        except RemoteProtocolError:
            if attempt == MAX_RETRIES:
                raise
            logger.warning(
                "Collector connection dropped (attempt %d/%d), retrying...",
                attempt + 1,
                MAX_RETRIES,
            )
            await asyncio.sleep(RETRY_DELAY)


class CollectorClient:
    """Async HTTP client for the telemetry collector.

    Usage::

        async with CollectorClient(url, api_key, identity) as client:
            await client.send_event("FileAccess", {"fileExtension": ".docx"})
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        identity: DeviceIdentity,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._context = {
            "userId": identity.device_id,
            "componentVersion": identity.build_version,
            "roleName": SCRUBBED,
            "roleInstance": SCRUBBED,
            "clientIp": ANONYMOUS_IP,
        }

    async def __aenter__(self) -> "CollectorClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict) -> None:
        """POST a JSON envelope. Retries on connection drop."""
        await _retry_on_disconnect(self._post_raw, path, body)

    async def _post_raw(self, path: str, body: dict) -> None:
        response = await self._client.post(path, json=body)
        response.raise_for_status()

    def _envelope(self, **fields: object) -> dict:
        return {
            "time": datetime.now(UTC).isoformat(),
            "context": self._context,
            **fields,
        }

    async def send_event(self, name: str, properties: dict[str, str]) -> None:
        """Send a named event with string-valued properties."""
        await self._post(
            "/v1/events",
            self._envelope(name=name, properties={k: str(v) for k, v in properties.items()}),
        )

    async def send_exception(self, error: BaseException) -> None:
        """Send an exception with its type, message and stack."""
        await self._post(
            "/v1/exceptions",
            self._envelope(
                type=f"{type(error).__module__}.{type(error).__qualname__}",
                message=str(error),
                stack="".join(traceback.format_exception(error)),
            ),
        )

    async def send_metric(self, name: str, value: float) -> None:
        await self._post("/v1/metrics", self._envelope(name=name, value=value))
