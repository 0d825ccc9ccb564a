from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from agent_sync import __version__
from agent_sync.storage.base import TransportError

if TYPE_CHECKING:
    from agent_sync.processors.base import ProcessingContext

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429})


@dataclass
class SendResult:
    """Outcome of one logical send, after retries."""

    success: bool
    message: str
    status_code: int | None = None
    data: Any = None
    attempts: int = 0


class RemoteTransport:
    """Async client for the telemetry API.

    Network errors, timeouts, 5xx and 429 responses are retried on the
    configured delay schedule. Other 4xx responses fail immediately.
    `send` never raises; failures come back as `SendResult(success=False)`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        cookies: dict[str, str] | None = None,
        api_key: str | None = None,
        client_type: str = "agent-sync",
        version: str = __version__,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 2.0, 5.0),
        dry_run: bool = False,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("Remote transport requires a base URL.")

        self.base_url = base_url.rstrip("/")
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delays = tuple(retry_delays)
        self.dry_run = dry_run
        self._sleep = sleep

        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{client_type}/{version}",
            "X-Client-Type": client_type,
            "X-Client-Version": version,
        }
        if cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())
        elif api_key:
            headers["user-id"] = api_key

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=timeout_seconds
        )
        if client is not None:
            self._client.headers.update(headers)

    @classmethod
    def from_context(cls, context: ProcessingContext) -> RemoteTransport:
        return cls(
            context.api_base_url,
            cookies=dict(context.cookies),
            api_key=context.api_key,
            client_type=context.client_type,
            version=context.version,
            timeout_seconds=context.timeout_seconds,
            retry_attempts=context.retry_attempts,
            retry_delays=context.retry_delays,
            dry_run=context.dry_run,
        )

    async def __aenter__(self) -> RemoteTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send_metric(self, metric: dict[str, Any]) -> SendResult:
        return await self.send("POST", "/v1/metrics", metric)

    async def upsert_conversation(
        self,
        conversation_id: str,
        history: list[dict[str, Any]],
        *,
        assistant_id: str | None = None,
        folder: str | None = None,
    ) -> SendResult:
        payload: dict[str, Any] = {"history": history}
        if assistant_id:
            payload["assistant_id"] = assistant_id
        if folder:
            payload["folder"] = folder
        return await self.send("PUT", f"/v1/conversations/{conversation_id}/history", payload)

    async def send(self, method: str, path: str, payload: dict[str, Any]) -> SendResult:
        if self.dry_run:
            logger.info("[dry-run] %s %s %s", method, path, json.dumps(payload, default=str))
            return SendResult(success=True, message="Dry run: payload not sent")

        last_error = TransportError("No request attempted", retryable=False)
        attempt = 0
        for attempt in range(self.retry_attempts):
            try:
                data, status_code = await self._request(method, path, payload)
                return SendResult(
                    success=True,
                    message="Sent successfully",
                    status_code=status_code,
                    data=data,
                    attempts=attempt + 1,
                )
            except TransportError as exc:
                last_error = exc
                if not exc.retryable:
                    break
                if attempt < self.retry_attempts - 1:
                    delay = self._delay_for(attempt)
                    logger.debug(
                        "%s %s failed (%s); retrying in %.1fs", method, path, exc, delay
                    )
                    await self._sleep(delay)

        logger.warning("%s %s failed: %s", method, path, last_error)
        return SendResult(
            success=False,
            message=str(last_error),
            status_code=last_error.status_code,
            attempts=attempt + 1,
        )

    def _delay_for(self, attempt: int) -> float:
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    async def _request(self, method: str, path: str, payload: dict[str, Any]) -> tuple[Any, int]:
        try:
            response = await self._client.request(
                method, path, content=json.dumps(payload, default=str)
            )
        except (httpx.TransportError, httpx.TimeoutException) as exc:
            raise TransportError(f"Network error: {exc}") from exc

        status = response.status_code
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise TransportError(f"HTTP {status}: {response.text[:200]}", status_code=status)
        if status >= 400:
            raise TransportError(
                f"HTTP {status}: {response.text[:200]}", status_code=status, retryable=False
            )

        data: Any = None
        if response.content:
            try:
                data = response.json()
            except ValueError:
                data = response.text
        if isinstance(data, dict) and data.get("success") is False:
            raise TransportError(
                f"API rejected payload: {data.get('message', 'unknown error')}",
                status_code=status,
                retryable=False,
            )
        return data, status
