"""
Z-API client - sends WhatsApp messages through a Z-API instance.

Endpoints (relative to base_url):
  POST /instances/{instance_id}/token/{token}/send-text   {phone, message, delayTyping, delayMessage}
  POST /instances/{instance_id}/token/{token}/send-image  {phone, image, delayTyping, delayMessage}
  POST /instances/{instance_id}/token/{token}/send-video  {phone, video, delayTyping, delayMessage}

Every request carries the session's `Client-Token` header. The response
body's `messageId` becomes the provider message id.
"""
from __future__ import annotations

import re
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import CircuitBreaker, GatewayError, GatewayMetrics, MessagingGateway
from config.settings import GatewayConfig, get_settings
from models.schemas import MessagingSession, SendResult

logger = structlog.get_logger()


class ZapiGateway(MessagingGateway):
    """
    HTTP client for the Z-API provider.

    Transport errors (connection reset, timeouts) are retried with
    exponential backoff; once retries are exhausted a GatewayError is
    raised. HTTP error statuses are not retried and come back as a failed
    SendResult.
    """

    name = "zapi"

    def __init__(self, config: GatewayConfig = None, transport: httpx.AsyncBaseTransport = None,
                 retry_wait: float = 1.0):
        self.config = config or get_settings().gateway
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self._retry_wait = retry_wait
        self._breaker = CircuitBreaker()
        self._metrics = GatewayMetrics(self.name)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone or "")

    async def _post(self, session: MessagingSession, action: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        url = f"/instances/{session.instance_id}/token/{session.token}/{action}"
        headers = {"Client-Token": session.client_token}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self._retry_wait, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                return await client.post(url, json=payload, headers=headers)

    async def _send(self, session: MessagingSession, action: str, payload: dict[str, Any]) -> SendResult:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            return SendResult(success=False, error="circuit_open")

        payload = {
            **payload,
            "delayTyping": self.config.typing_delay_seconds,
            "delayMessage": self.config.typing_delay_seconds,
        }
        start = time.monotonic()
        try:
            response = await self._post(session, action, payload)
        except httpx.TransportError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.error("zapi_transport_failed", action=action, session_id=session.id, error=str(e))
            raise GatewayError(f"Z-API {action} failed: {e}", session.id, retryable=True) from e

        if response.status_code >= 400:
            self._breaker.record_failure()
            error = f"http_{response.status_code}"
            self._metrics.record_failure(error)
            logger.warning("zapi_send_rejected", action=action, session_id=session.id,
                           status=response.status_code, body=response.text[:200])
            return SendResult(success=False, error=error)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message_id = body.get("messageId") or body.get("id") or body.get("zaapId")
        if not message_id:
            self._breaker.record_failure()
            self._metrics.record_failure("missing_message_id")
            logger.warning("zapi_response_without_id", action=action, session_id=session.id)
            return SendResult(success=False, error="missing_message_id")

        self._breaker.record_success()
        self._metrics.record_send((time.monotonic() - start) * 1000)
        logger.info("zapi_message_sent", action=action, session_id=session.id, message_id=message_id)
        return SendResult(success=True, provider_message_id=str(message_id))

    async def send_text(self, session: MessagingSession, phone: str, text: str) -> SendResult:
        return await self._send(session, "send-text", {"phone": self._normalize_phone(phone), "message": text})

    async def send_image(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._send(session, "send-image", {"phone": self._normalize_phone(phone), "image": url})

    async def send_video(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._send(session, "send-video", {"phone": self._normalize_phone(phone), "video": url})

    async def health_check(self) -> dict[str, Any]:
        return {
            "gateway": self.name,
            "circuit_breaker": self._breaker.state.value,
            "metrics": self._metrics.to_dict(),
        }

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
