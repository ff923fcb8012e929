"""In-process gateway that records sends instead of calling a provider."""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from channels.base import MessagingGateway
from models.schemas import MessagingSession, SendResult, utcnow

logger = structlog.get_logger()


@dataclass
class SentItem:
    session_id: str
    phone: str
    kind: str                 # text | image | video
    body: str
    provider_message_id: str
    sent_at: datetime = field(default_factory=utcnow)


class MockGateway(MessagingGateway):
    """
    Records every send and returns `mock_<hex>` ids.

    Set `fail_phones` to make sends to those numbers fail, for exercising
    failure paths without a provider.
    """

    name = "mock"

    def __init__(self):
        self.sent: list[SentItem] = []
        self.fail_phones: set[str] = set()

    async def _record(self, session: MessagingSession, phone: str, kind: str, body: str) -> SendResult:
        if phone in self.fail_phones:
            logger.info("mock_send_failed", phone=phone, kind=kind)
            return SendResult(success=False, error="mock_failure")
        msg_id = f"mock_{uuid.uuid4().hex[:12]}"
        self.sent.append(SentItem(session.id, phone, kind, body, msg_id))
        logger.info("mock_message_sent", phone=phone, kind=kind, message_id=msg_id)
        return SendResult(success=True, provider_message_id=msg_id)

    async def send_text(self, session: MessagingSession, phone: str, text: str) -> SendResult:
        return await self._record(session, phone, "text", text)

    async def send_image(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._record(session, phone, "image", url)

    async def send_video(self, session: MessagingSession, phone: str, url: str) -> SendResult:
        return await self._record(session, phone, "video", url)

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": self.name, "sent": len(self.sent)}
