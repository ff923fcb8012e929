"""
Outbound sender - the save-then-send path for every automated message.

1. Persist a PENDING message record with a `pending_<hex>` placeholder id.
2. Call the gateway, bounded by the send timeout.
3. Reconcile the record: SENT with the provider id, or FAILED.

A crash between steps 1 and 3 leaves a recoverable PENDING record rather
than a send with no local trace.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime
from typing import Callable

from channels.base import MessagingGateway
from database.store_base import BaseCrmStore
from models.schemas import (
    Conversation, MediaKind, MediaRef, Message, MessageStatus, MessagingSession,
    SendResult, utcnow,
)

logger = structlog.get_logger()


class OutboundSender:

    def __init__(self, store: BaseCrmStore, gateway: MessagingGateway,
                 send_timeout_s: float = 45.0, media_delay_s: float = 2.0,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.gateway = gateway
        self.send_timeout_s = send_timeout_s
        self.media_delay_s = media_delay_s
        self._clock = clock

    async def send_text(self, session: MessagingSession, conversation: Conversation, text: str) -> SendResult:
        """Save-then-send a text message. Never raises for gateway failures."""
        pending = Message(
            conversation_id=conversation.id,
            provider_message_id=f"pending_{uuid.uuid4().hex}",
            content=text,
            from_me=True,
            timestamp=self._clock(),
            status=MessageStatus.PENDING,
        )
        await self.store.add_message(pending)

        result = await self._call(self.gateway.send_text(session, conversation.phone, text),
                                  conversation, "text")

        if result.success:
            await self.store.reconcile_message(pending.id, MessageStatus.SENT,
                                               result.provider_message_id or "")
        else:
            await self.store.reconcile_message(pending.id, MessageStatus.FAILED)
            logger.warning("outbound_send_failed", conversation_id=conversation.id,
                           tenant_id=conversation.tenant_id, error=result.error)
        return result

    async def send_media(self, session: MessagingSession, conversation: Conversation,
                         media: list[MediaRef]) -> int:
        """
        Send attachments after a text, pausing `media_delay_s` before each.
        Failures are logged only. Returns how many were delivered.
        """
        delivered = 0
        for item in media:
            if self.media_delay_s > 0:
                await asyncio.sleep(self.media_delay_s)
            if item.kind == MediaKind.IMAGE:
                call = self.gateway.send_image(session, conversation.phone, item.url)
            else:
                call = self.gateway.send_video(session, conversation.phone, item.url)
            result = await self._call(call, conversation, item.kind.value)
            if result.success:
                delivered += 1
            else:
                logger.warning("outbound_media_failed", conversation_id=conversation.id,
                               kind=item.kind.value, error=result.error)
        return delivered

    async def _call(self, call, conversation: Conversation, kind: str) -> SendResult:
        try:
            return await asyncio.wait_for(call, timeout=self.send_timeout_s)
        except asyncio.TimeoutError:
            logger.error("outbound_send_timeout", conversation_id=conversation.id,
                         kind=kind, timeout_s=self.send_timeout_s)
            return SendResult(success=False, error="timeout")
        except Exception as e:
            logger.error("outbound_send_error", conversation_id=conversation.id,
                         kind=kind, error=str(e))
            return SendResult(success=False, error=str(e))
