"""
Campaign Dispatcher - periodic batch sender for RUNNING campaigns.

Per due campaign (RUNNING and next_dispatch_time <= now):
  - no active session        → PAUSED
  - no eligible target left  → COMPLETED
  - otherwise send the first `chats_per_dispatch` eligible targets through
    the save-then-send path, recording each target only after a successful
    send, then either COMPLETED or rescheduled `interval_minutes` later.

End-of-batch transitions are conditional on the campaign still being
RUNNING, so a pause or cancel issued mid-batch is kept.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from channels.base import NoActiveSessionError
from core.outbound import OutboundSender
from database.store_base import BaseCrmStore
from models.schemas import Campaign, CampaignStatus, MessagingSession, utcnow

logger = structlog.get_logger()

_RUNNING = (CampaignStatus.RUNNING,)


class CampaignDispatcher:

    def __init__(self, store: BaseCrmStore, sender: OutboundSender,
                 batch_delay_s: float = 2.0, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.sender = sender
        self.batch_delay_s = batch_delay_s
        self._clock = clock

    async def tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or self._clock()
        stats = {"due": 0, "sent": 0, "failed": 0, "completed": 0, "paused": 0, "errors": 0}

        due = await self.store.find_due_for_dispatch(now)
        stats["due"] = len(due)
        for campaign in due:
            try:
                outcome = await self.dispatch(campaign, now, stats)
                if outcome in (CampaignStatus.COMPLETED, CampaignStatus.PAUSED):
                    stats[outcome.value.lower()] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error("campaign_dispatch_failed", campaign_id=campaign.id,
                             tenant_id=campaign.tenant_id, error=str(e), exc_info=True)

        if stats["due"]:
            logger.info("campaign_tick_complete", **stats)
        return stats

    async def _require_session(self, tenant_id: str) -> MessagingSession:
        session = await self.store.find_active_session(tenant_id)
        if session is None:
            raise NoActiveSessionError(tenant_id)
        return session

    async def dispatch(self, campaign: Campaign, now: datetime,
                       stats: Optional[dict[str, int]] = None) -> Optional[CampaignStatus]:
        """Send one batch. Returns the status the campaign ended up in, or None if it changed under us."""
        stats = stats if stats is not None else {"sent": 0, "failed": 0}

        try:
            session = await self._require_session(campaign.tenant_id)
        except NoActiveSessionError as e:
            logger.warning("campaign_paused_no_session", campaign_id=campaign.id, tenant_id=campaign.tenant_id,
                           error=str(e))
            updated = await self.store.transition_campaign(campaign.id, _RUNNING, CampaignStatus.PAUSED)
            return updated.status if updated else None

        targets = await self.store.find_campaign_targets(campaign.tenant_id, campaign.target_selector)
        eligible = [t for t in targets if t.id not in campaign.dispatched_target_ids]
        if not eligible:
            updated = await self.store.transition_campaign(campaign.id, _RUNNING, CampaignStatus.COMPLETED)
            logger.info("campaign_completed", campaign_id=campaign.id, tenant_id=campaign.tenant_id,
                        dispatched=campaign.dispatched_count, total=campaign.total_targets)
            return updated.status if updated else None

        batch = eligible[:campaign.chats_per_dispatch]
        for index, target in enumerate(batch):
            if index > 0 and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)
            try:
                result = await self.sender.send_text(session, target, campaign.message_template)
                if not result.success:
                    stats["failed"] += 1
                    logger.warning("campaign_target_failed", campaign_id=campaign.id,
                                   conversation_id=target.id, error=result.error)
                    continue
                await self.store.add_dispatched_target(campaign.id, target.id)
                stats["sent"] += 1
                if campaign.media:
                    await self.sender.send_media(session, target, campaign.media)
            except Exception as e:
                stats["failed"] += 1
                logger.error("campaign_target_error", campaign_id=campaign.id,
                             conversation_id=target.id, error=str(e))

        refreshed = await self.store.get_campaign(campaign.id)
        if refreshed is None:
            logger.warning("campaign_deleted_during_batch", campaign_id=campaign.id)
            return None

        if refreshed.dispatched_count >= refreshed.total_targets:
            updated = await self.store.transition_campaign(campaign.id, _RUNNING, CampaignStatus.COMPLETED)
            logger.info("campaign_completed", campaign_id=campaign.id, tenant_id=campaign.tenant_id,
                        dispatched=refreshed.dispatched_count, total=refreshed.total_targets)
        else:
            next_dispatch = self._clock() + timedelta(minutes=campaign.interval_minutes)
            updated = await self.store.transition_campaign(campaign.id, _RUNNING, CampaignStatus.RUNNING,
                                                           next_dispatch)
            logger.info("campaign_batch_sent", campaign_id=campaign.id, tenant_id=campaign.tenant_id,
                        dispatched=refreshed.dispatched_count, total=refreshed.total_targets,
                        progress=round(refreshed.progress, 1))

        if updated is None:
            logger.info("campaign_status_changed_mid_batch", campaign_id=campaign.id,
                        status=refreshed.status.value)
            return None
        return updated.status
