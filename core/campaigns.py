"""
Campaign management - tenant-facing CRUD and lifecycle.

    CREATED ──start──▶ RUNNING ──pause──▶ PAUSED ──start──▶ RUNNING
       │                  │                  │
       └──────cancel──────┴──────cancel──────┴──▶ CANCELED
    RUNNING ──(all targets dispatched)──▶ COMPLETED   (dispatcher)

Every status change goes through the store's compare-and-set transition,
so a manual action racing a dispatcher tick loses cleanly instead of
overwriting the other side's write.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable

from core.errors import InvalidTransitionError, NotFoundError, TenantMismatchError, ValidationError
from database.store_base import BaseCrmStore
from models.schemas import Campaign, CampaignRequest, CampaignStatus, TargetSelector, utcnow

logger = structlog.get_logger()

_STARTABLE = (CampaignStatus.CREATED, CampaignStatus.PAUSED)
_CANCELABLE = (CampaignStatus.CREATED, CampaignStatus.RUNNING, CampaignStatus.PAUSED)


class CampaignService:

    def __init__(self, store: BaseCrmStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    # ── Queries ───────────────────────────────────────────────

    async def get(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found", campaign_id)
        if campaign.tenant_id != tenant_id:
            raise TenantMismatchError(f"Campaign {campaign_id} belongs to another tenant", campaign_id)
        return campaign

    async def list_campaigns(self, tenant_id: str) -> list[Campaign]:
        return await self.store.list_campaigns(tenant_id)

    async def count_targets(self, tenant_id: str, selector: TargetSelector) -> int:
        return len(await self.store.find_campaign_targets(tenant_id, selector))

    # ── CRUD ──────────────────────────────────────────────────

    @staticmethod
    def _validate(request: CampaignRequest) -> None:
        if not request.name.strip():
            raise ValidationError("Campaign name is required")
        if not request.message_template.strip():
            raise ValidationError("Campaign message is required")

    async def create(self, tenant_id: str, request: CampaignRequest) -> Campaign:
        self._validate(request)
        selector = TargetSelector(tag_ids=set(request.tag_ids), all_trusted=request.all_trusted)
        campaign = Campaign(
            tenant_id=tenant_id,
            name=request.name.strip(),
            message_template=request.message_template,
            chats_per_dispatch=request.chats_per_dispatch,
            interval_minutes=request.interval_minutes,
            target_selector=selector,
            media=list(request.media),
            total_targets=await self.count_targets(tenant_id, selector),
        )
        await self.store.save_campaign(campaign)
        logger.info("campaign_created", tenant_id=tenant_id, campaign_id=campaign.id,
                    total_targets=campaign.total_targets)
        return campaign

    async def update(self, tenant_id: str, campaign_id: str, request: CampaignRequest) -> Campaign:
        campaign = await self.get(tenant_id, campaign_id)
        if campaign.status == CampaignStatus.RUNNING or campaign.status.is_terminal:
            raise InvalidTransitionError(
                f"Campaign in status {campaign.status.value} cannot be edited", campaign_id,
            )
        self._validate(request)
        campaign.name = request.name.strip()
        campaign.message_template = request.message_template
        campaign.chats_per_dispatch = request.chats_per_dispatch
        campaign.interval_minutes = request.interval_minutes
        campaign.target_selector = TargetSelector(tag_ids=set(request.tag_ids), all_trusted=request.all_trusted)
        campaign.media = list(request.media)
        campaign.total_targets = await self.count_targets(tenant_id, campaign.target_selector)
        await self.store.save_campaign(campaign)
        logger.info("campaign_updated", tenant_id=tenant_id, campaign_id=campaign_id,
                    total_targets=campaign.total_targets)
        return campaign

    async def delete(self, tenant_id: str, campaign_id: str) -> None:
        campaign = await self.get(tenant_id, campaign_id)
        if campaign.status == CampaignStatus.RUNNING:
            raise InvalidTransitionError("Pause or cancel a running campaign before deleting it", campaign_id)
        await self.store.delete_campaign(campaign_id)
        logger.info("campaign_deleted", tenant_id=tenant_id, campaign_id=campaign_id)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = await self.get(tenant_id, campaign_id)
        if campaign.status not in _STARTABLE:
            raise InvalidTransitionError(
                f"Only created or paused campaigns can be started (status {campaign.status.value})", campaign_id,
            )
        next_dispatch = self._clock() + timedelta(minutes=campaign.interval_minutes)
        return await self._transition(campaign, _STARTABLE, CampaignStatus.RUNNING, next_dispatch)

    async def pause(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = await self.get(tenant_id, campaign_id)
        if campaign.status != CampaignStatus.RUNNING:
            raise InvalidTransitionError(
                f"Only running campaigns can be paused (status {campaign.status.value})", campaign_id,
            )
        return await self._transition(campaign, (CampaignStatus.RUNNING,), CampaignStatus.PAUSED)

    async def cancel(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = await self.get(tenant_id, campaign_id)
        if campaign.status.is_terminal:
            raise InvalidTransitionError(f"Campaign already {campaign.status.value}", campaign_id)
        return await self._transition(campaign, _CANCELABLE, CampaignStatus.CANCELED)

    async def _transition(self, campaign: Campaign, from_statuses, to_status: CampaignStatus,
                          next_dispatch: datetime = None) -> Campaign:
        updated = await self.store.transition_campaign(campaign.id, from_statuses, to_status, next_dispatch)
        if updated is None:
            # Status moved between our read and the conditional write
            raise InvalidTransitionError(
                f"Campaign {campaign.id} changed status concurrently; retry", campaign.id,
            )
        logger.info("campaign_status_changed", tenant_id=campaign.tenant_id, campaign_id=campaign.id,
                    from_status=campaign.status.value, to_status=to_status.value)
        return updated
