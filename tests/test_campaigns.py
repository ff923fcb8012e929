"""Tests for campaign management and lifecycle guards."""
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, add_conversation
from core.campaigns import CampaignService
from core.errors import InvalidTransitionError, NotFoundError, TenantMismatchError, ValidationError
from models.schemas import CampaignRequest, CampaignStatus


def _request(**overrides) -> CampaignRequest:
    data = dict(name="Black Friday", message_template="Oferta especial!",
                chats_per_dispatch=2, interval_minutes=10, tag_ids=["vip"])
    data.update(overrides)
    return CampaignRequest(**data)


@pytest.fixture
def service(store, clock):
    return CampaignService(store, clock=clock)


async def _seed_targets(store, tenant_id):
    await add_conversation(store, tenant_id, trusted=True, tag_ids=["vip"], phone="1")
    await add_conversation(store, tenant_id, trusted=True, tag_ids=["vip", "sp"], phone="2")
    await add_conversation(store, tenant_id, trusted=True, tag_ids=["sp"], phone="3")
    await add_conversation(store, tenant_id, trusted=False, tag_ids=["vip"], phone="4")


class TestCampaignCrud:

    @pytest.mark.asyncio
    async def test_create_counts_eligible_targets(self, service, store, tenant):
        await _seed_targets(store, tenant.id)

        campaign = await service.create(tenant.id, _request())

        assert campaign.status == CampaignStatus.CREATED
        assert campaign.total_targets == 2
        assert campaign.dispatched_count == 0
        assert campaign.progress == 0.0

    @pytest.mark.asyncio
    async def test_all_trusted_selector(self, service, store, tenant):
        await _seed_targets(store, tenant.id)
        campaign = await service.create(tenant.id, _request(tag_ids=[], all_trusted=True))
        assert campaign.total_targets == 3

    @pytest.mark.asyncio
    async def test_empty_selector_has_no_targets(self, service, store, tenant):
        await _seed_targets(store, tenant.id)
        campaign = await service.create(tenant.id, _request(tag_ids=[]))
        assert campaign.total_targets == 0

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, service, tenant):
        with pytest.raises(ValidationError):
            await service.create(tenant.id, _request(name="   "))

    @pytest.mark.asyncio
    async def test_update_recomputes_total(self, service, store, tenant):
        await _seed_targets(store, tenant.id)
        campaign = await service.create(tenant.id, _request())

        updated = await service.update(tenant.id, campaign.id, _request(tag_ids=["sp"], name="Natal"))

        assert updated.name == "Natal"
        assert updated.total_targets == 2

    @pytest.mark.asyncio
    async def test_get_unknown_campaign(self, service, tenant):
        with pytest.raises(NotFoundError):
            await service.get(tenant.id, "missing")

    @pytest.mark.asyncio
    async def test_foreign_tenant_rejected(self, service, tenant):
        campaign = await service.create(tenant.id, _request())
        with pytest.raises(TenantMismatchError):
            await service.get("tenant_b", campaign.id)
        with pytest.raises(TenantMismatchError):
            await service.cancel("tenant_b", campaign.id)

    @pytest.mark.asyncio
    async def test_delete(self, service, store, tenant):
        campaign = await service.create(tenant.id, _request())
        await service.delete(tenant.id, campaign.id)
        assert await store.get_campaign(campaign.id) is None


class TestCampaignLifecycle:

    @pytest.mark.asyncio
    async def test_start_schedules_first_dispatch(self, service, tenant):
        campaign = await service.create(tenant.id, _request())

        started = await service.start(tenant.id, campaign.id)

        assert started.status == CampaignStatus.RUNNING
        assert started.next_dispatch_time == FIXED_NOW + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, service, tenant):
        campaign = await service.create(tenant.id, _request())
        await service.start(tenant.id, campaign.id)

        paused = await service.pause(tenant.id, campaign.id)
        assert paused.status == CampaignStatus.PAUSED
        assert paused.next_dispatch_time is None

        resumed = await service.start(tenant.id, campaign.id)
        assert resumed.status == CampaignStatus.RUNNING

    @pytest.mark.asyncio
    async def test_running_campaign_cannot_be_edited_or_deleted(self, service, tenant):
        campaign = await service.create(tenant.id, _request())
        await service.start(tenant.id, campaign.id)

        with pytest.raises(InvalidTransitionError):
            await service.update(tenant.id, campaign.id, _request())
        with pytest.raises(InvalidTransitionError):
            await service.delete(tenant.id, campaign.id)
        with pytest.raises(InvalidTransitionError):
            await service.start(tenant.id, campaign.id)

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, service, tenant):
        campaign = await service.create(tenant.id, _request())
        with pytest.raises(InvalidTransitionError):
            await service.pause(tenant.id, campaign.id)

    @pytest.mark.asyncio
    async def test_canceled_is_terminal(self, service, tenant):
        campaign = await service.create(tenant.id, _request())
        canceled = await service.cancel(tenant.id, campaign.id)
        assert canceled.status == CampaignStatus.CANCELED

        with pytest.raises(InvalidTransitionError):
            await service.cancel(tenant.id, campaign.id)
        with pytest.raises(InvalidTransitionError):
            await service.start(tenant.id, campaign.id)
        with pytest.raises(InvalidTransitionError):
            await service.update(tenant.id, campaign.id, _request())

    @pytest.mark.asyncio
    async def test_concurrent_status_change_is_reported(self, service, store, tenant, monkeypatch):
        campaign = await service.create(tenant.id, _request())

        async def lost_race(*args, **kwargs):
            return None

        monkeypatch.setattr(store, "transition_campaign", lost_race)
        with pytest.raises(InvalidTransitionError):
            await service.start(tenant.id, campaign.id)
