"""
FastAPI Application - management API + scheduler lifecycle.

Provides:
- Routine definition CRUD and manual routine reset
- Campaign CRUD and lifecycle (start, pause, cancel)
- Server-sent event stream of routine notifications per tenant
- Scheduler status and on-demand ticks
- Health and gateway diagnostics

The two background schedulers (routine automation, campaign dispatch) are
started and stopped in the lifespan.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from channels.factory import create_gateway
from config.settings import get_settings
from core.campaign_dispatcher import CampaignDispatcher
from core.campaigns import CampaignService
from core.errors import ZapFlowError
from core.notifications import InMemoryNotificationBroker
from core.outbound import OutboundSender
from core.routine_machine import RoutineStateMachine
from core.routine_scheduler import RoutineScheduler
from core.routines import RoutineService
from core.ticker import PeriodicTask
from database.session import close_db, init_db
from database.store_factory import create_store
from models.schemas import CampaignRequest, RoutineRequest, utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

store = create_store({
    "store_backend": _settings_boot.database.store_backend,
    "store_file_dir": _settings_boot.database.store_file_dir,
})
gateway = create_gateway(_settings_boot.gateway)
notifications = InMemoryNotificationBroker()

sender = OutboundSender(
    store, gateway,
    send_timeout_s=_settings_boot.scheduler.send_timeout_seconds,
    media_delay_s=_settings_boot.scheduler.media_send_delay_seconds,
)
routine_machine = RoutineStateMachine(store, sender, notifications, _settings_boot.routines)
routine_scheduler = RoutineScheduler(store, routine_machine)
campaign_dispatcher = CampaignDispatcher(
    store, sender, batch_delay_s=_settings_boot.scheduler.batch_send_delay_seconds,
)
routine_service = RoutineService(store, routine_machine)
campaign_service = CampaignService(store)

routine_task = PeriodicTask(
    "routine_scheduler", _settings_boot.scheduler.routine_interval_seconds, routine_scheduler.tick,
)
campaign_task = PeriodicTask(
    "campaign_dispatcher", _settings_boot.scheduler.campaign_interval_seconds, campaign_dispatcher.tick,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    if settings.scheduler.enabled:
        await routine_task.start()
        await campaign_task.start()

    logger.info("zapflow_started",
                store_backend=settings.database.store_backend,
                gateway=settings.gateway.type,
                scheduler_enabled=settings.scheduler.enabled)
    yield

    await routine_task.stop()
    await campaign_task.stop()
    await gateway.close()
    if settings.database.store_backend == "sql":
        await close_db()
    if hasattr(store, "flush_all"):
        store.flush_all()
    logger.info("zapflow_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ZapFlow API",
    description="WhatsApp CRM follow-up routines and campaign dispatch",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ZapFlowError)
async def zapflow_error_handler(request: Request, exc: ZapFlowError):
    logger.info("request_rejected", path=request.url.path, error=type(exc).__name__, detail=str(exc))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": str(exc), "entity_id": exc.entity_id},
    )


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "store_backend": type(store).__name__,
        "gateway": await gateway.health_check(),
        "schedulers": [routine_task.stats(), campaign_task.stats()],
    }


@app.get("/api/v1/scheduler")
async def scheduler_status():
    return {
        "routines": routine_task.stats(),
        "campaigns": campaign_task.stats(),
        "notifications": {"published": notifications.published, "dropped": notifications.dropped},
    }


@app.post("/api/v1/scheduler/routines/run")
async def run_routine_tick():
    """Run one routine tick now (skipped if one is already in flight)."""
    stats = await routine_task.run_once()
    return {"ran": stats is not None, "stats": stats}


@app.post("/api/v1/scheduler/campaigns/run")
async def run_campaign_tick():
    stats = await campaign_task.run_once()
    return {"ran": stats is not None, "stats": stats}


# ══════════════════════════════════════════════════════════════
#  ROUTINES
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/tenants/{tenant_id}/routines")
async def list_routines(tenant_id: str):
    routines = await routine_service.list_routines(tenant_id)
    return {"routines": [r.model_dump(mode="json") for r in routines]}


@app.post("/api/v1/tenants/{tenant_id}/routines", status_code=201)
async def create_routine(tenant_id: str, req: RoutineRequest):
    definition = await routine_service.create(tenant_id, req)
    return definition.model_dump(mode="json")


@app.put("/api/v1/tenants/{tenant_id}/routines/{routine_id}")
async def update_routine(tenant_id: str, routine_id: str, req: RoutineRequest):
    definition = await routine_service.update(tenant_id, routine_id, req)
    return definition.model_dump(mode="json")


@app.delete("/api/v1/tenants/{tenant_id}/routines/{routine_id}", status_code=204)
async def delete_routine(tenant_id: str, routine_id: str):
    await routine_service.delete(tenant_id, routine_id)


@app.post("/api/v1/tenants/{tenant_id}/conversations/{conversation_id}/routine/reset")
async def reset_routine(tenant_id: str, conversation_id: str):
    state = await routine_service.reset_conversation(tenant_id, conversation_id)
    return {
        "conversation_id": conversation_id,
        "reset": state is not None,
        "state": state.model_dump(mode="json") if state else None,
    }


# ══════════════════════════════════════════════════════════════
#  CAMPAIGNS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/tenants/{tenant_id}/campaigns")
async def list_campaigns(tenant_id: str):
    campaigns = await campaign_service.list_campaigns(tenant_id)
    return {"campaigns": [c.to_dict() for c in campaigns]}


@app.post("/api/v1/tenants/{tenant_id}/campaigns", status_code=201)
async def create_campaign(tenant_id: str, req: CampaignRequest):
    campaign = await campaign_service.create(tenant_id, req)
    return campaign.to_dict()


@app.get("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}")
async def get_campaign(tenant_id: str, campaign_id: str):
    campaign = await campaign_service.get(tenant_id, campaign_id)
    return campaign.to_dict()


@app.put("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}")
async def update_campaign(tenant_id: str, campaign_id: str, req: CampaignRequest):
    campaign = await campaign_service.update(tenant_id, campaign_id, req)
    return campaign.to_dict()


@app.delete("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}", status_code=204)
async def delete_campaign(tenant_id: str, campaign_id: str):
    await campaign_service.delete(tenant_id, campaign_id)


@app.post("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}/start")
async def start_campaign(tenant_id: str, campaign_id: str):
    campaign = await campaign_service.start(tenant_id, campaign_id)
    return campaign.to_dict()


@app.post("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}/pause")
async def pause_campaign(tenant_id: str, campaign_id: str):
    campaign = await campaign_service.pause(tenant_id, campaign_id)
    return campaign.to_dict()


@app.post("/api/v1/tenants/{tenant_id}/campaigns/{campaign_id}/cancel")
async def cancel_campaign(tenant_id: str, campaign_id: str):
    campaign = await campaign_service.cancel(tenant_id, campaign_id)
    return campaign.to_dict()


# ══════════════════════════════════════════════════════════════
#  NOTIFICATIONS - Server-sent events
# ══════════════════════════════════════════════════════════════

_KEEPALIVE_S = 15.0


@app.get("/api/v1/tenants/{tenant_id}/events")
async def stream_events(tenant_id: str, request: Request):
    queue = notifications.subscribe(tenant_id)

    async def event_stream():
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event.name}\ndata: {event.model_dump_json()}\n\n"
        finally:
            notifications.unsubscribe(tenant_id, queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
