"""
Lead Nurture Engine - API
=========================
FastAPI application: CRM webhook, lead inspection, and the two
background jobs (CRM polling and touch point processing).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from loguru import logger

from leadflow.config import Settings, get_settings
from leadflow.core.errors import LeadNotFound
from leadflow.core.lead_states import LeadStatus
from leadflow.core.log import configure_logging
from leadflow.core.touch_point_schedule import get_full_schedule
from leadflow.db.database import init_db
from leadflow.db.models import Lead
from leadflow.ingestion.webhook import router as webhook_router
from leadflow.services import Services, build_services, get_services


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    configure_logging(settings)

    services = build_services(settings)
    app.state.services = services
    await init_db(services.engine)

    logger.info(f"{settings.app_name} starting for tenant {settings.tenant_id}")
    if settings.demo_mode:
        logger.info(f"Demo mode on, admitting only: {', '.join(settings.demo_mode_emails) or '(nobody)'}")

    if settings.enable_polling:
        services.poller.start()
    if settings.enable_touch_points:
        services.processor.start()

    try:
        yield
    finally:
        logger.info("Shutting down")
        await services.poller.stop()
        await services.processor.stop()
        await services.engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    app = FastAPI(
        title="Lead Nurture Engine",
        description="CRM lead ingestion and touch point scheduling",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()
    app.include_router(webhook_router)
    register_routes(app)
    return app


# ── Serialization ─────────────────────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def serialize_lead(lead: Lead) -> dict:
    return {
        "id": str(lead.id),
        "crm_source": lead.crm_source,
        "crm_work_order_id": lead.crm_work_order_id,
        "crm_work_order_number": lead.crm_work_order_number,
        "customer_name": lead.customer_name,
        "customer_email": lead.customer_email,
        "customer_phone": lead.customer_phone,
        "service_type": lead.service_type,
        "service_name": lead.service_name,
        "status": lead.status,
        "touch_point_count": lead.touch_point_count,
        "next_touch_point_at": _iso(lead.next_touch_point_at),
        "last_contacted_at": _iso(lead.last_contacted_at),
        "first_response_at": _iso(lead.first_response_at),
        "version": lead.version,
        "created_at": _iso(lead.created_at),
        "updated_at": _iso(lead.updated_at),
    }


# ── Endpoints ─────────────────────────────────────────────────────────────────

def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "tenant_id": services.tenant_id,
            "polling": services.poller.get_status()["is_running"],
            "touch_points": services.processor.get_status()["is_running"],
        }

    @app.get("/leads")
    async def list_leads(limit: int = 50, status: Optional[str] = None,
                         services: Services = Depends(get_services)):
        """List leads, newest first, with optional status filter"""
        if status:
            if status not in {s.value for s in LeadStatus}:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
            leads = await services.repo.find_by_status(services.tenant_id, status, limit=limit)
        else:
            leads = await services.repo.find_by_tenant(services.tenant_id, limit=limit)

        return {"count": len(leads), "leads": [serialize_lead(lead) for lead in leads]}

    @app.get("/leads/{lead_id}")
    async def get_lead(lead_id: str, services: Services = Depends(get_services)):
        """Get current state of a lead"""
        lead = await _find_lead(services, lead_id)
        return serialize_lead(lead)

    @app.get("/leads/{lead_id}/history")
    async def get_lead_history(lead_id: str, services: Services = Depends(get_services)):
        """Get full event history for a lead (audit trail)"""
        lead = await _find_lead(services, lead_id)
        events = await services.repo.history(services.tenant_id, lead.id)

        return {
            "lead_id": str(lead.id),
            "current_status": lead.status,
            "event_count": len(events),
            "events": [
                {
                    "from_status": e.from_status,
                    "event": e.event,
                    "to_status": e.to_status,
                    "payload": e.payload,
                    "occurred_at": _iso(e.occurred_at),
                }
                for e in events
            ],
        }

    @app.post("/leads/{lead_id}/responded")
    async def mark_responded(lead_id: str, services: Services = Depends(get_services)):
        """Customer replied: stop the sequence"""
        lead = await _find_lead(services, lead_id)
        updated = await services.repo.mark_as_responded(services.tenant_id, lead.id)
        if updated is None:
            raise HTTPException(status_code=409, detail=f"Lead is already {lead.status}")
        return serialize_lead(updated)

    @app.get("/touch-points/schedule")
    async def touch_point_schedule():
        return {"schedule": get_full_schedule()}

    @app.post("/touch-points/process")
    async def process_touch_points(services: Services = Depends(get_services)):
        """Run one touch point cycle now"""
        result = await services.processor.process()
        return vars(result)

    @app.get("/jobs/status")
    async def jobs_status(services: Services = Depends(get_services)):
        recent = await services.ledger.recent(limit=10)
        return {
            "polling": services.poller.get_status(),
            "touch_points": services.processor.get_status(),
            "recent_executions": [
                {
                    "job_key": execution.job_key,
                    "job_type": execution.job_type,
                    "status": execution.status,
                    "started_at": _iso(execution.started_at),
                    "duration_ms": execution.duration_ms,
                    "leads_processed": execution.leads_processed,
                    "errors_count": execution.errors_count,
                }
                for execution in recent
            ],
        }


async def _find_lead(services: Services, lead_id: str) -> Lead:
    try:
        return await services.repo.require(services.tenant_id, lead_id)
    except LeadNotFound:
        raise HTTPException(status_code=404, detail="Lead not found")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
