"""
Ingestion Pipeline
==================
Shared by the polling and webhook paths:
normalize contact fields → upsert by natural key → schedule touch point 1
"""

import re
from dataclasses import dataclass, replace
from typing import Optional

from loguru import logger

from leadflow.core.touch_point_schedule import calculate_next_touch_point_time
from leadflow.db.lead_repository import CreateLeadData, LeadRepository
from leadflow.db.models import Lead


EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")


# ── Result Structure ──────────────────────────────────────────────────────────

@dataclass
class IngestResult:
    lead: Lead
    created: bool
    scheduled: bool = False

    @property
    def lead_id(self) -> str:
        return str(self.lead.id)

    @property
    def has_contact_info(self) -> bool:
        return self.lead.has_contact_info


# ── Normalization ─────────────────────────────────────────────────────────────

def normalize_contact(data: CreateLeadData) -> CreateLeadData:
    """Trim phone and email; an email that does not look like one is dropped"""
    email = (data.customer_email or "").strip().lower() or None
    if email and not EMAIL_REGEX.match(email):
        logger.warning(f"Dropping malformed email for work order {data.crm_work_order_id}: {email}")
        email = None

    phone = (data.customer_phone or "").strip() or None
    return replace(data, customer_email=email, customer_phone=phone)


# ── Ingestor ──────────────────────────────────────────────────────────────────

class LeadIngestor:

    def __init__(self, repo: LeadRepository, tenant_id: str):
        self.repo = repo
        self.tenant_id = tenant_id

    async def ingest(self, data: CreateLeadData) -> IngestResult:
        """
        Admit one CRM work order.

        Safe to call any number of times for the same work order: only the
        call that actually creates the row schedules the first touch point.
        """
        data = normalize_contact(data)
        upserted = await self.repo.upsert(self.tenant_id, data)
        lead = upserted.lead

        if not upserted.created:
            logger.debug(f"Lead {lead.id} refreshed from {data.crm_source}:{data.crm_work_order_id}")
            return IngestResult(lead=lead, created=False)

        logger.info(f"Lead {lead.id} created from {data.crm_source}:{data.crm_work_order_id}")

        if not lead.has_contact_info:
            logger.warning(f"Lead {lead.id} has no email or phone, not scheduling touch points")
            return IngestResult(lead=lead, created=True)

        scheduled = await self._schedule_first_touch_point(lead)
        return IngestResult(lead=scheduled or lead, created=True, scheduled=scheduled is not None)

    async def _schedule_first_touch_point(self, lead: Lead) -> Optional[Lead]:
        next_at = calculate_next_touch_point_time(lead.created_at, 0, now=self.repo.clock())
        scheduled = await self.repo.schedule_next_touch_point(self.tenant_id, lead.id, next_at)
        if scheduled is None:
            # Lead left the open statuses between insert and scheduling
            logger.info(f"Lead {lead.id} no longer open, first touch point not scheduled")
            return None

        processed = await self.repo.mark_as_processed(self.tenant_id, lead.id)
        logger.info(f"Lead {lead.id} touch point 1 scheduled for {next_at.isoformat()}")
        return processed or scheduled
