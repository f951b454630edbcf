"""
Touch Point Processor
=====================
Walks due leads through the 13-touch sequence.

Each cycle:
1. Marks leads that used every touch point without a response as lost
2. Loads open leads whose next touch point is due
3. Hands each one to the delivery handler, then records the touch and
   schedules the next one

A delivery that fails leaves the lead untouched, so it is picked up again
on the next cycle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from loguru import logger

from leadflow.core.touch_point_schedule import (
    calculate_next_touch_point_time,
    should_mark_as_lost,
)
from leadflow.db.job_executions import JobExecutionLedger, JobOutcome, interval_bucket, job_key
from leadflow.db.lead_repository import LeadRepository
from leadflow.db.models import Lead
from leadflow.jobs.periodic import PeriodicTask


JOB_TYPE = "touch_point_processing"


@dataclass
class TouchPointAction:
    lead_id: str
    touch_point_number: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


@dataclass
class ProcessResult:
    processed: int = 0
    marked_lost: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False


TouchPointHandler = Callable[[TouchPointAction], Awaitable[bool]]


class TouchPointProcessor:

    def __init__(self, repo: LeadRepository, tenant_id: str, interval: float = 10, batch_size: int = 50,
                 ledger: Optional[JobExecutionLedger] = None):
        self.repo = repo
        self.tenant_id = tenant_id
        self.interval = interval
        self.batch_size = batch_size
        self.ledger = ledger

        self._handler: Optional[TouchPointHandler] = None
        self._is_processing = False
        self._last_run_at: Optional[datetime] = None
        self._last_result: Optional[ProcessResult] = None
        self._task = PeriodicTask("touch-point-processor", interval, self.process)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def set_touch_point_handler(self, handler: TouchPointHandler) -> None:
        self._handler = handler

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    def get_status(self) -> dict:
        return {
            "is_running": self._task.running,
            "is_processing": self._is_processing,
            "interval_seconds": self.interval,
            "batch_size": self.batch_size,
            "has_handler": self._handler is not None,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "last_result": vars(self._last_result) if self._last_result else None,
        }

    # ── Processing ────────────────────────────────────────────────────────────

    async def process(self) -> ProcessResult:
        """
        Run one cycle now. Returns a skipped result if a cycle is already in
        progress here or another instance already ran this interval.
        """
        if self._is_processing:
            logger.debug("Touch point processing already in progress, skipping")
            return ProcessResult(skipped=True)

        self._is_processing = True
        try:
            if self.ledger is None:
                result = await self._process_once()
            else:
                result = await self._process_with_ledger()
        finally:
            self._is_processing = False

        if not result.skipped:
            self._last_run_at = self.repo.clock()
            self._last_result = result
        return result

    async def _process_with_ledger(self) -> ProcessResult:
        result = ProcessResult()

        async def body() -> JobOutcome:
            cycle = await self._process_once()
            result.processed = cycle.processed
            result.marked_lost = cycle.marked_lost
            result.errors = cycle.errors
            return JobOutcome(
                leads_processed=cycle.processed + cycle.marked_lost,
                invitations_sent=cycle.processed,
                errors=cycle.errors,
                metadata={"marked_lost": cycle.marked_lost},
            )

        key = job_key(JOB_TYPE, self.tenant_id, interval_bucket(self.ledger.clock(), self.interval))
        outcome = await self.ledger.run_once(key, JOB_TYPE, self.tenant_id, body)
        if outcome is None:
            return ProcessResult(skipped=True)
        return result

    async def _process_once(self) -> ProcessResult:
        result = ProcessResult()

        for lead in await self.repo.find_exhausted(self.tenant_id, limit=self.batch_size):
            await self._mark_lost(lead, result)

        due = await self.repo.find_due_for_touch_point(self.tenant_id, limit=self.batch_size)
        if due:
            logger.info(f"{len(due)} leads due for a touch point")

        for lead in due:
            try:
                await self._process_lead(lead, result)
            except Exception as e:
                logger.error(f"Touch point failed for lead {lead.id}: {e}")
                result.errors.append(f"{lead.id}: {e}")

        return result

    async def _process_lead(self, lead: Lead, result: ProcessResult) -> None:
        if should_mark_as_lost(lead.touch_point_count, lead.has_responded):
            await self._mark_lost(lead, result)
            return

        action = TouchPointAction(
            lead_id=str(lead.id),
            touch_point_number=lead.touch_point_count + 1,
            customer_name=lead.customer_name,
            customer_email=lead.customer_email,
            customer_phone=lead.customer_phone,
        )

        if not await self._deliver(action):
            logger.warning(f"Touch point {action.touch_point_number} for lead {lead.id} not delivered, will retry")
            return

        next_at = calculate_next_touch_point_time(lead.created_at, action.touch_point_number)
        updated = await self.repo.record_touch_point(self.tenant_id, lead.id, next_at)
        if updated is None:
            # Customer replied or the lead closed while the message was going out
            logger.info(f"Lead {lead.id} left the sequence during delivery, touch point not recorded")
            return

        result.processed += 1
        if next_at is None:
            logger.info(f"Lead {lead.id} completed all {updated.touch_point_count} touch points")
        else:
            logger.info(
                f"Lead {lead.id} touch point {updated.touch_point_count} sent, next at {next_at.isoformat()}"
            )

    async def _deliver(self, action: TouchPointAction) -> bool:
        if self._handler is None:
            logger.info(
                f"No touch point handler set, logging touch point {action.touch_point_number} "
                f"for lead {action.lead_id}"
            )
            return True
        return await self._handler(action)

    async def _mark_lost(self, lead: Lead, result: ProcessResult) -> None:
        lost = await self.repo.mark_as_lost(self.tenant_id, lead.id)
        if lost is not None:
            result.marked_lost += 1
            logger.info(f"Lead {lead.id} marked lost after {lost.touch_point_count} touch points")
