"""
Lead Polling Service
====================
Pulls website leads from the CRM on a fixed interval and feeds them to the
ingestor. One bad work order never aborts the rest of the batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger

from leadflow.crm.shopmonkey import ShopMonkeyAdapter
from leadflow.db.job_executions import JobExecutionLedger, JobOutcome, interval_bucket, job_key
from leadflow.ingestion.pipeline import LeadIngestor
from leadflow.jobs.periodic import PeriodicTask


JOB_TYPE = "lead_poll"


@dataclass
class PollResult:
    new_leads_imported: int = 0
    existing_leads_updated: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False


class LeadPollingService:

    def __init__(self, adapter: ShopMonkeyAdapter, ingestor: LeadIngestor, tenant_id: str,
                 interval: float = 30, ledger: Optional[JobExecutionLedger] = None, fetch_limit: int = 500):
        self.adapter = adapter
        self.ingestor = ingestor
        self.tenant_id = tenant_id
        self.interval = interval
        self.ledger = ledger
        self.fetch_limit = fetch_limit

        self._is_polling = False
        self._last_poll_at: Optional[datetime] = None
        self._last_result: Optional[PollResult] = None
        self._task = PeriodicTask("lead-polling", interval, self.poll)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    def get_status(self) -> dict:
        return {
            "is_running": self._task.running,
            "is_polling": self._is_polling,
            "interval_seconds": self.interval,
            "last_poll_at": self._last_poll_at.isoformat() if self._last_poll_at else None,
            "last_result": vars(self._last_result) if self._last_result else None,
        }

    # ── Polling ───────────────────────────────────────────────────────────────

    async def poll(self) -> PollResult:
        """
        One polling cycle. Returns a skipped result if a cycle is already in
        progress in this process, or another instance already ran this
        interval. CRM and store failures propagate.
        """
        if self._is_polling:
            logger.debug("Poll already in progress, skipping")
            return PollResult(skipped=True)

        self._is_polling = True
        try:
            if self.ledger is None:
                result = await self._poll_once()
            else:
                result = await self._poll_with_ledger()
        finally:
            self._is_polling = False

        if not result.skipped:
            self._last_poll_at = self.ingestor.repo.clock()
            self._last_result = result
        return result

    async def _poll_with_ledger(self) -> PollResult:
        result = PollResult()

        async def body() -> JobOutcome:
            polled = await self._poll_once()
            result.new_leads_imported = polled.new_leads_imported
            result.existing_leads_updated = polled.existing_leads_updated
            result.errors = polled.errors
            return JobOutcome(
                leads_processed=polled.new_leads_imported + polled.existing_leads_updated,
                leads_created=polled.new_leads_imported,
                errors=polled.errors,
            )

        key = job_key(JOB_TYPE, self.tenant_id, interval_bucket(self.ledger.clock(), self.interval))
        outcome = await self.ledger.run_once(key, JOB_TYPE, self.tenant_id, body)
        if outcome is None:
            return PollResult(skipped=True)
        return result

    async def _poll_once(self) -> PollResult:
        result = PollResult()
        leads = await self.adapter.fetch_website_leads(limit=self.fetch_limit)

        for data in leads:
            try:
                ingested = await self.ingestor.ingest(data)
            except Exception as e:
                message = f"{data.crm_source}:{data.crm_work_order_id}: {e}"
                logger.error(f"Failed to ingest lead {message}")
                result.errors.append(message)
                continue

            if ingested.created:
                result.new_leads_imported += 1
            else:
                result.existing_leads_updated += 1

        logger.info(
            f"Poll complete: {result.new_leads_imported} new, "
            f"{result.existing_leads_updated} updated, {len(result.errors)} errors"
        )
        return result
