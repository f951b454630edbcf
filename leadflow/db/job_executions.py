"""
Job Execution Ledger
====================
"This job ran for this key" records. The unique job_key makes the database
reject a second start for the same key, so overlapping scheduler ticks or
several service instances run a given job body at most once.
"""

import traceback
import uuid as _uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from leadflow.core.touch_point_schedule import utcnow
from leadflow.db.models import JobExecution


class JobStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


@dataclass
class JobOutcome:
    leads_processed: int = 0
    leads_created: int = 0
    invitations_sent: int = 0
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None

    @property
    def status(self) -> str:
        if self.error is not None:
            return JobStatus.FAILED
        if self.errors:
            return JobStatus.COMPLETED_WITH_ERRORS
        return JobStatus.COMPLETED


def job_key(job_type: str, tenant_id: str, bucket: str) -> str:
    return f"{job_type}:{tenant_id}:{bucket}"


def daily_bucket(now: datetime) -> str:
    return now.date().isoformat()


def interval_bucket(now: datetime, seconds: float) -> str:
    """Start of the fixed-width window containing `now`, as ISO text"""
    step = max(int(seconds), 1)
    start = int(now.timestamp()) // step * step
    return datetime.fromtimestamp(start, tz=now.tzinfo).isoformat()


class JobExecutionLedger:

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def begin_job(self, job_key: str, job_type: str, tenant_id: Optional[str]) -> Optional[JobExecution]:
        """Record a job start. None means this key already ran or is running."""
        async with self.session_factory() as session:
            execution = JobExecution(
                id=_uuid.uuid4(),
                tenant_id=tenant_id,
                job_type=job_type,
                job_key=job_key,
                status=JobStatus.RUNNING,
                started_at=self.clock(),
            )
            session.add(execution)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return execution

    async def complete_job(self, execution_id, outcome: JobOutcome) -> Optional[JobExecution]:
        """Terminal update for a run; writes the same fields if repeated."""
        now = self.clock()
        async with self.session_factory() as session:
            execution = await session.get(JobExecution, execution_id)
            if execution is None:
                logger.warning(f"Job execution {execution_id} not found, cannot complete")
                return None

            duration_ms = int((now - execution.started_at).total_seconds() * 1000)
            values = {
                "status": outcome.status,
                "completed_at": now,
                "duration_ms": duration_ms,
                "leads_processed": outcome.leads_processed,
                "leads_created": outcome.leads_created,
                "invitations_sent": outcome.invitations_sent,
                "errors_count": len(outcome.errors) + (1 if outcome.error is not None else 0),
                "details": outcome.metadata or None,
            }
            if outcome.error is not None:
                values["error_message"] = str(outcome.error)
                values["error_stack"] = "".join(
                    traceback.format_exception(type(outcome.error), outcome.error, outcome.error.__traceback__)
                )
            elif outcome.errors:
                values["error_message"] = "; ".join(outcome.errors)[:2000]

            await session.execute(
                update(JobExecution)
                .where(JobExecution.id == execution_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            await session.refresh(execution)
            return execution

    async def run_once(self, job_key: str, job_type: str, tenant_id: Optional[str],
                       body: Callable[[], Awaitable[JobOutcome]]) -> Optional[JobOutcome]:
        """
        Run `body` unless `job_key` was already claimed.

        Returns the body's outcome, or None when the run was skipped. A body
        exception is recorded as a failed execution and re-raised.
        """
        execution = await self.begin_job(job_key, job_type, tenant_id)
        if execution is None:
            logger.info(f"Job {job_key} already ran or is running, skipping")
            return None

        try:
            outcome = await body()
        except Exception as exc:
            await self.complete_job(execution.id, JobOutcome(error=exc))
            logger.error(f"Job {job_key} failed: {exc}")
            raise

        await self.complete_job(execution.id, outcome)
        logger.info(f"Job {job_key} finished with status {outcome.status}")
        return outcome

    async def find_by_key(self, job_key: str) -> Optional[JobExecution]:
        async with self.session_factory() as session:
            result = await session.execute(select(JobExecution).where(JobExecution.job_key == job_key))
            return result.scalar_one_or_none()

    async def recent(self, job_type: Optional[str] = None, limit: int = 20) -> list[JobExecution]:
        async with self.session_factory() as session:
            query = select(JobExecution).order_by(JobExecution.started_at.desc()).limit(limit)
            if job_type:
                query = query.where(JobExecution.job_type == job_type)
            result = await session.execute(query)
            return list(result.scalars().all())
