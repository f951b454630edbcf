import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0
from leadflow.db.job_executions import (
    JobOutcome,
    JobStatus,
    daily_bucket,
    interval_bucket,
    job_key,
)


class TestKeys:

    def test_job_key(self):
        assert job_key("lead_poll", "t1", "2025-03-01") == "lead_poll:t1:2025-03-01"

    def test_daily_bucket(self):
        assert daily_bucket(T0) == "2025-03-01"

    def test_interval_bucket(self):
        start = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        assert interval_bucket(start + timedelta(seconds=9), 10) == interval_bucket(start, 10)
        assert interval_bucket(start + timedelta(seconds=10), 10) != interval_bucket(start, 10)
        assert interval_bucket(start + timedelta(seconds=7), 10) == start.isoformat()


class TestLedger:

    async def test_begin_is_unique_per_key(self, ledger):
        first = await ledger.begin_job("k1", "lead_poll", "t1")
        second = await ledger.begin_job("k1", "lead_poll", "t1")

        assert first is not None
        assert first.status == JobStatus.RUNNING
        assert second is None

    async def test_complete_job(self, ledger, clock):
        execution = await ledger.begin_job("k1", "lead_poll", "t1")
        clock.advance(seconds=2)

        done = await ledger.complete_job(execution.id, JobOutcome(leads_processed=4, leads_created=3))

        assert done.status == JobStatus.COMPLETED
        assert done.duration_ms == 2000
        assert done.leads_created == 3
        assert done.completed_at == T0 + timedelta(seconds=2)

    async def test_complete_with_errors(self, ledger):
        execution = await ledger.begin_job("k1", "touch_point_processing", "t1")

        done = await ledger.complete_job(execution.id, JobOutcome(errors=["lead-1: boom"]))

        assert done.status == JobStatus.COMPLETED_WITH_ERRORS
        assert done.errors_count == 1
        assert done.error_message == "lead-1: boom"

    async def test_run_once_runs_body_once(self, ledger):
        calls = []

        async def body():
            calls.append(1)
            return JobOutcome(leads_processed=1)

        first = await ledger.run_once("k1", "lead_poll", "t1", body)
        second = await ledger.run_once("k1", "lead_poll", "t1", body)

        assert first.leads_processed == 1
        assert second is None
        assert calls == [1]

    async def test_concurrent_run_once(self, ledger):
        calls = []

        async def body():
            calls.append(1)
            await asyncio.sleep(0)
            return JobOutcome()

        results = await asyncio.gather(*[ledger.run_once("k1", "lead_poll", "t1", body) for _ in range(4)])

        assert len(calls) == 1
        assert sum(1 for r in results if r is not None) == 1

    async def test_failed_body_is_recorded_and_raised(self, ledger):
        async def body():
            raise RuntimeError("crm down")

        with pytest.raises(RuntimeError):
            await ledger.run_once("k1", "lead_poll", "t1", body)

        execution = await ledger.find_by_key("k1")
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "crm down"
        assert "RuntimeError" in execution.error_stack

    async def test_recent(self, ledger, clock):
        async def body():
            return JobOutcome()

        await ledger.run_once("a", "lead_poll", "t1", body)
        clock.advance(seconds=1)
        await ledger.run_once("b", "touch_point_processing", "t1", body)

        assert [e.job_key for e in await ledger.recent()] == ["b", "a"]
        assert [e.job_key for e in await ledger.recent(job_type="lead_poll")] == ["a"]
