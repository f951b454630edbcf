"""
Service wiring
==============
Builds every long-lived collaborator from settings, once per process.
The API reads them from `app.state.services`.
"""

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from leadflow.config import Settings
from leadflow.crm.shopmonkey import ShopMonkeyAdapter
from leadflow.db.database import create_engine, create_session_factory
from leadflow.db.job_executions import JobExecutionLedger
from leadflow.db.lead_repository import LeadRepository
from leadflow.ingestion.pipeline import LeadIngestor
from leadflow.ingestion.polling import LeadPollingService
from leadflow.jobs.touch_point_processor import TouchPointProcessor
from leadflow.messaging.delivery import build_channels, build_delivery_handler


@dataclass
class Services:
    settings: Settings
    repo: LeadRepository
    ledger: JobExecutionLedger
    adapter: ShopMonkeyAdapter
    ingestor: LeadIngestor
    poller: LeadPollingService
    processor: TouchPointProcessor
    engine: AsyncEngine | None = None

    @property
    def tenant_id(self) -> str:
        return self.settings.tenant_id


def build_services(settings: Settings, session_factory=None) -> Services:
    engine = None
    if session_factory is None:
        engine = create_engine(settings.database_url, echo=settings.sql_echo)
        session_factory = create_session_factory(engine)

    repo = LeadRepository(session_factory)
    ledger = JobExecutionLedger(session_factory)
    adapter = ShopMonkeyAdapter(
        api_key=settings.shopmonkey_api_key,
        base_url=settings.shopmonkey_base_url,
        demo_mode=settings.demo_mode,
        demo_mode_emails=settings.demo_mode_emails,
    )
    ingestor = LeadIngestor(repo, settings.tenant_id)
    poller = LeadPollingService(
        adapter, ingestor, settings.tenant_id,
        interval=settings.poll_interval_seconds,
        ledger=ledger,
    )
    processor = TouchPointProcessor(
        repo, settings.tenant_id,
        interval=settings.touch_point_interval_seconds,
        batch_size=settings.touch_point_batch_size,
        ledger=ledger,
    )
    email_channel, sms_channel = build_channels(settings)
    processor.set_touch_point_handler(build_delivery_handler(settings, email_channel, sms_channel))

    return Services(
        settings=settings,
        repo=repo,
        ledger=ledger,
        adapter=adapter,
        ingestor=ingestor,
        poller=poller,
        processor=processor,
        engine=engine,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
