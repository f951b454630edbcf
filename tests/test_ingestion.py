import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import T0, make_lead_data, shopmonkey_transport, website_order
from leadflow.crm.shopmonkey import ShopMonkeyAdapter, ShopMonkeyError
from leadflow.ingestion.pipeline import LeadIngestor, normalize_contact
from leadflow.ingestion.polling import LeadPollingService
from leadflow.jobs.touch_point_processor import TouchPointProcessor


class TestNormalizeContact:

    def test_trims_and_lowercases_email(self):
        data = normalize_contact(make_lead_data(customer_email="  Jane@Example.COM "))
        assert data.customer_email == "jane@example.com"

    def test_drops_malformed_email(self):
        data = normalize_contact(make_lead_data(customer_email="not an email"))
        assert data.customer_email is None
        assert data.customer_phone == "+15555550100"

    def test_blank_phone_is_none(self):
        assert normalize_contact(make_lead_data(customer_phone="   ")).customer_phone is None


class TestLeadIngestor:

    async def test_new_lead_gets_first_touch_point(self, repo):
        result = await LeadIngestor(repo, "t1").ingest(make_lead_data())

        assert result.created is True
        assert result.scheduled is True
        assert result.has_contact_info is True
        assert result.lead.next_touch_point_at == T0
        assert result.lead.processed_at == T0
        assert await repo.find_unprocessed("t1") == []

    async def test_late_ingest_is_due_immediately(self, repo, clock):
        clock.advance(hours=3)

        result = await LeadIngestor(repo, "t1").ingest(make_lead_data())

        assert result.lead.next_touch_point_at == T0 + timedelta(hours=3)
        assert [l.id for l in await repo.find_due_for_touch_point("t1")] == [result.lead.id]

    async def test_contactless_lead_is_admitted_but_not_scheduled(self, repo):
        result = await LeadIngestor(repo, "t1").ingest(
            make_lead_data(customer_email=None, customer_phone=None)
        )

        assert result.created is True
        assert result.scheduled is False
        assert result.has_contact_info is False
        assert result.lead.next_touch_point_at is None
        assert [l.id for l in await repo.find_unprocessed("t1")] == [result.lead.id]

    async def test_reingest_does_not_reschedule(self, repo, clock):
        ingestor = LeadIngestor(repo, "t1")
        first = await ingestor.ingest(make_lead_data())
        await TouchPointProcessor(repo, "t1").process()
        clock.advance(hours=1)

        second = await ingestor.ingest(make_lead_data(customer_name="Jane Q. Doe"))

        assert second.created is False
        assert second.lead.id == first.lead.id
        assert second.lead.customer_name == "Jane Q. Doe"
        assert second.lead.touch_point_count == 1
        assert second.lead.next_touch_point_at == T0 + timedelta(days=1)

    async def test_concurrent_ingest_schedules_once(self, repo):
        ingestor = LeadIngestor(repo, "t1")

        results = await asyncio.gather(ingestor.ingest(make_lead_data()), ingestor.ingest(make_lead_data()))

        assert sorted(r.created for r in results) == [False, True]
        events = await repo.history("t1", results[0].lead.id)
        assert [e.event for e in events].count("TOUCH_POINT_SCHEDULED") == 1


@pytest.fixture
async def make_poller(repo):
    clients = []

    def build(orders, ledger=None, fail_orders=False, demo_mode=False):
        client = httpx.AsyncClient(transport=shopmonkey_transport(orders, fail_orders))
        clients.append(client)
        adapter = ShopMonkeyAdapter("sm-key", demo_mode=demo_mode, demo_mode_emails=["jane@example.com"],
                                    client=client)
        return LeadPollingService(adapter, LeadIngestor(repo, "t1"), "t1", interval=30, ledger=ledger)

    yield build

    for client in clients:
        await client.aclose()


class TestLeadPollingService:

    async def test_poll_imports_website_leads(self, make_poller, repo):
        poller = make_poller([
            website_order("o1", customer_id="c1"),
            website_order("o2", customer_id="c2"),
            website_order("o3", customer_id="c1", name="Oil change"),
        ])

        result = await poller.poll()

        assert result.new_leads_imported == 2
        assert result.existing_leads_updated == 0
        assert result.errors == []
        leads = await repo.find_by_tenant("t1")
        assert {l.crm_work_order_id for l in leads} == {"o1", "o2"}

    async def test_second_poll_updates(self, make_poller):
        poller = make_poller([website_order("o1", customer_id="c1")])

        await poller.poll()
        result = await poller.poll()

        assert result.new_leads_imported == 0
        assert result.existing_leads_updated == 1

    async def test_demo_mode_filters_customers(self, make_poller, repo):
        poller = make_poller(
            [website_order("o1", customer_id="c1"), website_order("o2", customer_id="c2")],
            demo_mode=True,
        )

        result = await poller.poll()

        assert result.new_leads_imported == 1
        [lead] = await repo.find_by_tenant("t1")
        assert lead.customer_email == "jane@example.com"

    async def test_crm_failure_propagates(self, make_poller):
        poller = make_poller([], fail_orders=True)

        with pytest.raises(ShopMonkeyError):
            await poller.poll()
        assert poller.get_status()["is_polling"] is False

    async def test_ledger_skips_same_interval(self, make_poller, ledger):
        orders = [website_order("o1", customer_id="c1")]
        first = await make_poller(orders, ledger=ledger).poll()
        second = await make_poller(orders, ledger=ledger).poll()

        assert first.new_leads_imported == 1
        assert second.skipped is True
        [execution] = await ledger.recent(job_type="lead_poll")
        assert execution.leads_created == 1

    async def test_status(self, make_poller, clock):
        poller = make_poller([website_order("o1", customer_id="c1")])
        await poller.poll()

        status = poller.get_status()

        assert status["last_poll_at"] == clock().isoformat()
        assert status["last_result"]["new_leads_imported"] == 1
