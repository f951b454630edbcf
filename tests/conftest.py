from datetime import datetime, timedelta, timezone

import httpx
import pytest

from leadflow.db.database import create_engine, create_session_factory, init_db
from leadflow.db.job_executions import JobExecutionLedger
from leadflow.db.lead_repository import CreateLeadData, LeadRepository


T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    # A file database so concurrent sessions get their own connections
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'leadflow.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def repo(session_factory, clock):
    return LeadRepository(session_factory, clock=clock)


@pytest.fixture
def ledger(session_factory, clock):
    return JobExecutionLedger(session_factory, clock=clock)


def make_lead_data(work_order_id: str = "wo-1", **overrides) -> CreateLeadData:
    fields = {
        "crm_source": "shopmonkey",
        "crm_work_order_id": work_order_id,
        "service_type": "window-tinting",
        "crm_work_order_number": "1001",
        "customer_name": "Jane Doe",
        "customer_email": "jane@example.com",
        "customer_phone": "+15555550100",
        "service_name": "New Quote - Window Tint",
    }
    fields.update(overrides)
    return CreateLeadData(**fields)


# ── ShopMonkey fixtures ───────────────────────────────────────────────────────

CUSTOMERS = {
    "c1": {
        "id": "c1",
        "firstName": "Jane",
        "lastName": "Doe",
        "emails": [{"email": "jane@example.com", "primary": True}],
        "phoneNumbers": [{"number": "+15555550100", "type": "Mobile", "primary": True}],
    },
    "c2": {
        "id": "c2",
        "firstName": "Bob",
        "lastName": "Smith",
        "emails": [{"email": "bob@example.com", "primary": True}],
        "phoneNumbers": [],
    },
}

VEHICLES = {
    "v1": {"id": "v1", "year": 2021, "make": "Toyota", "model": "Camry"},
}


def website_order(order_id: str, customer_id: str = "c1", **overrides) -> dict:
    order = {
        "id": order_id,
        "number": 1001,
        "name": "New Quote - Window Tint",
        "coalescedName": "Window Tint",
        "workflowStatusId": "619813fb2c9c3e8ce527be48",
        "status": "Estimate",
        "authorized": False,
        "messageCount": 0,
        "invoiced": False,
        "paid": False,
        "appointmentDates": [],
        "customerId": customer_id,
        "vehicleId": "v1",
        "locationId": "loc-1",
        "generatedCustomerName": "Web Customer",
        "generatedVehicleName": "2021 Toyota Camry",
    }
    order.update(overrides)
    return order


def shopmonkey_transport(orders, fail_orders: bool = False) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/order"):
            if fail_orders:
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json={"data": orders})
        if "/customer/" in path:
            customer = CUSTOMERS.get(path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"data": customer}) if customer else httpx.Response(404)
        if "/vehicle/" in path:
            vehicle = VEHICLES.get(path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"data": vehicle}) if vehicle else httpx.Response(404)
        return httpx.Response(404)

    return httpx.MockTransport(handler)
