"""
ShopMonkey CRM Adapter
======================
Reads work orders, customers and vehicles, and decides which orders are
website leads. Records are plain dicts in ShopMonkey's camelCase shape.
"""

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from leadflow.db.lead_repository import CreateLeadData


CRM_SOURCE = "shopmonkey"
SERVICE_TYPE = "window-tinting"

# Workflow status ids ("swim lanes") in the shop's ShopMonkey account
WORKFLOW_STATUS = {
    "WEBSITE_LEADS": "619813fb2c9c3e8ce527be48",
    "INVOICED": "619813fb2c9c3e7f6a27be4b",
    "APPOINTMENTS": "65fb14d76ee665db4d8d2ce0",
}


class ShopMonkeyError(Exception):
    pass


class ShopMonkeyAdapter:
    """ShopMonkey REST API client."""

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.shopmonkey.cloud/v3",
                 demo_mode: bool = True, demo_mode_emails: Optional[List[str]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.demo_mode = demo_mode
        self.demo_mode_emails = {email.lower() for email in (demo_mode_emails or [])}
        self._client = client

        if not self.api_key:
            logger.warning("No ShopMonkey API key provided, CRM requests will be rejected")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=self._get_headers(), params=params)
            else:
                async with httpx.AsyncClient(timeout=20) as client:
                    response = await client.get(url, headers=self._get_headers(), params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ShopMonkeyError(
                f"ShopMonkey API error: {e.response.status_code} {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise ShopMonkeyError(f"ShopMonkey request failed: {e}") from e
        return response.json()

    # ── API calls ─────────────────────────────────────────────────────────────

    async def fetch_orders(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"limit": limit} if limit else None
        response = await self._request("/order", params=params)
        return response.get("data", [])

    async def get_customer(self, customer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not customer_id:
            return None
        try:
            response = await self._request(f"/customer/{customer_id}")
            return response.get("data")
        except ShopMonkeyError as e:
            logger.error(f"Customer lookup failed for {customer_id}: {e}")
            return None

    async def get_vehicle(self, vehicle_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not vehicle_id:
            return None
        try:
            response = await self._request(f"/vehicle/{vehicle_id}")
            return response.get("data")
        except ShopMonkeyError as e:
            logger.error(f"Vehicle lookup failed for {vehicle_id}: {e}")
            return None

    # ── Field extraction ──────────────────────────────────────────────────────

    @staticmethod
    def extract_customer_email(customer: Optional[Dict[str, Any]]) -> Optional[str]:
        emails = (customer or {}).get("emails") or []
        if not emails:
            return None
        primary = next((e for e in emails if e.get("primary")), None)
        return (primary or emails[0]).get("email") or None

    @staticmethod
    def extract_customer_phone(customer: Optional[Dict[str, Any]]) -> Optional[str]:
        phones = (customer or {}).get("phoneNumbers") or []
        if not phones:
            return None
        mobile = next((p for p in phones if p.get("type") == "Mobile"), None)
        primary = next((p for p in phones if p.get("primary")), None)
        return (mobile or primary or phones[0]).get("number") or None

    @staticmethod
    def extract_customer_name(customer: Optional[Dict[str, Any]], fallback: Optional[str] = None) -> Optional[str]:
        parts = [(customer or {}).get("firstName"), (customer or {}).get("lastName")]
        name = " ".join(part for part in parts if part)
        return name or fallback or None

    # ── Classification ────────────────────────────────────────────────────────

    @staticmethod
    def is_website_lead(order: Dict[str, Any]) -> bool:
        """
        A website lead is an order that:
        1. Sits in the Website Leads swim lane
        2. Is still an unauthorized estimate
        3. Has never been messaged through ShopMonkey
        4. Was generated by the website quote form ("New Quote ...")
        """
        return (
            order.get("workflowStatusId") == WORKFLOW_STATUS["WEBSITE_LEADS"]
            and order.get("status") == "Estimate"
            and order.get("authorized") is False
            and order.get("messageCount") == 0
            and _is_quote_form(order.get("name"))
        )

    @staticmethod
    def is_website_lead_event(order: Dict[str, Any]) -> bool:
        """
        Webhook variant: order events can also arrive from the Appointments
        lane, so accept it too as long as nothing is actually booked, invoiced
        or paid.
        """
        return (
            order.get("workflowStatusId") in (WORKFLOW_STATUS["WEBSITE_LEADS"], WORKFLOW_STATUS["APPOINTMENTS"])
            and order.get("status") == "Estimate"
            and order.get("authorized") is False
            and order.get("messageCount") == 0
            and _is_quote_form(order.get("name"))
            and not order.get("appointmentDates")
            and order.get("invoiced") is False
            and order.get("paid") is False
        )

    @staticmethod
    def is_window_tinting_order(order: Dict[str, Any]) -> bool:
        text = " ".join(
            value for value in (order.get("coalescedName"), order.get("complaint"), order.get("name"))
            if isinstance(value, str)
        ).lower()
        return "tint" in text or "window" in text

    def is_demo_mode_lead(self, customer: Optional[Dict[str, Any]]) -> bool:
        email = self.extract_customer_email(customer)
        return bool(email) and email.lower() in self.demo_mode_emails

    # ── Lead building ─────────────────────────────────────────────────────────

    def build_lead_data(self, order: Dict[str, Any], customer: Optional[Dict[str, Any]],
                        vehicle: Optional[Dict[str, Any]]) -> CreateLeadData:
        number = order.get("number")
        return CreateLeadData(
            crm_source=CRM_SOURCE,
            crm_work_order_id=str(order["id"]),
            crm_work_order_number=str(number) if number is not None else order.get("name"),
            service_type=SERVICE_TYPE,
            service_name=order.get("coalescedName") or order.get("name"),
            service_specifications=order.get("complaint"),
            estimated_cost_cents=order.get("totalCostCents"),
            location_id=order.get("locationId"),
            customer_external_id=order.get("customerId"),
            customer_name=self.extract_customer_name(customer, order.get("generatedCustomerName")),
            customer_email=self.extract_customer_email(customer),
            customer_phone=self.extract_customer_phone(customer),
            vehicle_external_id=order.get("vehicleId"),
            vehicle_year=(vehicle or {}).get("year"),
            vehicle_make=(vehicle or {}).get("make"),
            vehicle_model=(vehicle or {}).get("model"),
            vehicle_description=order.get("generatedVehicleName"),
            crm_metadata={
                **order,
                "fetched_customer_data": customer is not None,
                "fetched_vehicle_data": vehicle is not None,
            },
        )

    async def fetch_website_leads(self, limit: int = 500) -> List[CreateLeadData]:
        """
        Qualified website leads from the most recent orders.
        In demo mode only customers on the demo list get through.
        """
        orders = await self.fetch_orders(limit=limit)
        leads = []

        for order in orders:
            if not self.is_website_lead(order) or not self.is_window_tinting_order(order):
                continue

            customer = await self.get_customer(order.get("customerId"))
            if self.demo_mode and not self.is_demo_mode_lead(customer):
                continue

            vehicle = await self.get_vehicle(order.get("vehicleId"))
            leads.append(self.build_lead_data(order, customer, vehicle))

        logger.info(f"Found {len(leads)} website leads in {len(orders)} orders")
        return leads


def _is_quote_form(name: Any) -> bool:
    """Orders created by the website quote form are named "New Quote ..." """
    return isinstance(name, str) and name.startswith("New Quote")
