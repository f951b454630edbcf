"""
ShopMonkey webhook
==================
Order events pushed by ShopMonkey. Always answers 200 so ShopMonkey does
not retry; failures are logged and reported in the body.
"""

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel

from leadflow.core.touch_point_schedule import utcnow
from leadflow.services import Services, get_services


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class ShopMonkeyWebhookPayload(BaseModel):
    event: str = ""
    # Anything but an order object is treated as "not a website lead"
    data: Any = None


@router.get("/health")
async def webhook_health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@router.post("/shopmonkey/order")
async def shopmonkey_order(request: Request, services: Services = Depends(get_services)):
    started = time.monotonic()
    adapter = services.adapter

    try:
        payload = ShopMonkeyWebhookPayload.model_validate(await request.json())
    except ValueError as e:
        logger.warning(f"Malformed webhook payload: {e}")
        return {"received": True, "processed": False, "reason": "Invalid payload"}

    order = payload.data if isinstance(payload.data, dict) else {}

    try:
        logger.info(
            f"Webhook {payload.event or '<no event>'} for order {order.get('id')} "
            f"(workflow {order.get('workflowStatusId')}, status {order.get('status')})"
        )

        if not order.get("id") or not adapter.is_website_lead_event(order):
            logger.info(f"Order {order.get('id')} is not a website lead, skipping")
            return {"received": True, "processed": False, "reason": "Not a website lead"}

        # Lookups log and return None on failure; the lead is stored with what we have
        customer = await adapter.get_customer(order.get("customerId"))
        vehicle = await adapter.get_vehicle(order.get("vehicleId"))

        data = adapter.build_lead_data(order, customer, vehicle)
        result = await services.ingestor.ingest(data)
    except Exception:
        logger.exception(f"Webhook processing failed for order {order.get('id')}")
        return {"received": True, "processed": False, "error": "Processing failed"}

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Order {order.get('id')} -> lead {result.lead_id} "
        f"({'created' if result.created else 'updated'}, {duration_ms}ms)"
    )
    return {
        "received": True,
        "processed": True,
        "lead_id": result.lead_id,
        "created": result.created,
        "has_contact_info": result.has_contact_info,
    }


@router.post("/test")
async def webhook_test(body: Dict[str, Any]):
    logger.info(f"Test webhook received: {body}")
    return {"message": "Test webhook received", "body": body}
