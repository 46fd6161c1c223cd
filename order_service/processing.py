# order_service/processing.py
import os
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from order_service.adapters import ExternalSystems, record_failure
from order_service.assignment import fetch_order
from order_service.database import database
from order_service.errors import ConflictError, ExternalSystemError, NotFoundError
from order_service.events import publish_event
from order_service.models import order_items, orders
from order_service.orders import record_status
from order_service.schemas import to_naive_utc

load_dotenv()

logger = logging.getLogger("order-service.processing")

AUTO_PROCESS_ORDERS = os.getenv("AUTO_PROCESS_ORDERS", "True").lower() in ("true", "1", "yes")
MAX_RETRY_ATTEMPTS = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "5"))

DELIVERY_WINDOW_HOURS = {"urgent": 2, "high": 6, "medium": 24, "low": 48}

# Orders outside these statuses have been picked up by someone else.
PROCESSABLE_STATUSES = ("pending", "processing")


def calculate_delivery_window(priority: str, now: Optional[datetime] = None) -> Dict[str, str]:
    now = now or datetime.utcnow()
    hours = DELIVERY_WINDOW_HOURS.get(priority, 24)
    return {"start": now.isoformat(), "end": (now + timedelta(hours=hours)).isoformat()}


def calculate_order_value(items) -> float:
    return sum((item["value"] or 0) * item["quantity"] for item in items)


async def _call(system: str, call, timeout: float):
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        raise ExternalSystemError(system, f"no response within {timeout}s")


async def _integrate(order: Dict[str, Any], systems: ExternalSystems):
    """CMS, then WMS, then ROS. References are stored as each step succeeds."""
    order_id = order["id"]
    items = [dict(row) for row in await database.fetch_all(
        order_items.select().where(order_items.c.order_id == order_id)
    )]

    cms = await _call("CMS", systems.cms.validate_order({
        "order_id": order_id,
        "client_id": order["client_id"],
        "order_value": calculate_order_value(items),
        "priority": order["priority"],
        "pickup_address": order["pickup_address"],
        "delivery_address": order["delivery_address"],
    }), systems.timeout)
    await database.execute(
        orders.update().where(orders.c.id == order_id)
        .values(cms_reference=cms.reference_id, contract_id=cms.contract_id)
    )
    logger.info(f"[CMS] Order {order_id} validated ({cms.reference_id})")

    wms = await _call("WMS", systems.wms.create_intake({
        "order_id": order_id,
        "client_id": order["client_id"],
        "items": [
            {
                "description": item["description"],
                "quantity": item["quantity"],
                "weight_kg": item["weight_kg"],
                "dimensions": item["dimensions_cm"],
                "value": item["value"],
                "special_instructions": item["handling_instructions"],
            }
            for item in items
        ],
        "scheduled_pickup_time": order["scheduled_pickup_time"].isoformat() if order["scheduled_pickup_time"] else None,
        "priority": order["priority"],
    }), systems.timeout)
    await database.execute(
        orders.update().where(orders.c.id == order_id)
        .values(wms_reference=wms.reference_id, tracking_number=wms.tracking_number)
    )
    logger.info(f"[WMS] Order {order_id} intake created, tracking {wms.tracking_number}")

    ros = await _call("ROS", systems.ros.optimize_route({
        "order_id": order_id,
        "tracking_number": wms.tracking_number,
        "pickup_address": order["pickup_address"],
        "delivery_address": order["delivery_address"],
        "recipient_name": order["recipient_name"],
        "recipient_phone": order["recipient_phone"],
        "priority": order["priority"],
        "delivery_window": calculate_delivery_window(order["priority"]),
    }), systems.timeout)
    await database.execute(
        orders.update().where(orders.c.id == order_id)
        .values(ros_reference=ros.reference_id, estimated_delivery_time=to_naive_utc(ros.estimated_delivery_time))
    )
    logger.info(f"[ROS] Order {order_id} routed, ETA {ros.estimated_delivery_time}")


async def process_order_with_external_systems(order_id: str, systems: ExternalSystems) -> bool:
    """
    Run the order through CMS, WMS and ROS, retrying failed attempts.

    Ends with the order in `pickup_scheduled` (True) or `failed` (False).
    Never raises: it runs after the creating request has already returned.
    """
    try:
        return await _process(order_id, systems)
    except Exception:
        logger.exception(f"[PROCESSING] Unexpected failure while processing order {order_id}")
        return False


async def _process(order_id: str, systems: ExternalSystems) -> bool:
    last_error: Optional[Exception] = None

    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        order = await fetch_order(order_id)
        if not order:
            logger.warning(f"[PROCESSING] Order {order_id} not found")
            return False
        if order["status"] not in PROCESSABLE_STATUSES:
            logger.info(f"[PROCESSING] Order {order_id} is {order['status']}, skipping external systems")
            return False

        logger.info(f"[PROCESSING] Order {order_id} attempt {attempt}/{MAX_RETRY_ATTEMPTS}")
        if order["status"] == "pending":
            await record_status(
                order_id, "processing", "Starting external system integration",
                only_from=PROCESSABLE_STATUSES,
            )

        try:
            await _integrate(dict(order), systems)
        except ExternalSystemError as e:
            record_failure(e)
            last_error = e
            logger.warning(f"[PROCESSING] Order {order_id} attempt {attempt} failed: {e.message}")
        else:
            written = await record_status(
                order_id, "pickup_scheduled", "All external systems integrated successfully",
                only_from=("processing",),
            )
            if written is None:
                logger.info(f"[PROCESSING] Order {order_id} moved on during integration, leaving it as is")
                return False

            await publish_event("ORDER_PROCESSING_COMPLETED", {
                "order_id": order_id,
                "status": "pickup_scheduled",
                "attempts": attempt,
            })
            logger.info(f"[PROCESSING] Order {order_id} processed by all external systems")
            return True

        if attempt < MAX_RETRY_ATTEMPTS:
            await record_status(
                order_id, "processing",
                f"Retrying external system integration (attempt {attempt + 1})",
                only_from=PROCESSABLE_STATUSES,
            )
            await asyncio.sleep(RETRY_DELAY_SECONDS)

    error = last_error.message if isinstance(last_error, ExternalSystemError) else str(last_error)
    written = await record_status(
        order_id, "failed", f"Order processing failed after maximum retries: {error}",
        only_from=PROCESSABLE_STATUSES,
    )
    if written is not None:
        await publish_event("ORDER_PROCESSING_FAILED", {
            "order_id": order_id,
            "status": "failed",
            "error": error,
            "attempts": MAX_RETRY_ATTEMPTS,
        })
    logger.error(f"[PROCESSING] Order {order_id} failed permanently: {error}")
    return False


async def retry_failed_order(order_id: str, systems: ExternalSystems, actor: Dict[str, Any]) -> bool:
    order = await fetch_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if order["status"] != "failed":
        raise ConflictError(f"Only failed orders can be retried (current status: {order['status']})")

    await record_status(
        order_id, "pending", "Manual retry initiated by admin",
        actor=actor, only_from=("failed",),
    )
    logger.info(f"[TRACE {actor.get('trace_id')}] Retrying processing of order {order_id}")
    return await process_order_with_external_systems(order_id, systems)
