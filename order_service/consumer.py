# order_service/consumer.py
import os
import json
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import aioboto3
from dotenv import load_dotenv

from order_service.adapters import ExternalSystems
from order_service.assignment import fetch_order
from order_service.database import database
from order_service.events import publish_event
from order_service.models import processed_events
from order_service.orders import record_status
from order_service.policy import can_transition
from order_service.processing import process_order_with_external_systems

load_dotenv()

logger = logging.getLogger("order-service.consumer")

USE_AWS = os.getenv("USE_AWS", "False").lower() in ("true", "1", "yes")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
ORDER_COMMANDS_QUEUE_URL = os.getenv("ORDER_COMMANDS_QUEUE_URL")

session = aioboto3.Session()


# -------------------------------
# Event Parser
# -------------------------------
def parse_message(body: str):
    """
    Normalize an SQS / SNS / EventBridge body to (event_type, payload, event_id).
    """
    try:
        msg = json.loads(body)
    except ValueError:
        return None, {}, None

    # SNS fan-out wraps the original message
    if isinstance(msg, dict) and "Message" in msg:
        try:
            msg = json.loads(msg["Message"])
        except ValueError:
            pass

    if not isinstance(msg, dict):
        return None, {}, None

    event_type = msg.get("type") or msg.get("event_type") or msg.get("detail-type")
    payload = msg.get("data") or msg.get("payload") or msg.get("detail") or msg
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            payload = {}
    if not isinstance(payload, dict):
        payload = {}

    event_id = msg.get("event_id") or msg.get("id") or payload.get("event_id")
    return (
        event_type.upper() if isinstance(event_type, str) else None,
        payload,
        str(event_id) if event_id else None,
    )


async def mark_event_processed(event_id: Optional[str], event_type: str, source_service: str) -> bool:
    """Idempotency ledger. False when the event was already handled."""
    if not event_id:
        return True

    existing = await database.fetch_one(
        processed_events.select().where(processed_events.c.event_id == event_id)
    )
    if existing:
        logger.info(f"[SKIP] Duplicate {event_type} ({event_id})")
        return False

    await database.execute(processed_events.insert().values(
        event_id=event_id,
        event_type=event_type,
        source_service=source_service,
        processed_at=datetime.utcnow(),
    ))
    return True


# -------------------------------
# Handlers
# -------------------------------
async def apply_external_status(order_id: Optional[str], status: str, notes: str, source: str) -> bool:
    """Apply a status reported by another system if the transition table allows it."""
    if not order_id:
        logger.warning(f"[{source}] Missing order_id in payload")
        return False

    order = await fetch_order(order_id)
    if not order:
        logger.warning(f"[{source}] Order {order_id} not found")
        return False

    if not can_transition(order["status"], status):
        logger.warning(f"[{source}] Dropping {order['status']} -> {status} for order {order_id}")
        return False

    previous = await record_status(order_id, status, notes, only_from=(order["status"],))
    if previous is None:
        logger.warning(f"[{source}] Order {order_id} changed concurrently, {status} not applied")
        return False

    await publish_event("ORDER_STATUS_UPDATED", {
        "order_id": order_id,
        "old_status": previous,
        "new_status": status,
        "notes": notes,
        "actor_type": "system",
        "source": source,
    })
    logger.info(f"[{source}] Order {order_id}: {previous} -> {status}")
    return True


async def handle_package_scanned(payload: Dict[str, Any], event_id=None):
    scanner = str(payload.get("scanner_id") or "")
    status = "out_for_delivery" if "delivery" in scanner.lower() else "in_transit"
    location = payload.get("location")
    notes = f"Package scanned by {scanner or 'unknown scanner'}" + (f" at {location}" if location else "")
    await apply_external_status(payload.get("order_id"), status, notes, "PACKAGE_SCANNED")


async def handle_package_delivered(payload: Dict[str, Any], event_id=None):
    await apply_external_status(
        payload.get("order_id"), "delivered", "Delivery confirmed by warehouse", "PACKAGE_DELIVERED",
    )


async def handle_client_order_cancelled(payload: Dict[str, Any], event_id=None):
    reason = payload.get("reason") or "Cancelled by client"
    await apply_external_status(payload.get("order_id"), "cancelled", reason, "CLIENT_ORDER_CANCELLED")


def build_handlers(systems: ExternalSystems) -> Dict[str, Any]:
    async def handle_process_order(payload: Dict[str, Any], event_id=None):
        order_id = payload.get("order_id")
        if not order_id:
            logger.warning("[PROCESS_ORDER] Missing order_id in payload")
            return
        await process_order_with_external_systems(order_id, systems)

    return {
        "PROCESS_ORDER": handle_process_order,
        "PACKAGE_SCANNED": handle_package_scanned,
        "PACKAGE_DELIVERED": handle_package_delivered,
        "CLIENT_ORDER_CANCELLED": handle_client_order_cancelled,
    }


async def dispatch(body: str, handlers: Dict[str, Any], source_service: str = "order-service") -> bool:
    """Handle one raw message body. True when a handler ran."""
    event_type, payload, event_id = parse_message(body)
    if not event_type:
        logger.warning("[CONSUMER] Dropping message without event type")
        return False

    handler = handlers.get(event_type)
    if not handler:
        logger.info(f"[CONSUMER] No handler for {event_type}")
        return False

    if not await mark_event_processed(event_id, event_type, payload.get("source") or source_service):
        return False

    await handler(payload, event_id)
    return True


# -------------------------------
# SQS Poller
# -------------------------------
async def poll_queue(queue_url: str, handlers: Dict[str, Any], name: str = "queue"):
    async with session.client("sqs", region_name=AWS_REGION) as sqs:
        logger.info(f"[{name}] Listening → {queue_url}")
        while True:
            try:
                resp = await sqs.receive_message(QueueUrl=queue_url, MaxNumberOfMessages=5, WaitTimeSeconds=10)
                for msg in resp.get("Messages", []) or []:
                    try:
                        await dispatch(msg["Body"], handlers)
                    except Exception as e:
                        logger.exception(f"[{name}] Handler error: {e}")

                    try:
                        await sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=msg["ReceiptHandle"])
                    except Exception as e:
                        logger.warning(f"[{name}] Failed to delete message: {e}")

            except asyncio.CancelledError:
                logger.info(f"[{name}] Stopped")
                raise
            except Exception as e:
                logger.exception(f"[{name}] Queue error: {e}")
                await asyncio.sleep(5)
