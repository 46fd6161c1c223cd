# --- order_service/events.py ---
import os
import json
import uuid
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import aioboto3
from dotenv import load_dotenv
from fastapi.encoders import jsonable_encoder

from order_service.metrics import EVENTS_PUBLISHED, EVENT_PUBLISH_FAILURES
from order_service.ws_manager import manager

load_dotenv()

logger = logging.getLogger("order-service.events")

USE_AWS = os.getenv("USE_AWS", "False").lower() in ("true", "1", "yes")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

ORDER_EVENTS_QUEUE_URL = os.getenv("ORDER_EVENTS_QUEUE_URL")
DRIVER_EVENTS_QUEUE_URL = os.getenv("DRIVER_EVENTS_QUEUE_URL")
EVENT_BUS = os.getenv("EVENT_BUS_NAME")

session = aioboto3.Session()

ORDER_TOPIC = "order-events"
DRIVER_TOPIC = "driver-events"

# Explicit routing
EVENT_TOPICS = {
    "ORDER_CREATED": ORDER_TOPIC,
    "ORDER_STATUS_UPDATED": ORDER_TOPIC,
    "ORDER_CANCELLED": ORDER_TOPIC,
    "ORDER_ASSIGNED_TO_DRIVER": ORDER_TOPIC,
    "ORDER_EMERGENCY_REASSIGNED": ORDER_TOPIC,
    "ORDER_DELIVERED": ORDER_TOPIC,
    "ORDER_PROCESSING_COMPLETED": ORDER_TOPIC,
    "ORDER_PROCESSING_FAILED": ORDER_TOPIC,
    "ASSIGNMENT_STATUS_UPDATED": ORDER_TOPIC,
    "DRIVER_CREATED": DRIVER_TOPIC,
    "DRIVER_STATUS_UPDATED": DRIVER_TOPIC,
}

TOPIC_QUEUE_MAP = {
    ORDER_TOPIC: ORDER_EVENTS_QUEUE_URL,
    DRIVER_TOPIC: DRIVER_EVENTS_QUEUE_URL,
}


def build_event(event_type: str, data: Dict[str, Any], trace_id: Optional[str] = None) -> Dict[str, Any]:
    return jsonable_encoder({
        "type": event_type,
        "topic": EVENT_TOPICS.get(event_type, ORDER_TOPIC),
        "event_id": str(data.get("event_id") or uuid.uuid4()),
        "source": "order-service",
        "data": data,
        "trace_id": trace_id,
        "timestamp": datetime.utcnow().isoformat(),
    })


async def publish_event(event_type: str, data: Dict[str, Any], trace_id: Optional[str] = None) -> bool:
    """
    Best-effort publication of an order/driver event.

    Delivered to WebSocket listeners and, when USE_AWS is on, to the topic's
    SQS queue and EventBridge. Never raises: every failure is logged and
    counted, and the caller's outcome is unaffected.
    Returns True when at least one target accepted the event.
    """
    try:
        event = build_event(event_type, data, trace_id)
    except Exception:
        logger.exception(f"[EVENT ERROR] Could not encode '{event_type}'")
        EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
        return False

    delivered = False

    # WS
    try:
        await manager.broadcast(event)
        delivered = True
    except Exception as e:
        EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
        logger.warning(f"[WebSocket ERROR] '{event_type}': {e}")

    if not USE_AWS:
        logger.info(f"[TRACE {trace_id}] [LOCAL EVENT] {event_type}: {json.dumps(event['data'])}")
        EVENTS_PUBLISHED.labels(event_type=event_type).inc()
        return delivered

    try:
        async with session.client("sqs", region_name=AWS_REGION) as sqs, \
                   session.client("events", region_name=AWS_REGION) as evb:

            queue_url = TOPIC_QUEUE_MAP.get(event["topic"])
            if queue_url:
                try:
                    await sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(event))
                    delivered = True
                    logger.info(f"[SQS → {event['topic']}] {event_type} event_id={event['event_id']}")
                except Exception as e:
                    EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
                    logger.warning(f"[SQS ERROR → {event['topic']}] {event_type}: {e}")
            else:
                logger.warning(f"[WARN] Missing queue for topic {event['topic']}")

            if EVENT_BUS:
                try:
                    await evb.put_events(Entries=[{
                        "Source": "order-service",
                        "DetailType": event_type,
                        "Detail": json.dumps(event["data"]),
                        "EventBusName": EVENT_BUS,
                    }])
                    delivered = True
                    logger.info(f"[EventBridge] Event '{event_type}' sent to {EVENT_BUS}")
                except Exception:
                    EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
                    logger.exception(f"[EventBridge ERROR] Failed to send '{event_type}'")
    except Exception as e:
        EVENT_PUBLISH_FAILURES.labels(event_type=event_type).inc()
        logger.error(f"[EVENT ERROR] {event_type}: {e}")

    if delivered:
        EVENTS_PUBLISHED.labels(event_type=event_type).inc()
    return delivered
