# order_service/history.py
"""
Append-only audit trail of order status changes.

Rows are inserted once and never updated; every status write in the service
goes through `append_history` inside the same transaction as the write.
The status counter is bumped by the caller with `count_status_write` once
that transaction has committed, so rolled back writes are never counted.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from order_service.database import database
from order_service.metrics import ORDER_STATUS_UPDATES
from order_service.models import order_status_history

SYSTEM_ACTOR = {"id": None, "role": "system", "email": None, "trace_id": None}


async def append_history(
    order_id: str,
    status: str,
    actor: Dict[str, Any],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "order_id": order_id,
        "status": status,
        "notes": notes,
        "actor_id": actor.get("id"),
        "actor_type": actor.get("role") or "system",
        "created_at": now or datetime.utcnow(),
    }
    await database.execute(order_status_history.insert().values(**entry))
    return entry


def count_status_write(status: str):
    ORDER_STATUS_UPDATES.labels(status=status).inc()


async def get_history(order_id: str) -> List[Dict[str, Any]]:
    rows = await database.fetch_all(
        order_status_history.select()
        .where(order_status_history.c.order_id == order_id)
        .order_by(order_status_history.c.created_at.desc())
    )
    return [dict(row) for row in rows]
