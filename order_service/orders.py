# order_service/orders.py
import uuid
import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import case, func, select

from order_service.assignment import (
    apply_assignment_side_effects, fetch_active_assignment, fetch_order,
)
from order_service.database import database
from order_service.drivers import fetch_driver_for_user
from order_service.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from order_service.events import publish_event
from order_service.history import SYSTEM_ACTOR, append_history, count_status_write, get_history
from order_service.models import drivers, order_assignments, order_items, orders
from order_service.policy import (
    ACTIVE_ASSIGNMENT_STATUSES, ASSIGNABLE_STATUSES, CLIENT_CANCELLABLE_STATUSES,
    can_transition, can_update_status,
)

logger = logging.getLogger("order-service.orders")

PRIORITY_RANK = case(
    (orders.c.priority == "urgent", 0),
    (orders.c.priority == "high", 1),
    (orders.c.priority == "medium", 2),
    else_=3,
)


async def _require_order(order_id: str) -> Dict[str, Any]:
    order = await fetch_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    return dict(order)


async def _check_read_access(order: Dict[str, Any], actor: Dict[str, Any]):
    role = actor.get("role")
    if role == "client" and order["client_id"] != actor.get("id"):
        raise AuthorizationError("Access denied to this order")

    if role == "driver":
        driver = await fetch_driver_for_user(actor)
        held = await database.fetch_one(
            select(order_assignments.c.id).where(
                (order_assignments.c.order_id == order["id"])
                & (order_assignments.c.driver_id == driver["id"])
            )
        )
        if not held:
            raise AuthorizationError("Access denied to this order")


# -------------------------
# Create / read
# -------------------------
async def create_order(payload, actor: Dict[str, Any]) -> Dict[str, Any]:
    if actor["role"] == "client":
        client_id = actor["id"]
    else:
        client_id = payload.client_id
        if not client_id:
            raise ValidationError("client_id is required when creating an order for a client")

    now = datetime.utcnow()
    order = {
        "id": str(uuid.uuid4()),
        "client_id": client_id,
        "tracking_number": None,
        "status": "pending",
        "priority": payload.priority,
        "pickup_address": payload.pickup_address,
        "delivery_address": payload.delivery_address,
        "recipient_name": payload.recipient_name,
        "recipient_phone": payload.recipient_phone,
        "scheduled_pickup_time": payload.scheduled_pickup_time,
        "estimated_delivery_time": None,
        "actual_delivery_time": None,
        "special_instructions": payload.special_instructions,
        "cms_reference": None,
        "contract_id": None,
        "wms_reference": None,
        "ros_reference": None,
        "created_by": actor.get("id"),
        "created_at": now,
        "updated_at": now,
    }

    async with database.transaction():
        await database.execute(orders.insert().values(**order))
        for item in payload.items:
            await database.execute(order_items.insert().values(
                id=str(uuid.uuid4()),
                order_id=order["id"],
                description=item.description,
                quantity=item.quantity,
                weight_kg=item.weight_kg,
                dimensions_cm=item.dimensions_cm.model_dump() if item.dimensions_cm else None,
                value=item.value,
                handling_instructions=item.special_instructions,
                created_at=now,
            ))
        await append_history(order["id"], "pending", actor, "Order created", now)
    count_status_write("pending")

    await publish_event("ORDER_CREATED", {
        "order_id": order["id"],
        "client_id": client_id,
        "status": "pending",
        "priority": order["priority"],
        "created_by": actor.get("id"),
    }, trace_id=actor.get("trace_id"))
    logger.info(f"[TRACE {actor.get('trace_id')}] Order {order['id']} created by {actor.get('id')}")
    return order


async def get_order(order_id: str, actor: Dict[str, Any]) -> Dict[str, Any]:
    order = await _require_order(order_id)
    await _check_read_access(order, actor)

    items = await database.fetch_all(order_items.select().where(order_items.c.order_id == order_id))
    active = await database.fetch_one(
        select(
            order_assignments,
            drivers.c.name.label("driver_name"),
            drivers.c.phone.label("driver_phone"),
            drivers.c.vehicle_type,
            drivers.c.vehicle_plate,
        )
        .select_from(order_assignments.join(drivers, drivers.c.id == order_assignments.c.driver_id))
        .where(
            (order_assignments.c.order_id == order_id)
            & order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
        )
    )

    order["items"] = [dict(item) for item in items]
    order["status_history"] = await get_history(order_id)
    order["assignment"] = dict(active) if active else None
    return order


async def list_orders(
    actor: Dict[str, Any],
    status: Optional[str] = None,
    priority: Optional[str] = None,
    client_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query = orders.select()
    count_query = select(func.count()).select_from(orders)

    # Clients only ever see their own orders.
    if actor["role"] == "client":
        client_id = actor["id"]

    if client_id:
        query = query.where(orders.c.client_id == client_id)
        count_query = count_query.where(orders.c.client_id == client_id)
    if status:
        query = query.where(orders.c.status == status)
        count_query = count_query.where(orders.c.status == status)
    if priority:
        query = query.where(orders.c.priority == priority)
        count_query = count_query.where(orders.c.priority == priority)

    total = await database.fetch_val(count_query) or 0
    rows = await database.fetch_all(
        query.order_by(orders.c.created_at.desc()).limit(limit).offset((page - 1) * limit)
    )
    return {
        "orders": [dict(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": -(-total // limit),
        },
    }


async def get_order_history(order_id: str, actor: Dict[str, Any]):
    order = await _require_order(order_id)
    await _check_read_access(order, actor)
    return await get_history(order_id)


# -------------------------
# Status writes
# -------------------------
async def update_order_status(
    order_id: str,
    status: str,
    actor: Dict[str, Any],
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Move an order to `status` on behalf of `actor`.

    Checks run in a fixed order: order lookup (404), role gate (403),
    ownership (403), transition table (409). Nothing is written before all of
    them pass. The status write, assignment side effects and the history row
    share one transaction; ORDER_STATUS_UPDATED goes out after commit.
    """
    order = await _require_order(order_id)
    role = actor.get("role")

    if not can_update_status(role, order["status"], status):
        raise AuthorizationError(f"Insufficient permissions to set order status to {status}")

    if role == "client" and order["client_id"] != actor.get("id"):
        raise AuthorizationError("Access denied to this order")

    if role == "driver":
        try:
            driver = await fetch_driver_for_user(actor)
        except NotFoundError:
            raise AuthorizationError("Order is not assigned to this driver")
        active = await fetch_active_assignment(order_id)
        if not active or active["driver_id"] != driver["id"]:
            raise AuthorizationError("Order is not assigned to this driver")

    if not can_transition(order["status"], status):
        raise ConflictError(f"Invalid status transition from {order['status']} to {status}")

    async with database.transaction():
        locked = dict(await fetch_order(order_id, lock=True))
        if locked["status"] != order["status"] and not can_transition(locked["status"], status):
            raise ConflictError(f"Invalid status transition from {locked['status']} to {status}")

        now = datetime.utcnow()
        values = {"status": status, "updated_at": now}
        if status == "delivered":
            values["actual_delivery_time"] = now
        await database.execute(orders.update().where(orders.c.id == order_id).values(**values))
        await apply_assignment_side_effects(order_id, status, now)
        await append_history(order_id, status, actor, notes, now)
    count_status_write(status)

    locked.update(values)
    await publish_event("ORDER_STATUS_UPDATED", {
        "order_id": order_id,
        "tracking_number": locked["tracking_number"],
        "client_id": locked["client_id"],
        "old_status": order["status"],
        "new_status": status,
        "notes": notes,
        "updated_by": actor.get("id"),
        "actor_type": role,
    }, trace_id=actor.get("trace_id"))
    logger.info(f"[TRACE {actor.get('trace_id')}] Order {order_id}: {order['status']} -> {status} by {role}")
    return locked


async def cancel_order(order_id: str, actor: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
    order = await _require_order(order_id)

    if actor["role"] == "client" and order["client_id"] != actor.get("id"):
        raise AuthorizationError("Access denied to this order")

    if order["status"] not in CLIENT_CANCELLABLE_STATUSES:
        raise ConflictError(f"Order cannot be cancelled in status: {order['status']}")

    async with database.transaction():
        locked = dict(await fetch_order(order_id, lock=True))
        if locked["status"] not in CLIENT_CANCELLABLE_STATUSES:
            raise ConflictError(f"Order cannot be cancelled in status: {locked['status']}")

        now = datetime.utcnow()
        await database.execute(
            orders.update().where(orders.c.id == order_id).values(status="cancelled", updated_at=now)
        )
        released = await apply_assignment_side_effects(order_id, "cancelled", now)
        await append_history(
            order_id, "cancelled", actor, reason or f"Order cancelled by {actor['role']}", now,
        )
    count_status_write("cancelled")

    await publish_event("ORDER_CANCELLED", {
        "order_id": order_id,
        "client_id": order["client_id"],
        "old_status": locked["status"],
        "reason": reason,
        "driver_id": released["driver_id"] if released else None,
        "cancelled_by": actor.get("id"),
    }, trace_id=actor.get("trace_id"))
    logger.info(f"[TRACE {actor.get('trace_id')}] Order {order_id} cancelled by {actor.get('id')}")

    locked.update(status="cancelled", updated_at=now)
    return locked


async def record_status(
    order_id: str,
    status: str,
    notes: Optional[str] = None,
    actor: Optional[Dict[str, Any]] = None,
    only_from: Optional[Iterable[str]] = None,
    **values,
) -> Optional[str]:
    """
    Write a status reached by the system itself (processing pipeline, inbound
    events) and log it. Extra column values are stored with the status.

    With `only_from`, nothing is written unless the order is currently in one
    of those statuses. Returns the previous status, or None when nothing was
    written.
    """
    actor = actor or SYSTEM_ACTOR
    async with database.transaction():
        order = await fetch_order(order_id, lock=True)
        if not order:
            return None
        if only_from is not None and order["status"] not in only_from:
            return None

        now = datetime.utcnow()
        if status == "delivered":
            values.setdefault("actual_delivery_time", now)
        await database.execute(
            orders.update().where(orders.c.id == order_id).values(status=status, updated_at=now, **values)
        )
        await apply_assignment_side_effects(order_id, status, now)
        await append_history(order_id, status, actor, notes, now)
    count_status_write(status)
    return order["status"]


# -------------------------
# Dispatcher views
# -------------------------
async def get_assignment_queue(limit: int = 50):
    """Orders waiting for a driver, most urgent and oldest first."""
    live = (
        select(order_assignments.c.id)
        .where(
            (order_assignments.c.order_id == orders.c.id)
            & order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
        )
        .exists()
    )
    item_count = (
        select(func.count(order_items.c.id))
        .where(order_items.c.order_id == orders.c.id)
        .scalar_subquery()
        .label("item_count")
    )
    rows = await database.fetch_all(
        select(orders, item_count)
        .where(orders.c.status.in_(list(ASSIGNABLE_STATUSES)) & ~live)
        .order_by(PRIORITY_RANK, orders.c.created_at.asc())
        .limit(limit)
    )
    return [dict(row) for row in rows]


async def get_dashboard_overview() -> Dict[str, Any]:
    order_rows = await database.fetch_all(
        select(orders.c.status, func.count().label("count")).group_by(orders.c.status)
    )
    driver_rows = await database.fetch_all(
        select(drivers.c.status, func.count().label("count"))
        .where(drivers.c.is_active.is_(True))
        .group_by(drivers.c.status)
    )
    active_assignments = await database.fetch_val(
        select(func.count()).select_from(order_assignments).where(
            order_assignments.c.status.in_(list(ACTIVE_ASSIGNMENT_STATUSES))
        )
    )
    start_of_day = datetime.combine(datetime.utcnow().date(), time.min)
    delivered_today = await database.fetch_val(
        select(func.count()).select_from(orders).where(
            (orders.c.status == "delivered") & (orders.c.actual_delivery_time >= start_of_day)
        )
    )
    queue = await get_assignment_queue(limit=1000)

    orders_by_status = {row["status"]: row["count"] for row in order_rows}
    return {
        "orders": {
            "total": sum(orders_by_status.values()),
            "by_status": orders_by_status,
            "awaiting_assignment": len(queue),
            "delivered_today": delivered_today or 0,
        },
        "drivers": {row["status"]: row["count"] for row in driver_rows},
        "active_assignments": active_assignments or 0,
    }


async def get_performance_analytics(start_date: Optional[date] = None, end_date: Optional[date] = None) -> Dict[str, Any]:
    """
    Per-day order metrics, per-driver completion metrics and per-client
    volumes for an inclusive date range (last seven days by default).
    """
    end_date = end_date or datetime.utcnow().date()
    start_date = start_date or end_date - timedelta(days=7)
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date")

    window_start = datetime.combine(start_date, time.min)
    window_end = datetime.combine(end_date + timedelta(days=1), time.min)

    rows = await database.fetch_all(
        select(
            orders.c.status, orders.c.priority, orders.c.created_at, orders.c.actual_delivery_time,
        ).where((orders.c.created_at >= window_start) & (orders.c.created_at < window_end))
    )
    days: Dict[date, Dict[str, Any]] = {}
    delivery_hours: Dict[date, list] = {}
    for row in rows:
        day = row["created_at"].date()
        metrics = days.setdefault(day, {
            "date": day.isoformat(),
            "total_orders": 0,
            "delivered_orders": 0,
            "failed_orders": 0,
            "cancelled_orders": 0,
            "urgent_orders": 0,
            "avg_delivery_time_hours": None,
        })
        metrics["total_orders"] += 1
        if row["status"] in ("delivered", "failed", "cancelled"):
            metrics[f"{row['status']}_orders"] += 1
        if row["priority"] == "urgent":
            metrics["urgent_orders"] += 1
        if row["status"] == "delivered" and row["actual_delivery_time"]:
            elapsed = row["actual_delivery_time"] - row["created_at"]
            delivery_hours.setdefault(day, []).append(elapsed.total_seconds() / 3600)

    for day, hours in delivery_hours.items():
        days[day]["avg_delivery_time_hours"] = round(sum(hours) / len(hours), 2)

    completed = func.count(case((order_assignments.c.status == "completed", 1)))
    driver_rows = await database.fetch_all(
        select(
            drivers.c.id,
            drivers.c.name,
            drivers.c.vehicle_type,
            drivers.c.rating,
            drivers.c.total_deliveries,
            drivers.c.successful_deliveries,
            func.count(order_assignments.c.id).label("total_assignments"),
            completed.label("completed_assignments"),
        )
        .select_from(
            drivers.outerjoin(
                order_assignments,
                (order_assignments.c.driver_id == drivers.c.id)
                & (order_assignments.c.assigned_at >= window_start)
                & (order_assignments.c.assigned_at < window_end),
            )
        )
        .where(drivers.c.is_active.is_(True))
        .group_by(
            drivers.c.id, drivers.c.name, drivers.c.vehicle_type, drivers.c.rating,
            drivers.c.total_deliveries, drivers.c.successful_deliveries,
        )
        .order_by(completed.desc(), drivers.c.rating.desc())
        .limit(20)
    )

    client_rows = await database.fetch_all(
        select(
            orders.c.client_id,
            func.count().label("total_orders"),
            func.count(case((orders.c.status == "delivered", 1))).label("delivered_orders"),
            func.count(case((orders.c.status == "failed", 1))).label("failed_orders"),
        )
        .where((orders.c.created_at >= window_start) & (orders.c.created_at < window_end))
        .group_by(orders.c.client_id)
        .order_by(func.count().desc())
        .limit(20)
    )

    return {
        "date_range": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        "order_metrics": [days[day] for day in sorted(days)],
        "driver_metrics": [dict(row) for row in driver_rows],
        "client_metrics": [dict(row) for row in client_rows],
    }
