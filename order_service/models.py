# models.py
from datetime import datetime
from sqlalchemy import (
    Table, Column, String, Integer, Float, Boolean, DateTime, Text, JSON, MetaData, Index,
    ForeignKey,
)

metadata = MetaData()

# ------------------------
# Orders
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("client_id", String, nullable=False, index=True),
    Column("tracking_number", String, nullable=True, unique=True),
    Column("status", String, nullable=False, default="pending", index=True),
    Column("priority", String, nullable=False, default="medium"),
    Column("pickup_address", String, nullable=False),
    Column("delivery_address", String, nullable=False),
    Column("recipient_name", String, nullable=False),
    Column("recipient_phone", String, nullable=False),
    Column("scheduled_pickup_time", DateTime, nullable=True),
    Column("estimated_delivery_time", DateTime, nullable=True),
    Column("actual_delivery_time", DateTime, nullable=True),
    Column("special_instructions", Text, nullable=True),
    Column("cms_reference", String, nullable=True),
    Column("contract_id", String, nullable=True),
    Column("wms_reference", String, nullable=True),
    Column("ros_reference", String, nullable=True),
    Column("created_by", String, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("description", String, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("weight_kg", Float, nullable=False),
    Column("dimensions_cm", JSON, nullable=True),
    Column("value", Float, nullable=True),
    Column("handling_instructions", Text, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Drivers
# ------------------------
drivers = Table(
    "drivers",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=True, unique=True),
    Column("name", String, nullable=False),
    Column("phone", String, nullable=False),
    Column("license_number", String, nullable=False, unique=True),
    Column("vehicle_type", String, nullable=False, default="van"),
    Column("vehicle_plate", String, nullable=False),
    Column("vehicle_capacity_kg", Float, nullable=False, default=100),
    Column("status", String, nullable=False, default="available"),
    Column("rating", Float, nullable=False, default=5.0),
    Column("total_deliveries", Integer, nullable=False, default=0),
    Column("successful_deliveries", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("current_latitude", Float, nullable=True),
    Column("current_longitude", Float, nullable=True),
    Column("last_location_update", DateTime, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Order <-> driver assignments
# ------------------------
order_assignments = Table(
    "order_assignments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("driver_id", String, ForeignKey("drivers.id"), nullable=False, index=True),
    Column("assigned_by", String, nullable=True),
    Column("status", String, nullable=False, default="pending"),
    Column("estimated_pickup_time", DateTime, nullable=True),
    Column("estimated_delivery_time", DateTime, nullable=True),
    Column("assignment_notes", Text, nullable=True),
    Column("admin_notes", Text, nullable=True),
    Column("assigned_at", DateTime, default=datetime.utcnow),
    Column("accepted_at", DateTime, nullable=True),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# At most one live assignment per order.
_live_assignment = order_assignments.c.status.in_(["pending", "accepted", "in_progress"])
Index(
    "uq_order_assignments_live_order",
    order_assignments.c.order_id,
    unique=True,
    postgresql_where=_live_assignment,
    sqlite_where=_live_assignment,
)

# ------------------------
# Audit trail (append-only)
# ------------------------
order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("status", String, nullable=False),
    Column("notes", Text, nullable=True),
    Column("actor_id", String, nullable=True),
    Column("actor_type", String, nullable=False, default="system"),
    Column("created_at", DateTime, default=datetime.utcnow),
)

order_proof_of_delivery = Table(
    "order_proof_of_delivery",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, unique=True),
    Column("assignment_id", String, nullable=True),
    Column("delivery_photo_url", String, nullable=True),
    Column("recipient_signature", Text, nullable=True),
    Column("delivered_at", DateTime, default=datetime.utcnow),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("source_service", String, nullable=False),
    Column("processed_at", DateTime, default=datetime.utcnow),
)
