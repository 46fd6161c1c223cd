# main.py
import os
import uuid
import asyncio
import logging
from datetime import date
from typing import Optional

from dotenv import load_dotenv
from fastapi import (
    BackgroundTasks, Depends, FastAPI, Query, Request, Response, WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from order_service import assignment, drivers, orders, processing
from order_service.adapters import build_external_systems
from order_service.consumer import ORDER_COMMANDS_QUEUE_URL, USE_AWS, build_handlers, poll_queue
from order_service.database import create_tables, database
from order_service.errors import ServiceError
from order_service.schemas import (
    AssignDriver, AssignmentStatusUpdate, BulkAssignRequest, DriverCreate, DriverStatusUpdate,
    EmergencyReassign, OrderCreate, OrderStatusUpdate, ProofOfDelivery, ok,
)
from order_service.ws_manager import manager
from shared.auth import require_roles

load_dotenv()

# ------------------------- CONFIG -------------------------
CREATE_TABLES = os.getenv("CREATE_TABLES", "True").lower() in ("true", "1", "yes")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logger = logging.getLogger("order-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

app = FastAPI(title="Swift Logistics Order Service", version="2.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

staff_required = require_roles("admin", "dispatcher")
admin_required = require_roles("admin")
driver_required = require_roles("driver")


# ------------------------- MIDDLEWARE -------------------------
@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    return response


# ------------------------- ERRORS -------------------------
def error_response(status_code: int, message: str, details=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    trace_id = getattr(request.state, "trace_id", None)
    logger.info(f"[TRACE {trace_id}] {request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(400, "Validation error", details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", None)
    logger.exception(f"[TRACE {trace_id}] Unhandled error on {request.method} {request.url.path}: {exc}")
    return error_response(500, "Internal server error")


# ------------------------- STARTUP / SHUTDOWN -------------------------
@app.on_event("startup")
async def startup():
    logger.info("Connecting database...")
    await database.connect()

    if CREATE_TABLES:
        create_tables()

    app.state.external_systems = build_external_systems()
    app.state.consumer_task = None

    if USE_AWS and ORDER_COMMANDS_QUEUE_URL:
        app.state.consumer_task = asyncio.create_task(
            poll_queue(ORDER_COMMANDS_QUEUE_URL, build_handlers(app.state.external_systems), "order.commands")
        )
        logger.info("Started SQS order command consumer")

    logger.info("Startup complete.")


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "consumer_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info("Order command consumer cancelled.")

    logger.info("Disconnecting database...")
    await database.disconnect()


# ------------------------- ORDERS -------------------------
@app.post("/orders", status_code=201)
async def create_order(
    payload: OrderCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    user=Depends(require_roles("client", "admin")),
):
    order = await orders.create_order(payload, user)
    if processing.AUTO_PROCESS_ORDERS:
        background_tasks.add_task(
            processing.process_order_with_external_systems, order["id"], request.app.state.external_systems
        )
    return ok({"order": order}, "Order created successfully")


@app.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    client_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_roles("client", "admin", "dispatcher")),
):
    result = await orders.list_orders(user, status=status, priority=priority, client_id=client_id, page=page, limit=limit)
    return ok(result)


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user=Depends(require_roles("client", "admin", "dispatcher", "driver"))):
    return ok({"order": await orders.get_order(order_id, user)})


@app.get("/orders/{order_id}/history")
async def get_order_history(order_id: str, user=Depends(require_roles("client", "admin", "dispatcher"))):
    return ok({"history": await orders.get_order_history(order_id, user)})


@app.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    user=Depends(require_roles("admin", "dispatcher", "driver", "client")),
):
    order = await orders.update_order_status(order_id, payload.status, user, payload.notes)
    return ok({"order": order}, "Order status updated successfully")


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, user=Depends(require_roles("client", "admin", "dispatcher"))):
    order = await orders.cancel_order(order_id, user)
    return ok({"order": order}, "Order cancelled successfully")


@app.post("/orders/{order_id}/retry")
async def retry_order(order_id: str, request: Request, user=Depends(admin_required)):
    processed = await processing.retry_failed_order(order_id, request.app.state.external_systems, user)
    order = await orders.get_order(order_id, user)
    message = "Order processed successfully" if processed else "Order processing retry failed"
    return ok({"processed": processed, "order": order}, message)


@app.post("/orders/{order_id}/assign-driver")
async def assign_driver(order_id: str, payload: AssignDriver, user=Depends(staff_required)):
    result = await assignment.assign_order(
        order_id,
        payload.driver_id,
        user,
        estimated_pickup_time=payload.estimated_pickup_time,
        estimated_delivery_time=payload.estimated_delivery_time,
        notes=payload.assignment_notes,
    )
    return ok({"assignment": result}, "Driver assigned successfully")


# ------------------------- DRIVERS -------------------------
@app.post("/drivers", status_code=201)
async def create_driver(payload: DriverCreate, user=Depends(staff_required)):
    driver = await drivers.create_driver(payload, user)
    return ok({"driver": driver}, "Driver created successfully")


@app.get("/drivers")
async def list_drivers(
    status: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    available_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user=Depends(staff_required),
):
    result = await drivers.list_drivers(
        status=status, vehicle_type=vehicle_type, available_only=available_only, page=page, limit=limit,
    )
    return ok(result)


@app.get("/drivers/available")
async def list_available_drivers(
    vehicle_type: Optional[str] = None,
    min_capacity: Optional[float] = Query(None, gt=0),
    user=Depends(staff_required),
):
    available = await drivers.list_available_drivers(vehicle_type=vehicle_type, min_capacity=min_capacity)
    return ok({"drivers": available, "count": len(available)})


@app.get("/drivers/{driver_id}")
async def get_driver(driver_id: str, user=Depends(staff_required)):
    return ok(await drivers.get_driver(driver_id))


@app.patch("/drivers/{driver_id}/status")
async def update_driver_status(
    driver_id: str,
    payload: DriverStatusUpdate,
    user=Depends(require_roles("admin", "dispatcher", "driver")),
):
    driver = await drivers.update_driver_status(driver_id, payload, user)
    return ok({"driver": driver}, "Driver status updated successfully")


# ------------------------- DRIVER APP -------------------------
@app.get("/driver-app/deliveries")
async def my_deliveries(status: Optional[str] = None, user=Depends(driver_required)):
    deliveries = await assignment.list_driver_deliveries(user, status=status)
    return ok({"deliveries": deliveries, "count": len(deliveries)})


@app.get("/driver-app/deliveries/{assignment_id}")
async def my_delivery(assignment_id: str, user=Depends(driver_required)):
    return ok({"delivery": await assignment.get_delivery(assignment_id, user)})


@app.post("/driver-app/deliveries/{assignment_id}/status")
async def update_delivery_status(
    assignment_id: str,
    payload: AssignmentStatusUpdate,
    user=Depends(driver_required),
):
    result = await assignment.update_assignment_status(assignment_id, user, payload.status)
    return ok({"assignment": result}, "Assignment status updated successfully")


@app.post("/driver-app/deliveries/{assignment_id}/proof")
async def upload_proof(assignment_id: str, payload: ProofOfDelivery, user=Depends(driver_required)):
    result = await assignment.complete_delivery(
        assignment_id, user, photo_url=payload.photo_url, signature=payload.signature,
    )
    return ok(result, "Proof of delivery recorded")


@app.get("/driver-app/profile")
async def my_profile(user=Depends(driver_required)):
    return ok({"profile": await drivers.get_driver_profile(user)})


@app.patch("/driver-app/status")
async def update_my_status(payload: DriverStatusUpdate, user=Depends(driver_required)):
    driver = await drivers.update_own_status(payload, user)
    return ok({"driver": driver}, "Driver status updated successfully")


# ------------------------- ADMIN -------------------------
@app.post("/admin/orders/bulk-assign")
async def bulk_assign(payload: BulkAssignRequest, user=Depends(staff_required)):
    result = await assignment.bulk_assign(payload.assignments, user)
    message = (
        f"Bulk assignment completed: {result['successful_assignments']} successful, "
        f"{result['failed_assignments']} failed"
    )
    return ok(result, message)


@app.post("/admin/orders/{order_id}/emergency-reassign")
async def emergency_reassign(order_id: str, payload: EmergencyReassign, user=Depends(staff_required)):
    result = await assignment.emergency_reassign(
        order_id, payload.new_driver_id, payload.reason, user, urgent=payload.urgent,
    )
    return ok(result, "Emergency reassignment completed successfully")


@app.get("/admin/orders/queue")
async def assignment_queue(limit: int = Query(50, ge=1, le=200), user=Depends(staff_required)):
    queue = await orders.get_assignment_queue(limit=limit)
    return ok({"orders": queue, "count": len(queue)})


@app.get("/admin/assignments")
async def list_assignments(
    status: Optional[str] = None,
    driver_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user=Depends(staff_required),
):
    result = await assignment.list_assignments(status=status, driver_id=driver_id, page=page, limit=limit)
    return ok(result)


@app.get("/admin/dashboard/overview")
async def dashboard_overview(user=Depends(staff_required)):
    return ok(await orders.get_dashboard_overview())


@app.get("/admin/analytics/performance")
async def performance_analytics(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user=Depends(staff_required),
):
    return ok(await orders.get_performance_analytics(start_date, end_date))


# ------------------------- REALTIME -------------------------
@app.websocket("/ws/orders")
async def orders_ws(websocket: WebSocket, order_id: Optional[str] = None):
    await manager.connect(websocket, order_id)
    try:
        while True:
            # Heartbeat
            await websocket.receive_text()
            await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)


# ------------------------- HEALTH / METRICS -------------------------
@app.get("/health")
async def health():
    return {"status": "order-service healthy"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
