# order_service/adapters.py
"""
Clients for the three external systems an order passes through:

* CMS (client management) validates the order against the client contract,
* WMS (warehouse) registers the package intake and issues a tracking number,
* ROS (route optimisation) plans the route and estimates delivery.

Each capability has a mock and an HTTP implementation. They are built once at
startup (`build_external_systems`) and handed to the processing pipeline, which
never imports a client directly.
"""
import os
import time
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from order_service.errors import ExternalSystemError
from order_service.metrics import EXTERNAL_SYSTEM_FAILURES

load_dotenv()

logger = logging.getLogger("order-service.adapters")

EXTERNAL_SYSTEMS_MODE = os.getenv("EXTERNAL_SYSTEMS_MODE", "mock").lower()
CMS_URL = os.getenv("CMS_URL", "http://cms:8080")
WMS_URL = os.getenv("WMS_URL", "http://wms:8081")
ROS_URL = os.getenv("ROS_URL", "http://ros:8082")
ADAPTER_TIMEOUT_SECONDS = float(os.getenv("ADAPTER_TIMEOUT_SECONDS", "10"))


# ------------------------- RESPONSES -------------------------
class CmsValidation(BaseModel):
    reference_id: str
    contract_id: Optional[str] = None
    message: Optional[str] = None


class WarehouseIntake(BaseModel):
    reference_id: str
    tracking_number: str
    message: Optional[str] = None


class RouteOptimization(BaseModel):
    reference_id: str
    estimated_delivery_time: datetime
    message: Optional[str] = None


# ------------------------- MOCKS -------------------------
def _stamp() -> int:
    return int(time.time() * 1000)


class MockCms:
    name = "CMS"

    async def validate_order(self, request: Dict[str, Any]) -> CmsValidation:
        logger.info(f"[CMS mock] Validating order {request.get('order_id')}")
        return CmsValidation(
            reference_id=f"CMS-{_stamp()}",
            contract_id=f"CONTRACT-{request.get('client_id')}",
            message="Mock order validation",
        )


class MockWms:
    name = "WMS"

    async def create_intake(self, request: Dict[str, Any]) -> WarehouseIntake:
        logger.info(f"[WMS mock] Creating intake for order {request.get('order_id')}")
        order_suffix = str(request.get("order_id", ""))[:8].upper()
        return WarehouseIntake(
            reference_id=f"WMS-{_stamp()}",
            tracking_number=f"TRK-{_stamp()}-{order_suffix}",
            message="Mock intake created",
        )


class MockRos:
    name = "ROS"

    async def optimize_route(self, request: Dict[str, Any]) -> RouteOptimization:
        logger.info(f"[ROS mock] Optimizing route for order {request.get('order_id')}")
        window = request.get("delivery_window") or {}
        estimated = window.get("end") or (datetime.utcnow() + timedelta(hours=2)).isoformat()
        return RouteOptimization(
            reference_id=f"ROS-{_stamp()}",
            estimated_delivery_time=estimated,
            message="Mock route optimization",
        )


# ------------------------- HTTP -------------------------
class HttpSystem:
    """
    JSON-over-HTTP client. Expects `{"success": true, "data": {...}}` back;
    anything else is an integration failure.
    """

    name = "EXTERNAL"

    def __init__(self, base_url: str, timeout: float = ADAPTER_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _post(self, path: str, payload: Dict[str, Any], response_model):
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload)
        except httpx.RequestError as e:
            raise ExternalSystemError(self.name, f"request to {url} failed: {e}")

        if resp.status_code not in (200, 201):
            raise ExternalSystemError(self.name, f"{url} returned {resp.status_code}", resp.text)

        try:
            body = resp.json()
        except ValueError:
            raise ExternalSystemError(self.name, "response is not JSON", resp.text)

        if not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise ExternalSystemError(self.name, message or "request was rejected", body)

        try:
            return response_model.model_validate(body.get("data") or {})
        except SchemaError as e:
            raise ExternalSystemError(self.name, "unexpected response shape", e.errors())


class HttpCms(HttpSystem):
    name = "CMS"

    async def validate_order(self, request: Dict[str, Any]) -> CmsValidation:
        return await self._post("/orders/validate", request, CmsValidation)


class HttpWms(HttpSystem):
    name = "WMS"

    async def create_intake(self, request: Dict[str, Any]) -> WarehouseIntake:
        return await self._post("/intakes", request, WarehouseIntake)


class HttpRos(HttpSystem):
    name = "ROS"

    async def optimize_route(self, request: Dict[str, Any]) -> RouteOptimization:
        return await self._post("/routes/optimize", request, RouteOptimization)


# ------------------------- WIRING -------------------------
class ExternalSystems:
    def __init__(self, cms, wms, ros, timeout: float = ADAPTER_TIMEOUT_SECONDS):
        self.cms = cms
        self.wms = wms
        self.ros = ros
        self.timeout = timeout


def build_external_systems(mode: Optional[str] = None) -> ExternalSystems:
    mode = (mode or EXTERNAL_SYSTEMS_MODE).lower()
    if mode == "http":
        logger.info(f"External systems over HTTP: CMS={CMS_URL} WMS={WMS_URL} ROS={ROS_URL}")
        return ExternalSystems(HttpCms(CMS_URL), HttpWms(WMS_URL), HttpRos(ROS_URL))

    if mode != "mock":
        raise ValueError(f"Unknown EXTERNAL_SYSTEMS_MODE: {mode}")

    logger.info("External systems running in mock mode")
    return ExternalSystems(MockCms(), MockWms(), MockRos())


def record_failure(error: ExternalSystemError):
    EXTERNAL_SYSTEM_FAILURES.labels(system=error.system).inc()
