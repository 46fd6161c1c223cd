import os
import tempfile

# Configuration is read at import time, so it has to be in place first.
_DB_DIR = tempfile.mkdtemp(prefix="order-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'orders.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["USE_AWS"] = "false"
os.environ["AUTO_PROCESS_ORDERS"] = "false"
os.environ["EXTERNAL_SYSTEMS_MODE"] = "mock"
os.environ["MAX_RETRY_ATTEMPTS"] = "3"
os.environ["RETRY_DELAY_SECONDS"] = "0"
os.environ["CREATE_TABLES"] = "true"

import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import select  # noqa: E402

from order_service import assignment, consumer, drivers, orders, processing  # noqa: E402
from order_service.database import create_tables, drop_tables, engine  # noqa: E402
from order_service.main import app  # noqa: E402
from shared.auth import JWT_ALGORITHM, JWT_SECRET  # noqa: E402

CLIENT_ID = "client-1"
ADMIN_ID = "admin-1"
DISPATCHER_ID = "dispatcher-1"


def make_token(role, user_id):
    return jwt.encode(
        {"sub": user_id, "role": role, "email": f"{user_id}@swift.test"},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture(autouse=True)
def fresh_db():
    drop_tables()
    create_tables()
    yield


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture events instead of broadcasting them."""
    events = []

    async def fake_publish(event_type, data, trace_id=None):
        events.append({"type": event_type, "data": data, "trace_id": trace_id})
        return True

    for module in (assignment, consumer, drivers, orders, processing):
        monkeypatch.setattr(module, "publish_event", fake_publish)
    return events


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def auth():
    def _headers(role, user_id=None):
        return {"Authorization": f"Bearer {make_token(role, user_id or f'{role}-{uuid.uuid4().hex[:6]}')}"}

    return _headers


@pytest.fixture()
def admin_headers(auth):
    return auth("admin", ADMIN_ID)


@pytest.fixture()
def dispatcher_headers(auth):
    return auth("dispatcher", DISPATCHER_ID)


@pytest.fixture()
def client_headers(auth):
    return auth("client", CLIENT_ID)


def order_payload(**overrides):
    payload = {
        "pickup_address": "12 Warehouse Road, Colombo 10",
        "delivery_address": "45 Lake View Drive, Kandy",
        "recipient_name": "Nimal Perera",
        "recipient_phone": "+94 77 123 4567",
        "priority": "medium",
        "items": [
            {
                "description": "Box of books",
                "quantity": 2,
                "weight_kg": 3.5,
                "value": 40.0,
                "dimensions_cm": {"length": 30, "width": 20, "height": 15},
            }
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def create_order(client, client_headers):
    def _create(headers=None, **overrides):
        resp = client.post("/orders", json=order_payload(**overrides), headers=headers or client_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["order"]

    return _create


@pytest.fixture()
def create_driver(client, admin_headers):
    def _create(user_id=None, **overrides):
        payload = {
            "user_id": user_id or f"driver-user-{uuid.uuid4().hex[:8]}",
            "name": "Kamal Silva",
            "phone": "+94 71 555 0101",
            "license_number": f"LIC-{uuid.uuid4().hex[:8]}",
            "vehicle_type": "van",
            "vehicle_plate": "WP-CAB-1234",
            "vehicle_capacity_kg": 500,
        }
        payload.update(overrides)
        resp = client.post("/drivers", json=payload, headers=admin_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["driver"]

    return _create


@pytest.fixture()
def driver_headers(auth):
    def _headers(driver):
        return auth("driver", driver["user_id"])

    return _headers


@pytest.fixture()
def assign(client, admin_headers):
    def _assign(order_id, driver_id, headers=None):
        return client.post(
            f"/orders/{order_id}/assign-driver",
            json={"driver_id": driver_id},
            headers=headers or admin_headers,
        )

    return _assign


@pytest.fixture()
def set_order_status(client, admin_headers):
    def _set(order_id, *statuses, headers=None):
        resp = None
        for status in statuses:
            resp = client.patch(
                f"/orders/{order_id}/status", json={"status": status}, headers=headers or admin_headers,
            )
            assert resp.status_code == 200, resp.text
        return resp

    return _set


@pytest.fixture()
def rows():
    """Read rows straight from the database."""
    def _rows(table, **filters):
        query = select(table)
        for column, value in filters.items():
            query = query.where(table.c[column] == value)
        with engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings().all()]

    return _rows
