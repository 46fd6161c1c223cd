"""Single driver assignment through POST /orders/{id}/assign-driver."""

import asyncio

from order_service import assignment
from order_service.errors import ConflictError
from order_service.metrics import ORDER_STATUS_UPDATES
from order_service.models import drivers, order_assignments, order_status_history, orders


class TestAssignDriver:
    def test_assigns_available_driver(self, client, create_order, create_driver, admin_headers, rows, published):
        order = create_order()
        driver = create_driver()

        resp = client.post(
            f"/orders/{order['id']}/assign-driver",
            json={"driver_id": driver["id"], "assignment_notes": "Fragile"},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assignment = resp.json()["data"]["assignment"]
        assert assignment["status"] == "pending"
        assert assignment["driver_id"] == driver["id"]
        assert assignment["assigned_by"] == "admin-1"
        assert assignment["assignment_notes"] == "Fragile"

        assert rows(orders, id=order["id"])[0]["status"] == "pickup_scheduled"
        assert rows(drivers, id=driver["id"])[0]["status"] == "busy"

        history = rows(order_status_history, order_id=order["id"], status="pickup_scheduled")
        assert len(history) == 1
        assert history[0]["notes"] == f"Assigned to driver {driver['id']}"
        assert history[0]["actor_type"] == "admin"

        event = published[-1]
        assert event["type"] == "ORDER_ASSIGNED_TO_DRIVER"
        assert event["data"]["assignment_id"] == assignment["id"]
        assert event["data"]["driver_id"] == driver["id"]
        assert "bulk_assignment" not in event["data"]

    def test_dispatcher_may_assign(self, create_order, create_driver, assign, dispatcher_headers):
        order = create_order()
        driver = create_driver()
        assert assign(order["id"], driver["id"], headers=dispatcher_headers).status_code == 200

    def test_clients_and_drivers_may_not_assign(self, create_order, create_driver, assign, client_headers, auth):
        order = create_order()
        driver = create_driver()
        assert assign(order["id"], driver["id"], headers=client_headers).status_code == 403
        assert assign(order["id"], driver["id"], headers=auth("driver")).status_code == 403

    def test_unknown_order(self, create_driver, assign):
        driver = create_driver()

        resp = assign("missing", driver["id"])

        assert resp.status_code == 404
        assert resp.json()["message"] == "Order not found"

    def test_order_in_unassignable_status(self, create_order, create_driver, assign, client_headers, client):
        order = create_order()
        client.post(f"/orders/{order['id']}/cancel", headers=client_headers)
        driver = create_driver()

        resp = assign(order["id"], driver["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Order cannot be assigned in status: cancelled"

    def test_order_already_assigned(self, create_order, create_driver, assign, rows):
        order = create_order()
        first = create_driver()
        second = create_driver()
        assert assign(order["id"], first["id"]).status_code == 200

        resp = assign(order["id"], second["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Order is already assigned to a driver"
        assert rows(drivers, id=second["id"])[0]["status"] == "available"
        assert len(rows(order_assignments, order_id=order["id"])) == 1

    def test_unknown_driver(self, create_order, assign, rows):
        order = create_order()

        resp = assign(order["id"], "missing-driver")

        assert resp.status_code == 404
        assert resp.json()["message"] == "Driver not found or inactive"
        assert rows(orders, id=order["id"])[0]["status"] == "pending"

    def test_busy_driver(self, create_order, create_driver, assign, rows):
        driver = create_driver()
        first = create_order()
        second = create_order()
        assert assign(first["id"], driver["id"]).status_code == 200

        resp = assign(second["id"], driver["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Driver is not available (current status: busy)"
        assert rows(order_assignments, order_id=second["id"]) == []
        assert len(rows(order_status_history, order_id=second["id"])) == 1

    def test_offline_driver(self, client, create_order, create_driver, assign, admin_headers):
        order = create_order()
        driver = create_driver()
        client.patch(f"/drivers/{driver['id']}/status", json={"status": "offline"}, headers=admin_headers)

        resp = assign(order["id"], driver["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Driver is not available (current status: offline)"

    def test_failed_assignment_publishes_nothing(self, create_order, assign, published):
        order = create_order()
        published.clear()

        assign(order["id"], "missing-driver")

        assert published == []

    def test_estimates_must_be_in_future(self, client, create_order, create_driver, admin_headers):
        order = create_order()
        driver = create_driver()

        resp = client.post(
            f"/orders/{order['id']}/assign-driver",
            json={"driver_id": driver["id"], "estimated_pickup_time": "2001-05-01T09:00:00"},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_live_assignment_survives_failure_and_retry(
        self, client, create_order, create_driver, assign, admin_headers, set_order_status,
    ):
        order = create_order()
        first = create_driver()
        second = create_driver()
        assign(order["id"], first["id"])
        set_order_status(order["id"], "failed")
        set_order_status(order["id"], "pending")

        # The pending assignment still blocks a new one.
        assert assign(order["id"], second["id"]).status_code == 409

    def test_delivered_order_cannot_be_assigned(self, create_order, create_driver, assign, set_order_status, rows):
        order = create_order()
        first = create_driver()
        assert assign(order["id"], first["id"]).status_code == 200
        set_order_status(order["id"], "picked_up", "out_for_delivery", "delivered")
        second = create_driver()

        resp = assign(order["id"], second["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Order cannot be assigned in status: delivered"
        assert rows(drivers, id=second["id"])[0]["status"] == "available"
        assert len(rows(order_assignments, order_id=order["id"])) == 1

    def test_status_write_is_counted_once_committed(self, create_order, create_driver, assign):
        order = create_order()
        driver = create_driver()
        counter = ORDER_STATUS_UPDATES.labels(status="pickup_scheduled")
        before = counter._value.get()

        assert assign(order["id"], driver["id"]).status_code == 200
        assert assign(order["id"], driver["id"]).status_code == 409

        assert counter._value.get() == before + 1


class TestAssignmentGuards:
    def test_stale_driver_read_is_refused(self, create_order, create_driver, assign, rows, monkeypatch):
        driver = create_driver()
        stale = rows(drivers, id=driver["id"])[0]
        first = create_order()
        second = create_order()
        assert assign(first["id"], driver["id"]).status_code == 200

        async def gate_with_stale_row(driver_id):
            return dict(stale)

        monkeypatch.setattr(assignment, "lock_assignable_driver", gate_with_stale_row)

        resp = assign(second["id"], driver["id"])

        assert resp.status_code == 409
        assert resp.json()["message"].startswith("Driver is not available")
        assert rows(order_assignments, order_id=second["id"]) == []
        assert rows(orders, id=second["id"])[0]["status"] == "pending"
        assert len(rows(order_assignments, driver_id=driver["id"])) == 1

    def test_live_assignment_index_is_a_conflict(self, create_order, create_driver, assign, rows, monkeypatch):
        order = create_order()
        first = create_driver()
        second = create_driver()
        assert assign(order["id"], first["id"]).status_code == 200

        async def no_live_assignment(order_id, lock=False):
            return None

        monkeypatch.setattr(assignment, "fetch_active_assignment", no_live_assignment)

        resp = assign(order["id"], second["id"])

        assert resp.status_code == 409
        assert resp.json()["message"] == "Order is already assigned to a driver"
        assert rows(drivers, id=second["id"])[0]["status"] == "available"
        assert len(rows(order_assignments, order_id=order["id"])) == 1

    def test_concurrent_assignments_to_one_driver(self, client, create_order, create_driver, rows):
        driver = create_driver()
        first = create_order()
        second = create_order()
        actor = {"id": "admin-1", "role": "admin"}

        async def race():
            return await asyncio.gather(
                assignment.assign_order(first["id"], driver["id"], actor),
                assignment.assign_order(second["id"], driver["id"], actor),
                return_exceptions=True,
            )

        results = client.portal.call(race)

        won = [r for r in results if isinstance(r, dict)]
        assert len(won) <= 1
        for result in results:
            if isinstance(result, ConflictError):
                assert result.message.startswith("Driver is not available")

        live = rows(order_assignments, driver_id=driver["id"])
        assert len(live) == len(won)
        assert rows(drivers, id=driver["id"])[0]["status"] == ("busy" if won else "available")


class TestAssignmentViews:
    def test_admin_assignment_list(self, client, create_order, create_driver, assign, dispatcher_headers):
        driver = create_driver()
        order = create_order()
        assign(order["id"], driver["id"])

        resp = client.get(f"/admin/assignments?driver_id={driver['id']}", headers=dispatcher_headers)

        data = resp.json()["data"]
        assert data["pagination"]["total"] == 1
        assert data["assignments"][0]["order_id"] == order["id"]
        assert data["assignments"][0]["driver_name"] == driver["name"]

    def test_queue_lists_unassigned_orders_by_priority(
        self, client, create_order, create_driver, assign, admin_headers,
    ):
        low = create_order(priority="low")
        urgent = create_order(priority="urgent")
        taken = create_order(priority="urgent")
        assign(taken["id"], create_driver()["id"])

        resp = client.get("/admin/orders/queue", headers=admin_headers)

        ids = [o["id"] for o in resp.json()["data"]["orders"]]
        assert ids == [urgent["id"], low["id"]]

    def test_dashboard_overview(self, client, create_order, create_driver, assign, admin_headers):
        create_order()
        order = create_order()
        driver = create_driver()
        create_driver()
        assign(order["id"], driver["id"])

        resp = client.get("/admin/dashboard/overview", headers=admin_headers)

        data = resp.json()["data"]
        assert data["orders"]["total"] == 2
        assert data["orders"]["by_status"] == {"pending": 1, "pickup_scheduled": 1}
        assert data["orders"]["awaiting_assignment"] == 1
        assert data["drivers"] == {"available": 1, "busy": 1}
        assert data["active_assignments"] == 1
