"""Emergency reassignment of an order to a different driver."""

import pytest

from order_service.database import engine
from order_service.models import drivers, order_assignments, order_status_history, orders


@pytest.fixture()
def assigned(create_order, create_driver, assign):
    order = create_order()
    driver = create_driver()
    assert assign(order["id"], driver["id"]).status_code == 200
    return order, driver


def reassign(client, headers, order_id, **body):
    return client.post(f"/admin/orders/{order_id}/emergency-reassign", json=body, headers=headers)


class TestEmergencyReassign:
    def test_moves_order_to_new_driver(self, client, admin_headers, assigned, create_driver, rows, published):
        order, old_driver = assigned
        new_driver = create_driver()
        published.clear()

        resp = reassign(client, admin_headers, order["id"], new_driver_id=new_driver["id"], reason="Vehicle breakdown")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["old_driver_id"] == old_driver["id"]
        assert data["new_driver_id"] == new_driver["id"]

        records = {r["driver_id"]: r for r in rows(order_assignments, order_id=order["id"])}
        assert records[old_driver["id"]]["status"] == "cancelled"
        assert records[old_driver["id"]]["admin_notes"].endswith("\nEmergency reassignment: Vehicle breakdown")
        assert records[new_driver["id"]]["status"] == "pending"
        assert records[new_driver["id"]]["assigned_by"] == "admin-1"

        assert rows(drivers, id=old_driver["id"])[0]["status"] == "available"
        assert rows(drivers, id=new_driver["id"])[0]["status"] == "busy"

        order_row = rows(orders, id=order["id"])[0]
        assert order_row["status"] == "pickup_scheduled"
        assert order_row["priority"] == "medium"

        history = rows(order_status_history, order_id=order["id"], status="pickup_scheduled")
        assert len(history) == 2
        assert any("Vehicle breakdown" in (h["notes"] or "") for h in history)

        assert [e["type"] for e in published] == ["ORDER_EMERGENCY_REASSIGNED"]
        assert published[0]["data"]["reason"] == "Vehicle breakdown"

    def test_urgent_flag_bumps_priority(self, client, dispatcher_headers, assigned, create_driver, rows):
        order, _ = assigned
        new_driver = create_driver()

        resp = reassign(
            client, dispatcher_headers, order["id"],
            new_driver_id=new_driver["id"], reason="Customer escalation", urgent=True,
        )

        assert resp.status_code == 200
        assert rows(orders, id=order["id"])[0]["priority"] == "urgent"

    def test_offline_old_driver_is_forced_available(
        self, client, admin_headers, assigned, create_driver, rows,
    ):
        order, old_driver = assigned
        client.patch(f"/drivers/{old_driver['id']}/status", json={"status": "offline"}, headers=admin_headers)
        new_driver = create_driver()

        reassign(client, admin_headers, order["id"], new_driver_id=new_driver["id"], reason="Driver went offline")

        assert rows(drivers, id=old_driver["id"])[0]["status"] == "available"

    @pytest.mark.parametrize("body", [{"reason": "No driver"}, {"new_driver_id": "someone"}, {}])
    def test_driver_and_reason_required(self, client, admin_headers, assigned, body):
        order, _ = assigned

        resp = reassign(client, admin_headers, order["id"], **body)

        assert resp.status_code == 400
        assert resp.json()["message"] == "New driver ID and reason are required"

    def test_order_without_active_assignment(self, client, admin_headers, create_order, create_driver):
        order = create_order()
        driver = create_driver()

        resp = reassign(client, admin_headers, order["id"], new_driver_id=driver["id"], reason="Nobody assigned")

        assert resp.status_code == 404
        assert resp.json()["message"] == "Order assignment not found"

    def test_unknown_order(self, client, admin_headers, create_driver):
        resp = reassign(client, admin_headers, "missing", new_driver_id=create_driver()["id"], reason="x")
        assert resp.status_code == 404

    def test_terminal_order_is_rejected(self, client, admin_headers, assigned, create_driver):
        order, _ = assigned
        with engine.begin() as conn:
            conn.execute(orders.update().where(orders.c.id == order["id"]).values(status="returned"))

        resp = reassign(client, admin_headers, order["id"], new_driver_id=create_driver()["id"], reason="Late")

        assert resp.status_code == 409

    def test_same_driver_is_rejected(self, client, admin_headers, assigned, rows):
        order, driver = assigned

        resp = reassign(client, admin_headers, order["id"], new_driver_id=driver["id"], reason="Same one")

        assert resp.status_code == 400
        assert rows(drivers, id=driver["id"])[0]["status"] == "busy"

    def test_unavailable_new_driver(self, client, admin_headers, assigned, create_order, create_driver, assign, rows):
        order, old_driver = assigned
        busy = create_driver()
        assign(create_order()["id"], busy["id"])

        resp = reassign(client, admin_headers, order["id"], new_driver_id=busy["id"], reason="Swap")

        assert resp.status_code == 409
        assert resp.json()["message"] == "New driver is not available"
        live = rows(order_assignments, order_id=order["id"])
        assert [(r["driver_id"], r["status"]) for r in live] == [(old_driver["id"], "pending")]
        assert rows(drivers, id=old_driver["id"])[0]["status"] == "busy"

    def test_unknown_new_driver(self, client, admin_headers, assigned):
        order, _ = assigned

        resp = reassign(client, admin_headers, order["id"], new_driver_id="ghost", reason="Swap")

        assert resp.status_code == 409
        assert resp.json()["message"] == "New driver is not available"

    def test_clients_cannot_reassign(self, client, client_headers, assigned, create_driver):
        order, _ = assigned
        resp = reassign(client, client_headers, order["id"], new_driver_id=create_driver()["id"], reason="x")
        assert resp.status_code == 403

    def test_new_driver_can_work_the_order(
        self, client, admin_headers, assigned, create_driver, driver_headers, published,
    ):
        order, old_driver = assigned
        new_driver = create_driver()
        reassign(client, admin_headers, order["id"], new_driver_id=new_driver["id"], reason="Breakdown")

        resp = client.patch(
            f"/orders/{order['id']}/status", json={"status": "picked_up"}, headers=driver_headers(old_driver),
        )
        assert resp.status_code == 403

        resp = client.patch(
            f"/orders/{order['id']}/status", json={"status": "picked_up"}, headers=driver_headers(new_driver),
        )
        assert resp.status_code == 200
