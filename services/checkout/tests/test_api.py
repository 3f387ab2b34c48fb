"""HTTP API tests through httpx + ASGITransport."""

import pytest

from app.models import DiscountType
from conftest import add_discount, add_item, stock_of

pytestmark = pytest.mark.anyio

STAFF_HEADERS = {"X-Actor-Id": "staff-1", "X-Actor-Role": "Staff"}
MANAGER_HEADERS = {"X-Actor-Id": "manager-1", "X-Actor-Role": "Manager"}

CUSTOMER = {"name": "Alice", "contact": "555-0100", "address": "1 Main St", "email": "a@example.com"}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "service": "checkout-service"}


class TestOrdersApi:
    async def test_create_order(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=5, threshold=2)

        resp = await client.post(
            "/orders",
            json={"customer": CUSTOMER, "cart": [{"inventory_item_id": x.id, "quantity": 3}]},
            headers=STAFF_HEADERS,
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "Processing"
        assert body["subtotal"] == 30.0
        assert body["discountAmount"] == 0.0
        assert body["total"] == 30.0
        assert body["createdBy"] == "staff-1"
        assert body["items"] == [
            {
                "inventory_item_id": x.id,
                "name": "Item X",
                "sku": "X",
                "quantity": 3,
                "price_at_purchase": 10.0,
            }
        ]
        assert await stock_of(session_factory, x.id) == 2

        fetched = await client.get(f"/orders/{body['id']}", headers=STAFF_HEADERS)
        assert fetched.json() == body

    async def test_create_order_with_discount(self, client, session_factory):
        x = await add_item(session_factory, "X", "150.00", quantity=5)
        await add_discount(session_factory, "SUMMER10", DiscountType.PERCENTAGE, "10")

        resp = await client.post(
            "/orders",
            json={
                "customer": CUSTOMER,
                "cart": [{"inventory_item_id": x.id, "quantity": 1}],
                "discountCode": "SUMMER10",
            },
            headers=STAFF_HEADERS,
        )

        assert resp.status_code == 201
        assert resp.json()["discountAmount"] == 15.0
        assert resp.json()["total"] == 135.0

    async def test_insufficient_stock_body(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=2)

        resp = await client.post(
            "/orders",
            json={"customer": CUSTOMER, "cart": [{"inventory_item_id": x.id, "quantity": 5}]},
            headers=STAFF_HEADERS,
        )

        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "InsufficientStock"
        assert (body["item_id"], body["available"], body["requested"]) == (x.id, 2, 5)

    @pytest.mark.parametrize(
        "cart",
        [[], [{"inventory_item_id": "x", "quantity": 0}]],
    )
    async def test_invalid_cart(self, client, cart):
        resp = await client.post(
            "/orders", json={"customer": CUSTOMER, "cart": cart}, headers=STAFF_HEADERS
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidCart"

    async def test_discount_error_reason(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=5)

        resp = await client.post(
            "/orders",
            json={
                "customer": CUSTOMER,
                "cart": [{"inventory_item_id": x.id, "quantity": 1}],
                "discountCode": "NOPE",
            },
            headers=STAFF_HEADERS,
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "DiscountError"
        assert resp.json()["reason"] == "CodeNotFound"
        assert await stock_of(session_factory, x.id) == 5

    async def test_missing_identity_is_401(self, client):
        resp = await client.post("/orders", json={"customer": CUSTOMER, "cart": []})
        assert resp.status_code == 401

    async def test_unknown_role_is_401(self, client):
        resp = await client.get("/orders", headers={"X-Actor-Id": "x", "X-Actor-Role": "Guest"})
        assert resp.status_code == 401

    async def test_unknown_order_is_404(self, client):
        resp = await client.get("/orders/missing", headers=STAFF_HEADERS)
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    async def test_status_update(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=5)
        created = await client.post(
            "/orders",
            json={"customer": CUSTOMER, "cart": [{"inventory_item_id": x.id, "quantity": 1}]},
            headers=STAFF_HEADERS,
        )
        order_id = created.json()["id"]

        illegal = await client.put(
            f"/orders/{order_id}/status", json={"status": "Delivered"}, headers=MANAGER_HEADERS
        )
        forbidden = await client.put(
            f"/orders/{order_id}/status", json={"status": "Shipped"}, headers=STAFF_HEADERS
        )
        shipped = await client.put(
            f"/orders/{order_id}/status", json={"status": "Shipped"}, headers=MANAGER_HEADERS
        )

        assert illegal.status_code == 400
        assert illegal.json()["error"] == "IllegalTransition"
        assert (illegal.json()["from"], illegal.json()["to"]) == ("Processing", "Delivered")
        assert forbidden.status_code == 403
        assert shipped.status_code == 200
        assert shipped.json()["status"] == "Shipped"

    async def test_list_orders_by_status(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=5)
        for _ in range(2):
            await client.post(
                "/orders",
                json={"customer": CUSTOMER, "cart": [{"inventory_item_id": x.id, "quantity": 1}]},
                headers=STAFF_HEADERS,
            )

        everything = await client.get("/orders", headers=STAFF_HEADERS)
        shipped = await client.get("/orders", params={"status": "Shipped"}, headers=STAFF_HEADERS)

        assert len(everything.json()) == 2
        assert shipped.json() == []


class TestDiscountsApi:
    async def test_validate_does_not_mutate(self, client, session_factory):
        await add_discount(
            session_factory, "ONCE", DiscountType.FIXED_AMOUNT, "50", max_usage=1
        )

        first = await client.post(
            "/discounts/validate", json={"code": "ONCE", "cartTotal": 30, "itemCount": 1}
        )
        second = await client.post(
            "/discounts/validate", json={"code": "ONCE", "cartTotal": 30, "itemCount": 1}
        )

        assert first.json() == second.json()
        assert first.json()["isValid"] is True
        assert first.json()["discountAmount"] == 30.0
        assert first.json()["discount"]["usedCount"] == 0

    async def test_validate_reports_reason(self, client):
        resp = await client.post("/discounts/validate", json={"code": "NOPE", "cartTotal": 30})

        assert resp.status_code == 200
        assert resp.json() == {
            "isValid": False,
            "reason": "CodeNotFound",
            "message": "Invalid discount code",
        }

    async def test_create_deactivate_and_stats(self, client):
        created = await client.post(
            "/discounts",
            json={
                "code": "WINTER",
                "type": "Percentage",
                "value": 20,
                "condition": {"minSpend": 50, "validUntil": "2099-01-01T00:00:00"},
            },
            headers=MANAGER_HEADERS,
        )
        duplicate = await client.post(
            "/discounts",
            json={"code": "WINTER", "type": "FixedAmount", "value": 5},
            headers=MANAGER_HEADERS,
        )

        assert created.status_code == 201
        assert created.json()["condition"]["minSpend"] == 50.0
        assert created.json()["condition"]["validUntil"].startswith("2099-01-01T00:00:00")
        assert duplicate.status_code == 409

        active = await client.get("/discounts/active")
        assert [d["code"] for d in active.json()] == ["WINTER"]

        resp = await client.patch(
            f"/discounts/{created.json()['id']}/deactivate", headers=MANAGER_HEADERS
        )
        assert resp.json()["isActive"] is False
        assert (await client.get("/discounts/active")).json() == []

        stats = await client.get("/discounts/stats/summary", headers=MANAGER_HEADERS)
        assert stats.json() == {"totalDiscounts": 1, "activeDiscounts": 0, "totalUsage": 0}

    async def test_staff_cannot_create(self, client):
        resp = await client.post(
            "/discounts",
            json={"code": "X", "type": "FixedAmount", "value": 5},
            headers=STAFF_HEADERS,
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "PermissionDenied"


class TestInventoryApi:
    async def test_create_item_and_duplicate_sku(self, client):
        payload = {"sku": "KB-01", "name": "Keyboard", "price": "49.90", "quantity": 4, "threshold": 5}

        created = await client.post("/inventory", json=payload, headers=MANAGER_HEADERS)
        duplicate = await client.post("/inventory", json=payload, headers=MANAGER_HEADERS)

        assert created.status_code == 201
        assert created.json()["quantity"] == 4
        assert created.json()["price"] == 49.9
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "DuplicateSku"

    async def test_restock_movements_and_reconcile(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=1)

        resp = await client.post(
            f"/inventory/{x.id}/restock",
            json={"quantity": 9, "reason": "Supplier delivery"},
            headers=MANAGER_HEADERS,
        )
        movements = await client.get(f"/inventory/{x.id}/movements", headers=STAFF_HEADERS)
        reconcile = await client.get(f"/inventory/{x.id}/reconcile", headers=STAFF_HEADERS)

        assert resp.status_code == 200
        assert resp.json()["quantityChange"] == 9
        assert [m["type"] for m in movements.json()] == ["StockIn", "StockIn"]
        assert reconcile.json() == {
            "itemId": x.id,
            "quantity": 10,
            "movementTotal": 10,
            "balanced": True,
        }

    async def test_low_stock_and_summary(self, client, session_factory):
        low = await add_item(session_factory, "LOW", "2.00", quantity=1, threshold=3)
        await add_item(session_factory, "OUT", "5.00", quantity=0, threshold=0)
        await add_item(session_factory, "OK", "1.00", quantity=50, threshold=3)

        by_item = await client.get("/inventory/low-stock", headers=STAFF_HEADERS)
        override = await client.get(
            "/inventory/low-stock", params={"threshold": 100}, headers=STAFF_HEADERS
        )
        summary = await client.get("/inventory/summary", headers=STAFF_HEADERS)

        assert [i["sku"] for i in by_item.json()] == ["OUT", "LOW"]
        assert len(override.json()) == 3
        assert by_item.json()[1]["id"] == low.id
        assert summary.json() == {
            "totalItems": 3,
            "totalValue": 52.0,
            "lowStockItems": 2,
            "outOfStockItems": 1,
        }

    async def test_unknown_item_movements(self, client):
        resp = await client.get("/inventory/missing/movements", headers=STAFF_HEADERS)
        assert resp.status_code == 404

    async def test_update_item(self, client, session_factory):
        x = await add_item(session_factory, "X", "10.00", quantity=4)

        resp = await client.put(
            f"/inventory/{x.id}",
            json={"price": "12.50", "threshold": 3, "name": "Renamed"},
            headers=MANAGER_HEADERS,
        )
        forbidden = await client.put(
            f"/inventory/{x.id}", json={"price": "1.00"}, headers=STAFF_HEADERS
        )
        missing = await client.put(
            "/inventory/missing", json={"price": "1.00"}, headers=MANAGER_HEADERS
        )

        assert resp.status_code == 200
        assert (resp.json()["price"], resp.json()["threshold"], resp.json()["name"]) == (
            12.5,
            3,
            "Renamed",
        )
        assert resp.json()["quantity"] == 4
        assert forbidden.status_code == 403
        assert missing.status_code == 404


class TestDiscountAdministrationApi:
    async def test_list_and_get_are_management_only(self, client, session_factory):
        d = await add_discount(session_factory, "ONE", DiscountType.FIXED_AMOUNT, "5")
        await add_discount(session_factory, "TWO", DiscountType.PERCENTAGE, "10")

        listed = await client.get("/discounts", headers=MANAGER_HEADERS)
        fetched = await client.get(f"/discounts/{d.id}", headers=MANAGER_HEADERS)
        missing = await client.get("/discounts/missing", headers=MANAGER_HEADERS)
        forbidden = await client.get("/discounts", headers=STAFF_HEADERS)

        assert sorted(x["code"] for x in listed.json()) == ["ONE", "TWO"]
        assert fetched.json()["code"] == "ONE"
        assert missing.status_code == 404
        assert forbidden.status_code == 403

    async def test_update_discount(self, client, session_factory):
        d = await add_discount(
            session_factory, "LIMITED", DiscountType.FIXED_AMOUNT, "5", max_usage=1
        )
        x = await add_item(session_factory, "X", "10.00", quantity=5)
        await client.post(
            "/orders",
            json={
                "customer": CUSTOMER,
                "cart": [{"inventory_item_id": x.id, "quantity": 1}],
                "discountCode": "LIMITED",
            },
            headers=STAFF_HEADERS,
        )

        raised = await client.put(
            f"/discounts/{d.id}",
            json={"value": 7, "condition": {"maxUsage": 10}},
            headers=MANAGER_HEADERS,
        )

        assert raised.status_code == 200
        assert raised.json()["value"] == 7.0
        assert raised.json()["condition"]["maxUsage"] == 10
        assert raised.json()["usedCount"] == 1
