"""
Order transaction tests.

Covers authoritative re-pricing, coupon evaluation, reservation accounting,
cart clearing, all-or-nothing rollback (including the guarded updates that
catch a competing order between the pre-check and the write), and the
order query / admin status endpoints.
"""

import json
import re

import pytest

from conftest import auth, cart_count, place_order, stock
from storefront import inventory
from storefront import orders as orders_module
from storefront.errors import InsufficientStock, InvalidCoupon
from storefront.models import Coupon, Order, OrderItem, Product, User
from storefront.orders import OrderService
from storefront.pricing import consume_coupon
from storefront.schemas import MAX_UNIT_PRICE, CreateOrderRequest, OrderItemInput


def mouse_line(seed, quantity=2, unit_price=10.00):
    return {"product_id": seed.mouse_id, "quantity": quantity, "unit_price": unit_price}


def order_rows(session_factory):
    with session_factory() as db:
        return db.query(Order).count()


class TestCreateOrderScenario:
    def test_cart_line_becomes_pending_order_with_reservation(self, client, seed, session_factory):
        client.post("/api/cart", json={"product_id": seed.mouse_id, "quantity": 2}, headers=auth(seed.customer_id))
        assert cart_count(session_factory, seed.customer_id) == 1

        response = place_order(client, seed, [mouse_line(seed)])

        assert response.status_code == 201
        order = response.json()["data"]
        assert order["status"] == "PENDING"
        assert order["subtotal_cents"] == 2000
        assert order["tax_cents"] == 160
        assert order["shipping_cents"] == 999
        assert order["discount_cents"] == 0
        assert order["total_cents"] == 3159
        assert stock(session_factory, seed.mouse_id) == (5, 2)
        assert cart_count(session_factory, seed.customer_id) == 0

    def test_order_number_format(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        assert re.fullmatch(r"ORD-\d{8}-[A-Z0-9]{4}", order["order_number"])

    def test_items_carry_frozen_snapshot(self, client, seed, session_factory):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        item = order["items"][0]
        assert item["unit_price_cents"] == 1000
        assert item["total_price_cents"] == 2000
        assert item["product_snapshot"]["name"] == "Wireless Mouse"
        assert item["product_snapshot"]["sku"] == "MOUSE-001"

        with session_factory() as db:
            product = db.get(Product, seed.mouse_id)
            product.price_cents = 1500
            product.name = "Renamed Mouse"
            db.commit()

        detail = client.get(f"/api/orders/{order['id']}", headers=auth(seed.customer_id)).json()["data"]
        assert detail["items"][0]["unit_price_cents"] == 1000
        assert detail["items"][0]["product_snapshot"]["name"] == "Wireless Mouse"

    @pytest.mark.parametrize(
        "items_factory,coupon",
        [
            (lambda s: [mouse_line(s)], None),
            (lambda s: [mouse_line(s)], "FREESHIP"),
            (lambda s: [mouse_line(s)], "SAVE5"),
            (lambda s: [{"product_id": s.keyboard_id, "quantity": 1, "unit_price": 120.00}], "WELCOME10"),
            (lambda s: [{"product_id": s.keyboard_id, "quantity": 1, "unit_price": 120.00}], "HALFOFF"),
            (lambda s: [mouse_line(s, 1), {"product_id": s.shirt_id, "variant_id": s.shirt_l_id, "quantity": 2, "unit_price": 25.00}], None),
        ],
    )
    def test_total_equals_items_plus_tax_plus_shipping_minus_discount(self, client, seed, items_factory, coupon):
        extra = {"coupon_code": coupon} if coupon else {}
        response = place_order(client, seed, items_factory(seed), **extra)
        assert response.status_code == 201, response.json()
        order = response.json()["data"]
        items_total = sum(item["total_price_cents"] for item in order["items"])
        assert items_total == order["subtotal_cents"]
        assert order["total_cents"] == items_total + order["tax_cents"] + order["shipping_cents"] - order["discount_cents"]

    def test_coupon_discounts(self, client, seed):
        keyboard = [{"product_id": seed.keyboard_id, "quantity": 1, "unit_price": 120.00}]

        welcome = place_order(client, seed, keyboard, coupon_code="WELCOME10").json()["data"]
        assert welcome["discount_cents"] == 1200
        assert welcome["shipping_cents"] == 0
        assert welcome["coupon_code"] == "WELCOME10"

        half = place_order(client, seed, keyboard, coupon_code="HALFOFF").json()["data"]
        assert half["discount_cents"] == 1500

        freeship = place_order(client, seed, [mouse_line(seed)], coupon_code="FREESHIP").json()["data"]
        assert freeship["discount_cents"] == freeship["shipping_cents"] == 999
        assert freeship["total_cents"] == 2160

    def test_coupon_usage_is_counted(self, client, seed, session_factory):
        place_order(client, seed, [mouse_line(seed)], coupon_code="SAVE5")
        with session_factory() as db:
            assert db.query(Coupon).filter(Coupon.code == "SAVE5").one().usage_count == 1


class TestVariantAndUntrackedStock:
    def test_variant_reserves_variant_inventory(self, client, seed, session_factory):
        response = place_order(client, seed, [
            {"product_id": seed.shirt_id, "variant_id": seed.shirt_m_id, "quantity": 2, "unit_price": 20.00},
        ])
        assert response.status_code == 201
        assert stock(session_factory, seed.shirt_id, seed.shirt_m_id) == (3, 2)
        assert stock(session_factory, seed.shirt_id, seed.shirt_l_id) == (3, 0)

    def test_variant_price_override_is_authoritative(self, client, seed):
        response = place_order(client, seed, [
            {"product_id": seed.shirt_id, "variant_id": seed.shirt_l_id, "quantity": 1, "unit_price": 20.00},
        ])
        assert response.status_code == 400
        assert response.json()["error"] == "PRICE_MISMATCH"

    def test_untracked_product_creates_no_reservation(self, client, seed, session_factory):
        response = place_order(client, seed, [{"product_id": seed.gift_card_id, "quantity": 20, "unit_price": 50.00}])
        assert response.status_code == 201
        with session_factory() as db:
            item = db.query(OrderItem).one()
            assert item.inventory_reserved is False


class TestOrderRejections:
    def test_price_mismatch_is_a_no_op(self, client, seed, session_factory):
        client.post("/api/cart", json={"product_id": seed.mouse_id, "quantity": 2}, headers=auth(seed.customer_id))

        response = place_order(client, seed, [mouse_line(seed, unit_price=9.98)])

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "PRICE_MISMATCH"
        assert body["details"] == {"submitted_cents": 998, "actual_cents": 1000}
        assert order_rows(session_factory) == 0
        assert stock(session_factory, seed.mouse_id) == (5, 0)
        assert cart_count(session_factory, seed.customer_id) == 1

    def test_one_cent_deviation_is_tolerated(self, client, seed):
        response = place_order(client, seed, [mouse_line(seed, unit_price=9.99)])
        assert response.status_code == 201
        assert response.json()["data"]["subtotal_cents"] == 2000

    @pytest.mark.parametrize("unit_price", [10.011, 10.014, 9.9851, 9.989])
    def test_sub_cent_deviation_beyond_tolerance_is_rejected(self, client, seed, session_factory, unit_price):
        response = place_order(client, seed, [mouse_line(seed, unit_price=unit_price)])
        assert response.status_code == 400
        assert response.json()["error"] == "PRICE_MISMATCH"
        assert order_rows(session_factory) == 0

    @pytest.mark.parametrize("unit_price", [10.01, 9.995])
    def test_deviation_within_tolerance(self, client, seed, unit_price):
        assert place_order(client, seed, [mouse_line(seed, unit_price=unit_price)]).status_code == 201

    @pytest.mark.parametrize("unit_price", [1e307, MAX_UNIT_PRICE + 1, -0.01])
    def test_out_of_range_price_fails_validation(self, client, seed, unit_price):
        response = place_order(client, seed, [mouse_line(seed, unit_price=unit_price)])
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("unit_price", [float("inf"), float("nan")])
    def test_non_finite_price_fails_validation(self, client, seed, session_factory, unit_price):
        body = {"items": [mouse_line(seed, unit_price=unit_price)], "shipping_address_id": seed.address_id}
        response = client.post(
            "/api/orders",
            content=json.dumps(body),
            headers={"Content-Type": "application/json", **auth(seed.customer_id)},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert order_rows(session_factory) == 0

    def test_used_up_coupon_is_rejected(self, client, seed, session_factory):
        response = place_order(client, seed, [mouse_line(seed)], coupon_code="USEDUP")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_COUPON"
        assert order_rows(session_factory) == 0
        assert stock(session_factory, seed.mouse_id) == (5, 0)

    @pytest.mark.parametrize("code", ["EXPIRED", "PAUSED", "NOSUCHCODE"])
    def test_invalid_coupons(self, client, seed, code):
        response = place_order(client, seed, [mouse_line(seed)], coupon_code=code)
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_COUPON"

    def test_coupon_minimum_amount(self, client, seed):
        response = place_order(client, seed, [mouse_line(seed)], coupon_code="WELCOME10")
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_COUPON"

    def test_single_use_coupon_works_once(self, client, seed):
        assert place_order(client, seed, [mouse_line(seed, 1)], coupon_code="ONEUSE").status_code == 201
        second = place_order(client, seed, [mouse_line(seed, 1)], coupon_code="ONEUSE")
        assert second.status_code == 400
        assert second.json()["error"] == "INVALID_COUPON"

    def test_insufficient_stock(self, client, seed, session_factory):
        response = place_order(client, seed, [mouse_line(seed, 6)])
        assert response.status_code == 400
        assert response.json()["error"] == "INSUFFICIENT_STOCK"
        assert response.json()["details"] == {"available": 5, "requested": 6}
        assert order_rows(session_factory) == 0

    def test_reserved_stock_is_not_available(self, client, seed):
        assert place_order(client, seed, [mouse_line(seed, 4)]).status_code == 201
        response = place_order(client, seed, [mouse_line(seed, 2)])
        assert response.status_code == 400
        assert response.json()["details"]["available"] == 1

    def test_unpublished_product(self, client, seed):
        response = place_order(client, seed, [{"product_id": seed.draft_id, "quantity": 1, "unit_price": 30.00}])
        assert response.status_code == 400
        assert response.json()["error"] == "PRODUCT_NOT_AVAILABLE"

    def test_address_must_belong_to_user(self, client, seed):
        response = client.post(
            "/api/orders",
            json={"items": [mouse_line(seed)], "shipping_address_id": seed.other_address_id},
            headers=auth(seed.customer_id),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ADDRESS_NOT_FOUND"

    def test_billing_address_must_belong_to_user(self, client, seed):
        response = place_order(client, seed, [mouse_line(seed)], billing_address_id=seed.other_address_id)
        assert response.status_code == 400
        assert response.json()["error"] == "BILLING_ADDRESS_NOT_FOUND"

    def test_empty_items_fail_validation(self, client, seed):
        response = place_order(client, seed, [])
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert response.json()["details"]

    def test_requires_authentication(self, client, seed):
        response = client.post("/api/orders", json={"items": [mouse_line(seed)], "shipping_address_id": seed.address_id})
        assert response.status_code == 401


class TestTransactionGuards:
    """A competing writer commits between the pre-check and the order transaction."""

    def _request(self, seed, quantity=2, coupon_code=None):
        return CreateOrderRequest(
            items=[OrderItemInput(product_id=seed.mouse_id, quantity=quantity, unit_price=10.00)],
            shipping_address_id=seed.address_id,
            coupon_code=coupon_code,
        )

    def _race(self, monkeypatch, competitor):
        real_quote = orders_module.quote_order

        def quote_then_compete(*args, **kwargs):
            quote = real_quote(*args, **kwargs)
            competitor()
            return quote

        monkeypatch.setattr(orders_module, "quote_order", quote_then_compete)

    def test_reservation_guard_prevents_oversell(self, monkeypatch, seed, settings, session_factory):
        def take_stock():
            with session_factory() as other:
                assert inventory.reserve(other, seed.mouse_id, None, 4)
                other.commit()

        self._race(monkeypatch, take_stock)
        with session_factory() as db:
            user = db.get(User, seed.customer_id)
            with pytest.raises(InsufficientStock) as exc_info:
                OrderService(db, settings).create_order(user, self._request(seed, quantity=2))

        assert exc_info.value.available == 1
        assert order_rows(session_factory) == 0
        assert stock(session_factory, seed.mouse_id) == (5, 4)

    def test_coupon_guard_rolls_back_reservation(self, monkeypatch, seed, settings, session_factory):
        def use_coupon():
            with session_factory() as other:
                coupon = other.query(Coupon).filter(Coupon.code == "ONEUSE").one()
                assert consume_coupon(other, coupon.id)
                other.commit()

        self._race(monkeypatch, use_coupon)
        with session_factory() as db:
            user = db.get(User, seed.customer_id)
            with pytest.raises(InvalidCoupon):
                OrderService(db, settings).create_order(user, self._request(seed, coupon_code="ONEUSE"))

        assert order_rows(session_factory) == 0
        assert stock(session_factory, seed.mouse_id) == (5, 0)
        with session_factory() as db:
            assert db.query(Coupon).filter(Coupon.code == "ONEUSE").one().usage_count == 1

    def test_reserve_guard_refuses_overdraw(self, seed, session_factory):
        with session_factory() as db:
            assert inventory.reserve(db, seed.mouse_id, None, 5)
            assert not inventory.reserve(db, seed.mouse_id, None, 1)
            db.commit()
        assert stock(session_factory, seed.mouse_id) == (5, 5)

    def test_consume_coupon_stops_at_limit(self, seed, session_factory):
        with session_factory() as db:
            coupon = db.query(Coupon).filter(Coupon.code == "ONEUSE").one()
            assert consume_coupon(db, coupon.id)
            assert not consume_coupon(db, coupon.id)
            db.commit()


class TestOrderQueries:
    def test_list_orders_is_paginated_and_scoped(self, client, seed):
        for _ in range(3):
            place_order(client, seed, [mouse_line(seed, 1)])

        response = client.get("/api/orders?limit=2", headers=auth(seed.customer_id))
        body = response.json()
        assert response.status_code == 200
        assert len(body["data"]) == 2
        assert body["pagination"] == {
            "page": 1, "limit": 2, "total": 3, "total_pages": 2, "has_next": True, "has_prev": False,
        }

        other = client.get("/api/orders", headers=auth(seed.other_id)).json()
        assert other["data"] == []
        assert other["pagination"]["total"] == 0

    def test_list_orders_status_filter(self, client, seed):
        place_order(client, seed, [mouse_line(seed, 1)])
        assert client.get("/api/orders?status=PENDING", headers=auth(seed.customer_id)).json()["pagination"]["total"] == 1
        assert client.get("/api/orders?status=CONFIRMED", headers=auth(seed.customer_id)).json()["pagination"]["total"] == 0
        assert client.get("/api/orders?status=BOGUS", headers=auth(seed.customer_id)).status_code == 400

    def test_get_order_detail(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        detail = client.get(f"/api/orders/{order['id']}", headers=auth(seed.customer_id)).json()["data"]
        assert detail["shipping_address"]["id"] == seed.address_id
        assert detail["payments"] == []
        assert len(detail["items"]) == 1

    def test_other_users_order_is_404(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        response = client.get(f"/api/orders/{order['id']}", headers=auth(seed.other_id))
        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    def test_admin_can_view_any_order(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        assert client.get(f"/api/orders/{order['id']}", headers=auth(seed.admin_id)).status_code == 200


class TestOrderStatusUpdates:
    def test_requires_admin(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        response = client.put(f"/api/orders/{order['id']}", json={"status": "SHIPPED"}, headers=auth(seed.customer_id))
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    def test_invalid_status(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        response = client.put(f"/api/orders/{order['id']}", json={"status": "LOST"}, headers=auth(seed.admin_id))
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_STATUS"

    def test_update_status_and_notes(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        response = client.put(
            f"/api/orders/{order['id']}",
            json={"status": "PROCESSING", "notes": "Packed"},
            headers=auth(seed.admin_id),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "PROCESSING"
        assert response.json()["data"]["notes"] == "Packed"

    def test_cancelling_pending_order_releases_reservation(self, client, seed, session_factory):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        assert stock(session_factory, seed.mouse_id) == (5, 2)

        client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=auth(seed.admin_id))
        assert stock(session_factory, seed.mouse_id) == (5, 0)

        # Cancelling again does not release twice
        client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=auth(seed.admin_id))
        assert stock(session_factory, seed.mouse_id) == (5, 0)

    def test_cancelling_confirmed_order_releases_reservation(self, client, seed, session_factory):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        client.put(f"/api/orders/{order['id']}", json={"status": "CONFIRMED"}, headers=auth(seed.admin_id))
        assert stock(session_factory, seed.mouse_id) == (5, 2)

        response = client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=auth(seed.admin_id))

        assert response.status_code == 200
        assert stock(session_factory, seed.mouse_id) == (5, 0)
        with session_factory() as db:
            assert db.query(OrderItem).one().inventory_reserved is False

    @pytest.mark.parametrize("closed", ["CANCELLED", "REFUNDED"])
    @pytest.mark.parametrize("target", ["PENDING", "CONFIRMED", "SHIPPED"])
    def test_closed_order_cannot_be_reopened(self, client, seed, session_factory, closed, target):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        client.put(f"/api/orders/{order['id']}", json={"status": closed}, headers=auth(seed.admin_id))
        assert stock(session_factory, seed.mouse_id) == (5, 0)

        response = client.put(f"/api/orders/{order['id']}", json={"status": target}, headers=auth(seed.admin_id))

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_STATUS"
        assert response.json()["details"] == {"status": closed, "requested": target}
        detail = client.get(f"/api/orders/{order['id']}", headers=auth(seed.admin_id)).json()["data"]
        assert detail["status"] == closed
        assert stock(session_factory, seed.mouse_id) == (5, 0)

    def test_closed_order_notes_can_still_change(self, client, seed):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=auth(seed.admin_id))

        response = client.put(
            f"/api/orders/{order['id']}",
            json={"status": "CANCELLED", "notes": "Customer called"},
            headers=auth(seed.admin_id),
        )

        assert response.status_code == 200
        assert response.json()["data"]["notes"] == "Customer called"

    def test_settle_reservations_runs_once_per_line(self, client, seed, session_factory):
        order = place_order(client, seed, [mouse_line(seed)]).json()["data"]
        with session_factory() as db:
            assert orders_module.settle_reservations(db, order["id"], "commit") == [seed.mouse_id]
            assert orders_module.settle_reservations(db, order["id"], "release") == []
            db.commit()
        assert stock(session_factory, seed.mouse_id) == (3, 0)

    def test_unknown_order(self, client, seed):
        response = client.put("/api/orders/nope", json={"status": "SHIPPED"}, headers=auth(seed.admin_id))
        assert response.status_code == 404
