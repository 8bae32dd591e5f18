"""
API tests: actor header handling, product stock endpoints, the sale
lifecycle over HTTP, catalog and alert configuration routes.
"""

import pytest

from stockroom.models.sales import SALE_COMPLETED, SALE_CANCELED, PAYMENT_PAID
from stockroom.services import notification_service


class TestHealthAndActor:
    def test_health_needs_no_actor(self, client, db_session, product):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["ledger"]["status"] == "healthy"
        assert data["checks"]["delivery"]["details"]["sms_configured"] is False

    @pytest.mark.parametrize("headers", [{}, {"X-User-Id": "abc"}, {"X-User-Id": "9999"}])
    def test_actor_required(self, client, db_session, headers):
        resp = client.get("/api/products", headers=headers)
        assert resp.status_code == 401

    def test_inactive_actor_rejected(self, client, admin_user, actor_headers, db_session):
        admin_user.is_active = False
        db_session.commit()
        assert client.get("/api/products", headers=actor_headers).status_code == 401


class TestProductRoutes:
    def test_create_with_opening_stock_and_adjust(self, client, admin_user, actor_headers, category):
        headers = actor_headers
        resp = client.post(
            "/api/products",
            json={"sku": "W-1", "name": "Widget", "price_cents": 250, "min_stock": 2,
                  "category_id": category.id, "opening_stock": 5},
            headers=headers,
        )
        assert resp.status_code == 201
        product = resp.get_json()
        assert product["current_stock"] == 5

        resp = client.post(f"/api/products/{product['id']}/stock", json={"quantity_delta": -4, "note": "breakage"},
                           headers=headers)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["product"]["current_stock"] == 1
        assert body["movement"]["quantity"] == -4
        assert body["movement"]["user_id"] == admin_user.id

        resp = client.get(f"/api/products/{product['id']}/movements", headers=headers)
        data = resp.get_json()
        assert data["count"] == 2
        assert data["ledger_quantity"] == data["current_stock"] == 1

    def test_current_stock_not_writable(self, client, admin_user, actor_headers, product):
        resp = client.patch(f"/api/products/{product.id}", json={"current_stock": 99},
                            headers=actor_headers)
        assert resp.status_code == 400

    def test_duplicate_sku_conflict(self, client, admin_user, actor_headers, product):
        resp = client.post("/api/products", json={"sku": product.sku, "name": "Again", "price_cents": 1},
                           headers=actor_headers)
        assert resp.status_code == 409

    def test_adjust_below_zero_conflict(self, client, admin_user, actor_headers, product):
        resp = client.post(f"/api/products/{product.id}/stock", json={"quantity_delta": -11},
                           headers=actor_headers)
        assert resp.status_code == 409

    @pytest.mark.parametrize("delta", [0, "3", 1.5, True, None])
    def test_adjust_requires_nonzero_int(self, client, admin_user, actor_headers, product, delta):
        resp = client.post(f"/api/products/{product.id}/stock", json={"quantity_delta": delta},
                           headers=actor_headers)
        assert resp.status_code == 400

    def test_adjust_unknown_product(self, client, admin_user, actor_headers):
        resp = client.post("/api/products/999/stock", json={"quantity_delta": 1}, headers=actor_headers)
        assert resp.status_code == 404

    def test_low_stock_filter_and_soft_delete(self, client, admin_user, actor_headers, make_product):
        low = make_product(stock=1, min_stock=5)
        make_product(stock=50, min_stock=5)
        headers = actor_headers

        items = client.get("/api/products?low_stock=true", headers=headers).get_json()["items"]
        assert [p["id"] for p in items] == [low.id]

        assert client.delete(f"/api/products/{low.id}", headers=headers).get_json()["is_active"] is False
        assert client.get(f"/api/products/{low.id}", headers=headers).status_code == 200


class TestSaleRoutes:
    def test_lifecycle(self, client, admin_user, actor_headers, product):
        headers = actor_headers

        resp = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 3}],
                                               "status": SALE_COMPLETED}, headers=headers)
        assert resp.status_code == 201
        sale = resp.get_json()["sale"]
        assert sale["total_amount_cents"] == 3000
        assert client.get(f"/api/products/{product.id}", headers=headers).get_json()["current_stock"] == 7

        resp = client.post(f"/api/sales/{sale['id']}/payments", json={"amount_cents": 3000, "method": "cash"},
                           headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()["sale"]["payment_status"] == PAYMENT_PAID

        resp = client.patch(f"/api/sales/{sale['id']}", json={"notes": "late edit"}, headers=headers)
        assert resp.status_code == 409

        resp = client.patch(f"/api/sales/{sale['id']}", json={"status": SALE_CANCELED}, headers=headers)
        assert resp.status_code == 200
        assert client.get(f"/api/products/{product.id}", headers=headers).get_json()["current_stock"] == 10

        resp = client.patch(f"/api/sales/{sale['id']}", json={"status": SALE_COMPLETED}, headers=headers)
        assert resp.status_code == 409

    def test_insufficient_stock_conflict(self, client, admin_user, actor_headers, product):
        resp = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 50}],
                                               "status": SALE_COMPLETED}, headers=actor_headers)
        assert resp.status_code == 409
        assert resp.get_json()["details"]["product_id"] == product.id

    def test_unknown_field_rejected(self, client, admin_user, actor_headers, product):
        resp = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 1}],
                                               "total_amount_cents": 5}, headers=actor_headers)
        assert resp.status_code == 400

    def test_missing_items(self, client, admin_user, actor_headers, db_session):
        resp = client.post("/api/sales", json={"notes": "empty"}, headers=actor_headers)
        assert resp.status_code == 400

    def test_delete_and_missing(self, client, admin_user, actor_headers, product):
        headers = actor_headers
        sale = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 2}],
                                               "status": SALE_COMPLETED}, headers=headers).get_json()["sale"]

        assert client.delete(f"/api/sales/{sale['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/sales/{sale['id']}", headers=headers).status_code == 404
        assert client.get(f"/api/products/{product.id}", headers=headers).get_json()["current_stock"] == 10

    def test_payment_delete(self, client, admin_user, actor_headers, product):
        headers = actor_headers
        sale = client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 1}]},
                           headers=headers).get_json()["sale"]
        payment = client.post(f"/api/sales/{sale['id']}/payments", json={"amount_cents": 400, "method": "card"},
                              headers=headers).get_json()["payment"]

        resp = client.delete(f"/api/payments/{payment['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["sale"]["paid_amount_cents"] == 0
        assert client.delete(f"/api/payments/{payment['id']}", headers=headers).status_code == 404

    def test_listing(self, client, admin_user, actor_headers, product):
        headers = actor_headers
        for _ in range(2):
            client.post("/api/sales", json={"items": [{"product_id": product.id, "quantity": 1}]}, headers=headers)

        data = client.get("/api/sales?status=pending&page=1&per_page=1", headers=headers).get_json()
        assert data["count"] == 1
        assert data["pagination"]["total"] == 2
        assert client.get("/api/sales?date_from=yesterday", headers=headers).status_code == 400


class TestCatalogRoutes:
    def test_categories(self, client, admin_user, actor_headers, db_session):
        headers = actor_headers
        created = client.post("/api/categories", json={"name": "Tools"}, headers=headers)
        assert created.status_code == 201
        assert client.post("/api/categories", json={"name": "tools"}, headers=headers).status_code == 409

        resp = client.patch(f"/api/categories/{created.get_json()['id']}", json={"description": "Hand tools"},
                            headers=headers)
        assert resp.get_json()["description"] == "Hand tools"
        assert client.get("/api/categories", headers=headers).get_json()["count"] == 1

    @pytest.mark.parametrize("path", ["suppliers", "customers"])
    def test_contacts(self, client, admin_user, actor_headers, db_session, path):
        headers = actor_headers
        resp = client.post(f"/api/{path}", json={"name": "Acme", "email": "acme@example.com"}, headers=headers)
        assert resp.status_code == 201
        contact_id = resp.get_json()["id"]

        assert client.post(f"/api/{path}", json={"name": "Bad", "email": "nope"}, headers=headers).status_code == 400
        resp = client.patch(f"/api/{path}/{contact_id}", json={"is_active": False}, headers=headers)
        assert resp.get_json()["is_active"] is False
        assert client.get(f"/api/{path}?active=true", headers=headers).get_json()["count"] == 0
        assert client.get(f"/api/{path}/999", headers=headers).status_code == 404


class TestAlertRoutes:
    def test_rule_crud(self, client, admin_user, actor_headers, category):
        headers = actor_headers
        payload = {"category_id": category.id, "min_quantity": 3, "notification_email": "rules@shop.com"}

        resp = client.post("/api/sensible-categories", json=payload, headers=headers)
        assert resp.status_code == 201
        rule = resp.get_json()
        assert rule["notification_frequency"] == "daily"

        assert client.post("/api/sensible-categories", json=payload, headers=headers).status_code == 409

        resp = client.patch(f"/api/sensible-categories/{rule['id']}", json={"notification_frequency": "hourly"},
                            headers=headers)
        assert resp.status_code == 400

        resp = client.patch(f"/api/sensible-categories/{rule['id']}", json={"notification_frequency": "weekly"},
                            headers=headers)
        assert resp.get_json()["notification_frequency"] == "weekly"

        assert client.delete(f"/api/sensible-categories/{rule['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/sensible-categories/{rule['id']}", headers=headers).status_code == 404

    def test_rule_for_unknown_category(self, client, admin_user, actor_headers):
        resp = client.post("/api/sensible-categories",
                           json={"category_id": 999, "min_quantity": 1, "notification_email": "a@b.com"},
                           headers=actor_headers)
        assert resp.status_code == 400

    def test_settings(self, client, admin_user, actor_headers):
        headers = actor_headers
        assert client.get("/api/settings/notifications", headers=headers).get_json()["notify_low_stock"] is True

        resp = client.patch("/api/settings/notifications", json={"notify_low_stock": False}, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["notify_low_stock"] is False

        resp = client.put("/api/settings/notifications", json={"additional_emails": "x@y.com, broken"},
                          headers=headers)
        assert resp.status_code == 400
        assert resp.get_json()["details"]["invalid"] == ["broken"]

    def test_manual_check(self, client, admin_user, actor_headers, make_product):
        make_product(stock=0)
        resp = client.post("/api/notifications/check", json={"force": True}, headers=actor_headers)
        assert resp.status_code == 200
        report = resp.get_json()
        assert report["forced"] is True
        assert report["sent"] == 1
        assert report["dispatched"][0]["recipient"] == "admin@test.local"

    def test_manual_check_rejects_non_boolean(self, client, admin_user, actor_headers):
        resp = client.post("/api/notifications/check", json={"force": "yes"}, headers=actor_headers)
        assert resp.status_code == 400

    def test_manual_check_while_running(self, client, admin_user, actor_headers):
        assert notification_service._cycle_lock.acquire(blocking=False)
        try:
            resp = client.post("/api/notifications/check", headers=actor_headers)
        finally:
            notification_service._cycle_lock.release()
        assert resp.status_code == 409
