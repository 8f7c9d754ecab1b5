import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from storefront import config, notifications, orders
from storefront.database import get_db
from storefront.main import app, get_notifier


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def shopper(make_user):
    return make_user("alice")


@pytest.fixture
def admin(make_user):
    return make_user("root", is_admin=True)


def place_order(client, user, product, quantity=2, **files):
    client.post("/cart/items", json={"product_id": product.id, "quantity": quantity}, headers=as_user(user))
    return client.post(
        "/checkout",
        data={"payment_method": "UPI", "shipping_address": "12 Main Street, Pune", "phone": "+91 98765 43210"},
        files=files or None,
        headers=as_user(user),
    )


# ============================================================================
# BASICS
# ============================================================================

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics_exposes_request_counters(client):
    client.get("/health")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text


def test_login_registers_then_logs_in(client, notifier):
    body = {"discord_id": "discord-42", "username": "alice"}

    first = client.post("/auth/login", json=body)
    second = client.post("/auth/login", json={**body, "username": "alice2"})

    assert first.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["username"] == "alice2"
    assert notifier.kinds() == [notifications.USER_REGISTERED, notifications.USER_LOGIN, notifications.USER_LOGIN]


def test_login_grants_admin_from_config(client):
    response = client.post("/auth/login", json={"discord_id": "discord-admin", "username": "boss"})

    assert response.json()["is_admin"] is True


def test_banned_users_are_refused(client, make_user):
    banned = make_user("troll", is_banned=True)

    assert client.post("/auth/login", json={"discord_id": banned.discord_id, "username": "troll"}).status_code == 403
    assert client.get("/cart/", headers=as_user(banned)).status_code == 403


def test_anonymous_requests_need_a_user(client):
    assert client.get("/cart/").status_code == 401
    assert client.get("/me", headers={"X-User-Id": "not-a-number"}).status_code == 401


def test_logout_is_announced(client, shopper, notifier):
    response = client.post("/auth/logout", headers=as_user(shopper))

    assert response.status_code == 204
    [payload] = notifier.payloads(notifications.USER_LOGOUT)
    assert payload["user"] == "alice"
    assert client.post("/auth/logout").status_code == 401


def test_profile_stats_count_orders_and_completed_spend(client, shopper, admin, make_product):
    product = make_product(price="100.00", stock=10)
    first = place_order(client, shopper, product).json()
    place_order(client, shopper, product, quantity=1)
    client.post(f"/admin/orders/{first['id']}/verify-payment", json={"outcome": "completed"},
                headers=as_user(admin))

    stats = client.get("/me/stats", headers=as_user(shopper)).json()

    assert stats["total_orders"] == 2
    assert Decimal(stats["total_spent"]) == Decimal(first["total_amount"])
    assert client.get("/me/stats", headers=as_user(admin)).json()["total_orders"] == 0


# ============================================================================
# CATALOG & CART
# ============================================================================

def test_catalog_filters_and_detail(client, make_product, shopper, notifier):
    tee = make_product(name="Puma Tee", category="T-Shirts", brand="Puma")
    make_product(name="Puma Hoodie", category="Hoodies", brand="Puma")
    make_product(name="UA Tee", category="T-Shirts", brand="Under Armour")

    names = [p["name"] for p in client.get("/products/", params={"category": "T-Shirts"}).json()]
    assert sorted(names) == ["Puma Tee", "UA Tee"]
    assert [p["name"] for p in client.get("/products/", params={"search": "hood"}).json()] == ["Puma Hoodie"]

    detail = client.get(f"/products/{tee.id}", headers=as_user(shopper)).json()
    assert detail["name"] == "Puma Tee"
    assert {p["name"] for p in detail["related"]} == {"UA Tee"}
    assert notifier.kinds() == [notifications.PRODUCT_VIEWED]

    facets = client.get("/catalog/facets").json()
    assert facets["brands"] == ["Puma", "Under Armour"]
    assert client.get("/products/9999").status_code == 404


def test_cart_flow(client, shopper, make_product):
    product = make_product(price="100.00", stock=5)

    added = client.post("/cart/items", json={"product_id": product.id, "quantity": 2}, headers=as_user(shopper))
    assert added.status_code == 201
    assert added.json()["pricing"]["total"] == "286.00"
    line_id = added.json()["items"][0]["id"]

    too_many = client.patch(f"/cart/items/{line_id}", json={"quantity": 6}, headers=as_user(shopper))
    assert too_many.status_code == 409

    updated = client.patch(f"/cart/items/{line_id}", json={"quantity": 3}, headers=as_user(shopper))
    assert updated.json()["item_count"] == 3
    assert client.get("/cart/count", headers=as_user(shopper)).json() == {"count": 3}

    removed = client.delete(f"/cart/items/{line_id}", headers=as_user(shopper))
    assert removed.json()["items"] == []


def test_cart_quantity_must_be_positive(client, shopper, make_product):
    product = make_product()

    response = client.post("/cart/items", json={"product_id": product.id, "quantity": 0}, headers=as_user(shopper))

    assert response.status_code == 422


def test_coupon_below_minimum_is_a_bad_request(client, shopper, make_product, make_coupon):
    make_coupon("SAVE20", value="20", min_order_amount=Decimal("500.00"))
    product = make_product(price="400.00", stock=5)
    client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=as_user(shopper))

    response = client.post("/cart/coupon", json={"code": "SAVE20"}, headers=as_user(shopper))

    assert response.status_code == 400
    assert "Minimum order amount" in response.json()["detail"]


# ============================================================================
# CHECKOUT & ORDERS
# ============================================================================

def test_checkout_with_payment_proof(client, shopper, make_product, notifier):
    product = make_product(price="100.00", stock=5)

    response = place_order(client, shopper, product,
                           payment_proof=("receipt.png", b"\x89PNG fake image", "image/png"))

    assert response.status_code == 201
    order = response.json()
    assert order["total_amount"] == "286.00"
    assert order["status"] == "pending"
    assert order["payment"]["status"] == "pending"
    assert order["payment_proof"].startswith("/uploads/proof_")
    stored = os.path.join(config.UPLOAD_DIR, os.path.basename(order["payment_proof"]))
    assert os.path.exists(stored)
    assert notifications.PAYMENT_PROOF_SUBMITTED in notifier.kinds()
    assert client.get(f"/products/{product.id}").json()["stock"] == 3


def test_checkout_rejects_bad_input(client, shopper, make_product):
    product = make_product()
    client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=as_user(shopper))

    bad_method = client.post("/checkout", data={"payment_method": "Cash", "shipping_address": "12 Main Street"},
                             headers=as_user(shopper))
    bad_file = client.post("/checkout", data={"payment_method": "UPI", "shipping_address": "12 Main Street"},
                           files={"payment_proof": ("run.exe", b"MZ", "application/octet-stream")},
                           headers=as_user(shopper))

    assert bad_method.status_code == 422
    assert bad_file.status_code == 400
    assert client.get("/cart/count", headers=as_user(shopper)).json() == {"count": 1}


def test_checkout_with_empty_cart(client, shopper):
    response = client.post("/checkout", data={"payment_method": "UPI", "shipping_address": "12 Main Street"},
                           headers=as_user(shopper))

    assert response.status_code == 400
    assert response.json()["detail"] == "Cart is empty"


def stored_proofs():
    if not os.path.isdir(config.UPLOAD_DIR):
        return set()
    return set(os.listdir(config.UPLOAD_DIR))


def test_checkout_refuses_oversized_proof(client, shopper, make_product, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 8)
    product = make_product(stock=5)
    before = stored_proofs()

    response = place_order(client, shopper, product, payment_proof=("receipt.png", b"x" * 64, "image/png"))

    assert response.status_code == 400
    assert response.json()["detail"] == "Payment proof exceeds 8 bytes"
    assert stored_proofs() == before
    assert client.get(f"/products/{product.id}").json()["stock"] == 5


def test_proof_is_discarded_when_checkout_crashes(client, shopper, make_product, monkeypatch):
    def crash(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(orders, "checkout", crash)
    before = stored_proofs()

    response = place_order(TestClient(app, raise_server_exceptions=False), shopper, make_product(),
                           payment_proof=("receipt.png", b"\x89PNG fake image", "image/png"))

    assert response.status_code == 500
    assert stored_proofs() == before


def test_order_history_and_payment_link(client, shopper, make_user, make_product):
    order = place_order(client, shopper, make_product()).json()

    history = client.get("/orders/", headers=as_user(shopper)).json()
    assert [o["order_number"] for o in history] == [order["order_number"]]
    assert history[0]["item_count"] == 1

    link = client.get(f"/orders/{order['id']}/payment-link", headers=as_user(shopper)).json()
    assert link["upi_url"].startswith("upi://pay?pa=")
    assert f"am={order['total_amount']}" in link["upi_url"]

    stranger = make_user("mallory")
    assert client.get(f"/orders/{order['id']}", headers=as_user(stranger)).status_code == 403


def test_customer_cancel_is_final(client, shopper, make_product):
    product = make_product(stock=5)
    order = place_order(client, shopper, product).json()

    first = client.post(f"/orders/{order['id']}/cancel", headers=as_user(shopper))
    second = client.post(f"/orders/{order['id']}/cancel", headers=as_user(shopper))

    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409
    assert client.get(f"/products/{product.id}").json()["stock"] == 5


# ============================================================================
# ADMIN
# ============================================================================

@pytest.mark.parametrize("method, path", [
    ("get", "/admin/dashboard"),
    ("get", "/admin/users"),
    ("get", "/admin/orders"),
    ("get", "/admin/coupons"),
    ("delete", "/admin/products/1"),
    ("get", "/admin/backup"),
    ("post", "/admin/restore"),
])
def test_admin_routes_refuse_customers(client, shopper, method, path):
    assert getattr(client, method)(path, headers=as_user(shopper)).status_code == 403


def test_admin_rejects_payment_and_stock_returns(client, shopper, admin, make_product, notifier):
    product = make_product(stock=5)
    order = place_order(client, shopper, product).json()

    response = client.post(f"/admin/orders/{order['id']}/verify-payment",
                           json={"outcome": "failed", "reason": "No transfer"}, headers=as_user(admin))

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["payment"]["status"] == "failed"
    assert client.get(f"/products/{product.id}").json()["stock"] == 5
    assert notifications.PAYMENT_FAILED in notifier.kinds()


def test_admin_confirms_payment(client, shopper, admin, make_product):
    order = place_order(client, shopper, make_product()).json()

    response = client.post(f"/admin/orders/{order['id']}/verify-payment",
                           json={"outcome": "completed", "transaction_id": "UPI-778"}, headers=as_user(admin))
    again = client.post(f"/admin/orders/{order['id']}/verify-payment",
                        json={"outcome": "completed"}, headers=as_user(admin))

    assert response.json()["status"] == "completed"
    assert response.json()["payment"]["transaction_id"] == "UPI-778"
    assert again.status_code == 409

    stats = client.get("/admin/dashboard", headers=as_user(admin)).json()
    assert stats["total_orders"] == 1
    assert Decimal(stats["total_revenue"]) == Decimal(order["total_amount"])


def test_admin_status_updates_follow_transitions(client, shopper, admin, make_product):
    order = place_order(client, shopper, make_product()).json()
    url = f"/admin/orders/{order['id']}/status"

    assert client.post(url, json={"status": "shipped"}, headers=as_user(admin)).json()["status"] == "shipped"
    assert client.post(url, json={"status": "cancelled"}, headers=as_user(admin)).status_code == 409
    assert client.post(url, json={"status": "lost"}, headers=as_user(admin)).status_code == 422


def test_admin_product_lifecycle(client, admin, notifier):
    created = client.post("/admin/products", json={
        "name": "Esports Jersey", "price": "44.99", "category": "Esports", "brand": "Custom", "stock": 30,
    }, headers=as_user(admin))
    assert created.status_code == 201
    product_id = created.json()["id"]

    edited = client.patch(f"/admin/products/{product_id}", json={"price": "39.99"}, headers=as_user(admin))
    assert edited.json()["price"] == "39.99"
    [payload] = notifier.payloads(notifications.PRODUCT_EDITED)
    assert payload["changes"] == "price"

    assert client.delete(f"/admin/products/{product_id}", headers=as_user(admin)).status_code == 204
    assert client.get(f"/products/{product_id}").status_code == 404


def test_admin_bans_and_lists_users(client, shopper, admin):
    response = client.post(f"/admin/users/{shopper.id}/ban", json={"action": "ban"}, headers=as_user(admin))

    assert response.json()["is_banned"] is True
    assert client.get("/cart/", headers=as_user(shopper)).status_code == 403
    users = {u["username"]: u for u in client.get("/admin/users", headers=as_user(admin)).json()}
    assert users["alice"]["is_banned"] is True
    assert users["alice"]["order_count"] == 0


def test_admin_creates_coupons(client, admin):
    created = client.post("/admin/coupons", json={"code": "welcome", "discount_value": "10"}, headers=as_user(admin))
    duplicate = client.post("/admin/coupons", json={"code": "WELCOME", "discount_value": "5"}, headers=as_user(admin))
    too_big = client.post("/admin/coupons", json={"code": "HUGE", "discount_value": "150"}, headers=as_user(admin))

    assert created.status_code == 201
    assert created.json()["code"] == "WELCOME"
    assert duplicate.status_code == 400
    assert too_big.status_code == 422
    assert [c["code"] for c in client.get("/admin/coupons", headers=as_user(admin)).json()] == ["WELCOME"]


def test_admin_backup_and_restore(client, admin, make_product, notifier):
    product = make_product(name="Keeper Gloves", stock=5)

    snapshot = client.get("/admin/backup", headers=as_user(admin))

    assert snapshot.status_code == 200
    assert snapshot.content.startswith(b"SQLite format 3\x00")
    assert snapshot.headers["content-disposition"].startswith("attachment")
    [payload] = notifier.payloads(notifications.BACKUP_CREATED)
    assert payload["filename"].startswith("backup_")

    client.delete(f"/admin/products/{product.id}", headers=as_user(admin))
    assert client.get(f"/products/{product.id}").status_code == 404

    restored = client.post("/admin/restore", files={"database": ("backup.db", snapshot.content)},
                           headers=as_user(admin))

    assert restored.status_code == 200
    assert restored.json()["success"] is True
    assert client.get(f"/products/{product.id}").json()["name"] == "Keeper Gloves"
    assert notifier.payloads(notifications.ADMIN_ACTION)[-1]["summary"] == "Restored database"


def test_restore_refuses_files_that_are_not_backups(client, admin, make_product, monkeypatch):
    product = make_product(stock=5)

    garbage = client.post("/admin/restore", files={"database": ("backup.db", b"not a database")},
                          headers=as_user(admin))
    monkeypatch.setattr(config, "MAX_RESTORE_BYTES", 16)
    oversized = client.post("/admin/restore", files={"database": ("backup.db", b"SQLite format 3\x00" + b"\x00" * 64)},
                            headers=as_user(admin))

    assert garbage.status_code == 400
    assert oversized.status_code == 400
    assert oversized.json()["detail"] == "Backup file exceeds 16 bytes"
    assert client.get(f"/products/{product.id}").status_code == 200
