import json

import pytest
from fastapi.testclient import TestClient

from database import PRODUCTS
from main import create_app
from schemas import Role


@pytest.fixture
def client(settings, db, gateway):
    with TestClient(create_app(settings, db=db, gateway=gateway)) as c:
        yield c


def test_root(client):
    assert client.get("/").json() == {"message": "Storefront API"}


def test_register_login_and_me(client):
    res = client.post("/auth/register", json={"name": "Ana", "email": "Ana@Example.com", "password": "secret123"})
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["data"]["user"]["email"] == "ana@example.com"
    assert "password_hash" not in body["data"]["user"]

    again = client.post("/auth/register", json={"name": "Ana", "email": "ana@example.com", "password": "secret123"})
    assert again.status_code == 400
    assert again.json() == {"success": False, "message": "Email already registered"}

    bad = client.post("/auth/login", json={"email": "ana@example.com", "password": "wrong-one"})
    assert bad.status_code == 400

    token = client.post("/auth/login", json={"email": "ana@example.com", "password": "secret123"}).json()["data"]["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["data"]["name"] == "Ana"


def test_auth_errors_use_the_envelope(client, make_user):
    res = client.get("/orders")
    assert res.status_code == 401
    assert res.json()["success"] is False

    res = client.get("/orders", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401

    _, headers = make_user()
    res = client.get("/inventory/alerts", headers=headers)
    assert res.status_code == 403
    assert res.json()["message"] == "Staff only"


def test_malformed_body_is_a_400(client, make_user):
    _, headers = make_user()
    res = client.post("/cart/items", json={"product_id": "x", "quantity": 0}, headers=headers)
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["message"] == "Invalid request"
    assert "error" in body


def test_bad_id_is_a_validation_error(client):
    res = client.get("/products/not-an-id")
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid product id format"


def test_admin_manages_products(client, make_user):
    _, admin = make_user(Role.ADMIN.value)
    _, customer = make_user()
    payload = {"title": "Hoodie", "sku": "HD-1", "price": 550.0, "inventory_by_size": {"S": 2, "M": 3}}

    assert client.post("/products", json=payload, headers=customer).status_code == 403
    res = client.post("/products", json=payload, headers=admin)
    assert res.status_code == 201
    product = res.json()["data"]
    assert product["sizes"] == ["S", "M"]
    assert product["stock_quantity"] == 5

    res = client.patch(f"/products/{product['id']}", json={"price": 499.0}, headers=admin)
    assert res.json()["data"]["price"] == 499.0

    assert client.delete(f"/products/{product['id']}", headers=admin).json()["message"] == "Product deactivated"
    assert client.get("/products").json()["data"]["items"] == []


def test_product_catalogue_filters(client, make_product):
    cheap = make_product(title="Socks", price=50.0, stock_quantity=0)
    pricey = make_product(title="Jacket", price=900.0, stock_quantity=2, description="Warm wool")
    make_product(title="Hidden", price=10.0, stock_quantity=3, active=False)

    items = client.get("/products", params={"sort": "price_asc"}).json()["data"]["items"]
    assert [p["id"] for p in items] == [cheap, pricey]
    assert client.get("/products", params={"q": "wool"}).json()["data"]["total"] == 1
    assert [p["id"] for p in client.get("/products", params={"in_stock": True}).json()["data"]["items"]] == [pricey]
    assert client.get("/products", params={"min_price": 100}).json()["data"]["items"][0]["id"] == pricey
    assert "pending_movements" not in items[0]


def test_anonymous_cart_by_session_header(client, make_product):
    pid = make_product(price=80.0, stock_quantity=3)
    headers = {"X-Session-Id": "anon-1"}

    res = client.post("/cart/items", json={"product_id": pid, "quantity": 2}, headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["total"] == 160.0

    assert client.get("/cart", headers={"X-Session-Id": "anon-2"}).json()["data"]["items"] == []
    assert client.get("/cart").status_code == 401

    res = client.post("/cart/items", json={"product_id": pid, "quantity": 2}, headers=headers)
    assert res.status_code == 400
    assert res.json()["message"] == 'Insufficient stock for "Basic Tee". available: 3, requested: 4'


def test_checkout_pay_and_cancel(client, db, make_user, make_product, address):
    user_id, headers = make_user()
    pid = make_product(price=250.0, stock_quantity=5)

    client.post("/cart/items", json={"product_id": pid, "quantity": 2}, headers={"X-Session-Id": "anon-9"})
    merged = client.post("/cart/merge", json={"session_id": "anon-9"}, headers=headers).json()["data"]
    assert merged["items"][0]["quantity"] == 2

    res = client.post("/cart/checkout", json={"shipping_address": address, "payment_method": "CARD"}, headers=headers)
    assert res.status_code == 201
    order = res.json()["data"]
    assert order["total"] == 500.0
    assert db[PRODUCTS].find_one({"sku": {"$exists": True}})["stock_quantity"] == 3

    pay_headers = {**headers, "Idempotency-Key": "attempt-0001"}
    first = client.post("/payments", json={"order_id": order["id"], "payment_method": "CARD"}, headers=pay_headers)
    assert first.status_code == 201
    second = client.post("/payments", json={"order_id": order["id"], "payment_method": "CARD"}, headers=pay_headers)
    assert second.status_code == 200
    assert second.json()["data"]["payment_intent_id"] == first.json()["data"]["payment_intent_id"]

    event = json.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": first.json()["data"]["payment_intent_id"]}}}
    )
    assert client.post("/payments/webhook", content=event, headers={"Stripe-Signature": "forged"}).status_code == 400
    res = client.post("/payments/webhook", content=event, headers={"Stripe-Signature": "valid"})
    assert res.json()["data"]["outcome"] == "processed"

    assert client.get(f"/orders/{order['id']}", headers=headers).json()["data"]["state"] == "CONFIRMED"

    res = client.post(f"/orders/{order['id']}/cancel", headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["state"] == "CANCELLED"
    assert db[PRODUCTS].find_one({"sku": {"$exists": True}})["stock_quantity"] == 5

    res = client.post(f"/orders/{order['id']}/cancel", headers=headers)
    assert res.status_code == 400
    assert "CANCELLED" in res.json()["message"]


def test_orders_of_other_users_are_not_found(client, make_user, make_product, address):
    _, owner = make_user()
    _, stranger = make_user()
    pid = make_product(stock_quantity=5)
    order = client.post(
        "/orders",
        json={"items": [{"product_id": pid, "quantity": 1}], "shipping_address": address, "payment_method": "CARD"},
        headers=owner,
    ).json()["data"]

    res = client.get(f"/orders/{order['id']}", headers=stranger)
    assert res.status_code == 404
    assert client.get("/orders", headers=stranger).json()["data"]["total"] == 0


def test_staff_inventory_endpoints(client, make_user, make_product):
    _, staff = make_user(Role.EMPLOYEE.value)
    pid = make_product(stock_quantity=4, min_stock=5)

    res = client.post("/inventory/movements", json={"product_id": pid, "kind": "entry", "quantity": 6}, headers=staff)
    assert res.status_code == 201
    assert res.json()["data"]["stock_quantity"] == 10

    res = client.post("/inventory/movements", json={"product_id": pid, "kind": "exit", "quantity": 11}, headers=staff)
    assert res.status_code == 400

    res = client.post(
        "/inventory/movements",
        json={"product_id": pid, "kind": "sale", "quantity": 1, "order_id": "not-an-order"},
        headers=staff,
    )
    assert res.status_code == 404
    assert res.json()["message"] == 'Order "not-an-order" not found'

    movements = client.get("/inventory/movements", params={"product_id": pid}, headers=staff).json()["data"]
    assert len(movements["movements"]) == 1
    assert client.get(f"/inventory/alerts/{pid}", headers=staff).json()["data"] is None


def test_missing_database_is_reported(settings, gateway):
    with TestClient(create_app(settings, gateway=gateway)) as c:
        res = c.get("/cart", headers={"X-Session-Id": "anon"})
        assert res.status_code == 500
        assert res.json()["message"] == "Database not configured"
        assert c.get("/test").json()["connection_status"] == "Not Connected"
