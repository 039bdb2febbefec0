import json

import mongomock
import pytest
from bson import ObjectId

from auth import Principal, create_access_token, hash_password
from cart import CartService
from config import Settings
from database import PRODUCTS, USERS, ensure_indexes, utcnow
from errors import SignatureInvalid, UpstreamFailure
from ledger import LedgerStore
from orders import OrderManager
from payments import PaymentOrchestrator
from schemas import Product, Role
from stock import StockEngine


class FakeGateway:
    """Records calls and behaves like the provider for repeated idempotency keys."""

    def __init__(self):
        self.intents = {}
        self.calls = []
        self.refunds = []
        self.sessions = {}
        self.timeout_next_create = False

    def create_payment_intent(self, idempotency_key, amount_minor, currency, metadata):
        self.calls.append(("create", idempotency_key, amount_minor, currency))
        intent = self.intents.get(idempotency_key)
        if intent is None:
            n = len(self.intents) + 1
            intent = {"id": f"pi_{n}", "client_secret": f"pi_{n}_secret", "status": "requires_payment_method"}
            self.intents[idempotency_key] = intent
        if self.timeout_next_create:
            self.timeout_next_create = False
            raise UpstreamFailure("Timed out talking to the provider")
        return dict(intent)

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve", payment_intent_id))
        for intent in self.intents.values():
            if intent["id"] == payment_intent_id:
                return dict(intent)
        raise UpstreamFailure("No such payment intent")

    def create_refund(self, payment_intent_id, amount_minor=None, idempotency_key=None, reason=None):
        self.refunds.append(
            {"payment_intent": payment_intent_id, "amount": amount_minor, "idempotency_key": idempotency_key, "reason": reason}
        )
        return {"id": f"re_{len(self.refunds)}", "status": "succeeded"}

    def retrieve_checkout_session(self, session_id):
        self.calls.append(("session", session_id))
        return self.sessions[session_id]

    def construct_event(self, raw_body, signature):
        if not raw_body or signature != "valid":
            raise SignatureInvalid()
        return json.loads(raw_body)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
        max_quantity_per_item=10,
    )


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    database = client["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def ledger(db):
    return LedgerStore(db)


@pytest.fixture
def stock(db, ledger):
    return StockEngine(db, ledger)


@pytest.fixture
def orders(db, stock):
    return OrderManager(db, stock)


@pytest.fixture
def carts(db, orders):
    return CartService(db, orders, max_quantity=10)


@pytest.fixture
def payments(db, orders, gateway):
    return PaymentOrchestrator(db, orders, gateway, currency="mxn")


@pytest.fixture
def make_product(db):
    def factory(**overrides):
        now = utcnow()
        data = {"title": "Basic Tee", "sku": f"SKU-{ObjectId()}", "price": 100.0, "created_at": now, "updated_at": now}
        data.update(overrides)
        if data.get("inventory_by_size") and "stock_quantity" not in overrides:
            data["stock_quantity"] = sum(data["inventory_by_size"].values())
        if data.get("inventory_by_size") and not data.get("sizes"):
            data["sizes"] = list(data["inventory_by_size"])
        res = db[PRODUCTS].insert_one(Product(**data).model_dump())
        return str(res.inserted_id)
    return factory


@pytest.fixture
def customer():
    return Principal(id=str(ObjectId()), role=Role.CUSTOMER.value, name="Ana")


@pytest.fixture
def other_customer():
    return Principal(id=str(ObjectId()), role=Role.CUSTOMER.value, name="Luis")


@pytest.fixture
def staff():
    return Principal(id=str(ObjectId()), role=Role.EMPLOYEE.value, name="Staff")


@pytest.fixture
def address():
    return {
        "name": "Ana Pérez",
        "phone": "5512345678",
        "street": "Av. Reforma",
        "number": "100",
        "city": "CDMX",
        "state": "CDMX",
        "postal_code": "06600",
    }


@pytest.fixture
def make_user(db, settings):
    def factory(role=Role.CUSTOMER.value, email=None):
        doc = {
            "name": f"{role} user",
            "email": email or f"{ObjectId()}@example.com",
            "password_hash": hash_password("secret123"),
            "role": role,
        }
        user_id = str(db[USERS].insert_one(doc).inserted_id)
        token = create_access_token(settings, {"sub": user_id})
        return user_id, {"Authorization": f"Bearer {token}"}
    return factory
