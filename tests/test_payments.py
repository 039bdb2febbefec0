import json

import pytest
from bson import ObjectId

from database import ORDERS, PAYMENTS
from errors import (
    Conflict,
    Forbidden,
    InvalidOrderState,
    InvalidStateTransition,
    OrderNotFound,
    PaymentNotFound,
    SignatureInvalid,
    UnsupportedPaymentMethod,
    UpstreamFailure,
    ValidationFailed,
)
from schemas import OrderState, PaymentMethod, PaymentState


@pytest.fixture
def order(orders, make_product, customer, address):
    pid = make_product(price=199.99, stock_quantity=10)
    return orders.create_with_reservation(customer.id, [{"product_id": pid, "quantity": 2}], address, PaymentMethod.CARD)


def _event(event_id, event_type, obj):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _deliver(payments, event_id, event_type, obj):
    return payments.process_webhook_event(_event(event_id, event_type, obj), "valid")


def _paid(payments, customer, order, key="key-0001"):
    return payments.initiate(customer, order["id"], PaymentMethod.CARD, key)


def test_initiate_creates_one_payment_per_key(db, payments, gateway, customer, order):
    first = _paid(payments, customer, order)
    second = _paid(payments, customer, order)

    assert first["created"] is True
    assert second["created"] is False
    assert first["payment_intent_id"] == second["payment_intent_id"]
    assert first["client_secret"] == second["client_secret"]
    assert db[PAYMENTS].count_documents({"idempotency_key": "key-0001"}) == 1
    assert [c for c in gateway.calls if c[0] == "create"] == [("create", "key-0001", 39998, "mxn")]


def test_initiate_without_key_reuses_derived_attempt(db, payments, customer, order):
    first = payments.initiate(customer, order["id"], PaymentMethod.CARD)
    second = payments.initiate(customer, order["id"], PaymentMethod.CARD)
    assert first["payment_id"] == second["payment_id"]
    assert db[PAYMENTS].count_documents({}) == 1


def test_initiate_validation(db, payments, orders, make_product, customer, other_customer, address, order):
    with pytest.raises(ValidationFailed):
        payments.initiate(customer, order["id"], PaymentMethod.CARD, "short")
    with pytest.raises(Forbidden):
        payments.initiate(other_customer, order["id"], PaymentMethod.CARD, "key-0002")
    with pytest.raises(UnsupportedPaymentMethod):
        payments.initiate(customer, order["id"], PaymentMethod.CASH, "key-0003")

    pid = make_product(stock_quantity=5)
    cash_order = orders.create(customer, [{"product_id": pid, "quantity": 1}], address, PaymentMethod.TRANSFER)
    with pytest.raises(UnsupportedPaymentMethod):
        payments.initiate(customer, cash_order["id"], PaymentMethod.TRANSFER, "key-0004")

    db[ORDERS].update_one({"_id": ObjectId(order["id"])}, {"$set": {"state": OrderState.CONFIRMED.value}})
    with pytest.raises(InvalidOrderState):
        payments.initiate(customer, order["id"], PaymentMethod.CARD, "key-0005")


def test_card_payment_must_match_order_method(payments, orders, make_product, customer, address):
    pid = make_product(stock_quantity=5)
    paypal_order = orders.create(customer, [{"product_id": pid, "quantity": 1}], address, PaymentMethod.PAYPAL)
    with pytest.raises(ValidationFailed, match="does not match"):
        payments.initiate(customer, paypal_order["id"], PaymentMethod.CARD, "key-0006")


def test_key_reused_for_another_order_conflicts(payments, orders, make_product, customer, address, order):
    _paid(payments, customer, order, key="shared-key")
    pid = make_product(stock_quantity=5)
    another = orders.create(customer, [{"product_id": pid, "quantity": 1}], address, PaymentMethod.CARD)
    with pytest.raises(Conflict):
        payments.initiate(customer, another["id"], PaymentMethod.CARD, "shared-key")


def test_retry_after_provider_timeout_finds_the_same_intent(db, payments, gateway, customer, order):
    gateway.timeout_next_create = True
    with pytest.raises(UpstreamFailure):
        _paid(payments, customer, order)
    row = db[PAYMENTS].find_one({"idempotency_key": "key-0001"})
    assert row["payment_intent_id"] is None

    retried = _paid(payments, customer, order)
    assert retried["payment_intent_id"] == "pi_1"
    assert retried["created"] is False
    assert db[PAYMENTS].count_documents({}) == 1
    assert len(gateway.intents) == 1


def test_succeeded_webhook_completes_payment_and_confirms_order(db, payments, orders, customer, order):
    started = _paid(payments, customer, order)
    result = _deliver(payments, "evt_1", "payment_intent.succeeded", {"id": started["payment_intent_id"], "status": "succeeded"})

    assert result["outcome"] == "processed"
    payment = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert payment["state"] == PaymentState.COMPLETED.value
    assert payment["paid_at"] is not None
    assert payment["processed_event_ids"] == ["evt_1"]

    confirmed = orders.get(order["id"], customer)
    assert confirmed["state"] == OrderState.CONFIRMED.value
    assert confirmed["payment_reference"] == started["payment_id"]
    assert confirmed["transaction_id"] == started["payment_intent_id"]


def test_redelivered_event_is_a_duplicate(db, payments, customer, order):
    started = _paid(payments, customer, order)
    obj = {"id": started["payment_intent_id"], "status": "succeeded"}
    _deliver(payments, "evt_1", "payment_intent.succeeded", obj)
    before = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})

    again = _deliver(payments, "evt_1", "payment_intent.succeeded", obj)
    after = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert again["outcome"] == "duplicate"
    assert after["processed_event_ids"] == ["evt_1"]
    assert after["updated_at"] == before["updated_at"]


def test_failed_payment_leaves_order_pending(db, payments, orders, customer, order):
    started = _paid(payments, customer, order)
    result = _deliver(
        payments,
        "evt_2",
        "payment_intent.payment_failed",
        {
            "id": started["payment_intent_id"],
            "status": "requires_payment_method",
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        },
    )
    assert result["outcome"] == "processed"
    payment = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert payment["state"] == PaymentState.FAILED.value
    assert payment["failure_code"] == "card_declined"
    assert orders.get(order["id"], customer)["state"] == OrderState.PENDING.value

    with pytest.raises(Conflict, match="use a new key"):
        _paid(payments, customer, order)
    fresh = _paid(payments, customer, order, key="key-0002")
    assert fresh["created"] is True


def test_stale_event_does_not_move_state_backwards(db, payments, customer, order):
    started = _paid(payments, customer, order)
    intent = started["payment_intent_id"]
    _deliver(payments, "evt_1", "payment_intent.succeeded", {"id": intent})
    result = _deliver(payments, "evt_0", "payment_intent.processing", {"id": intent})

    assert result["outcome"] == "ignored"
    payment = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert payment["state"] == PaymentState.COMPLETED.value
    assert sorted(payment["processed_event_ids"]) == ["evt_0", "evt_1"]


def test_checkout_session_is_resolved_through_the_provider(db, payments, gateway, customer, order):
    started = _paid(payments, customer, order)
    gateway.sessions["cs_1"] = {"id": "cs_1", "payment_intent": started["payment_intent_id"], "payment_status": "paid"}

    result = _deliver(payments, "evt_3", "checkout.session.completed", {"id": "cs_1", "payment_status": "paid"})
    assert result["outcome"] == "processed"
    assert ("session", "cs_1") in gateway.calls
    payment = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert payment["state"] == PaymentState.COMPLETED.value
    assert payment["checkout_session_id"] == "cs_1"


def test_async_checkout_failure(db, payments, customer, order):
    started = _paid(payments, customer, order)
    result = _deliver(
        payments,
        "evt_4",
        "checkout.session.async_payment_failed",
        {"id": "cs_2", "payment_intent": started["payment_intent_id"], "payment_status": "unpaid"},
    )
    assert result["outcome"] == "processed"
    assert db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})["state"] == PaymentState.FAILED.value


def test_only_the_intent_itself_reopens_a_failed_payment(db, payments, orders, customer, order):
    started = _paid(payments, customer, order)
    intent = started["payment_intent_id"]
    _deliver(payments, "evt_1", "payment_intent.payment_failed", {"id": intent, "last_payment_error": {"code": "card_declined"}})

    result = _deliver(payments, "evt_2", "checkout.session.completed", {"id": "cs_9", "payment_intent": intent, "payment_status": "paid"})
    assert result["outcome"] == "ignored"
    assert db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})["state"] == PaymentState.FAILED.value
    assert orders.get(order["id"], customer)["state"] == OrderState.PENDING.value

    # card retried on the same intent
    result = _deliver(payments, "evt_3", "payment_intent.succeeded", {"id": intent})
    assert result["outcome"] == "processed"
    assert db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})["state"] == PaymentState.COMPLETED.value
    assert orders.get(order["id"], customer)["state"] == OrderState.CONFIRMED.value


def test_order_still_taking_stock_cannot_be_paid(db, payments, customer, order):
    db[ORDERS].update_one({"_id": ObjectId(order["id"])}, {"$set": {"reservation_pending": True}})
    with pytest.raises(OrderNotFound):
        _paid(payments, customer, order)
    assert db[PAYMENTS].count_documents({}) == 0


def test_unhandled_and_unknown_events_are_ignored(payments):
    assert _deliver(payments, "evt_5", "customer.created", {"id": "cus_1"})["outcome"] == "ignored"
    assert _deliver(payments, "evt_6", "payment_intent.succeeded", {"id": "pi_unknown"})["outcome"] == "ignored"


def test_webhook_fails_closed(payments):
    with pytest.raises(SignatureInvalid):
        payments.process_webhook_event(b"", "valid")
    with pytest.raises(SignatureInvalid):
        payments.process_webhook_event(_event("evt_7", "payment_intent.succeeded", {"id": "pi_1"}), "forged")


def test_refund_webhook(db, payments, customer, order):
    started = _paid(payments, customer, order)
    intent = started["payment_intent_id"]
    _deliver(payments, "evt_1", "payment_intent.succeeded", {"id": intent})
    result = _deliver(
        payments,
        "evt_8",
        "charge.refunded",
        {"id": "ch_1", "payment_intent": intent, "amount_refunded": 39998, "refunds": {"data": [{"id": "re_9", "reason": "requested_by_customer"}]}},
    )
    assert result["outcome"] == "processed"
    payment = db[PAYMENTS].find_one({"_id": ObjectId(started["payment_id"])})
    assert payment["state"] == PaymentState.REFUNDED.value
    assert payment["refund_id"] == "re_9"
    assert payment["refund_amount"] == 399.98


def test_refund(db, payments, gateway, customer, other_customer, staff, order):
    started = _paid(payments, customer, order)
    with pytest.raises(InvalidStateTransition):
        payments.refund(customer, started["payment_id"])

    _deliver(payments, "evt_1", "payment_intent.succeeded", {"id": started["payment_intent_id"]})
    with pytest.raises(Forbidden):
        payments.refund(other_customer, started["payment_id"])
    with pytest.raises(ValidationFailed):
        payments.refund(customer, started["payment_id"], amount=500.0)

    refunded = payments.refund(staff, started["payment_id"], reason="Damaged item")
    assert refunded["state"] == PaymentState.REFUNDED.value
    assert refunded["refund_amount"] == 399.98
    assert refunded["refund_reason"] == "Damaged item"
    assert gateway.refunds == [
        {
            "payment_intent": started["payment_intent_id"],
            "amount": 39998,
            "idempotency_key": f"refund:{started['payment_id']}",
            "reason": "Damaged item",
        }
    ]


def test_reads_are_owner_scoped_and_project_the_order(payments, customer, other_customer, staff, order):
    started = _paid(payments, customer, order)

    view = payments.get_by_id(started["payment_id"], customer)
    assert view["order"] == {"id": order["id"], "state": OrderState.PENDING.value, "total": 399.98}
    assert "processed_event_ids" not in view
    with pytest.raises(PaymentNotFound):
        payments.get_by_id(started["payment_id"], other_customer)

    assert [p["id"] for p in payments.get_by_order_id(order["id"], customer)] == [started["payment_id"]]
    assert len(payments.list(staff)["items"]) == 1
    with pytest.raises(Forbidden):
        payments.list(customer)
