import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal
from database import ORDERS, PAYMENTS, ensure_object_id, serialize_doc, utcnow
from errors import (
    Conflict,
    Forbidden,
    InvalidOrderState,
    InvalidStateTransition,
    NotFound,
    OrderNotFound,
    PaymentNotFound,
    UnsupportedPaymentMethod,
    ValidationFailed,
)
from orders import VISIBLE, OrderManager
from schemas import OrderState, Payment, PaymentMethod, PaymentState

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = {PaymentMethod.CARD}
MIN_KEY_LENGTH = 8
MAX_KEY_LENGTH = 255

TRANSITIONS = {
    PaymentState.PENDING: {PaymentState.REQUIRES_ACTION, PaymentState.PROCESSING, PaymentState.COMPLETED, PaymentState.FAILED},
    PaymentState.REQUIRES_ACTION: {PaymentState.PROCESSING, PaymentState.COMPLETED, PaymentState.FAILED},
    PaymentState.PROCESSING: {PaymentState.COMPLETED, PaymentState.FAILED},
    # a failed card may be retried on the same intent; only that intent's success reopens it
    PaymentState.FAILED: {PaymentState.COMPLETED},
    PaymentState.COMPLETED: {PaymentState.REFUNDED},
    PaymentState.REFUNDED: set(),
}

REUSABLE_STATES = {PaymentState.PENDING, PaymentState.REQUIRES_ACTION, PaymentState.PROCESSING, PaymentState.COMPLETED}

PROVIDER_STATES = {
    "requires_action": PaymentState.REQUIRES_ACTION,
    "processing": PaymentState.PROCESSING,
    "succeeded": PaymentState.COMPLETED,
}

RETRY_SUCCESS_EVENT = "payment_intent.succeeded"


def allowed_from(target: PaymentState, event_type: Optional[str] = None) -> List[str]:
    sources = {state for state, targets in TRANSITIONS.items() if target in targets}
    if event_type != RETRY_SUCCESS_EVENT:
        sources.discard(PaymentState.FAILED)
    return sorted(state.value for state in sources)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaymentOrchestrator:
    def __init__(self, db: Database, orders: OrderManager, gateway, currency: str = "mxn"):
        self.payments = db[PAYMENTS]
        self.order_docs = db[ORDERS]
        self.orders = orders
        self.gateway = gateway
        self.currency = currency

    # ----- Initiation -----

    def initiate(
        self,
        principal: Principal,
        order_id: str,
        payment_method: PaymentMethod,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Start (or resume) a card payment for a PENDING order.

        The same idempotency key always leads back to the same Payment row and
        the same provider payment intent, including after a provider timeout.
        """
        order = self.order_docs.find_one({"_id": ensure_object_id(order_id, "order id"), **VISIBLE})
        if not order:
            raise OrderNotFound(order_id)
        if not principal.owns(order.get("user_id")):
            raise Forbidden("You are not allowed to pay for this order")
        if order["state"] != OrderState.PENDING.value:
            raise InvalidOrderState(f"Order {order_id} is {order['state']}; only PENDING orders can be paid")
        payment_method = PaymentMethod(payment_method)
        if payment_method not in SUPPORTED_METHODS:
            raise UnsupportedPaymentMethod(f"Payment method {payment_method.value} is not supported")
        if payment_method.value != order.get("payment_method"):
            raise ValidationFailed(
                f"Payment method {payment_method.value} does not match the order ({order.get('payment_method')})"
            )

        if idempotency_key is None:
            idempotency_key = f"pay_{order_id}_{principal.id}"
        elif not MIN_KEY_LENGTH <= len(idempotency_key) <= MAX_KEY_LENGTH:
            raise ValidationFailed(f"Idempotency-Key must be {MIN_KEY_LENGTH}-{MAX_KEY_LENGTH} characters")

        existing = self.payments.find_one({"idempotency_key": idempotency_key})
        if existing:
            return self._resume(existing, order, principal)

        now = utcnow()
        doc = Payment(
            order_id=str(order["_id"]),
            user_id=principal.id,
            payment_method=payment_method,
            amount=float(order["total"]),
            currency=self.currency,
            idempotency_key=idempotency_key,
            metadata={"order_id": str(order["_id"]), "user_id": principal.id},
            created_at=now,
            updated_at=now,
        ).model_dump()
        try:
            res = self.payments.insert_one(doc)
        except DuplicateKeyError:
            # lost the race for this key; resume the winner's attempt
            return self._resume(self.payments.find_one({"idempotency_key": idempotency_key}), order, principal)
        doc["_id"] = res.inserted_id
        logger.info("Payment %s created for order %s (key %s)", res.inserted_id, order_id, idempotency_key)
        return self._create_intent(doc, order, created=True)

    def _create_intent(self, payment: Dict[str, Any], order: Dict[str, Any], created: bool) -> Dict[str, Any]:
        payment_id = str(payment["_id"])
        intent = self.gateway.create_payment_intent(
            idempotency_key=payment["idempotency_key"],
            amount_minor=to_minor_units(payment["amount"]),
            currency=payment["currency"],
            metadata={"payment_id": payment_id, "order_id": payment["order_id"], "user_id": payment["user_id"]},
        )
        state = PROVIDER_STATES.get(intent["status"], PaymentState.PENDING)
        if state == PaymentState.COMPLETED:
            # completion is only ever recorded from a verified webhook
            state = PaymentState.PROCESSING
        self.payments.update_one(
            {"_id": payment["_id"], "state": PaymentState.PENDING.value},
            {
                "$set": {
                    "payment_intent_id": intent["id"],
                    "provider_status": intent["status"],
                    "state": state.value,
                    "updated_at": utcnow(),
                }
            },
        )
        self.payments.update_one(
            {"_id": payment["_id"], "payment_intent_id": None}, {"$set": {"payment_intent_id": intent["id"]}}
        )
        logger.info("Payment %s linked to intent %s for order %s", payment_id, intent["id"], order["_id"])
        return {
            "payment_id": payment_id,
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "status": self.payments.find_one({"_id": payment["_id"]})["state"],
            "created": created,
        }

    def _resume(self, payment: Dict[str, Any], order: Dict[str, Any], principal: Principal) -> Dict[str, Any]:
        if payment["order_id"] != str(order["_id"]) or payment["user_id"] != principal.id:
            raise Conflict("Idempotency-Key was already used for a different payment")
        state = PaymentState(payment["state"])
        if state not in REUSABLE_STATES:
            raise Conflict(f"The payment attempt for this Idempotency-Key is {state.value}; use a new key")
        if not payment.get("payment_intent_id"):
            logger.warning("Payment %s has no provider intent yet; re-issuing with the same key", payment["_id"])
            return self._create_intent(payment, order, created=False)
        intent = self.gateway.retrieve_payment_intent(payment["payment_intent_id"])
        return {
            "payment_id": str(payment["_id"]),
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "status": state.value,
            "created": False,
        }

    # ----- Webhooks -----

    def process_webhook_event(self, raw_body: Optional[bytes], signature: Optional[str]) -> Dict[str, Any]:
        event = self.gateway.construct_event(raw_body, signature)
        event_id, event_type = event["id"], event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        mapped = self._map_event(event_type, obj)
        if mapped is None:
            logger.info("Webhook %s (%s) ignored: unhandled type", event_id, event_type)
            return {"outcome": "ignored", "event_id": event_id, "type": event_type}
        target, changes, intent_id, session_id = mapped

        if session_id and not intent_id:
            intent_id = self.gateway.retrieve_checkout_session(session_id).get("payment_intent")
            if intent_id:
                changes["payment_intent_id"] = intent_id

        payment = self._find_for_event(obj, intent_id, session_id)
        if payment is None:
            logger.warning("Webhook %s (%s) ignored: no matching payment", event_id, event_type)
            return {"outcome": "ignored", "event_id": event_id, "type": event_type}

        changes.update(state=target.value, updated_at=utcnow())
        updated = self.payments.find_one_and_update(
            {
                "_id": payment["_id"],
                "processed_event_ids": {"$ne": event_id},
                "state": {"$in": allowed_from(target, event_type)},
            },
            {"$set": changes, "$push": {"processed_event_ids": event_id}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            logger.info("Webhook %s applied: payment %s %s -> %s", event_id, payment["_id"], payment["state"], target.value)
            self._advance_order(updated)
            return {"outcome": "processed", "event_id": event_id, "type": event_type, "payment_id": str(updated["_id"]), "state": target.value}

        current = self.payments.find_one({"_id": payment["_id"]})
        if event_id in current.get("processed_event_ids", []):
            logger.info("Webhook %s already processed for payment %s", event_id, payment["_id"])
            self._advance_order(current)
            return {"outcome": "duplicate", "event_id": event_id, "type": event_type, "payment_id": str(current["_id"])}

        self.payments.update_one({"_id": payment["_id"]}, {"$addToSet": {"processed_event_ids": event_id}})
        logger.info(
            "Webhook %s ignored: payment %s is %s, cannot move to %s",
            event_id, payment["_id"], current["state"], target.value,
        )
        return {"outcome": "ignored", "event_id": event_id, "type": event_type, "payment_id": str(current["_id"])}

    def _map_event(self, event_type: str, obj: Dict[str, Any]) -> Optional[Tuple[PaymentState, Dict[str, Any], Optional[str], Optional[str]]]:
        """Target state, extra fields, intent id and session id for a provider event."""
        now = utcnow()
        status = {"provider_status": obj.get("status")} if obj.get("status") else {}

        if event_type.startswith("payment_intent."):
            intent_id = obj.get("id")
            if event_type == "payment_intent.succeeded":
                return PaymentState.COMPLETED, {**status, "paid_at": now}, intent_id, None
            if event_type == "payment_intent.payment_failed":
                error = obj.get("last_payment_error") or {}
                return PaymentState.FAILED, {
                    **status,
                    "failure_code": error.get("code") or error.get("decline_code"),
                    "failure_message": error.get("message"),
                }, intent_id, None
            if event_type == "payment_intent.processing":
                return PaymentState.PROCESSING, status, intent_id, None
            if event_type == "payment_intent.requires_action":
                return PaymentState.REQUIRES_ACTION, status, intent_id, None
            if event_type == "payment_intent.canceled":
                return PaymentState.FAILED, {
                    **status,
                    "failure_code": "canceled",
                    "failure_message": obj.get("cancellation_reason"),
                }, intent_id, None
            return None

        if event_type.startswith("checkout.session."):
            session_id = obj.get("id")
            intent_id = obj.get("payment_intent")
            changes: Dict[str, Any] = {"checkout_session_id": session_id, "provider_status": obj.get("payment_status")}
            if event_type == "checkout.session.completed":
                if obj.get("payment_status") == "paid":
                    return PaymentState.COMPLETED, {**changes, "paid_at": now}, intent_id, session_id
                return PaymentState.PROCESSING, changes, intent_id, session_id
            if event_type == "checkout.session.async_payment_succeeded":
                return PaymentState.COMPLETED, {**changes, "paid_at": now}, intent_id, session_id
            if event_type == "checkout.session.async_payment_failed":
                return PaymentState.FAILED, {**changes, "failure_code": "async_payment_failed"}, intent_id, session_id
            return None

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            refund = refunds[0] if refunds else {}
            return PaymentState.REFUNDED, {
                "refund_id": refund.get("id"),
                "refund_amount": (obj.get("amount_refunded") or 0) / 100,
                "refund_reason": refund.get("reason"),
            }, obj.get("payment_intent"), None
        return None

    def _find_for_event(self, obj: Dict[str, Any], intent_id: Optional[str], session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        payment_id = (obj.get("metadata") or {}).get("payment_id")
        if payment_id and ObjectId.is_valid(payment_id):
            payment = self.payments.find_one({"_id": ObjectId(payment_id)})
            if payment:
                return payment
        if intent_id:
            payment = self.payments.find_one({"payment_intent_id": intent_id})
            if payment:
                return payment
        if session_id:
            return self.payments.find_one({"checkout_session_id": session_id})
        return None

    def _advance_order(self, payment: Dict[str, Any]) -> None:
        if payment["state"] != PaymentState.COMPLETED.value:
            return
        self.orders.confirm_payment(
            payment["order_id"], payment_reference=str(payment["_id"]), transaction_id=payment.get("payment_intent_id")
        )

    # ----- Refunds -----

    def refund(
        self, principal: Principal, payment_id: str, amount: Optional[float] = None, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        payment = self._load(payment_id)
        if not principal.can_access(payment.get("user_id")):
            raise Forbidden("You are not allowed to refund this payment")
        if payment["state"] != PaymentState.COMPLETED.value:
            raise InvalidStateTransition(
                f"Payment {payment_id} is {payment['state']}; only COMPLETED payments can be refunded", payment["state"]
            )
        if not payment.get("payment_intent_id"):
            raise Conflict(f"Payment {payment_id} has no provider reference to refund")
        if amount is None:
            amount = payment["amount"]
        if amount <= 0 or amount > payment["amount"]:
            raise ValidationFailed(f"Refund amount must be between 0 and {payment['amount']:.2f}")

        refund = self.gateway.create_refund(
            payment["payment_intent_id"],
            amount_minor=to_minor_units(amount),
            idempotency_key=f"refund:{payment_id}",
            reason=reason,
        )
        updated = self.payments.find_one_and_update(
            {"_id": payment["_id"], "state": PaymentState.COMPLETED.value},
            {
                "$set": {
                    "state": PaymentState.REFUNDED.value,
                    "refund_id": refund["id"],
                    "refund_amount": round(amount, 2),
                    "refund_reason": reason,
                    "provider_status": refund.get("status"),
                    "updated_at": utcnow(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # a refund webhook got there first
            updated = self.payments.find_one({"_id": payment["_id"]})
        logger.info("Payment %s refunded %.2f by %s (refund %s)", payment_id, amount, principal.id, refund["id"])
        return self._view(updated)

    # ----- Reads -----

    def _load(self, payment_id: str) -> Dict[str, Any]:
        payment = self.payments.find_one({"_id": ensure_object_id(payment_id, "payment id")})
        if not payment:
            raise PaymentNotFound(payment_id)
        return payment

    def _view(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        view = serialize_doc(payment)
        view.pop("processed_event_ids", None)
        order = None
        if ObjectId.is_valid(payment["order_id"]):
            order = self.order_docs.find_one({"_id": ObjectId(payment["order_id"])}, {"state": 1, "total": 1})
        view["order"] = {"id": str(order["_id"]), "state": order["state"], "total": order["total"]} if order else None
        return view

    def get_by_id(self, payment_id: str, principal: Principal) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": ensure_object_id(payment_id, "payment id")}
        if not principal.is_privileged:
            query["user_id"] = principal.id
        payment = self.payments.find_one(query)
        if not payment:
            raise PaymentNotFound(payment_id)
        return self._view(payment)

    def get_by_order_id(self, order_id: str, principal: Principal) -> List[Dict[str, Any]]:
        ensure_object_id(order_id, "order id")
        query: Dict[str, Any] = {"order_id": order_id}
        if not principal.is_privileged:
            query["user_id"] = principal.id
        payments = list(self.payments.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
        if not payments:
            raise NotFound(f'No payments found for order "{order_id}"')
        return [self._view(p) for p in payments]

    def list(
        self,
        principal: Principal,
        state: Optional[PaymentState] = None,
        order_id: Optional[str] = None,
        limit: int = 50,
        page: int = 1,
    ) -> Dict[str, Any]:
        if not principal.is_privileged:
            raise Forbidden("Only staff can list payments")
        query: Dict[str, Any] = {}
        if state:
            query["state"] = PaymentState(state).value
        if order_id:
            query["order_id"] = order_id
        limit = max(1, min(limit, 100))
        skip = max(page - 1, 0) * limit
        total = self.payments.count_documents(query)
        cursor = self.payments.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip).limit(limit)
        return {"items": [self._view(p) for p in cursor], "total": total, "page": page, "limit": limit}
