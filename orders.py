import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import Principal
from database import ORDERS, PRODUCTS, ensure_object_id, retry_on_conflict, serialize_doc, utcnow
from errors import (
    ConcurrentUpdate,
    Conflict,
    Forbidden,
    InsufficientStock,
    InvalidStateTransition,
    OrderNotFound,
    ProductInactive,
    ProductNotFound,
    ValidationFailed,
)
from schemas import (
    CANCELLABLE_ORDER_STATES,
    TERMINAL_ORDER_STATES,
    MovementKind,
    Order,
    OrderItem,
    OrderState,
    PaymentMethod,
    ShippingAddress,
)
from stock import StockEngine, product_name, resolve_stock

logger = logging.getLogger(__name__)

RESTOCK_LEASE = timedelta(seconds=30)
RESERVATION_LEASE = timedelta(seconds=60)

# orders whose checkout is still taking stock do not exist yet for readers
VISIBLE = {"reservation_pending": {"$ne": True}}


class OrderManager:
    def __init__(self, db: Database, stock: StockEngine, tax_rate: float = 0.0):
        self.orders = db[ORDERS]
        self.products = db[PRODUCTS]
        self.stock = stock
        self.tax_rate = tax_rate

    # ----- Pricing -----

    def price_items(self, items: List[Dict[str, Any]]) -> Tuple[List[OrderItem], float]:
        """Validate lines against live products and compute server-side prices.

        Client prices and subtotals are ignored. Raises before any write.
        """
        if not items:
            raise ValidationFailed("An order needs at least one item")
        priced: List[OrderItem] = []
        requested: Dict[Tuple[str, Optional[str]], int] = {}
        available: Dict[Tuple[str, Optional[str]], Tuple[str, int]] = {}
        subtotal = 0.0

        for item in items:
            product_id = item["product_id"]
            quantity = int(item["quantity"])
            if quantity < 1:
                raise ValidationFailed("Item quantity must be at least 1")
            product = self.products.find_one({"_id": ensure_object_id(product_id, "product id")})
            if not product:
                raise ProductNotFound(product_id)
            if not product.get("active", True):
                raise ProductInactive(product_name(product))
            on_hand, size_id = resolve_stock(product, item.get("size_id"))

            line_key = (product_id, size_id)
            requested[line_key] = requested.get(line_key, 0) + quantity
            available[line_key] = (product_name(product), on_hand)

            unit_price = float(product.get("price", 0))
            line_subtotal = round(unit_price * quantity, 2)
            priced.append(
                OrderItem(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=unit_price,
                    subtotal=line_subtotal,
                    size_id=size_id,
                )
            )
            subtotal += line_subtotal

        shortages = []
        for line_key, wanted in requested.items():
            name, on_hand = available[line_key]
            if on_hand < wanted:
                shortages.append(InsufficientStock(name, on_hand, wanted, line_key[1]))
        if shortages:
            raise InsufficientStock.combine(shortages)
        return priced, round(subtotal, 2)

    def _build(
        self,
        user_id: str,
        priced: List[OrderItem],
        subtotal: float,
        shipping_address: Any,
        payment_method: PaymentMethod,
        shipping_cost: float = 0,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        if shipping_cost < 0:
            raise ValidationFailed("Shipping cost cannot be negative")
        taxes = round(subtotal * self.tax_rate, 2)
        now = utcnow()
        if isinstance(shipping_address, dict):
            shipping_address = ShippingAddress(**shipping_address)
        order = Order(
            user_id=user_id,
            items=priced,
            subtotal=subtotal,
            taxes=taxes,
            shipping_cost=shipping_cost,
            total=round(subtotal + taxes + shipping_cost, 2),
            state=OrderState.PENDING,
            shipping_address=shipping_address,
            payment_method=PaymentMethod(payment_method),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        return order.model_dump()

    # ----- Creation -----

    def create(
        self,
        principal: Principal,
        items: List[Dict[str, Any]],
        shipping_address: Any,
        payment_method: PaymentMethod,
        shipping_cost: float = 0,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Direct order creation. Validates stock but does not reserve it."""
        priced, subtotal = self.price_items(items)
        doc = self._build(principal.id, priced, subtotal, shipping_address, payment_method, shipping_cost, notes)
        res = self.orders.insert_one(doc)
        doc["_id"] = res.inserted_id
        logger.info("Order %s created for %s | total %.2f", res.inserted_id, principal.id, doc["total"])
        return serialize_doc(doc)

    def create_with_reservation(
        self,
        user_id: str,
        items: List[Dict[str, Any]],
        shipping_address: Any,
        payment_method: PaymentMethod,
        shipping_cost: float = 0,
        notes: Optional[str] = None,
        order_id: Optional[ObjectId] = None,
    ) -> Dict[str, Any]:
        """Create an order and take its stock as one unit of work.

        The order row is written first with `reservation_pending` set and a
        lease, hidden from every read. Each line is then decremented with a
        keyed `sale` movement and the flag is cleared. If anything fails the
        sales are compensated with keyed `return` movements and the row is
        removed; if the process dies instead, `recover_reservations` does the
        same once the lease runs out.
        """
        priced, subtotal = self.price_items(items)
        doc = self._build(user_id, priced, subtotal, shipping_address, payment_method, shipping_cost, notes)
        doc["_id"] = order_id or ObjectId()
        token = str(ObjectId())
        doc.update(
            reservation_pending=True,
            reservation_token=token,
            reservation_lease_until=utcnow() + RESERVATION_LEASE,
        )
        try:
            self.orders.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict(f"Order {doc['_id']} was already placed")
        order_id = doc["_id"]

        try:
            for idx, item in enumerate(priced):
                self.stock.apply_movement(
                    item.product_id,
                    item.size_id,
                    MovementKind.SALE,
                    item.quantity,
                    reason="Checkout",
                    order_id=str(order_id),
                    user_id=user_id,
                    key=f"sale:{order_id}:{idx}",
                )
            placed = self.orders.find_one_and_update(
                {"_id": order_id, "reservation_token": token},
                {
                    "$set": {"reservation_pending": False, "updated_at": utcnow()},
                    "$unset": {"reservation_token": "", "reservation_lease_until": ""},
                },
                return_document=ReturnDocument.AFTER,
            )
            if placed is None:
                raise ConcurrentUpdate("Checkout took too long and was rolled back; try again")
        except Exception:
            self._compensate(doc)
            raise

        logger.info("Order %s placed for %s with %d reserved lines | total %.2f", order_id, user_id, len(priced), doc["total"])
        return serialize_doc(placed)

    def _taken_lines(self, order: Dict[str, Any]) -> List[Tuple[Tuple[str, Optional[str]], int]]:
        """Units the ledger says this order still holds, per (product, size)."""
        for product_id in sorted({item["product_id"] for item in order.get("items", [])}):
            self.stock.settle_pending(product_id)
        taken = self.stock.ledger.net_taken_by_order(str(order["_id"]))
        return [
            (line, quantity)
            for line, quantity in sorted(taken.items(), key=lambda kv: (kv[0][0], kv[0][1] or ""))
            if quantity > 0
        ]

    def _compensate(self, order: Dict[str, Any]) -> bool:
        """Give back whatever a failed checkout took, then drop its order row."""
        order_id = str(order["_id"])
        complete = True
        for (product_id, size_id), quantity in self._taken_lines(order):
            try:
                self.stock.apply_movement(
                    product_id,
                    size_id,
                    MovementKind.RETURN,
                    quantity,
                    reason="Checkout rollback",
                    order_id=order_id,
                    user_id=order.get("user_id"),
                    key=f"rollback:{order_id}:{product_id}:{size_id or '-'}",
                )
                logger.warning("Rolled back sale of %s x%d for order %s", product_id, quantity, order_id)
            except Exception:
                complete = False
                logger.exception("Could not roll back sale of %s for order %s", product_id, order_id)
        if complete:
            self.orders.delete_one({"_id": order["_id"], "reservation_token": order.get("reservation_token")})
        return complete

    def release_reservation(self, order_id: Any) -> bool:
        """Roll back a checkout whose reservation lease ran out. True once nothing is held."""
        now = utcnow()
        claimed = self.orders.find_one_and_update(
            {
                "_id": ensure_object_id(order_id, "order id"),
                "reservation_pending": True,
                "$or": [{"reservation_lease_until": {"$lt": now}}, {"reservation_lease_until": None}],
            },
            {"$set": {"reservation_token": str(ObjectId()), "reservation_lease_until": now + RESERVATION_LEASE}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            return False
        logger.warning("Reservation for order %s expired; rolling it back", order_id)
        return self._compensate(claimed)

    def recover_reservations(self) -> int:
        """Roll back checkouts that died between taking stock and placing the order."""
        recovered = 0
        for order in self.orders.find({"reservation_pending": True}, {"_id": 1}):
            if self.release_reservation(order["_id"]):
                recovered += 1
        if recovered:
            logger.warning("Rolled back %d interrupted checkouts", recovered)
        return recovered

    def reservation_state(self, order_id: str) -> Optional[str]:
        """"placed", "pending" while its checkout is still running, or None if there is no such order."""
        if not ObjectId.is_valid(order_id):
            return None
        order = self.orders.find_one({"_id": ObjectId(order_id)}, {"reservation_pending": 1})
        if order is None:
            return None
        return "pending" if order.get("reservation_pending") else "placed"

    # ----- Reads -----

    def _load(self, order_id: str) -> Dict[str, Any]:
        order = self.orders.find_one({"_id": ensure_object_id(order_id, "order id"), **VISIBLE})
        if not order:
            raise OrderNotFound(order_id)
        return order

    def _authorize(self, order: Dict[str, Any], principal: Principal, action: str = "update") -> None:
        if not principal.can_access(order.get("user_id")):
            raise Forbidden(f"You are not allowed to {action} this order")

    def get(self, order_id: str, principal: Principal, detail: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {"_id": ensure_object_id(order_id, "order id"), **VISIBLE}
        if not principal.is_privileged:
            query["user_id"] = principal.id
        order = self.orders.find_one(query)
        if not order:
            raise OrderNotFound(order_id)
        result = serialize_doc(order)
        if detail:
            result["items"] = [self._with_product(item) for item in result["items"]]
        return result

    def _with_product(self, item: Dict[str, Any]) -> Dict[str, Any]:
        product = None
        if ObjectId.is_valid(item["product_id"]):
            product = self.products.find_one({"_id": ObjectId(item["product_id"])}, {"sku": 1, "title": 1, "description": 1, "images": 1})
        if product:
            info = {
                "sku": product.get("sku"),
                "title": product.get("title"),
                "description": product.get("description"),
                "images": product.get("images", []),
            }
        else:
            info = {"sku": "N/A", "title": "Product not available", "description": None, "images": []}
        return {**item, "product": info}

    def list(
        self,
        principal: Principal,
        user_id: Optional[str] = None,
        states: Optional[List[OrderState]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        page: int = 1,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = dict(VISIBLE)
        # non-privileged callers only ever see their own orders
        if not principal.is_privileged:
            query["user_id"] = principal.id
        elif user_id:
            query["user_id"] = user_id
        if states:
            query["state"] = {"$in": [OrderState(s).value for s in states]}
        created: Dict[str, Any] = {}
        if date_from:
            created["$gte"] = date_from
        if date_to:
            created["$lte"] = date_to
        if created:
            query["created_at"] = created

        limit = max(1, min(limit, 100))
        skip = max(page - 1, 0) * limit
        total = self.orders.count_documents(query)
        cursor = self.orders.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip).limit(limit)
        return {"items": [serialize_doc(o) for o in cursor], "total": total, "page": page, "limit": limit}

    # ----- State changes -----

    def update_state(
        self,
        order_id: str,
        new_state: OrderState,
        principal: Principal,
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        new_state = OrderState(new_state)
        if new_state == OrderState.CANCELLED:
            return self.cancel(order_id, principal)
        return self._set_state(order_id, new_state, principal, carrier, tracking_number)

    @retry_on_conflict()
    def _set_state(self, order_id, new_state, principal, carrier, tracking_number):
        order = self._load(order_id)
        self._authorize(order, principal)
        current = OrderState(order["state"])
        if current in TERMINAL_ORDER_STATES:
            raise InvalidStateTransition(
                f"Order {order_id} is {current.value}; no further state changes are allowed", current.value
            )
        changes: Dict[str, Any] = {"state": new_state.value, "updated_at": utcnow()}
        if carrier is not None:
            changes["carrier"] = carrier
        if tracking_number is not None:
            changes["tracking_number"] = tracking_number
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "state": current.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConcurrentUpdate()
        logger.info("Order %s: %s -> %s by %s", order_id, current.value, new_state.value, principal.id)
        return serialize_doc(updated)

    def confirm_payment(self, order_id: str, payment_reference: Optional[str] = None, transaction_id: Optional[str] = None) -> bool:
        """Advance a PENDING order to CONFIRMED. Safe to repeat."""
        if not ObjectId.is_valid(order_id):
            return False
        changes: Dict[str, Any] = {"state": OrderState.CONFIRMED.value, "updated_at": utcnow()}
        if payment_reference:
            changes["payment_reference"] = payment_reference
        if transaction_id:
            changes["transaction_id"] = transaction_id
        res = self.orders.update_one(
            {"_id": ObjectId(order_id), "state": OrderState.PENDING.value, **VISIBLE}, {"$set": changes}
        )
        if res.modified_count:
            logger.info("Order %s confirmed by payment %s", order_id, payment_reference)
        return bool(res.modified_count)

    def cancel(self, order_id: str, principal: Principal) -> Dict[str, Any]:
        """Cancel a PENDING or CONFIRMED order and give back the stock it took.

        The state flip and a restock lease are written in one conditional
        update; stock is then returned with keyed movements, so calling
        cancel again on an order whose restock did not finish completes it
        without returning anything twice.
        """
        order = self._load(order_id)
        self._authorize(order, principal, "cancel")
        current = OrderState(order["state"])

        if current == OrderState.CANCELLED and order.get("restock_pending"):
            claimed = self._claim_restock(order["_id"])
            if claimed is None:
                raise ConcurrentUpdate("Cancellation of this order is being completed; try again shortly")
            return self._restock(claimed)

        if current not in CANCELLABLE_ORDER_STATES:
            raise self._not_cancellable(order_id, current.value)

        now = utcnow()
        claimed = self.orders.find_one_and_update(
            {"_id": order["_id"], "state": {"$in": [s.value for s in CANCELLABLE_ORDER_STATES]}},
            {
                "$set": {
                    "state": OrderState.CANCELLED.value,
                    "restock_pending": True,
                    "restock_lease_until": now + RESTOCK_LEASE,
                    "cancelled_by": principal.id,
                    "cancelled_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            latest = self._load(order_id)
            raise self._not_cancellable(order_id, latest["state"])
        logger.info("Order %s cancelled by %s (was %s)", order_id, principal.id, current.value)
        return self._restock(claimed)

    @staticmethod
    def _not_cancellable(order_id: str, state: str) -> InvalidStateTransition:
        return InvalidStateTransition(
            f"Order {order_id} cannot be cancelled; current state: {state}. "
            f"Only {OrderState.PENDING.value} or {OrderState.CONFIRMED.value} orders can be cancelled",
            state,
        )

    def _claim_restock(self, oid: ObjectId) -> Optional[Dict[str, Any]]:
        now = utcnow()
        return self.orders.find_one_and_update(
            {
                "_id": oid,
                "state": OrderState.CANCELLED.value,
                "restock_pending": True,
                "$or": [{"restock_lease_until": {"$lt": now}}, {"restock_lease_until": None}],
            },
            {"$set": {"restock_lease_until": now + RESTOCK_LEASE, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )

    def _restock(self, order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = str(order["_id"])
        for (product_id, size_id), quantity in self._taken_lines(order):
            try:
                self.stock.apply_movement(
                    product_id,
                    size_id,
                    MovementKind.RETURN,
                    quantity,
                    reason="Order cancelled",
                    order_id=order_id,
                    user_id=order.get("cancelled_by"),
                    key=f"cancel:{order_id}:{product_id}:{size_id or '-'}",
                )
            except ProductNotFound:
                logger.warning("Product %s no longer exists; cannot restore %d units for order %s", product_id, quantity, order_id)

        updated = self.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"restock_pending": False, "updated_at": utcnow()}, "$unset": {"restock_lease_until": ""}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize_doc(updated)

    def recover_cancellations(self) -> int:
        """Finish restocks left behind by cancellations that crashed midway."""
        recovered = 0
        for order in self.orders.find({"state": OrderState.CANCELLED.value, "restock_pending": True}, {"_id": 1}):
            claimed = self._claim_restock(order["_id"])
            if claimed is None:
                continue
            self._restock(claimed)
            recovered += 1
        if recovered:
            logger.warning("Completed %d interrupted order cancellations", recovered)
        return recovered
