import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import CARTS, PRODUCTS, ensure_object_id, retry_on_conflict, serialize_doc, utcnow
from errors import (
    ConcurrentUpdate,
    Conflict,
    EmptyCart,
    InsufficientStock,
    InvalidQuantity,
    NotFound,
    ProductInactive,
    ProductNotFound,
    QuantityLimitExceeded,
    SizeRequired,
    StoreError,
    Unauthenticated,
)
from orders import RESERVATION_LEASE, OrderManager
from schemas import Cart, PaymentMethod
from stock import product_name, resolve_stock, uses_sizes

logger = logging.getLogger(__name__)

CHECKOUT_LEASE = RESERVATION_LEASE
CHECKOUT_IN_PROGRESS = "A checkout of this cart is in progress; try again shortly"


def cart_owner(user_id: Optional[str] = None, session_id: Optional[str] = None) -> Dict[str, str]:
    """Owner filter for a cart: the signed-in user, else the anonymous session."""
    if user_id:
        return {"user_id": user_id}
    if session_id and session_id.strip():
        return {"session_id": session_id.strip()}
    raise Unauthenticated("Sign in or send an X-Session-Id header to use a cart")


def _same_line(line: Dict[str, Any], product_id: str, size_id: Optional[str]) -> bool:
    return line["product_id"] == product_id and line.get("size_id") == size_id


class CartService:
    def __init__(self, db: Database, orders: OrderManager, max_quantity: int = 10):
        self.carts = db[CARTS]
        self.products = db[PRODUCTS]
        self.orders = orders
        self.max_quantity = max_quantity

    # ----- Helpers -----

    def _load(self, owner: Dict[str, str]) -> Dict[str, Any]:
        cart = self.carts.find_one(owner)
        if cart:
            return self._expire_checkout(cart)
        now = utcnow()
        fresh = Cart(**owner, created_at=now, updated_at=now).model_dump()
        for field in owner:
            fresh.pop(field, None)
        return self.carts.find_one_and_update(
            owner, {"$setOnInsert": fresh}, upsert=True, return_document=ReturnDocument.AFTER
        )

    def _product(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": ensure_object_id(product_id, "product id")})
        if not product:
            raise ProductNotFound(product_id)
        if not product.get("active", True):
            raise ProductInactive(product_name(product))
        return product

    def _check_line(self, product: Dict[str, Any], size_id: Optional[str], quantity: int) -> None:
        if quantity > self.max_quantity:
            raise QuantityLimitExceeded(
                f'At most {self.max_quantity} units of "{product_name(product)}" per order; requested: {quantity}'
            )
        available, _ = resolve_stock(product, size_id)
        if quantity > available:
            raise InsufficientStock(product_name(product), available, quantity, size_id)

    def _save(self, cart: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
        if cart.get("checkout_order_id"):
            raise Conflict(CHECKOUT_IN_PROGRESS)
        subtotal = round(sum(line["unit_price"] * line["quantity"] for line in items), 2)
        updated = self.carts.find_one_and_update(
            {"_id": cart["_id"], "version": cart.get("version")},
            {
                "$set": {"items": items, "subtotal": subtotal, "total": subtotal, "updated_at": utcnow()},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConcurrentUpdate()
        return updated

    def _find_line(self, items: List[Dict[str, Any]], product_id: str, size_id: Optional[str]) -> Dict[str, Any]:
        matches = [line for line in items if line["product_id"] == product_id and (size_id is None or line.get("size_id") == size_id)]
        if not matches:
            raise NotFound(f'Product "{product_id}" is not in the cart')
        if len(matches) > 1:
            raise SizeRequired(product_id)
        return matches[0]

    # ----- Reads -----

    def get(self, owner: Dict[str, str]) -> Dict[str, Any]:
        cart = self._load(owner)
        items = []
        for line in cart.get("items", []):
            product = None
            if ObjectId.is_valid(line["product_id"]):
                product = self.products.find_one({"_id": ObjectId(line["product_id"])})
            live = None
            if product:
                if uses_sizes(product):
                    stock = int((product.get("inventory_by_size") or {}).get(line.get("size_id"), 0))
                else:
                    stock = int(product.get("stock_quantity", 0))
                live = {
                    "title": product.get("title"),
                    "sku": product.get("sku"),
                    "images": product.get("images", []),
                    "price": float(product.get("price", 0)),
                    "stock": stock,
                    "active": product.get("active", True),
                }
            items.append({**line, "product": live})
        view = serialize_doc(cart)
        view["items"] = items
        view["item_count"] = sum(line["quantity"] for line in items)
        return view

    # ----- Mutations -----

    @retry_on_conflict()
    def add_item(self, owner: Dict[str, str], product_id: str, quantity: int = 1, size_id: Optional[str] = None) -> Dict[str, Any]:
        if quantity < 1:
            raise InvalidQuantity("Quantity must be at least 1")
        product = self._product(product_id)
        _, size_id = resolve_stock(product, size_id)
        cart = self._load(owner)
        items = [dict(line) for line in cart.get("items", [])]

        line = next((li for li in items if _same_line(li, product_id, size_id)), None)
        wanted = quantity + (line["quantity"] if line else 0)
        self._check_line(product, size_id, wanted)

        unit_price = float(product.get("price", 0))
        if line:
            line.update(quantity=wanted, unit_price=unit_price)
        else:
            items.append({"product_id": product_id, "quantity": wanted, "unit_price": unit_price, "size_id": size_id})
        return serialize_doc(self._save(cart, items))

    @retry_on_conflict()
    def update_item(self, owner: Dict[str, str], product_id: str, quantity: int, size_id: Optional[str] = None) -> Dict[str, Any]:
        if quantity < 0:
            raise InvalidQuantity("Quantity cannot be negative")
        cart = self._load(owner)
        items = [dict(line) for line in cart.get("items", [])]
        line = self._find_line(items, product_id, size_id)

        if quantity == 0:
            items.remove(line)
        else:
            product = self._product(product_id)
            self._check_line(product, line.get("size_id"), quantity)
            line.update(quantity=quantity, unit_price=float(product.get("price", 0)))
        return serialize_doc(self._save(cart, items))

    @retry_on_conflict()
    def remove_item(self, owner: Dict[str, str], product_id: str, size_id: Optional[str] = None) -> Dict[str, Any]:
        cart = self._load(owner)
        items = cart.get("items", [])
        kept = [li for li in items if not (li["product_id"] == product_id and (size_id is None or li.get("size_id") == size_id))]
        if len(kept) == len(items):
            raise NotFound(f'Product "{product_id}" is not in the cart')
        return serialize_doc(self._save(cart, kept))

    def clear(self, owner: Dict[str, str]) -> Dict[str, Any]:
        cart = self._load(owner)
        updated = self.carts.find_one_and_update(
            {"_id": cart["_id"], "checkout_order_id": None},
            {"$set": {"items": [], "subtotal": 0, "total": 0, "updated_at": utcnow()}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict(CHECKOUT_IN_PROGRESS)
        return serialize_doc(updated)

    def merge(self, user_id: str, session_id: str) -> Dict[str, Any]:
        """Fold an anonymous session cart into the user's cart.

        Quantities are summed and clamped to the per-line cap and current
        stock. Lines whose product is gone or inactive are dropped. Merging
        the same session twice is prevented only by the session cart being
        deleted afterwards.
        """
        source = self.carts.find_one({"session_id": session_id})
        if source is None:
            return self.get({"user_id": user_id})
        merged = self._merge_lines({"user_id": user_id}, source.get("items", []))
        self.carts.delete_one({"_id": source["_id"]})
        logger.info("Merged session cart %s into cart of %s (%d lines)", session_id, user_id, merged)
        return self.get({"user_id": user_id})

    @retry_on_conflict()
    def _merge_lines(self, owner: Dict[str, str], incoming: List[Dict[str, Any]]) -> int:
        cart = self._load(owner)
        items = [dict(line) for line in cart.get("items", [])]
        merged = 0
        for src in incoming:
            try:
                product = self._product(src["product_id"])
                available, size_id = resolve_stock(product, src.get("size_id"))
            except StoreError as e:
                logger.info("Skipping cart line %s during merge: %s", src.get("product_id"), e.message)
                continue
            line = next((li for li in items if _same_line(li, src["product_id"], size_id)), None)
            current = line["quantity"] if line else 0
            wanted = min(current + int(src["quantity"]), self.max_quantity, available)
            if wanted <= current:
                continue
            unit_price = float(product.get("price", 0))
            if line:
                line.update(quantity=wanted, unit_price=unit_price)
            else:
                items.append({"product_id": src["product_id"], "quantity": wanted, "unit_price": unit_price, "size_id": size_id})
            merged += 1
        if merged:
            self._save(cart, items)
        return merged

    def checkout(
        self,
        owner: Dict[str, str],
        shipping_address: Any,
        payment_method: PaymentMethod,
        shipping_cost: float = 0,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Turn the signed-in user's cart into an order that holds its stock.

        The cart is claimed first with a version compare-and-swap that also
        records the id the order will be created under. While the claim
        stands, a second checkout or any edit of the cart is refused with a
        Conflict. The cart is emptied only at the claimed version.
        """
        user_id = owner.get("user_id")
        if not user_id:
            raise Unauthenticated("Sign in to check out")
        cart = self.carts.find_one(owner)
        if cart:
            cart = self._expire_checkout(cart)
        if not cart or not cart.get("items"):
            raise EmptyCart()
        if cart.get("checkout_order_id"):
            raise Conflict(CHECKOUT_IN_PROGRESS)

        order_id = ObjectId()
        claimed = self.carts.find_one_and_update(
            {"_id": cart["_id"], "version": cart.get("version"), "checkout_order_id": None},
            {
                "$set": {"checkout_order_id": str(order_id), "checkout_lease_until": utcnow() + CHECKOUT_LEASE},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise Conflict("The cart changed while checking out; review it and try again")

        lines = [
            {"product_id": li["product_id"], "quantity": li["quantity"], "size_id": li.get("size_id")}
            for li in claimed["items"]
        ]
        try:
            order = self.orders.create_with_reservation(
                user_id, lines, shipping_address, payment_method,
                shipping_cost=shipping_cost, notes=notes, order_id=order_id,
            )
        except Exception:
            self._release_claim(claimed)
            raise
        self._finish_checkout(claimed)
        logger.info("Cart of %s checked out into order %s", user_id, order["id"])
        return order

    def _release_claim(self, claimed: Dict[str, Any]) -> None:
        self.carts.update_one(
            {"_id": claimed["_id"], "checkout_order_id": claimed["checkout_order_id"]},
            {"$set": {"checkout_order_id": None, "checkout_lease_until": None}, "$inc": {"version": 1}},
        )

    def _finish_checkout(self, claimed: Dict[str, Any]) -> None:
        res = self.carts.update_one(
            {"_id": claimed["_id"], "version": claimed["version"], "checkout_order_id": claimed["checkout_order_id"]},
            {
                "$set": {
                    "items": [],
                    "subtotal": 0,
                    "total": 0,
                    "checkout_order_id": None,
                    "checkout_lease_until": None,
                    "updated_at": utcnow(),
                },
                "$inc": {"version": 1},
            },
        )
        if not res.modified_count:
            logger.warning("Cart %s moved on before order %s was placed; left as is", claimed["_id"], claimed["checkout_order_id"])

    def _expire_checkout(self, cart: Dict[str, Any]) -> Dict[str, Any]:
        """Settle a checkout claim whose lease ran out and return the cart as it now stands.

        A placed order empties the cart. A checkout still taking stock is
        rolled back first; if that cannot happen yet the claim is kept.
        """
        order_id = cart.get("checkout_order_id")
        if not order_id:
            return cart
        stale = {
            "_id": cart["_id"],
            "version": cart.get("version"),
            "$or": [{"checkout_lease_until": {"$lt": utcnow()}}, {"checkout_lease_until": None}],
        }
        if self.carts.find_one(stale, {"_id": 1}) is None:
            return cart

        state = self.orders.reservation_state(order_id)
        if state == "pending" and not self.orders.release_reservation(order_id):
            return cart
        changes: Dict[str, Any] = {"checkout_order_id": None, "checkout_lease_until": None, "updated_at": utcnow()}
        if state == "placed":
            changes.update(items=[], subtotal=0, total=0)
        updated = self.carts.find_one_and_update(
            stale, {"$set": changes, "$inc": {"version": 1}}, return_document=ReturnDocument.AFTER
        )
        if updated is None:
            return self.carts.find_one({"_id": cart["_id"]})
        logger.warning("Released stale checkout of cart %s (order %s was %s)", cart["_id"], order_id, state or "never created")
        return updated
