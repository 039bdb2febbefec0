import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import ORDERS, PRODUCTS, ensure_object_id, retry_on_conflict, utcnow
from errors import (
    ConcurrentUpdate,
    InsufficientStock,
    InvalidQuantity,
    OrderNotFound,
    ProductNotFound,
    SizeNotApplicable,
    SizeRequired,
    ValidationFailed,
)
from ledger import LedgerStore
from schemas import ORDER_LINKED_KINDS, MovementKind

logger = logging.getLogger(__name__)

MAX_ALERTS_LIMIT = 200


def uses_sizes(product: Dict[str, Any]) -> bool:
    return bool(product.get("sizes")) or bool(product.get("inventory_by_size"))


def product_name(product: Dict[str, Any]) -> str:
    return product.get("title") or product.get("sku") or str(product.get("_id"))


def resolve_stock(product: Dict[str, Any], size_id: Optional[str]) -> Tuple[int, Optional[str]]:
    """Current quantity for the product's stock mode, and the size it applies to."""
    size_id = size_id.strip() if isinstance(size_id, str) else size_id
    if uses_sizes(product):
        if not size_id:
            raise SizeRequired(str(product["_id"]))
        declared = product.get("sizes") or []
        if declared and size_id not in declared:
            raise SizeNotApplicable(f'Size "{size_id}" does not belong to product "{product_name(product)}"')
        return int((product.get("inventory_by_size") or {}).get(size_id, 0)), size_id
    if size_id:
        raise SizeNotApplicable(
            f'Product "{product_name(product)}" does not track stock per size; do not send a size'
        )
    return int(product.get("stock_quantity", 0)), None


def next_quantity(kind: MovementKind, current: int, quantity: int, name: str = "", size_id: Optional[str] = None) -> int:
    if not isinstance(quantity, int) or quantity < 0:
        raise InvalidQuantity("Quantity must be a non-negative integer")
    if kind == MovementKind.ADJUSTMENT:
        return quantity
    if quantity == 0:
        raise InvalidQuantity(f"Quantity for {kind.value} movements must be at least 1")
    if kind in (MovementKind.ENTRY, MovementKind.RETURN):
        return current + quantity
    new = current - quantity
    if new < 0:
        raise InsufficientStock(name, current, quantity, size_id)
    return new


def evaluate_low_stock(product: Dict[str, Any]) -> Dict[str, Any]:
    """Compare current stock against the configured minimums. No side effects."""
    total = int(product.get("stock_quantity", 0))
    min_stock = int(product.get("min_stock") or 0)
    global_low = min_stock > 0 and total < min_stock

    sizes_low: List[Dict[str, Any]] = []
    tracked = 1 if min_stock > 0 else 0
    if uses_sizes(product):
        inventory = product.get("inventory_by_size") or {}
        for size_id, minimum in sorted((product.get("min_stock_by_size") or {}).items()):
            minimum = int(minimum or 0)
            if minimum <= 0:
                continue
            tracked += 1
            quantity = int(inventory.get(size_id, 0))
            if quantity < minimum:
                sizes_low.append(
                    {"size_id": size_id, "quantity": quantity, "minimum": minimum, "deficit": minimum - quantity}
                )

    deficits = [s["deficit"] for s in sizes_low]
    if global_low:
        deficits.append(min_stock - total)
    total_alerts = len(deficits)
    return {
        "product_id": str(product.get("_id")),
        "sku": product.get("sku"),
        "title": product.get("title"),
        "category": product.get("category"),
        "stock_quantity": total,
        "min_stock": min_stock,
        "global_low": global_low,
        "sizes_low": sizes_low,
        "any_below": total_alerts > 0,
        "all_below": tracked > 0 and total_alerts == tracked,
        "total_alerts": total_alerts,
        "max_deficit": max(deficits) if deficits else 0,
        "severity": "critical" if global_low else ("moderate" if total_alerts else "ok"),
    }


class StockEngine:
    """The only writer of product quantity fields.

    Each change is one compare-and-swap on the product document (guarded by
    `version`) that also embeds the movement in `pending_movements`. The
    movement is then copied into the ledger and dropped from the product.
    Whatever is still pending after a crash is settled by the next write or
    ledger read on that product.
    """

    def __init__(self, db: Database, ledger: LedgerStore):
        self.products = db[PRODUCTS]
        self.orders = db[ORDERS]
        self.ledger = ledger

    def get_product(self, product_id: str) -> Dict[str, Any]:
        product = self.products.find_one({"_id": ensure_object_id(product_id, "product id")})
        if not product:
            raise ProductNotFound(product_id)
        return product

    def apply_movement(
        self,
        product_id: str,
        size_id: Optional[str],
        kind: MovementKind,
        quantity: int,
        reason: Optional[str] = None,
        order_id: Optional[str] = None,
        reference: Optional[str] = None,
        user_id: Optional[str] = None,
        key: Optional[str] = None,
    ) -> Dict[str, Any]:
        kind = MovementKind(kind)
        if order_id and kind in ORDER_LINKED_KINDS:
            self._check_order(order_id)
        return self._apply(product_id, size_id, kind, quantity, reason, order_id, reference, user_id, key)

    def _check_order(self, order_id: str) -> None:
        if not ObjectId.is_valid(order_id) or self.orders.find_one({"_id": ObjectId(order_id)}, {"_id": 1}) is None:
            raise OrderNotFound(order_id)

    @retry_on_conflict(max_attempts=8)
    def _apply(self, product_id, size_id, kind, quantity, reason, order_id, reference, user_id, key):
        product = self.get_product(product_id)
        if product.get("pending_movements"):
            self._settle(product)
        if key:
            existing = self.ledger.get_by_key(key)
            if existing is not None:
                logger.info("Movement %s already applied; skipping", key)
                return self._result(product, existing, applied=False)

        current, size_id = resolve_stock(product, size_id)
        new = next_quantity(kind, current, quantity, product_name(product), size_id)
        now = utcnow()
        entry = self.ledger.build_entry(
            kind=kind,
            product_id=str(product["_id"]),
            size_id=size_id,
            quantity_before=current,
            quantity_after=new,
            reason=reason,
            reference=reference,
            order_id=order_id,
            user_id=user_id,
            key=key,
            created_at=now,
        )

        changes: Dict[str, Any] = {"updated_at": now}
        if size_id:
            inventory = dict(product.get("inventory_by_size") or {})
            inventory[size_id] = new
            changes["inventory_by_size"] = inventory
            changes["stock_quantity"] = sum(int(v) for v in inventory.values())
        else:
            changes["stock_quantity"] = new

        guard: Dict[str, Any] = {"_id": product["_id"], "version": product.get("version")}
        if key:
            guard["pending_movements.key"] = {"$ne": key}
        updated = self.products.find_one_and_update(
            guard,
            {"$set": changes, "$inc": {"version": 1}, "$push": {"pending_movements": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConcurrentUpdate()

        self._settle(updated)
        logger.info(
            "Stock %s on %s%s: %d -> %d (%s)",
            kind.value, product_id, f"/{size_id}" if size_id else "", current, new, entry["key"],
        )
        return self._result(updated, entry)

    def _settle(self, product: Dict[str, Any]) -> None:
        for entry in product.get("pending_movements") or []:
            stored = self.ledger.record(entry)
            if stored["_id"] != entry["_id"]:
                logger.error("Movement key %s was applied twice on product %s", entry["key"], product["_id"])
            self.products.update_one(
                {"_id": product["_id"]}, {"$pull": {"pending_movements": {"_id": entry["_id"]}}}
            )

    def settle_pending(self, product_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"pending_movements": {"$exists": True, "$ne": []}}
        if product_id:
            query["_id"] = ensure_object_id(product_id, "product id")
        settled = 0
        for product in self.products.find(query):
            settled += len(product["pending_movements"])
            self._settle(product)
        return settled

    def _result(self, product: Dict[str, Any], entry: Dict[str, Any], applied: bool = True) -> Dict[str, Any]:
        alert = evaluate_low_stock(product)
        return {
            "movement_id": str(entry["_id"]),
            "kind": entry["kind"],
            "product_id": str(product["_id"]),
            "size_id": entry.get("size_id"),
            "quantity_before": entry["quantity_before"],
            "quantity_after": entry["quantity_after"],
            "delta": entry["delta"],
            "stock_quantity": int(product.get("stock_quantity", 0)),
            "inventory_by_size": dict(product.get("inventory_by_size") or {}),
            "low_stock": {
                "active": alert["any_below"],
                "total_alerts": alert["total_alerts"],
                "max_deficit": alert["max_deficit"],
            },
            "created_at": entry["created_at"],
            "applied": applied,
        }

    def list_movements(self, **filters) -> Dict[str, Any]:
        self.settle_pending(filters.get("product_id"))
        return self.ledger.list(**filters)

    def get_stock_by_size(self, product_id: str) -> Dict[str, Any]:
        product = self.get_product(product_id)
        inventory = product.get("inventory_by_size") or {}
        sizes = list(product.get("sizes") or [])
        sizes += [s for s in inventory if s not in sizes]
        return {
            "product_id": str(product["_id"]),
            "uses_sizes": uses_sizes(product),
            "stock_quantity": int(product.get("stock_quantity", 0)),
            "inventory_by_size": [{"size_id": s, "quantity": int(inventory.get(s, 0))} for s in sizes],
        }

    def get_low_stock_alert(self, product_id: str) -> Optional[Dict[str, Any]]:
        alert = evaluate_low_stock(self.get_product(product_id))
        return alert if alert["total_alerts"] else None

    def list_low_stock_alerts(
        self,
        product_id: Optional[str] = None,
        category: Optional[str] = None,
        critical_only: bool = False,
        limit: int = 50,
    ) -> Dict[str, Any]:
        if limit < 1 or limit > MAX_ALERTS_LIMIT:
            raise ValidationFailed(f"limit must be between 1 and {MAX_ALERTS_LIMIT}")
        query: Dict[str, Any] = {"active": True}
        if product_id:
            query["_id"] = ensure_object_id(product_id, "product id")
        if category:
            query["category"] = category

        alerts = []
        for product in self.products.find(query):
            alert = evaluate_low_stock(product)
            if not alert["total_alerts"]:
                continue
            if critical_only and not alert["global_low"]:
                continue
            alerts.append(alert)
        alerts.sort(key=lambda a: (-a["max_deficit"], a["product_id"]))
        alerts = alerts[:limit]

        critical = sum(1 for a in alerts if a["global_low"])
        return {
            "summary": {
                "products": len(alerts),
                "total_alerts": sum(a["total_alerts"] for a in alerts),
                "critical": critical,
                "moderate": len(alerts) - critical,
                "generated_at": utcnow(),
            },
            "alerts": alerts,
        }
