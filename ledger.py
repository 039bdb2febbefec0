import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import MOVEMENTS, ensure_object_id, serialize_doc, utcnow
from errors import ValidationFailed
from schemas import ORDER_LINKED_KINDS, InventoryMovement, MovementKind

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class LedgerStore:
    """Append-only inventory movement history.

    Entries are written once and never updated or deleted. Quantities on the
    product document are not touched here.
    """

    def __init__(self, db: Database):
        self.collection = db[MOVEMENTS]

    def build_entry(
        self,
        kind: MovementKind,
        product_id: str,
        quantity_before: int,
        quantity_after: int,
        size_id: Optional[str] = None,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        order_id: Optional[str] = None,
        user_id: Optional[str] = None,
        key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        kind = MovementKind(kind)
        if kind in ORDER_LINKED_KINDS and not order_id:
            raise ValidationFailed(f"order_id is required for {kind.value} movements")
        _id = ObjectId()
        try:
            entry = InventoryMovement(
                kind=kind,
                product_id=product_id,
                size_id=size_id,
                quantity_before=quantity_before,
                quantity_after=quantity_after,
                delta=quantity_after - quantity_before,
                reason=reason,
                reference=reference,
                order_id=order_id,
                user_id=user_id,
                key=key or str(_id),
                created_at=created_at or utcnow(),
            )
        except ValidationError as e:
            raise ValidationFailed("Invalid inventory movement", detail=str(e))
        doc = entry.model_dump(mode="python")
        doc["kind"] = kind.value
        doc["_id"] = _id
        return doc

    def record(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append one entry. Re-recording the same key returns the stored entry."""
        if "_id" not in entry or "key" not in entry:
            raise ValidationFailed("Movement must be built with build_entry before recording")
        try:
            self.collection.insert_one(dict(entry))
        except DuplicateKeyError:
            existing = self.collection.find_one({"key": entry["key"]})
            if existing is None:
                raise
            return existing
        return entry

    def get_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"key": key})

    def net_taken_by_order(self, order_id: str) -> Dict[Tuple[str, Optional[str]], int]:
        """Units sold minus units returned for an order, per (product, size)."""
        taken: Dict[Tuple[str, Optional[str]], int] = defaultdict(int)
        kinds = [MovementKind.SALE.value, MovementKind.RETURN.value]
        for entry in self.collection.find({"order_id": order_id, "kind": {"$in": kinds}}):
            taken[(entry["product_id"], entry.get("size_id"))] -= entry["delta"]
        return dict(taken)

    def list(
        self,
        product_id: Optional[str] = None,
        size_id: Optional[str] = None,
        kind: Optional[MovementKind] = None,
        order_id: Optional[str] = None,
        user_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        query: Dict[str, Any] = {}
        if product_id:
            query["product_id"] = product_id
        if size_id:
            query["size_id"] = size_id
        if kind:
            query["kind"] = MovementKind(kind).value
        if order_id:
            query["order_id"] = order_id
        if user_id:
            query["user_id"] = user_id
        created: Dict[str, Any] = {}
        if date_from:
            created["$gte"] = date_from
        if date_to:
            created["$lte"] = date_to
        if created:
            query["created_at"] = created

        if cursor:
            last = self.collection.find_one({"_id": ensure_object_id(cursor, "cursor")})
            if last is None:
                raise ValidationFailed(f'Invalid cursor: movement "{cursor}" does not exist')
            after = {
                "$or": [
                    {"created_at": {"$lt": last["created_at"]}},
                    {"created_at": last["created_at"], "_id": {"$lt": last["_id"]}},
                ]
            }
            query = {"$and": [query, after]} if query else after

        docs: List[Dict[str, Any]] = list(
            self.collection.find(query)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(limit + 1)
        )
        has_next = len(docs) > limit
        docs = docs[:limit]
        return {
            "movements": [serialize_doc(d) for d in docs],
            "next_cursor": str(docs[-1]["_id"]) if has_next else None,
        }
