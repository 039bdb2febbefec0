import logging
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import ConcurrentUpdate, ValidationFailed

logger = logging.getLogger(__name__)

PRODUCTS = "product"
MOVEMENTS = "inventory_movement"
CARTS = "cart"
ORDERS = "order"
PAYMENTS = "payment"
USERS = "user"


def connect(settings: Settings) -> Optional[MongoClient]:
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; database not configured")
        return None
    return MongoClient(settings.database_url, tz_aware=True)


def ensure_indexes(db: Database) -> None:
    db[MOVEMENTS].create_index([("key", ASCENDING)], unique=True)
    db[MOVEMENTS].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    db[MOVEMENTS].create_index([("order_id", ASCENDING)])
    db[PAYMENTS].create_index([("idempotency_key", ASCENDING)], unique=True)
    db[PAYMENTS].create_index([("order_id", ASCENDING)])
    db[PAYMENTS].create_index([("payment_intent_id", ASCENDING)])
    db[ORDERS].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db[CARTS].create_index([("user_id", ASCENDING)])
    db[CARTS].create_index([("session_id", ASCENDING)])
    db[USERS].create_index([("email", ASCENDING)], unique=True)


def utcnow() -> datetime:
    # Mongo keeps millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def ensure_object_id(id_str: Any, label: str = "ID") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise ValidationFailed(f"Invalid {label} format")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        doc[k] = _stringify_ids(v)
    return doc


def _stringify_ids(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [_stringify_ids(v) for v in value]
    if isinstance(value, dict):
        return {k: _stringify_ids(v) for k, v in value.items()}
    return value


def retry_on_conflict(max_attempts: int = 5, backoff: float = 0.01):
    """Re-run a compare-and-swap operation while it loses races.

    Only wrap operations that re-read their inputs on every attempt.
    """
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return fn(*args, **kwargs)
                except ConcurrentUpdate:
                    if attempt >= max_attempts:
                        raise
                    logger.warning("%s lost a concurrent update (attempt %d), retrying", fn.__name__, attempt)
                    time.sleep(backoff * attempt)
        return wrapper
    return deco
