import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import Principal, create_access_token, hash_password, principal_from_authorization, public_user, verify_password
from cart import CartService, cart_owner
from config import Settings, configure_logging
from database import PRODUCTS, USERS, connect, ensure_indexes, ensure_object_id, serialize_doc, utcnow
from errors import Forbidden, Internal, ProductNotFound, StoreError, ValidationFailed
from gateway import StripeGateway
from ledger import LedgerStore
from orders import OrderManager
from payments import PaymentOrchestrator
from schemas import (
    AddCartItemIn,
    CheckoutIn,
    CreateOrderIn,
    InitiatePaymentIn,
    LoginInput,
    MergeCartIn,
    MovementIn,
    MovementKind,
    OrderState,
    PaymentState,
    Product as ProductSchema,
    ProductIn,
    ProductUpdate,
    RefundIn,
    RegisterInput,
    Role,
    TokenResponse,
    UpdateCartItemIn,
    UpdateOrderStateIn,
    User as UserSchema,
)
from stock import StockEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def ok(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Dependencies

def get_db(request: Request) -> Database:
    db = request.app.state.db
    if db is None:
        raise Internal("Database not configured")
    return db


def get_current_principal(request: Request, authorization: Optional[str] = Header(default=None)) -> Principal:
    return principal_from_authorization(request.app.state.settings, get_db(request), authorization)


def get_optional_principal(request: Request, authorization: Optional[str] = Header(default=None)) -> Optional[Principal]:
    if not authorization:
        return None
    return get_current_principal(request, authorization)


def require_staff(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_privileged:
        raise Forbidden("Staff only")
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.role != Role.ADMIN.value:
        raise Forbidden("Admins only")
    return principal


def get_cart_owner(
    principal: Optional[Principal] = Depends(get_optional_principal),
    x_session_id: Optional[str] = Header(default=None),
) -> Dict[str, str]:
    return cart_owner(principal.id if principal else None, x_session_id)


def service(name: str):
    def dependency(request: Request):
        get_db(request)
        return getattr(request.app.state, name)
    return dependency


# Routes
@router.get("/")
def read_root():
    return {"message": "Storefront API"}


@router.get("/test")
def test_database(request: Request):
    db = request.app.state.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "payments": "✅ Configured" if request.app.state.settings.stripe_secret_key else "❌ Not Configured",
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
    except Exception as e:
        logger.warning("Database diagnostics failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
@router.post("/auth/register", status_code=201)
def register(payload: RegisterInput, request: Request):
    db = get_db(request)
    if db[USERS].find_one({"email": payload.email.lower()}):
        raise ValidationFailed("Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=payload.email.lower(),
        password_hash=hash_password(payload.password),
        role=Role.CUSTOMER,
    )
    result = db[USERS].insert_one(user_model.model_dump())
    token = create_access_token(request.app.state.settings, {"sub": str(result.inserted_id)})
    user = public_user(db[USERS].find_one({"_id": result.inserted_id}))
    logger.info("Registered user %s", result.inserted_id)
    return ok(TokenResponse(access_token=token, user=user).model_dump(), status_code=201)


@router.post("/auth/login")
def login(payload: LoginInput, request: Request):
    db = get_db(request)
    user = db[USERS].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise ValidationFailed("Invalid email or password")
    token = create_access_token(request.app.state.settings, {"sub": str(user["_id"])})
    return ok(TokenResponse(access_token=token, user=public_user(user)).model_dump())


@router.get("/auth/me")
def me(request: Request, principal: Principal = Depends(get_current_principal)):
    user = get_db(request)[USERS].find_one({"_id": ensure_object_id(principal.id)})
    return ok(public_user(user))


# Products
@router.get("/products")
def list_products(
    request: Request,
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    in_stock: Optional[bool] = None,
    sort: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    page: int = Query(1, ge=1),
):
    query: Dict[str, Any] = {"active": True}
    if q:
        query["$or"] = [
            {"title": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
            {"sku": {"$regex": q, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if in_stock is not None:
        query["stock_quantity"] = {"$gt": 0} if in_stock else 0

    collection = get_db(request)[PRODUCTS]
    cursor = collection.find(query, {"pending_movements": 0})
    if sort == "price_asc":
        cursor = cursor.sort("price", 1)
    elif sort == "price_desc":
        cursor = cursor.sort("price", -1)
    else:
        cursor = cursor.sort("created_at", -1)

    total = collection.count_documents(query)
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    return ok({"items": [serialize_doc(p) for p in cursor], "total": total, "page": page, "limit": limit})


@router.get("/products/{product_id}")
def get_product(product_id: str, request: Request):
    product = get_db(request)[PRODUCTS].find_one({"_id": ensure_object_id(product_id, "product id")}, {"pending_movements": 0})
    if not product:
        raise ProductNotFound(product_id)
    return ok(serialize_doc(product))


@router.post("/products", status_code=201)
def create_product(data: ProductIn, request: Request, principal: Principal = Depends(require_admin)):
    sizes = list(dict.fromkeys(s.strip() for s in data.sizes if s.strip()))
    inventory = dict(data.inventory_by_size)
    if any(v < 0 for v in inventory.values()):
        raise ValidationFailed("Stock per size cannot be negative")
    unknown = [s for s in inventory if sizes and s not in sizes]
    if unknown:
        raise ValidationFailed(f"Stock given for undeclared sizes: {', '.join(unknown)}")
    stock_quantity = data.stock_quantity
    if sizes or inventory:
        sizes = sizes or list(inventory)
        inventory = {s: int(inventory.get(s, 0)) for s in sizes}
        stock_quantity = sum(inventory.values())

    now = utcnow()
    product = ProductSchema(
        **data.model_dump(exclude={"sizes", "inventory_by_size", "stock_quantity"}),
        sizes=sizes,
        inventory_by_size=inventory,
        stock_quantity=stock_quantity,
        created_at=now,
        updated_at=now,
    )
    doc = product.model_dump()
    res = get_db(request)[PRODUCTS].insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("Product %s (%s) created by %s", res.inserted_id, data.sku, principal.id)
    return ok(serialize_doc(doc), status_code=201)


@router.patch("/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, request: Request, principal: Principal = Depends(require_admin)):
    obj_id = ensure_object_id(product_id, "product id")
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise ValidationFailed("No fields to update")
    update_dict["updated_at"] = utcnow()
    products = get_db(request)[PRODUCTS]
    res = products.update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise ProductNotFound(product_id)
    return ok(serialize_doc(products.find_one({"_id": obj_id})))


@router.delete("/products/{product_id}")
def delete_product(product_id: str, request: Request, principal: Principal = Depends(require_admin)):
    # soft delete; orders and the ledger keep referencing the product
    res = get_db(request)[PRODUCTS].update_one(
        {"_id": ensure_object_id(product_id, "product id")}, {"$set": {"active": False, "updated_at": utcnow()}}
    )
    if res.matched_count == 0:
        raise ProductNotFound(product_id)
    return ok(message="Product deactivated")


# Cart
@router.get("/cart")
def get_cart(owner: Dict[str, str] = Depends(get_cart_owner), carts: CartService = Depends(service("carts"))):
    return ok(carts.get(owner))


@router.post("/cart/items")
def add_cart_item(
    item: AddCartItemIn,
    owner: Dict[str, str] = Depends(get_cart_owner),
    carts: CartService = Depends(service("carts")),
):
    return ok(carts.add_item(owner, item.product_id, item.quantity, item.size_id), message="Item added to cart")


@router.patch("/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    item: UpdateCartItemIn,
    owner: Dict[str, str] = Depends(get_cart_owner),
    carts: CartService = Depends(service("carts")),
):
    return ok(carts.update_item(owner, product_id, item.quantity, item.size_id))


@router.delete("/cart/items/{product_id}")
def remove_cart_item(
    product_id: str,
    size_id: Optional[str] = None,
    owner: Dict[str, str] = Depends(get_cart_owner),
    carts: CartService = Depends(service("carts")),
):
    return ok(carts.remove_item(owner, product_id, size_id), message="Item removed from cart")


@router.delete("/cart")
def clear_cart(owner: Dict[str, str] = Depends(get_cart_owner), carts: CartService = Depends(service("carts"))):
    return ok(carts.clear(owner), message="Cart emptied")


@router.post("/cart/merge")
def merge_cart(
    data: MergeCartIn,
    principal: Principal = Depends(get_current_principal),
    carts: CartService = Depends(service("carts")),
):
    return ok(carts.merge(principal.id, data.session_id), message="Carts merged")


@router.post("/cart/checkout", status_code=201)
def checkout(
    data: CheckoutIn,
    principal: Principal = Depends(get_current_principal),
    carts: CartService = Depends(service("carts")),
):
    order = carts.checkout(
        {"user_id": principal.id},
        data.shipping_address,
        data.payment_method,
        shipping_cost=data.shipping_cost,
        notes=data.notes,
    )
    return ok(order, message="Order created", status_code=201)


# Orders
@router.post("/orders", status_code=201)
def create_order(
    data: CreateOrderIn,
    principal: Principal = Depends(get_current_principal),
    orders: OrderManager = Depends(service("orders")),
):
    order = orders.create(
        principal,
        [item.model_dump(include={"product_id", "quantity", "size_id"}) for item in data.items],
        data.shipping_address,
        data.payment_method,
        shipping_cost=data.shipping_cost,
        notes=data.notes,
    )
    return ok(order, message="Order created", status_code=201)


@router.get("/orders")
def list_orders(
    user_id: Optional[str] = None,
    state: Optional[List[OrderState]] = Query(None),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    principal: Principal = Depends(get_current_principal),
    orders: OrderManager = Depends(service("orders")),
):
    return ok(orders.list(principal, user_id, state, _aware(date_from), _aware(date_to), limit, page))


@router.get("/orders/{order_id}")
def get_order(
    order_id: str,
    detail: bool = False,
    principal: Principal = Depends(get_current_principal),
    orders: OrderManager = Depends(service("orders")),
):
    return ok(orders.get(order_id, principal, detail=detail))


@router.patch("/orders/{order_id}/state")
def update_order_state(
    order_id: str,
    data: UpdateOrderStateIn,
    principal: Principal = Depends(get_current_principal),
    orders: OrderManager = Depends(service("orders")),
):
    order = orders.update_state(order_id, data.state, principal, carrier=data.carrier, tracking_number=data.tracking_number)
    return ok(order, message=f"Order is now {order['state']}")


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    orders: OrderManager = Depends(service("orders")),
):
    return ok(orders.cancel(order_id, principal), message="Order cancelled")


# Inventory
@router.post("/inventory/movements", status_code=201)
def create_movement(
    data: MovementIn,
    principal: Principal = Depends(require_staff),
    stock: StockEngine = Depends(service("stock")),
):
    result = stock.apply_movement(
        data.product_id,
        data.size_id,
        data.kind,
        data.quantity,
        reason=data.reason,
        order_id=data.order_id,
        reference=data.reference,
        user_id=principal.id,
    )
    return ok(result, message="Movement recorded", status_code=201)


@router.get("/inventory/movements")
def list_movements(
    product_id: Optional[str] = None,
    size_id: Optional[str] = None,
    kind: Optional[MovementKind] = None,
    order_id: Optional[str] = None,
    user_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    cursor: Optional[str] = None,
    limit: int = 20,
    principal: Principal = Depends(require_staff),
    stock: StockEngine = Depends(service("stock")),
):
    return ok(
        stock.list_movements(
            product_id=product_id,
            size_id=size_id,
            kind=kind,
            order_id=order_id,
            user_id=user_id,
            date_from=_aware(date_from),
            date_to=_aware(date_to),
            cursor=cursor,
            limit=limit,
        )
    )


@router.get("/inventory/products/{product_id}/stock")
def stock_by_size(
    product_id: str,
    principal: Principal = Depends(require_staff),
    stock: StockEngine = Depends(service("stock")),
):
    return ok(stock.get_stock_by_size(product_id))


@router.get("/inventory/alerts")
def low_stock_alerts(
    product_id: Optional[str] = None,
    category: Optional[str] = None,
    critical_only: bool = False,
    limit: int = 50,
    principal: Principal = Depends(require_staff),
    stock: StockEngine = Depends(service("stock")),
):
    return ok(stock.list_low_stock_alerts(product_id=product_id, category=category, critical_only=critical_only, limit=limit))


@router.get("/inventory/alerts/{product_id}")
def low_stock_alert(
    product_id: str,
    principal: Principal = Depends(require_staff),
    stock: StockEngine = Depends(service("stock")),
):
    return ok(stock.get_low_stock_alert(product_id))


# Payments
@router.post("/payments")
def initiate_payment(
    data: InitiatePaymentIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(get_current_principal),
    payments: PaymentOrchestrator = Depends(service("payments")),
):
    result = payments.initiate(principal, data.order_id, data.payment_method, idempotency_key)
    if result["created"]:
        return ok(result, message="Payment created", status_code=201)
    return ok(result, message="Existing payment returned")


@router.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
):
    # signature is computed over the exact bytes received
    raw_body = await request.body()
    payments: PaymentOrchestrator = service("payments")(request)
    result = await run_in_threadpool(payments.process_webhook_event, raw_body, stripe_signature)
    return ok(result)


@router.get("/payments")
def list_payments(
    state: Optional[PaymentState] = None,
    order_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    page: int = Query(1, ge=1),
    principal: Principal = Depends(get_current_principal),
    payments: PaymentOrchestrator = Depends(service("payments")),
):
    return ok(payments.list(principal, state=state, order_id=order_id, limit=limit, page=page))


@router.get("/payments/order/{order_id}")
def payments_for_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    payments: PaymentOrchestrator = Depends(service("payments")),
):
    return ok(payments.get_by_order_id(order_id, principal))


@router.get("/payments/{payment_id}")
def get_payment(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    payments: PaymentOrchestrator = Depends(service("payments")),
):
    return ok(payments.get_by_id(payment_id, principal))


@router.post("/payments/{payment_id}/refund")
def refund_payment(
    payment_id: str,
    data: RefundIn,
    principal: Principal = Depends(get_current_principal),
    payments: PaymentOrchestrator = Depends(service("payments")),
):
    return ok(payments.refund(principal, payment_id, amount=data.amount, reason=data.reason), message="Payment refunded")


# Application

def wire_services(app: FastAPI, db: Database, gateway) -> None:
    settings = app.state.settings
    ledger = LedgerStore(db)
    stock = StockEngine(db, ledger)
    orders = OrderManager(db, stock, tax_rate=settings.tax_rate)
    app.state.db = db
    app.state.ledger = ledger
    app.state.stock = stock
    app.state.orders = orders
    app.state.carts = CartService(db, orders, max_quantity=settings.max_quantity_per_item)
    app.state.payments = PaymentOrchestrator(db, orders, gateway, currency=settings.currency)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    db = app.state.db
    client = None
    if db is None:
        client = connect(settings)
        if client is not None:
            db = client[settings.database_name]
    if db is not None:
        ensure_indexes(db)
        wire_services(app, db, app.state.gateway)
        settled = app.state.stock.settle_pending()
        if settled:
            logger.warning("Settled %d pending inventory movements at startup", settled)
        app.state.orders.recover_reservations()
        app.state.orders.recover_cancellations()
    yield
    if client is not None:
        client.close()


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None, gateway=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(title="Storefront API", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.gateway = gateway or StripeGateway(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(include_detail=not settings.is_production))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        body: Dict[str, Any] = {"success": False, "message": "Invalid request"}
        if not settings.is_production:
            body["error"] = jsonable_encoder(exc.errors())
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body: Dict[str, Any] = {"success": False, "message": "Internal error"}
        if not settings.is_production:
            body["error"] = str(exc)
        return JSONResponse(status_code=500, content=body)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
