"""
Database Schemas

MongoDB collection schemas for the storefront, as Pydantic models.
Collection name is the lowercased class name (inventory movements live in
`inventory_movement`). Request bodies accepted by the API are defined at the
bottom of the module.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"
    ADMIN = "admin"


PRIVILEGED_ROLES = {Role.ADMIN.value, Role.EMPLOYEE.value}


class MovementKind(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"
    ADJUSTMENT = "adjustment"
    SALE = "sale"
    RETURN = "return"


ORDER_LINKED_KINDS = {MovementKind.SALE, MovementKind.RETURN}


class OrderState(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


TERMINAL_ORDER_STATES = {OrderState.DELIVERED, OrderState.CANCELLED}
CANCELLABLE_ORDER_STATES = {OrderState.PENDING, OrderState.CONFIRMED}


class PaymentMethod(str, Enum):
    CARD = "CARD"
    TRANSFER = "TRANSFER"
    CASH = "CASH"
    PAYPAL = "PAYPAL"
    MERCADOPAGO = "MERCADOPAGO"


class PaymentState(str, Enum):
    PENDING = "PENDING"
    REQUIRES_ACTION = "REQUIRES_ACTION"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentProvider(str, Enum):
    STRIPE = "STRIPE"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field(Role.CUSTOMER, description="Role: customer | employee | admin")
    address: Optional[str] = None


class Product(BaseModel):
    title: str
    sku: str = Field(..., description="Stock keeping unit")
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list, description="Declared size variants; empty = global stock")
    stock_quantity: int = Field(0, ge=0, description="Global stock, or the sum of per-size stock")
    inventory_by_size: Dict[str, int] = Field(default_factory=dict)
    min_stock: int = Field(0, ge=0, description="Global low-stock threshold")
    min_stock_by_size: Dict[str, int] = Field(default_factory=dict)
    active: bool = True
    version: int = 0
    pending_movements: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InventoryMovement(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    kind: MovementKind
    product_id: str
    size_id: Optional[str] = None
    quantity_before: int
    quantity_after: int
    delta: int
    reason: Optional[str] = None
    reference: Optional[str] = None
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    key: str = Field(..., description="Unique application key; keyed movements apply once")
    created_at: datetime


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Price snapshot taken when the line last changed")
    size_id: Optional[str] = None


class Cart(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = 0
    total: float = 0
    version: int = 0
    checkout_order_id: Optional[str] = None
    checkout_lease_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ShippingAddress(BaseModel):
    name: str
    phone: str
    street: str
    number: str
    interior_number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: str
    state: str
    postal_code: str
    references: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    subtotal: float = Field(..., ge=0)
    size_id: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    items: List[OrderItem]
    subtotal: float
    taxes: float
    shipping_cost: float = 0
    total: float
    state: OrderState = OrderState.PENDING
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    notes: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    restock_pending: bool = False
    reservation_pending: bool = False
    created_at: datetime
    updated_at: datetime


Scalar = Union[str, int, float, bool, None]


class Payment(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    user_id: str
    provider: PaymentProvider = PaymentProvider.STRIPE
    payment_method: PaymentMethod
    amount: float
    currency: str
    state: PaymentState = PaymentState.PENDING
    idempotency_key: str
    provider_status: Optional[str] = None
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    processed_event_ids: List[str] = Field(default_factory=list)
    metadata: Dict[str, Scalar] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


# ----- Request bodies -----

class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class ProductIn(BaseModel):
    title: str
    sku: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    images: List[str] = []
    sizes: List[str] = []
    stock_quantity: int = Field(0, ge=0)
    inventory_by_size: Dict[str, int] = {}
    min_stock: int = Field(0, ge=0)
    min_stock_by_size: Dict[str, int] = {}
    active: bool = True


class ProductUpdate(BaseModel):
    # quantity fields are owned by the stock engine
    title: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    images: Optional[List[str]] = None
    min_stock: Optional[int] = Field(None, ge=0)
    min_stock_by_size: Optional[Dict[str, int]] = None
    active: Optional[bool] = None


class MovementIn(BaseModel):
    product_id: str
    size_id: Optional[str] = None
    kind: MovementKind
    quantity: int = Field(..., ge=0, description="Units moved, or the new absolute quantity for adjustments")
    reason: Optional[str] = Field(None, max_length=300)
    reference: Optional[str] = Field(None, max_length=120)
    order_id: Optional[str] = None


class AddCartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size_id: Optional[str] = None


class UpdateCartItemIn(BaseModel):
    quantity: int = Field(..., ge=0)
    size_id: Optional[str] = None


class MergeCartIn(BaseModel):
    session_id: str = Field(..., min_length=1)


class CheckoutIn(BaseModel):
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    shipping_cost: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=500)


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    size_id: Optional[str] = None
    # accepted for compatibility, never trusted
    unit_price: Optional[float] = None
    subtotal: Optional[float] = None


class CreateOrderIn(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    shipping_cost: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=500)
    subtotal: Optional[float] = None
    total: Optional[float] = None


class UpdateOrderStateIn(BaseModel):
    state: OrderState
    carrier: Optional[str] = Field(None, max_length=80)
    tracking_number: Optional[str] = Field(None, max_length=120)


class InitiatePaymentIn(BaseModel):
    order_id: str
    payment_method: PaymentMethod


class RefundIn(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=300)
