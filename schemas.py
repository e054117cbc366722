"""
Database Schemas

Each Pydantic model represents a collection in the MongoDB database.
The collection name is the lowercase of the class name.
Monetary fields are decimal strings ("1299.00"), never floats.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

CENTS = Decimal("0.01")


def to_decimal(value: Union[str, int, float, Decimal, None]) -> Decimal:
    """Parse a stored price. Floats go through str() so 0.1 stays 0.1."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount


def money(value: Union[str, int, float, Decimal, None]) -> str:
    amount = to_decimal(value)
    try:
        return str(amount.quantize(CENTS))
    except InvalidOperation:
        raise ValueError(f"Amount out of range: {value!r}")


def price_string(value: str) -> str:
    """Validate an incoming price: a plain non-negative decimal with at most two places."""
    amount = to_decimal(value)
    if amount < 0:
        raise ValueError("Price must not be negative")
    text = money(amount)
    if Decimal(text) != amount:
        raise ValueError(f"Price has more than two decimal places: {value!r}")
    return text


class OrderStatus(str, Enum):
    pending = "Pending"
    processing = "Processing"
    shipped = "Shipped"
    delivered = "Delivered"
    canceled = "Canceled"


class PaymentStatus(str, Enum):
    pending = "Pending"
    completed = "Completed"
    failed = "Failed"
    cancelled = "Cancelled"


# Statuses an order may only reach once it has been paid
PAID_ONLY_STATUSES = {OrderStatus.shipped.value, OrderStatus.delivered.value}


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="BCrypt hashed password")
    is_admin: bool = Field(False, description="Admin role flag")
    address: Optional[Address] = None
    email_verified: bool = False
    email_verification_code: Optional[str] = None
    reset_token: Optional[str] = None
    reset_token_expires: Optional[datetime] = None


class Category(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)
    image: str = Field(..., min_length=1, description="Image URL")


class ColorVariant(BaseModel):
    name: str = Field(..., min_length=1)
    images: List[str] = Field(..., min_length=1, description="Ordered image URLs")


class Product(BaseModel):
    name: str
    description: str
    features: str = ""
    actual_price: str = Field(..., description="Decimal string")
    discount_price: str = Field(..., description="Decimal string, the selling price")
    rating: float = Field(0, ge=0, le=5)
    colors: List[ColorVariant] = Field(default_factory=list)
    primary_image: str = ""
    category_id: str
    is_new_arrival: bool = True
    is_featured: bool = False
    in_stock: bool = True

    @field_validator("actual_price", "discount_price", mode="before")
    @classmethod
    def check_price(cls, value):
        return price_string(value)


class CartItem(BaseModel):
    product_id: str
    name: str
    price: str
    image: str = ""
    color: str
    quantity: int = Field(..., ge=1)
    total_cost: str


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_cart_cost: str = "0.00"
    version: int = 0


class OrderItem(BaseModel):
    product_id: str
    name: str = ""
    quantity: int = Field(..., ge=1)
    color: str
    price: str


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    user_id: str
    items: List[OrderItem]
    status: OrderStatus = OrderStatus.pending
    payment_method: str = "Razorpay"
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_id: str = "Pending"
    gateway_order_id: str = "Pending"
    delivery_address: Address
    contact_number: str
    total_price: str
    order_notes: Optional[str] = None
    tracking_id: Optional[str] = None
    delivery_partner: Optional[str] = None
    confirmation_sent: bool = False


class Payment(BaseModel):
    """Append-only ledger of payment transitions."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    order_id: str
    gateway_order_id: str
    payment_id: str
    payment_status: PaymentStatus
    event: str
    amount: str
    currency: str
