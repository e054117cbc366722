import secrets
from decimal import Decimal
from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import get_current_user, require_admin
from catalog import get_product
from database import get_db, now, serialize_doc
from errors import Conflict, NotFound, ValidationError
from logger import get_logger
from schemas import PAID_ONLY_STATUSES, Address, Order as OrderSchema, OrderStatus, PaymentStatus, money, to_decimal

log = get_logger("orders")

router = APIRouter(prefix="/api/orders", tags=["orders"])
users_router = APIRouter(prefix="/api/users", tags=["users"])

ORDER_ID_PREFIX = "ORD-"
MAX_ID_ATTEMPTS = 5


def generate_order_id() -> str:
    return ORDER_ID_PREFIX + secrets.token_hex(6).upper()


class OrderItemInput(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    color: str = Field(..., min_length=1)
    # Accepted for client compatibility; the catalog price is used instead
    price: Optional[Decimal] = None


class CreateOrderInput(BaseModel):
    products: List[OrderItemInput] = Field(..., min_length=1)
    delivery_address: Address
    contact_number: str = Field(..., min_length=1)
    total_price: Optional[Decimal] = None
    order_notes: Optional[str] = None


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    tracking_id: Optional[str] = None
    delivery_partner: Optional[str] = None


def price_items(db: Database, items: List[OrderItemInput]) -> List[dict]:
    """Validate every product exists and snapshot its current price."""
    priced = []
    for item in items:
        product = get_product(db, item.product_id)
        priced.append({
            "product_id": str(product["_id"]),
            "name": product["name"],
            "quantity": item.quantity,
            "color": item.color,
            "price": money(product["discount_price"]),
        })
    return priced


def create_order(db: Database, user_id: str, items: List[OrderItemInput], delivery_address: Address,
                 contact_number: str, total_price: Optional[Decimal] = None, order_notes: Optional[str] = None) -> dict:
    if not items:
        raise ValidationError("An order needs at least one product")
    priced = price_items(db, items)
    total = money(sum((to_decimal(i["price"]) * i["quantity"] for i in priced), to_decimal(0)))
    if total_price is not None:
        try:
            claimed = to_decimal(total_price)
        except ValueError as exc:
            raise ValidationError(str(exc))
        if claimed != to_decimal(total):
            raise ValidationError(f"Total price {total_price} does not match the order items ({total})")

    for _ in range(MAX_ID_ATTEMPTS):
        order = OrderSchema(
            order_id=generate_order_id(),
            user_id=user_id,
            items=priced,
            delivery_address=delivery_address,
            contact_number=contact_number,
            total_price=total,
            order_notes=order_notes,
        )
        doc = order.model_dump()
        doc["created_at"] = doc["updated_at"] = now()
        try:
            doc["_id"] = db["order"].insert_one(doc).inserted_id
        except DuplicateKeyError:
            log.warning("Order id collision on %s, regenerating", doc["order_id"])
            continue
        log.info("Created order %s for user %s (total %s)", doc["order_id"], user_id, total)
        return doc
    raise Conflict("Could not allocate a unique order id")


def find_order(db: Database, ref: str) -> Optional[dict]:
    if ref.startswith(ORDER_ID_PREFIX):
        return db["order"].find_one({"order_id": ref})
    if ObjectId.is_valid(ref):
        return db["order"].find_one({"_id": ObjectId(ref)})
    return None


def get_order(db: Database, ref: str, user: dict) -> dict:
    """Look up an order the caller may see. Other users' orders look absent."""
    order = find_order(db, ref)
    if not order or (not user.get("is_admin") and order["user_id"] != user["id"]):
        raise NotFound("Order not found")
    return order


def update_order(db: Database, ref: str, changes: OrderUpdate) -> dict:
    update = changes.model_dump(exclude_unset=True, exclude_none=True, mode="json")
    if not update:
        raise ValidationError("No fields to update")
    order = find_order(db, ref)
    if not order:
        raise NotFound("Order not found")
    status = update.get("status")
    if status in PAID_ONLY_STATUSES and order["payment_status"] != PaymentStatus.completed.value:
        raise Conflict(f"Order cannot be {status} before its payment is completed")
    update["updated_at"] = now()
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    log.info("Order %s updated: %s", order["order_id"], {k: v for k, v in update.items() if k != "updated_at"})
    return db["order"].find_one({"_id": order["_id"]})


def list_all_orders(db: Database) -> List[dict]:
    return [serialize_doc(o) for o in db["order"].find().sort("created_at", DESCENDING)]


def list_orders_for(db: Database, user: dict) -> List[dict]:
    cursor = db["order"].find({"user_id": user["id"]}).sort("created_at", DESCENDING)
    return [serialize_doc(o) for o in cursor]


@router.post("", status_code=201)
def place_order(payload: CreateOrderInput, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = create_order(db, current_user["id"], payload.products, payload.delivery_address,
                         payload.contact_number, payload.total_price, payload.order_notes)
    return serialize_doc(order)


@router.get("")
def all_orders(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return list_all_orders(db)


@router.get("/mine")
def my_orders(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return list_orders_for(db, current_user)


@router.get("/{order_ref}")
def read_order(order_ref: str, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_doc(get_order(db, order_ref, current_user))


@router.put("/{order_ref}")
def edit_order(order_ref: str, payload: OrderUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize_doc(update_order(db, order_ref, payload))


@users_router.get("/orders")
def user_orders(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return list_orders_for(db, current_user)
