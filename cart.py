"""
Cart engine

One cart document per user (unique on user_id) holding denormalized line
items. After every mutation:

    item.total_cost  == item.price * item.quantity
    total_cart_cost  == sum(item.total_cost)

Writes are conditional on the cart's ``version``. A writer whose version
is stale re-reads the cart and re-applies its change.
"""
from typing import Callable, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from catalog import get_product
from database import get_db, now, serialize_doc
from errors import Conflict, NotFound, OutOfStock, ValidationError
from logger import get_logger
from schemas import Cart as CartSchema, money, to_decimal

log = get_logger("cart")

router = APIRouter(prefix="/api/cart", tags=["cart"])

MAX_WRITE_ATTEMPTS = 5
ZERO = money(0)


def recompute(cart: dict) -> dict:
    total = to_decimal(0)
    for item in cart["items"]:
        line = to_decimal(item["price"]) * item["quantity"]
        item["total_cost"] = money(line)
        total += to_decimal(item["total_cost"])
    cart["total_cart_cost"] = money(total)
    return cart


def empty_cart(user_id: str) -> dict:
    return {"id": None, "user_id": user_id, "items": [], "total_cart_cost": ZERO}


def _find_items(items: List[dict], product_id: str, color: Optional[str]) -> List[dict]:
    return [i for i in items if i["product_id"] == product_id and (color is None or i["color"] == color)]


def _single_item(cart: dict, product_id: str, color: Optional[str]) -> dict:
    matches = _find_items(cart["items"], product_id, color)
    if not matches:
        raise NotFound("Item not found in cart")
    if len(matches) > 1:
        raise ValidationError("Product is in the cart in several colors, specify which one")
    return matches[0]


def _current_price(product: dict) -> str:
    return money(product["discount_price"])


def _write(db: Database, cart: dict) -> bool:
    version = cart.get("version", 0)
    expected = version if "version" in cart else {"$exists": False}
    res = db["cart"].update_one(
        {"_id": cart["_id"], "version": expected},
        {
            "$set": {"items": cart["items"], "total_cart_cost": cart["total_cart_cost"], "updated_at": now()},
            "$inc": {"version": 1},
        },
    )
    if res.matched_count:
        cart["version"] = version + 1
        return True
    return False


def _mutate(db: Database, user_id: str, change: Callable[[dict], None], create: bool = False) -> Tuple[dict, bool]:
    """Apply ``change`` to the user's cart and persist it.

    Returns the saved cart and whether this call created it. ``change`` may
    raise; nothing is written in that case.
    """
    for attempt in range(MAX_WRITE_ATTEMPTS):
        cart = db["cart"].find_one({"user_id": user_id})
        if cart is None:
            if not create:
                raise NotFound("Cart not found")
            doc = CartSchema(user_id=user_id).model_dump()
            change(doc)
            recompute(doc)
            doc["created_at"] = doc["updated_at"] = now()
            try:
                doc["_id"] = db["cart"].insert_one(doc).inserted_id
            except DuplicateKeyError:
                # Another request created the cart first
                continue
            return doc, True
        change(cart)
        recompute(cart)
        if _write(db, cart):
            return cart, False
        log.info("Cart for user %s changed concurrently, retrying (attempt %d)", user_id, attempt + 1)
    raise Conflict("Cart is being modified concurrently, please retry")


# Operations

def add_item(db: Database, user_id: str, product_id: str, quantity: int, color: str) -> Tuple[dict, bool]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = get_product(db, product_id)
    if not product.get("in_stock", True):
        raise OutOfStock(product["name"])
    price = _current_price(product)
    product_id = str(product["_id"])

    def change(cart: dict) -> None:
        existing = _find_items(cart["items"], product_id, color)
        if existing:
            existing[0]["quantity"] += quantity
            existing[0]["price"] = price
        else:
            cart["items"].append({
                "product_id": product_id,
                "name": product["name"],
                "price": price,
                "image": product.get("primary_image", ""),
                "color": color,
                "quantity": quantity,
                "total_cost": ZERO,
            })

    return _mutate(db, user_id, change, create=True)


def get_cart(db: Database, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None:
        return empty_cart(user_id)
    return serialize_doc(cart)


def update_item_quantity(db: Database, user_id: str, product_id: str, quantity: int,
                         color: Optional[str] = None) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    def change(cart: dict) -> None:
        item = _single_item(cart, product_id, color)
        item["quantity"] = quantity
        item["price"] = _current_price(get_product(db, product_id))

    cart, _ = _mutate(db, user_id, change)
    return cart


def remove_item(db: Database, user_id: str, product_id: str, color: Optional[str] = None) -> dict:
    def change(cart: dict) -> None:
        item = _single_item(cart, product_id, color)
        if item["quantity"] > 1:
            item["quantity"] -= 1
        else:
            cart["items"].remove(item)

    cart, _ = _mutate(db, user_id, change)
    return cart


def clear_cart(db: Database, user_id: str) -> bool:
    res = db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "total_cart_cost": ZERO, "updated_at": now()}, "$inc": {"version": 1}},
    )
    return res.matched_count > 0


# Routes

class AddToCartInput(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    color: str = Field(..., min_length=1)


class UpdateCartItemInput(BaseModel):
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None


@router.get("")
def read_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return get_cart(db, current_user["id"])


@router.post("")
def add_to_cart(item: AddToCartInput, response: Response, current_user: dict = Depends(get_current_user),
                db: Database = Depends(get_db)):
    cart, created = add_item(db, current_user["id"], item.product_id, item.quantity, item.color)
    response.status_code = 201 if created else 200
    return serialize_doc(cart)


@router.put("/{product_id}")
def update_cart_item(product_id: str, item: UpdateCartItemInput, current_user: dict = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    return serialize_doc(update_item_quantity(db, current_user["id"], product_id, item.quantity, item.color))


@router.delete("/{product_id}")
def remove_from_cart(product_id: str, color: Optional[str] = Query(default=None),
                     current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize_doc(remove_item(db, current_user["id"], product_id, color))


@router.delete("")
def empty_user_cart(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    clear_cart(db, current_user["id"])
    return {"message": "Cart cleared"}
