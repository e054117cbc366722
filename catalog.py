import math
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import require_admin
from database import create_document, get_db, get_documents, now, serialize_doc, to_object_id
from errors import Conflict, NotFound, ValidationError
from schemas import Category as CategorySchema, ColorVariant, Product as ProductSchema, price_string

category_router = APIRouter(prefix="/api/categories", tags=["categories"])
product_router = APIRouter(prefix="/api/products", tags=["products"])

HIGHLIGHT_LIMIT = 5


# Helpers

def get_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFound(f"Product not found: {product_id}")
    return product


def get_category(db: Database, category_id: str) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id, "category id")})
    if not category:
        raise NotFound("Category not found")
    return category


def resolve_primary_image(colors: List[Dict[str, Any]], primary_image: Optional[str]) -> str:
    """Pick the product's primary image; it must belong to one of its color variants."""
    images = [image for color in colors for image in color.get("images", [])]
    if not primary_image:
        if not images:
            raise ValidationError("A product needs at least one color with an image")
        return images[0]
    if primary_image not in images:
        raise ValidationError("primary_image must be one of the color variant images")
    return primary_image


def _with_category(db: Database, products: List[dict]) -> List[dict]:
    ids = {p.get("category_id") for p in products if p.get("category_id")}
    names = {}
    if ids:
        valid = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
        for cat in db["category"].find({"_id": {"$in": valid}}):
            names[str(cat["_id"])] = cat["name"]
    out = []
    for p in products:
        doc = serialize_doc(p)
        doc["category"] = {"id": p.get("category_id"), "name": names.get(p.get("category_id"))}
        out.append(doc)
    return out


def _paginate(db: Database, query: Dict[str, Any], page: int, limit: int) -> dict:
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", DESCENDING).skip(limit * (page - 1)).limit(limit)
    return {
        "products": _with_category(db, list(cursor)),
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
        "total_products": total,
    }


# Categories

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=50)
    image: Optional[str] = Field(None, min_length=1)


@category_router.post("", status_code=201)
def create_category(payload: CategorySchema, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    try:
        category_id = create_document("category", payload, database=db)
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    return serialize_doc(db["category"].find_one({"_id": ObjectId(category_id)}))


@category_router.get("")
def list_categories(db: Database = Depends(get_db)):
    return [serialize_doc(c) for c in get_documents("category", database=db, sort=[("name", 1)])]


@category_router.get("/{category_id}")
def read_category(category_id: str, db: Database = Depends(get_db)):
    return serialize_doc(get_category(db, category_id))


@category_router.put("/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, admin: dict = Depends(require_admin),
                    db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        raise ValidationError("No fields to update")
    category = get_category(db, category_id)
    update["updated_at"] = now()
    try:
        db["category"].update_one({"_id": category["_id"]}, {"$set": update})
    except DuplicateKeyError:
        raise Conflict("Category already exists")
    return serialize_doc(db["category"].find_one({"_id": category["_id"]}))


@category_router.delete("/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["category"].delete_one({"_id": to_object_id(category_id, "category id")})
    if res.deleted_count == 0:
        raise NotFound("Category not found")
    return {"message": "Category deleted successfully"}


# Products

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    features: Optional[str] = None
    actual_price: Optional[str] = None
    discount_price: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    colors: Optional[List[ColorVariant]] = None
    primary_image: Optional[str] = None
    category_id: Optional[str] = None
    is_new_arrival: Optional[bool] = None
    is_featured: Optional[bool] = None
    in_stock: Optional[bool] = None

    @field_validator("actual_price", "discount_price", mode="before")
    @classmethod
    def check_price(cls, value):
        return None if value is None else price_string(value)


@product_router.get("")
def list_products(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    return _paginate(db, {}, page, limit)


@product_router.get("/featured")
def featured_products(db: Database = Depends(get_db)):
    cursor = db["product"].find({"is_featured": True}).sort("updated_at", DESCENDING).limit(HIGHLIGHT_LIMIT)
    return _with_category(db, list(cursor))


@product_router.get("/new-arrivals")
def new_arrivals(db: Database = Depends(get_db)):
    cursor = db["product"].find({"is_new_arrival": True}).sort("updated_at", DESCENDING).limit(HIGHLIGHT_LIMIT)
    return _with_category(db, list(cursor))


@product_router.get("/category/{name}")
def products_by_category(name: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                         db: Database = Depends(get_db)):
    category = db["category"].find_one({"name": name})
    if not category:
        raise NotFound("Category not found")
    return _paginate(db, {"category_id": str(category["_id"])}, page, limit)


@product_router.get("/{product_id}")
def read_product(product_id: str, db: Database = Depends(get_db)):
    return _with_category(db, [get_product(db, product_id)])[0]


@product_router.post("", status_code=201)
def create_product(payload: ProductSchema, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    get_category(db, payload.category_id)
    doc = payload.model_dump()
    doc["primary_image"] = resolve_primary_image(doc["colors"], doc.get("primary_image"))
    product_id = create_document("product", doc, database=db)
    return _with_category(db, [db["product"].find_one({"_id": ObjectId(product_id)})])[0]


@product_router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        raise ValidationError("No fields to update")
    product = get_product(db, product_id)
    if "category_id" in update:
        get_category(db, update["category_id"])
    if "colors" in update or "primary_image" in update:
        colors = update.get("colors", product.get("colors", []))
        primary = update.get("primary_image")
        if primary is None and product.get("primary_image") in [i for c in colors for i in c.get("images", [])]:
            primary = product["primary_image"]
        update["primary_image"] = resolve_primary_image(colors, primary)
    update["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return _with_category(db, [db["product"].find_one({"_id": product["_id"]})])[0]


@product_router.delete("/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    res = db["product"].delete_one({"_id": to_object_id(product_id, "product id")})
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    return {"message": "Product removed"}
