import pytest

from catalog import resolve_primary_image
from errors import ValidationError
from schemas import money, price_string, to_decimal

COLORS = [
    {"name": "black", "images": ["https://img.example.com/b1.png", "https://img.example.com/b2.png"]},
    {"name": "tan", "images": ["https://img.example.com/t1.png"]},
]


def product_payload(category, **overrides):
    payload = {
        "name": "Weekender",
        "description": "Canvas travel bag",
        "actual_price": "2499",
        "discount_price": "1999.5",
        "colors": COLORS,
        "category_id": str(category["_id"]),
    }
    payload.update(overrides)
    return payload


def test_category_crud(client, admin):
    headers = admin["headers"]
    res = client.post("/api/categories", json={"name": "Shoes", "image": "https://img.example.com/shoes.png"},
                      headers=headers)
    assert res.status_code == 201
    category = res.json()

    assert client.post("/api/categories", json={"name": "Shoes", "image": "x"}, headers=headers).status_code == 409
    assert client.post("/api/categories", json={"name": "ab", "image": "x"}, headers=headers).status_code == 400

    assert client.get(f"/api/categories/{category['id']}").json()["name"] == "Shoes"
    updated = client.put(f"/api/categories/{category['id']}", json={"name": "Footwear"}, headers=headers)
    assert updated.json()["name"] == "Footwear"
    assert [c["name"] for c in client.get("/api/categories").json()] == ["Footwear"]

    assert client.delete(f"/api/categories/{category['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/categories/{category['id']}").status_code == 404
    assert client.delete(f"/api/categories/{category['id']}", headers=headers).status_code == 404


def test_category_writes_are_admin_only(client, user):
    res = client.post("/api/categories", json={"name": "Shoes", "image": "x"}, headers=user["headers"])
    assert res.status_code == 403
    assert client.post("/api/categories", json={"name": "Shoes", "image": "x"}).status_code == 401


def test_malformed_id_is_400(client):
    assert client.get("/api/categories/not-an-id").status_code == 400
    assert client.get("/api/products/not-an-id").status_code == 400


def test_create_product_defaults_primary_image(client, admin, category):
    res = client.post("/api/products", json=product_payload(category), headers=admin["headers"])
    assert res.status_code == 201
    body = res.json()
    assert body["primary_image"] == "https://img.example.com/b1.png"
    assert body["discount_price"] == "1999.50"
    assert body["actual_price"] == "2499.00"
    assert body["category"] == {"id": str(category["_id"]), "name": "Bags"}


def test_primary_image_must_belong_to_a_color(client, admin, category):
    good = product_payload(category, primary_image="https://img.example.com/t1.png")
    assert client.post("/api/products", json=good, headers=admin["headers"]).json()["primary_image"] == good["primary_image"]
    bad = product_payload(category, primary_image="https://elsewhere.example.com/x.png")
    assert client.post("/api/products", json=bad, headers=admin["headers"]).status_code == 400


@pytest.mark.parametrize("overrides", [
    {"discount_price": "-1"},
    {"actual_price": "abc"},
    {"discount_price": "NaN"},
    {"actual_price": "Infinity"},
    {"discount_price": "1e400"},
    {"discount_price": "1.299,00"},
    {"discount_price": "0.005"},
    {"rating": 6},
    {"colors": [{"name": "black", "images": []}]},
])
def test_invalid_products_are_rejected(client, admin, category, overrides):
    res = client.post("/api/products", json=product_payload(category, **overrides), headers=admin["headers"])
    assert res.status_code == 400


def test_product_needs_existing_category(client, admin):
    res = client.post("/api/products", json=product_payload({"_id": "0" * 24}), headers=admin["headers"])
    assert res.status_code == 404


def test_update_product(client, admin, category):
    created = client.post("/api/products", json=product_payload(category), headers=admin["headers"]).json()
    url = f"/api/products/{created['id']}"

    res = client.put(url, json={"discount_price": "1500", "is_featured": True}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["discount_price"] == "1500.00"

    # Dropping the color that holds the primary image moves it to the first remaining image
    res = client.put(url, json={"colors": [COLORS[1]]}, headers=admin["headers"])
    assert res.json()["primary_image"] == "https://img.example.com/t1.png"

    assert client.put(url, json={"primary_image": "https://img.example.com/b1.png"},
                      headers=admin["headers"]).status_code == 400
    assert client.put(url, json={}, headers=admin["headers"]).status_code == 400


def test_delete_product(client, admin, make_product):
    product = make_product()
    assert client.delete(f"/api/products/{product['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/products/{product['id']}").status_code == 404


def test_listing_is_paginated(client, make_product):
    for i in range(12):
        make_product(name=f"P{i}")
    first = client.get("/api/products", params={"page": 1, "limit": 5}).json()
    assert (first["page"], first["pages"], first["total_products"]) == (1, 3, 12)
    assert len(first["products"]) == 5
    last = client.get("/api/products", params={"page": 3, "limit": 5}).json()
    assert len(last["products"]) == 2


def test_featured_and_new_arrivals(client, db, make_product):
    for i in range(7):
        make_product(name=f"P{i}")
    featured = make_product(name="Star")
    db["product"].update_one({"_id": featured["_id"]}, {"$set": {"is_featured": True}})

    assert [p["name"] for p in client.get("/api/products/featured").json()] == ["Star"]
    assert len(client.get("/api/products/new-arrivals").json()) == 5


def test_products_by_category(client, make_product):
    make_product(name="Tote")
    res = client.get("/api/products/category/Bags")
    assert res.json()["total_products"] == 1
    assert res.json()["products"][0]["category"]["name"] == "Bags"
    assert client.get("/api/products/category/Hats").status_code == 404


def test_resolve_primary_image():
    assert resolve_primary_image(COLORS, None) == "https://img.example.com/b1.png"
    assert resolve_primary_image(COLORS, "https://img.example.com/b2.png") == "https://img.example.com/b2.png"
    with pytest.raises(ValidationError):
        resolve_primary_image([], None)
    with pytest.raises(ValidationError):
        resolve_primary_image(COLORS, "https://img.example.com/zz.png")


def test_price_strings():
    assert price_string("1999.5") == "1999.50"
    assert price_string(" 12 ") == "12.00"
    assert price_string("0.10") == "0.10"
    for bad in ("NaN", "sNaN", "Infinity", "-Infinity", "1e400", "1.299,00", "1,299", "0.005", "-1"):
        with pytest.raises(ValueError):
            price_string(bad)


def test_money_rejects_non_finite_and_out_of_range():
    assert money("19.99") == "19.99"
    assert to_decimal(None) == 0
    with pytest.raises(ValueError):
        to_decimal("NaN")
    with pytest.raises(ValueError):
        money("1e400")


def test_update_product_rejects_bad_price(client, admin, make_product):
    product = make_product()
    res = client.put(f"/api/products/{product['id']}", json={"discount_price": "Infinity"}, headers=admin["headers"])
    assert res.status_code == 400
