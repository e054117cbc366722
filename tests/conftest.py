import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
from database import ensure_indexes, get_db, now
from errors import GatewayError
from mailer import Mailer, get_mailer
from main import app
from payments import get_gateway

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-password"


class RecordingMailer(Mailer):
    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append({"to": to, "subject": subject, "body": body})

    def subjects(self, prefix=""):
        return [m["subject"] for m in self.sent if m["subject"].startswith(prefix)]


class FakeGateway:
    key_id = "rzp_test_fake"

    def __init__(self):
        self.fail = False
        self.calls = []

    def create_order(self, amount, currency, receipt):
        self.calls.append({"amount": amount, "currency": currency, "receipt": receipt})
        if self.fail:
            raise GatewayError()
        return {"id": f"order_fake{len(self.calls):04d}", "amount": amount, "currency": currency,
                "receipt": receipt, "status": "created"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, mailer, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client, name="Asha", email="asha@example.com", password="secret123"):
    res = client.post("/api/users/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 201, res.text
    return res.json()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(client):
    data = register(client)
    data["headers"] = bearer(data["token"])
    return data


@pytest.fixture
def other_user(client):
    data = register(client, name="Ravi", email="ravi@example.com")
    data["headers"] = bearer(data["token"])
    return data


@pytest.fixture
def admin(client, db):
    auth.ensure_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    res = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200, res.text
    data = res.json()
    data["headers"] = bearer(data["token"])
    return data


@pytest.fixture
def category(db):
    doc = {"name": "Bags", "image": "https://img.example.com/bags.png", "created_at": now(), "updated_at": now()}
    doc["_id"] = db["category"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def make_product(db, category):
    def _make(name="Tote", discount_price="100", actual_price="150", in_stock=True, colors=None):
        colors = colors or [
            {"name": "black", "images": [f"https://img.example.com/{name}-black.png"]},
            {"name": "red", "images": [f"https://img.example.com/{name}-red.png"]},
        ]
        doc = {
            "name": name,
            "description": f"{name} description",
            "features": "",
            "actual_price": actual_price,
            "discount_price": discount_price,
            "rating": 4.5,
            "colors": colors,
            "primary_image": colors[0]["images"][0],
            "category_id": str(category["_id"]),
            "is_new_arrival": True,
            "is_featured": False,
            "in_stock": in_stock,
            "created_at": now(),
            "updated_at": now(),
        }
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        doc["id"] = str(doc["_id"])
        return doc

    return _make


ADDRESS = {"street": "12 MG Road", "city": "Pune", "state": "MH", "zip_code": "411001", "country": "India"}
