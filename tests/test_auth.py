from datetime import timedelta

import pytest
from bson import ObjectId

import auth
from database import now
from tests.conftest import ADMIN_EMAIL, ADMIN_PASSWORD, bearer, register


def reset_token_for(db, email):
    return db["user"].find_one({"email": email})["reset_token"]


def test_register_returns_token_and_sends_code(client, db, mailer):
    body = register(client, email="New@Example.com")
    assert set(body) == {"id", "name", "email", "is_admin", "token"}
    assert body["email"] == "new@example.com"
    assert body["is_admin"] is False

    stored = db["user"].find_one({"email": "new@example.com"})
    assert stored["password_hash"] != "secret123"
    assert len(stored["email_verification_code"]) == 4
    assert mailer.subjects("Email Verification")


def test_register_cannot_self_assign_admin(client, db):
    res = client.post("/api/users/register",
                      json={"name": "Eve", "email": "eve@example.com", "password": "secret123", "is_admin": True})
    assert res.status_code == 201
    assert res.json()["is_admin"] is False
    assert db["user"].find_one({"email": "eve@example.com"})["is_admin"] is False


def test_duplicate_registration_is_409(client):
    register(client)
    res = client.post("/api/users/register", json={"name": "A", "email": "ASHA@example.com", "password": "secret123"})
    assert res.status_code == 409


@pytest.mark.parametrize("payload", [
    {"name": "A", "email": "not-an-email", "password": "secret123"},
    {"name": "A", "email": "a@example.com", "password": "short"},
    {"email": "a@example.com", "password": "secret123"},
])
def test_register_validation(client, payload):
    res = client.post("/api/users/register", json=payload)
    assert res.status_code == 400
    assert res.json()["errors"]


def test_login(client):
    register(client)
    res = client.post("/api/users/login", json={"email": "asha@example.com", "password": "secret123"})
    assert res.status_code == 200
    assert res.json()["token"]

    bad = client.post("/api/users/login", json={"email": "asha@example.com", "password": "wrong-password"})
    assert bad.status_code == 401
    unknown = client.post("/api/users/login", json={"email": "nobody@example.com", "password": "secret123"})
    assert unknown.status_code == 401
    short = client.post("/api/users/login", json={"email": "asha@example.com", "password": "abc"})
    assert short.status_code == 401
    assert short.json()["detail"] == "Invalid email or password"


def test_token_rejections(client, db, user):
    assert client.get("/api/users/profile").status_code == 401
    assert client.get("/api/users/profile", headers={"Authorization": "Token abc"}).status_code == 401
    assert client.get("/api/users/profile", headers=bearer("garbage")).status_code == 401

    expired = auth.create_access_token({"_id": ObjectId(user["id"])}, expires_delta=timedelta(seconds=-10))
    assert client.get("/api/users/profile", headers=bearer(expired)).status_code == 401

    db["user"].delete_one({"_id": ObjectId(user["id"])})
    assert client.get("/api/users/profile", headers=user["headers"]).status_code == 401


def test_profile_hides_secrets(client, user):
    body = client.get("/api/users/profile", headers=user["headers"]).json()
    assert body["email"] == "asha@example.com"
    for field in auth.PRIVATE_FIELDS:
        assert field not in body


def test_update_profile(client, db, user, other_user, mailer):
    res = client.put("/api/users/profile", json={"name": "Asha K", "email": "asha.k@example.com"},
                     headers=user["headers"])
    assert res.status_code == 200
    assert res.json()["name"] == "Asha K"
    stored = db["user"].find_one({"_id": ObjectId(user["id"])})
    assert stored["email"] == "asha.k@example.com"
    assert stored["email_verified"] is False

    taken = client.put("/api/users/profile", json={"email": "ravi@example.com"}, headers=user["headers"])
    assert taken.status_code == 409
    assert client.put("/api/users/profile", json={}, headers=user["headers"]).status_code == 400


def test_password_change_takes_effect(client, user):
    client.put("/api/users/profile", json={"password": "another-secret"}, headers=user["headers"])
    res = client.post("/api/users/login", json={"email": "asha@example.com", "password": "another-secret"})
    assert res.status_code == 200


def test_update_address(client, db, user):
    address = {"street": "1 Park St", "city": "Kolkata", "state": "WB", "zip_code": "700016", "country": "India"}
    res = client.put("/api/users/address", json=address, headers=user["headers"])
    assert res.status_code == 200
    assert db["user"].find_one({"_id": ObjectId(user["id"])})["address"] == address
    assert client.put("/api/users/address", json={"city": "Kolkata"}, headers=user["headers"]).status_code == 400


def test_verify_email(client, db, user, mailer):
    code = db["user"].find_one({"_id": ObjectId(user["id"])})["email_verification_code"]
    wrong = "0000" if code != "0000" else "1111"
    assert client.post("/api/users/verify-email", json={"code": wrong}, headers=user["headers"]).status_code == 400

    res = client.post("/api/users/verify-email", json={"code": code}, headers=user["headers"])
    assert res.json() == {"message": "Email verified"}
    assert db["user"].find_one({"_id": ObjectId(user["id"])})["email_verified"] is True
    assert mailer.subjects("Welcome")

    again = client.post("/api/users/verify-email", json={"code": code}, headers=user["headers"])
    assert again.json() == {"message": "Email already verified"}


def test_resend_verification_replaces_code(client, db, user, mailer):
    before = len(mailer.subjects("Email Verification"))
    res = client.post("/api/users/resend-verification", headers=user["headers"])
    assert res.status_code == 200
    assert len(mailer.subjects("Email Verification")) == before + 1


def test_forgot_password_does_not_reveal_accounts(client, mailer):
    res = client.post("/api/users/forgot-password", json={"email": "nobody@example.com"})
    assert res.status_code == 200
    assert mailer.subjects("Password Reset") == []


def test_password_reset_is_single_use(client, db, user, mailer):
    client.post("/api/users/forgot-password", json={"email": "asha@example.com"})
    token = reset_token_for(db, "asha@example.com")
    assert token in mailer.sent[-1]["body"]

    res = client.post(f"/api/users/reset-password/{token}", json={"password": "brand-new-pass"})
    assert res.status_code == 200
    login = client.post("/api/users/login", json={"email": "asha@example.com", "password": "brand-new-pass"})
    assert login.status_code == 200

    reuse = client.post(f"/api/users/reset-password/{token}", json={"password": "other-pass"})
    assert reuse.status_code == 400


def test_new_reset_token_supersedes_old(client, db, user):
    client.post("/api/users/forgot-password", json={"email": "asha@example.com"})
    first = reset_token_for(db, "asha@example.com")
    client.post("/api/users/forgot-password", json={"email": "asha@example.com"})
    assert client.post(f"/api/users/reset-password/{first}", json={"password": "newpass1"}).status_code == 400


def test_expired_reset_token(client, db, user):
    client.post("/api/users/forgot-password", json={"email": "asha@example.com"})
    token = reset_token_for(db, "asha@example.com")
    db["user"].update_one({"reset_token": token}, {"$set": {"reset_token_expires": now() - timedelta(minutes=1)}})
    assert client.post(f"/api/users/reset-password/{token}", json={"password": "newpass1"}).status_code == 400


def test_admin_login_and_profile(client, admin):
    assert admin["is_admin"] is True
    res = client.get("/api/admin/profile", headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["email"] == ADMIN_EMAIL


def test_admin_login_rejects_customers(client, user):
    res = client.post("/api/admin/login", json={"email": "asha@example.com", "password": "secret123"})
    assert res.status_code == 403
    assert client.get("/api/admin/profile", headers=user["headers"]).status_code == 403
    wrong = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert wrong.status_code == 401


def test_ensure_admin_is_idempotent_and_promotes(db, user):
    auth.ensure_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    auth.ensure_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert db["user"].count_documents({"email": ADMIN_EMAIL}) == 1

    auth.ensure_admin(db, "asha@example.com", "ignored-password")
    assert db["user"].find_one({"email": "asha@example.com"})["is_admin"] is True

    auth.ensure_admin(db, None, None)
    assert db["user"].count_documents({}) == 2
