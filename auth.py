import secrets
import smtplib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import create_document, get_db, now, serialize_doc
from errors import Conflict, Forbidden, Unauthorized, ValidationError
from logger import get_logger
from mailer import Mailer, get_mailer
from schemas import Address, User as UserSchema

log = get_logger("auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

router = APIRouter(prefix="/api/users", tags=["users"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])

PRIVATE_FIELDS = ("password_hash", "email_verification_code", "reset_token", "reset_token_expires")


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.jwt_expire_days))
    to_encode = {"sub": str(user["_id"]), "is_admin": bool(user.get("is_admin")), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise Unauthorized("Not authorized, token failed")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    for field in PRIVATE_FIELDS:
        user.pop(field, None)
    return user


def _token_response(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "name": user["name"],
        "email": user["email"],
        "is_admin": bool(user.get("is_admin")),
        "token": create_access_token(user),
    }


def _verification_code() -> str:
    return f"{secrets.randbelow(10000):04d}"


def _deliver(send, *args) -> None:
    # Account flows must not fail because the mail server is down
    try:
        send(*args)
    except (smtplib.SMTPException, OSError) as exc:
        log.error("Mail delivery failed: %s", exc)


def ensure_admin(db: Database, email: Optional[str], password: Optional[str]) -> None:
    """Create the bootstrap admin account if credentials are configured and it does not exist yet."""
    if not email or not password:
        return
    email = email.lower()
    existing = db["user"].find_one({"email": email})
    if existing:
        if not existing.get("is_admin"):
            db["user"].update_one({"_id": existing["_id"]}, {"$set": {"is_admin": True, "updated_at": now()}})
            log.info("Promoted %s to admin", email)
        return
    admin = UserSchema(name="Administrator", email=email, password_hash=hash_password(password),
                       is_admin=True, email_verified=True)
    create_document("user", admin, database=db)
    log.info("Created admin account %s", email)


# Dependencies

def get_current_user(authorization: Optional[str] = Header(default=None), db: Database = Depends(get_db)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Not authorized, no token")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise Unauthorized("Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise Unauthorized("User not found")
    return public_user(user)


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if not current_user.get("is_admin"):
        raise Forbidden("Not authorized as an admin")
    return current_user


# Request bodies

class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)


class VerifyEmailInput(BaseModel):
    code: str = Field(..., min_length=4, max_length=4)


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    password: str = Field(..., min_length=6)


# Routes

@router.post("/register", status_code=201)
def register(payload: RegisterInput, db: Database = Depends(get_db), mail: Mailer = Depends(get_mailer)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("User already exists")
    code = _verification_code()
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        email_verification_code=code,
    )
    try:
        user_id = create_document("user", user_model, database=db)
    except DuplicateKeyError:
        raise Conflict("User already exists")
    doc = db["user"].find_one({"_id": ObjectId(user_id)})
    log.info("Registered user %s", email)
    _deliver(mail.send_verification_code, email, code)
    return _token_response(doc)


@router.post("/login")
def login(payload: LoginInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid email or password")
    return _token_response(user)


@router.get("/profile")
def get_profile(current_user: dict = Depends(get_current_user)):
    return current_user


@router.put("/profile")
def update_profile(payload: ProfileUpdate, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                   mail: Mailer = Depends(get_mailer)):
    update: Dict[str, Any] = {}
    if payload.name:
        update["name"] = payload.name
    new_code = None
    if payload.email and payload.email.lower() != current_user["email"]:
        email = payload.email.lower()
        if db["user"].find_one({"email": email}):
            raise Conflict("Email already registered")
        new_code = _verification_code()
        update.update({"email": email, "email_verified": False, "email_verification_code": new_code})
    if payload.password:
        update["password_hash"] = hash_password(payload.password)
    if not update:
        raise ValidationError("No fields to update")
    update["updated_at"] = now()
    user_id = ObjectId(current_user["id"])
    try:
        db["user"].update_one({"_id": user_id}, {"$set": update})
    except DuplicateKeyError:
        raise Conflict("Email already registered")
    user = db["user"].find_one({"_id": user_id})
    if new_code:
        _deliver(mail.send_verification_code, user["email"], new_code)
    return _token_response(user)


@router.put("/address")
def update_address(address: Address, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one(
        {"_id": ObjectId(current_user["id"])},
        {"$set": {"address": address.model_dump(), "updated_at": now()}},
    )
    return address


@router.post("/verify-email")
def verify_email(payload: VerifyEmailInput, current_user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                 mail: Mailer = Depends(get_mailer)):
    if current_user.get("email_verified"):
        return {"message": "Email already verified"}
    res = db["user"].update_one(
        {"_id": ObjectId(current_user["id"]), "email_verification_code": payload.code},
        {"$set": {"email_verified": True, "email_verification_code": None, "updated_at": now()}},
    )
    if res.matched_count == 0:
        raise ValidationError("Invalid verification code")
    _deliver(mail.send_welcome, current_user["email"], current_user["name"])
    return {"message": "Email verified"}


@router.post("/resend-verification")
def resend_verification(current_user: dict = Depends(get_current_user), db: Database = Depends(get_db),
                        mail: Mailer = Depends(get_mailer)):
    if current_user.get("email_verified"):
        return {"message": "Email already verified"}
    code = _verification_code()
    db["user"].update_one({"_id": ObjectId(current_user["id"])}, {"$set": {"email_verification_code": code}})
    _deliver(mail.send_verification_code, current_user["email"], code)
    return {"message": "Verification code sent"}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordInput, db: Database = Depends(get_db), mail: Mailer = Depends(get_mailer)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if user:
        # A new token replaces any earlier one
        token = secrets.token_hex(16)
        expires = now() + timedelta(minutes=settings.reset_token_ttl_minutes)
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_token": token, "reset_token_expires": expires}})
        link = f"{settings.frontend_url.rstrip('/')}/reset-password/{token}"
        _deliver(mail.send_password_reset, user["email"], link)
    return {"message": "If that email is registered, a reset link has been sent"}


@router.post("/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"reset_token": token})
    if not user:
        raise ValidationError("Invalid or expired reset token")
    expires = user.get("reset_token_expires")
    if expires is not None and expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    if expires is None or expires < now():
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_token": None, "reset_token_expires": None}})
        raise ValidationError("Invalid or expired reset token")
    # Conditional on the token so two concurrent resets cannot both use it
    res = db["user"].update_one(
        {"_id": user["_id"], "reset_token": token},
        {"$set": {"password_hash": hash_password(payload.password), "reset_token": None,
                  "reset_token_expires": None, "updated_at": now()}},
    )
    if res.modified_count == 0:
        raise ValidationError("Invalid or expired reset token")
    return {"message": "Password has been reset"}


@admin_router.post("/login")
def admin_login(payload: LoginInput, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid email or password")
    if not user.get("is_admin"):
        raise Forbidden("Not authorized as an admin")
    return _token_response(user)


@admin_router.get("/profile")
def admin_profile(admin: dict = Depends(require_admin)):
    return admin
