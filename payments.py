"""
Payment reconciliation

An order's payment state is moved by two independent notifications that
may arrive in any order, be repeated, or never arrive:

* the client posting the gateway's checkout proof to ``/verify``
* the gateway calling ``/webhook`` server to server

Payment state machine::

    Pending -> Completed | Failed | Cancelled

Only Pending orders move. The Pending -> Completed step is a single
conditional ``find_one_and_update``, so whichever notification lands first
performs the side effects (cart clear, confirmation mail) and the other
sees an already Completed order and does nothing.
"""
import hashlib
import hmac
import json
import smtplib
from typing import Any, Dict, Optional, Tuple

import requests
from bson import ObjectId
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from requests.adapters import HTTPAdapter
from starlette.concurrency import run_in_threadpool
from urllib3.util.retry import Retry

from auth import get_current_user, require_admin
from cart import clear_cart
from config import settings
from database import get_db, now, serialize_doc
from errors import Conflict, GatewayError, IntegrityError, NotFound, SignatureInvalid
from logger import get_logger
from mailer import Mailer, get_mailer
from orders import CreateOrderInput, create_order
from schemas import Payment as PaymentSchema, PaymentStatus, to_decimal

log = get_logger("payments")

router = APIRouter(prefix="/api/payments", tags=["payments"])

PENDING = PaymentStatus.pending.value
COMPLETED = PaymentStatus.completed.value
FAILED = PaymentStatus.failed.value
CANCELLED = PaymentStatus.cancelled.value

FAILED_PAYMENT_ID = "Failed"
COMPLETION_EVENTS = {"payment.authorized", "payment.captured"}
FAILURE_EVENT = "payment.failed"


# Gateway

class RazorpayGateway:
    """Creates remote order objects through the Razorpay orders API."""

    def __init__(self, key_id: str, key_secret: str, api_url: str, timeout: float = 10):
        self.key_id = key_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.auth = (key_id, key_secret)
        # Only connection failures and gateway-side 5xx are retried; a read
        # timeout may mean the order was created, so it is not.
        retry = Retry(
            total=3,
            connect=3,
            read=0,
            status=2,
            backoff_factor=0.5,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(["POST"]),
            raise_on_status=False,
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retry))

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        payload = {"amount": amount, "currency": currency, "receipt": receipt}
        try:
            resp = self.session.post(f"{self.api_url}/orders", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Gateway request for %s failed: %s", receipt, exc)
            raise GatewayError()
        if resp.status_code >= 300:
            log.error("Gateway rejected order %s: %s %s", receipt, resp.status_code, resp.text[:200])
            raise GatewayError()
        try:
            return resp.json()
        except ValueError:
            log.error("Gateway sent a non-JSON body for %s", receipt)
            raise GatewayError()


class LocalGateway:
    """Stand-in used when no Razorpay key is configured."""

    key_id = "rzp_test_local"

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        return {"id": f"order_{ObjectId()}", "amount": amount, "currency": currency, "receipt": receipt,
                "status": "created"}


if settings.gateway_configured:
    gateway = RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_api_url)
else:
    gateway = LocalGateway()


def get_gateway():
    return gateway


# Signatures

def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _same(expected: str, given: Optional[str]) -> bool:
    return hmac.compare_digest(expected.encode(), (given or "").encode())


def client_proof_valid(gateway_order_id: str, gateway_payment_id: str, signature: Optional[str]) -> bool:
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return _same(sign(settings.razorpay_key_secret, message), signature)


def webhook_signature_valid(body: bytes, signature: Optional[str]) -> bool:
    return _same(sign(settings.razorpay_webhook_secret, body), signature)


# Ledger and notifications

def amount_in_subunits(total_price: str) -> int:
    return int((to_decimal(total_price) * 100).to_integral_value())


def record_payment(db: Database, order: dict, event: str, status: str, payment_id: Optional[str] = None) -> None:
    entry = PaymentSchema(
        order_id=order["order_id"],
        gateway_order_id=order.get("gateway_order_id", "Pending"),
        payment_id=payment_id or order.get("payment_id", "Pending"),
        payment_status=status,
        event=event,
        amount=order["total_price"],
        currency=settings.payment_currency,
    ).model_dump()
    entry["created_at"] = now()
    db["payment"].insert_one(entry)


def dispatch_confirmation(db: Database, mail: Mailer, order: dict) -> bool:
    """Send the order confirmation and mark it sent.

    The order is saved with ``confirmation_sent=False`` in the same write that
    completes it, so a failed send here stays visible on the order.
    """
    user = db["user"].find_one({"_id": ObjectId(order["user_id"])}) if ObjectId.is_valid(order["user_id"]) else None
    if not user:
        log.warning("No user %s for order %s, confirmation not sent", order["user_id"], order["order_id"])
        return False
    try:
        mail.send_order_confirmation(user["email"], order)
    except (smtplib.SMTPException, OSError) as exc:
        log.error("Confirmation mail for %s failed: %s", order["order_id"], exc)
        return False
    db["order"].update_one({"_id": order["_id"], "confirmation_sent": False}, {"$set": {"confirmation_sent": True}})
    order["confirmation_sent"] = True
    return True


# Operations

def initiate_payment(db: Database, gw, user_id: str, payload: CreateOrderInput) -> Tuple[Dict[str, Any], dict]:
    order = create_order(db, user_id, payload.products, payload.delivery_address, payload.contact_number,
                         payload.total_price, payload.order_notes)
    try:
        gateway_order = gw.create_order(amount_in_subunits(order["total_price"]), settings.payment_currency,
                                        order["order_id"])
        if not isinstance(gateway_order, dict) or not gateway_order.get("id"):
            log.error("Gateway returned no order id for %s: %r", order["order_id"], gateway_order)
            raise GatewayError()
    except Exception:
        db["order"].delete_one({"_id": order["_id"]})
        log.error("Payment initiation failed, deleted order %s", order["order_id"])
        raise
    db["order"].update_one({"_id": order["_id"]},
                           {"$set": {"gateway_order_id": gateway_order["id"], "updated_at": now()}})
    order["gateway_order_id"] = gateway_order["id"]
    record_payment(db, order, "initiated", PENDING)
    log.info("Order %s awaiting payment on gateway order %s", order["order_id"], gateway_order["id"])
    return gateway_order, order


def complete_payment(db: Database, mail: Mailer, gateway_order_id: str, payment_id: str, source: str,
                     user_id: Optional[str] = None) -> Tuple[dict, bool]:
    """Move an order Pending -> Completed.

    Returns ``(order, transitioned)``. ``transitioned`` is False when the
    order was already Completed, in which case nothing else happens.
    """
    query: Dict[str, Any] = {"gateway_order_id": gateway_order_id}
    if user_id:
        query["user_id"] = user_id
    order = db["order"].find_one_and_update(
        dict(query, payment_status=PENDING),
        {"$set": {"payment_status": COMPLETED, "payment_id": payment_id, "confirmation_sent": False,
                  "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one(query)
        if existing is None:
            raise NotFound("Order not found")
        if existing["payment_status"] == COMPLETED:
            log.info("Order %s already completed, ignoring repeat from %s", existing["order_id"], source)
            return existing, False
        raise Conflict(f"Order payment is already {existing['payment_status']}")

    log.info("Order %s payment completed via %s (%s)", order["order_id"], source, payment_id)
    record_payment(db, order, f"completed:{source}", COMPLETED, payment_id)
    clear_cart(db, order["user_id"])
    dispatch_confirmation(db, mail, order)
    return order, True


def fail_payment(db: Database, gateway_order_id: str, payment_id: str, source: str,
                 user_id: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"gateway_order_id": gateway_order_id}
    if user_id:
        query["user_id"] = user_id
    order = db["order"].find_one_and_update(
        dict(query, payment_status=PENDING),
        {"$set": {"payment_status": FAILED, "payment_id": payment_id, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one(query)
        if existing is None:
            raise NotFound("Order not found")
        if existing["payment_status"] == FAILED:
            return existing
        raise Conflict(f"Order payment is already {existing['payment_status']}")
    log.info("Order %s payment failed via %s", order["order_id"], source)
    record_payment(db, order, f"failed:{source}", FAILED, payment_id)
    return order


def verify_client_proof(db: Database, mail: Mailer, user: dict, gateway_order_id: str, gateway_payment_id: str,
                        signature: Optional[str]) -> Tuple[dict, bool]:
    owner = None if user.get("is_admin") else user["id"]
    if not client_proof_valid(gateway_order_id, gateway_payment_id, signature):
        query: Dict[str, Any] = {"gateway_order_id": gateway_order_id, "payment_status": PENDING}
        if owner:
            query["user_id"] = owner
        order = db["order"].find_one_and_delete(query)
        if order:
            record_payment(db, order, "signature_rejected", FAILED, gateway_payment_id)
            log.warning("Invalid payment signature for %s, deleted order %s", gateway_order_id, order["order_id"])
        else:
            log.warning("Invalid payment signature for %s, no pending order", gateway_order_id)
        raise SignatureInvalid("Invalid signature, order deleted")
    return complete_payment(db, mail, gateway_order_id, gateway_payment_id, "verify", user_id=owner)


def cancel_payment(db: Database, user: dict, gateway_order_id: str) -> dict:
    query: Dict[str, Any] = {"gateway_order_id": gateway_order_id}
    if not user.get("is_admin"):
        query["user_id"] = user["id"]
    order = db["order"].find_one_and_delete(dict(query, payment_status=PENDING))
    if order is None:
        existing = db["order"].find_one(query)
        if existing is None:
            raise NotFound("Order not found")
        raise Conflict(f"Order payment is already {existing['payment_status']}")
    record_payment(db, order, "cancelled", CANCELLED)
    log.info("Payment cancelled, deleted order %s", order["order_id"])
    return order


def reconcile_webhook(db: Database, mail: Mailer, body: bytes, signature: Optional[str]) -> str:
    """Apply a gateway event. Returns a short outcome label; never raises for bad input."""
    if not signature or not webhook_signature_valid(body, signature):
        log.warning("Rejected webhook with invalid signature")
        return "invalid_signature"
    try:
        event = json.loads(body)
    except ValueError:
        event = None
    if not isinstance(event, dict):
        log.warning("Rejected webhook with malformed body")
        return "malformed"

    name = event.get("event")
    entity = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
    gateway_order_id = entity.get("order_id")
    payment_id = entity.get("id")

    if name not in COMPLETION_EVENTS and name != FAILURE_EVENT:
        log.info("Ignoring webhook event %s", name)
        return "ignored"
    if not gateway_order_id:
        log.warning("Webhook %s without an order id", name)
        return "malformed"

    try:
        try:
            if name in COMPLETION_EVENTS:
                _, transitioned = complete_payment(db, mail, gateway_order_id, payment_id or "Unknown", "webhook")
                return "completed" if transitioned else "duplicate"
            fail_payment(db, gateway_order_id, FAILED_PAYMENT_ID, "webhook")
            return "failed"
        except NotFound:
            raise IntegrityError(gateway_order_id, name)
    except IntegrityError as exc:
        log.error("Payment integrity problem: %s", exc)
        return "missing_order"
    except Conflict as exc:
        log.warning("Webhook %s for %s not applied: %s", name, gateway_order_id, exc.detail)
        return "conflict"


# Routes

class VerifyPaymentInput(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    # Sent by older clients; the owner's single cart is always the one cleared
    cart_id: Optional[str] = None


class GatewayOrderInput(BaseModel):
    gateway_order_id: str = Field(..., min_length=1)


class PaymentFailedInput(GatewayOrderInput):
    payment_id: Optional[str] = None


@router.post("/razorpay")
def create_payment_order(payload: CreateOrderInput, current_user: dict = Depends(get_current_user),
                         db: Database = Depends(get_db), gw=Depends(get_gateway)):
    gateway_order, order = initiate_payment(db, gw, current_user["id"], payload)
    return {"gateway_order": gateway_order, "created_order": serialize_doc(order), "key_id": gw.key_id}


@router.post("/verify")
def verify_payment(body: VerifyPaymentInput, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db), mail: Mailer = Depends(get_mailer)):
    order, transitioned = verify_client_proof(db, mail, current_user, body.razorpay_order_id,
                                              body.razorpay_payment_id, body.razorpay_signature)
    message = "Payment verified successfully" if transitioned else "Payment already verified"
    return {"message": message, "order": serialize_doc(order)}


@router.post("/webhook")
async def payment_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(default=None),
                          db: Database = Depends(get_db), mail: Mailer = Depends(get_mailer)):
    body = await request.body()
    try:
        outcome = await run_in_threadpool(reconcile_webhook, db, mail, body, x_razorpay_signature)
    except Exception:
        # The gateway retries anything but a 2xx; failures stay in our logs
        log.exception("Webhook processing failed")
        outcome = "error"
    log.info("Webhook processed: %s", outcome)
    return {"received": True}


@router.post("/cancelled")
def payment_cancelled(body: GatewayOrderInput, current_user: dict = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    order = cancel_payment(db, current_user, body.gateway_order_id)
    return {"message": "Payment cancelled, order deleted", "order_id": order["order_id"]}


@router.post("/failed")
def payment_failed(body: PaymentFailedInput, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    owner = None if current_user.get("is_admin") else current_user["id"]
    order = fail_payment(db, body.gateway_order_id, body.payment_id or FAILED_PAYMENT_ID, "client", user_id=owner)
    return {"message": "Payment marked as failed", "order": serialize_doc(order)}


@router.get("/key")
def payment_key():
    if not settings.razorpay_key_id:
        raise NotFound("No key found!")
    return {"key_id": settings.razorpay_key_id}


@router.get("/ledger/{order_id}")
def payment_ledger(order_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return [serialize_doc(p) for p in db["payment"].find({"order_id": order_id}).sort("created_at", 1)]
