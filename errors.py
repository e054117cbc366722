"""
Error taxonomy

Every error a handler can raise maps to one fixed HTTP status. Handlers
raise these the same way they would raise a bare HTTPException.
"""
import traceback

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import settings
from logger import get_logger

log = get_logger("errors")


class ValidationError(HTTPException):
    def __init__(self, detail: str = "Validation error"):
        super().__init__(status_code=400, detail=detail)


class OutOfStock(HTTPException):
    def __init__(self, product_name: str):
        super().__init__(status_code=400, detail=f'The product "{product_name}" is currently out of stock')


class SignatureInvalid(HTTPException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=400, detail=detail)


class Unauthorized(HTTPException):
    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(HTTPException):
    def __init__(self, detail: str = "Admins only"):
        super().__init__(status_code=403, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=404, detail=detail)


class Conflict(HTTPException):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=409, detail=detail)


class GatewayError(HTTPException):
    def __init__(self, detail: str = "Error creating payment order"):
        super().__init__(status_code=500, detail=detail)


class IntegrityError(Exception):
    """Gateway reported a payment for an order we cannot find.

    Only raised and caught inside webhook reconciliation; the caller there
    is the payment gateway, which always gets a 200.
    """

    def __init__(self, gateway_order_id: str, event: str):
        super().__init__(f"{event} for unknown gateway order {gateway_order_id}")
        self.gateway_order_id = gateway_order_id
        self.event = event


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return JSONResponse(status_code=400, content={"detail": f"Validation error: {details[0]}" if details else "Validation error", "errors": details})

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        log.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        stack = None if settings.is_production else traceback.format_exc()
        return JSONResponse(status_code=500, content={"detail": str(exc) or "Server error", "stack": stack})
