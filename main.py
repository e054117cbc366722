import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

import auth
import cart
import catalog
import orders
import payments
from config import settings
from database import db, ensure_indexes
from errors import install_error_handlers
from logger import setup_logging

log = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Connecting to database %s", settings.database_name)
    ensure_indexes(db)
    auth.ensure_admin(db, settings.admin_email, settings.admin_password)
    log.info("Connected to database successfully")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    log.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed)
    return response


app.include_router(auth.router)
app.include_router(auth.admin_router)
app.include_router(orders.users_router)
app.include_router(catalog.category_router)
app.include_router(catalog.product_router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(payments.router)


# ----- Health -----
@app.get("/")
def read_root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": settings.database_name,
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["razorpay_key_id"] = "✅ Set" if settings.razorpay_key_id else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
