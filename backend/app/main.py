"""
Shop Ledger Backend - bills and customer balances for a small shop.

ARCHITECTURE:
- Bills (ledger) and customers (balances) live in one SQL database
- Every bill write goes through BillingService, which re-reads the
  customer balance, computes the bill, writes it, then moves the balance
- Money is integer cents inside; decimal rupees at the HTTP boundary

Every request is scoped to one business by the X-Business-Id header.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import bills, customers
from app.core.config import settings
from app.core.exceptions import LedgerError, to_http
from app.db.init_db import init_db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    logger.info("[*] Initializing database...")
    init_db()
    logger.info("[OK] Database initialized")
    yield


app = FastAPI(
    title="Shop Ledger API",
    description="Bills and customer balances, kept in step.",
    version="0.1.0",
    lifespan=lifespan,
)

# SECURITY: Restrict CORS to specific methods and headers (not wildcards)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Accept",
        "Origin",
        "X-Business-Id",
    ],
    max_age=600,  # Cache preflight for 10 minutes
    expose_headers=["Content-Type", "Retry-After"],
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Domain failures become 400/404/409/503/500 without leaking internals."""
    return await http_exception_handler(request, to_http(exc))


app.include_router(customers.router, prefix="/customers", tags=["customers"])
app.include_router(bills.router, prefix="/bills", tags=["bills"])


@app.get("/health")
def health():
    return {"status": "ok"}
