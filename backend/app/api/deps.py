"""FastAPI dependencies: DB session, tenant id, billing service.

Each request gets its own session and its own stores; nothing about a
business or a customer lives at module level.
"""
from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import BusinessError
from app.db.session import SessionLocal
from app.services.billing_service import BillingService
from app.services.customer_service import SqlBalanceStore
from app.services.ledger_service import SqlLedgerStore


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_business_id(x_business_id: str = Header(..., alias="X-Business-Id")) -> str:
    """Tenant scope for every store call. Required on all ledger routes."""
    business_id = x_business_id.strip()
    if not business_id or len(business_id) > 64:
        raise BusinessError.bad_request("X-Business-Id header is required (max 64 chars)")
    return business_id


def get_billing_service(db: Session = Depends(get_db)) -> BillingService:
    return BillingService(
        ledger=SqlLedgerStore(db),
        balances=SqlBalanceStore(db),
        max_balance_retries=settings.BALANCE_WRITE_RETRIES,
        strict_amounts=settings.STRICT_AMOUNTS,
    )
