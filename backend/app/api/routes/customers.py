"""Customers: accounts, real-time balances, reconciliation."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_business_id, get_billing_service
from app.schemas.customer import (
    ConsistencyResponse,
    CustomerCreate,
    CustomerResponse,
    LatestBalanceResponse,
)
from app.services import customer_service
from app.services.billing_service import BillingService
from app.services.customer_service import CustomerKey, clean_phone
from app.services.money import from_cents

router = APIRouter()


@router.post("", response_model=CustomerResponse)
def create_customer(
    data: CustomerCreate,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    """Add a customer. An existing phone returns the existing customer unchanged."""
    opening = service.parse_amount(data.balance, "balance")
    customer, _created = customer_service.add_customer(db, business_id, data.name, data.phone, balance=opening)
    return CustomerResponse.of(customer)


@router.get("", response_model=list[CustomerResponse])
def list_customers(
    search: str | None = Query(None),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    return [CustomerResponse.of(c) for c in customer_service.list_customers(db, business_id, search)]


@router.get("/by-phone/{phone}", response_model=CustomerResponse)
def get_customer_by_phone(
    phone: str,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    """Real-time name and balance for a phone number."""
    return CustomerResponse.of(customer_service.get_customer_by_phone(db, business_id, phone))


@router.get("/by-phone/{phone}/latest-balance", response_model=LatestBalanceResponse)
def latest_balance_by_phone(
    phone: str,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    """Balance left by the customer's most recent bill; 0 before the first bill."""
    phone = clean_phone(phone)
    latest = service.ledger.latest_bill_for_phone(business_id, phone)
    return LatestBalanceResponse(
        phone=phone,
        bill_id=latest.id if latest else None,
        balance=from_cents(latest.balance_amount if latest else 0),
    )


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    return CustomerResponse.of(customer_service.get_customer(db, business_id, customer_id))


@router.get("/{customer_id}/balance", response_model=CustomerResponse)
def refresh_balance(
    customer_id: int,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    """Re-read the authoritative balance."""
    return CustomerResponse.of(service.refresh_customer(CustomerKey(business_id, customer_id=customer_id)))


@router.get("/{customer_id}/consistency", response_model=ConsistencyResponse)
def check_consistency(
    customer_id: int,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    report = service.check_consistency(CustomerKey(business_id, customer_id=customer_id))
    return ConsistencyResponse(
        customer_id=report.customer_id,
        balance=from_cents(report.balance),
        latest_bill_id=report.latest_bill_id,
        latest_balance=from_cents(report.latest_balance),
        consistent=report.consistent,
    )


@router.post("/{customer_id}/reconcile", response_model=CustomerResponse)
def reconcile(
    customer_id: int,
    business_id: str = Depends(get_business_id),
    service: BillingService = Depends(get_billing_service),
):
    """Reset the balance to the latest bill's balance after a failed propagation."""
    return CustomerResponse.of(service.reconcile_customer(CustomerKey(business_id, customer_id=customer_id)))


@router.delete("/{customer_id}", response_model=dict)
def delete_customer(
    customer_id: int,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    """Delete a customer and all of their bills."""
    removed = customer_service.delete_customer(db, business_id, customer_id)
    return {"id": customer_id, "bills_deleted": removed}
