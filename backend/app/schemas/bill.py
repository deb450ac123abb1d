from pydantic import BaseModel, Field
from typing import Optional, Union, List
from datetime import date, datetime
from decimal import Decimal

from app.schemas.customer import CustomerResponse
from app.services.money import from_cents

# Rupees as typed at the counter; parsed by the money helpers, not by pydantic
Amount = Optional[Union[int, float, str]]


class BillItemIn(BaseModel):
    item: str = ""
    quantity: Amount = None  # weight in kg or a count
    rate: Amount = None
    amount: Amount = None  # used when quantity/rate are not given


class BillCreate(BaseModel):
    customer_name: str
    customer_phone: str
    bill_date: Optional[str] = None
    items: List[BillItemIn] = Field(default_factory=list)
    paid_amount: Amount = 0
    delivery_charge: Amount = 0
    cleaning_charge: Amount = 0
    payment_method: str = "cash"
    upi_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    cash_amount: Amount = None
    gpay_amount: Amount = None
    bill_number: Optional[str] = None
    idempotency_key: Optional[str] = None


class BillUpdate(BaseModel):
    bill_date: Optional[str] = None
    items: Optional[List[BillItemIn]] = None
    paid_amount: Amount = None
    delivery_charge: Amount = None
    cleaning_charge: Amount = None
    payment_method: Optional[str] = None
    upi_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    cash_amount: Amount = None
    gpay_amount: Amount = None
    bill_number: Optional[str] = None


class BillItemOut(BaseModel):
    no: int
    item: str
    quantity: Optional[str] = None
    rate: Optional[str] = None
    amount: Decimal


class BillResponse(BaseModel):
    id: int
    bill_number: Optional[str] = None
    customer_id: int
    customer_name: str
    customer_phone: str
    bill_date: date
    items: List[BillItemOut]
    previous_balance: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    advance_amount: Decimal
    delivery_charge: Decimal
    cleaning_charge: Decimal
    payment_method: str
    upi_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    cash_amount: Optional[Decimal] = None
    gpay_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    @classmethod
    def of(cls, b) -> "BillResponse":
        return cls(
            id=b.id,
            bill_number=b.bill_number,
            customer_id=b.customer_id,
            customer_name=b.customer_name,
            customer_phone=b.customer_phone,
            bill_date=b.bill_date,
            items=[
                BillItemOut(
                    no=it.get("no", n),
                    item=it.get("item") or "",
                    quantity=it.get("quantity"),
                    rate=it.get("rate"),
                    amount=from_cents(it.get("amount")),
                )
                for n, it in enumerate(b.items or [], start=1)
            ],
            previous_balance=from_cents(b.previous_balance),
            total_amount=from_cents(b.total_amount),
            paid_amount=from_cents(b.paid_amount),
            balance_amount=from_cents(b.balance_amount),
            advance_amount=from_cents(b.advance_amount),
            delivery_charge=from_cents(b.delivery_charge),
            cleaning_charge=from_cents(b.cleaning_charge),
            payment_method=b.payment_method,
            upi_type=b.upi_type,
            bank_name=b.bank_name,
            check_number=b.check_number,
            cash_amount=from_cents(b.cash_amount) if b.cash_amount is not None else None,
            gpay_amount=from_cents(b.gpay_amount) if b.gpay_amount is not None else None,
            created_at=b.created_at,
        )


class BillMutationResponse(BaseModel):
    """A bill write plus the customer as re-read after it."""
    bill: Optional[BillResponse] = None
    customer: Optional[CustomerResponse] = None
