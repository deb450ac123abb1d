from pydantic import BaseModel
from typing import Optional, Union
from decimal import Decimal

from app.services.money import from_cents


class CustomerCreate(BaseModel):
    name: str
    phone: str
    balance: Optional[Union[int, float, str]] = None  # opening balance in rupees


class CustomerResponse(BaseModel):
    id: int
    name: str
    phone: str
    balance: Decimal
    is_walkin: bool = False

    @classmethod
    def of(cls, c) -> "CustomerResponse":
        """Works for both Customer rows and AccountSnapshot."""
        return cls(
            id=getattr(c, "customer_id", None) or c.id,
            name=c.name,
            phone=c.phone,
            balance=from_cents(c.balance),
            is_walkin=bool(getattr(c, "is_walkin", False)),
        )


class ConsistencyResponse(BaseModel):
    customer_id: int
    balance: Decimal
    latest_bill_id: Optional[int] = None
    latest_balance: Decimal
    consistent: bool


class LatestBalanceResponse(BaseModel):
    phone: str
    bill_id: Optional[int] = None
    balance: Decimal
