"""
Bill: one sale to a customer, with the balance it left behind.

Lifecycle: Draft (client side only) -> Persisted -> Updated* -> Deleted.
All money columns are integer cents.
"""
from sqlalchemy import Column, Integer, String, BigInteger, ForeignKey, Date, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
from app.db.base import Base


class Bill(Base):
    __tablename__ = "bills"
    __table_args__ = (
        UniqueConstraint("business_id", "idempotency_key", name="uq_bill_business_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(64), nullable=False, index=True)
    bill_number = Column(String(64), nullable=True)
    bill_date = Column(Date, nullable=False)
    items = Column(JSON, nullable=False, default=list)  # [{no, item, quantity, rate, amount}]

    previous_balance = Column(BigInteger, nullable=False, default=0)  # opening balance used for this bill
    total_amount = Column(BigInteger, nullable=False, default=0)  # items + charges, excludes previous balance
    paid_amount = Column(BigInteger, nullable=False, default=0)
    balance_amount = Column(BigInteger, nullable=False, default=0)
    advance_amount = Column(BigInteger, nullable=False, default=0)
    delivery_charge = Column(BigInteger, nullable=False, default=0)
    cleaning_charge = Column(BigInteger, nullable=False, default=0)

    payment_method = Column(String(32), nullable=False, default="cash")  # cash | upi | check | cash_gpay
    upi_type = Column(String(64), nullable=True)
    bank_name = Column(String(128), nullable=True)
    check_number = Column(String(64), nullable=True)
    cash_amount = Column(BigInteger, nullable=True)
    gpay_amount = Column(BigInteger, nullable=True)

    idempotency_key = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", backref="bills")
