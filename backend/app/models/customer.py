from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from app.db.base import Base


class Customer(Base):
    """
    Customer account with a running balance.

    balance is in cents and only changes through the billing service.
    version is bumped on every balance write; writers compare it to detect
    a concurrent update (optimistic locking).
    """
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("business_id", "phone", name="uq_customer_business_phone"),
    )

    id = Column(Integer, primary_key=True, index=True)
    business_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(64), nullable=False)
    balance = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    is_walkin = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Customer id={self.id} name={self.name} balance={self.balance}>"
