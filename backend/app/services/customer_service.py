"""Customer accounts and the balance store backed by the customers table.

The balance column is the only shared mutable state in the system. It is
written exclusively through SqlBalanceStore.set_balance, which performs a
compare-and-set on the row version in a single UPDATE.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ConcurrentUpdateError, CustomerNotFoundError, ValidationError
from app.db.errors import store_call
from app.models.bill import Bill
from app.models.customer import Customer

logger = logging.getLogger(__name__)

WALKIN_MARKER = "walk-in customer"


@dataclass(frozen=True)
class CustomerKey:
    """Identifies one customer inside one business.

    Either the opaque customer_id, or the (name, phone) pair the shop
    counter knows. Phone wins over name when both are present.
    """
    business_id: str
    customer_id: Optional[int] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    def __str__(self) -> str:
        if self.customer_id is not None:
            return f"{self.business_id}/customer#{self.customer_id}"
        return f"{self.business_id}/{self.name or '?'}:{self.phone or '?'}"


@dataclass(frozen=True)
class AccountSnapshot:
    customer_id: int
    business_id: str
    name: str
    phone: str
    balance: int
    version: int

    @property
    def key(self) -> CustomerKey:
        return CustomerKey(self.business_id, customer_id=self.customer_id)

    @classmethod
    def of(cls, c: Customer) -> "AccountSnapshot":
        return cls(
            customer_id=c.id,
            business_id=c.business_id,
            name=c.name,
            phone=c.phone,
            balance=int(c.balance or 0),
            version=int(c.version or 1),
        )


class BalanceStore(Protocol):
    def get_balance(self, key: CustomerKey) -> int: ...

    def get_account(self, key: CustomerKey) -> AccountSnapshot: ...

    def ensure_account(self, key: CustomerKey) -> AccountSnapshot: ...

    def set_balance(self, key: CustomerKey, amount: int, expected_version: Optional[int] = None) -> AccountSnapshot: ...

    def discard_account(self, key: CustomerKey, expected_version: int) -> bool: ...


def clean_name(name: str | None) -> str:
    """Collapse whitespace and cap length. Empty names are rejected."""
    name = " ".join((name or "").split())[:255]
    if not name:
        raise ValidationError("Customer name is required")
    return name


def clean_phone(phone: str | None) -> str:
    phone = "".join((phone or "").split())[:64]
    if not phone:
        raise ValidationError("Customer phone is required")
    return phone


def _find(db: Session, key: CustomerKey, fresh: bool = False) -> Customer | None:
    if not key.business_id:
        raise ValidationError("Business id is required")
    q = db.query(Customer).filter(Customer.business_id == key.business_id)
    if fresh:
        # Overwrite identity-map copies with what the database holds now
        q = q.populate_existing()
    if key.customer_id is not None:
        return q.filter(Customer.id == key.customer_id).first()
    if key.phone:
        return q.filter(Customer.phone == clean_phone(key.phone)).first()
    if key.name:
        return q.filter(Customer.name == clean_name(key.name)).order_by(Customer.id).first()
    raise ValidationError("Customer id, phone or name is required")


class SqlBalanceStore:
    """BalanceStore over the customers table. Commits on every write."""

    def __init__(self, db: Session):
        self.db = db

    def get_balance(self, key: CustomerKey) -> int:
        """Current balance in cents; 0 for a customer that doesn't exist yet."""
        with store_call(self.db, f"read balance {key}"):
            c = _find(self.db, key)
        return int(c.balance or 0) if c else 0

    def get_account(self, key: CustomerKey) -> AccountSnapshot:
        with store_call(self.db, f"read customer {key}"):
            c = _find(self.db, key, fresh=True)
        if not c:
            raise CustomerNotFoundError(f"Customer {key} not found")
        return AccountSnapshot.of(c)

    def ensure_account(self, key: CustomerKey) -> AccountSnapshot:
        """Get the customer by key, creating it with a zero balance if new."""
        try:
            return self.get_account(key)
        except CustomerNotFoundError:
            if key.customer_id is not None:
                raise
        customer = Customer(
            business_id=key.business_id,
            name=clean_name(key.name),
            phone=clean_phone(key.phone),
            balance=0,
            version=1,
            is_walkin=WALKIN_MARKER in (key.name or "").lower(),
        )
        with store_call(self.db, f"create customer {key}"):
            try:
                self.db.add(customer)
                self.db.commit()
            except IntegrityError:
                # Another writer created the same phone first
                self.db.rollback()
                logger.info(f"[SAFE CREATE] Customer {key} created concurrently, reusing it")
                return self.get_account(key)
        self.db.refresh(customer)
        logger.info(f"[SAFE CREATE] Created customer {customer.name} ({customer.phone}) for {key.business_id}")
        return AccountSnapshot.of(customer)

    def set_balance(self, key: CustomerKey, amount: int, expected_version: Optional[int] = None) -> AccountSnapshot:
        """Write the balance and bump the version in one conditional UPDATE.

        With expected_version set, the write only lands if nobody else wrote
        the row since it was read; otherwise ConcurrentUpdateError.
        """
        with store_call(self.db, f"write balance {key}"):
            c = _find(self.db, key)
            if not c:
                raise CustomerNotFoundError(f"Customer {key} not found")
            q = self.db.query(Customer).filter(
                Customer.id == c.id,
                Customer.business_id == key.business_id,
            )
            if expected_version is not None:
                q = q.filter(Customer.version == expected_version)
            updated = q.update(
                {Customer.balance: int(amount), Customer.version: Customer.version + 1},
                synchronize_session=False,
            )
            self.db.commit()
        if updated == 0:
            raise ConcurrentUpdateError(
                f"Balance of {key} changed since version {expected_version}"
            )
        logger.info(f"[BALANCE UPDATE] {key} balance set to {amount}")
        return self.get_account(key)

    def discard_account(self, key: CustomerKey, expected_version: int) -> bool:
        """Remove a customer created for a bill that then failed to save.

        Only removes the row while it is untouched: same version and no
        bills. Returns True when the row was removed.
        """
        with store_call(self.db, f"discard customer {key}"):
            c = _find(self.db, key)
            if not c:
                return False
            has_bills = self.db.query(Bill.id).filter(Bill.customer_id == c.id).first() is not None
            if has_bills:
                return False
            removed = self.db.query(Customer).filter(
                Customer.id == c.id,
                Customer.version == expected_version,
            ).delete(synchronize_session=False)
            self.db.commit()
        if removed:
            logger.info(f"[SAFE CREATE] Discarded new customer {key} after failed bill write")
        return bool(removed)


# ==============================================================================
# CUSTOMER MANAGEMENT
# ==============================================================================

def add_customer(db: Session, business_id: str, name: str, phone: str, balance: int = 0) -> tuple[Customer, bool]:
    """Add a customer, or return the existing one with the same phone.

    Returns (customer, created).
    """
    name = clean_name(name)
    phone = clean_phone(phone)
    if balance < 0:
        raise ValidationError("Opening balance cannot be negative")

    with store_call(db, f"add customer {phone}"):
        existing = db.query(Customer).filter(
            Customer.business_id == business_id,
            Customer.phone == phone,
        ).first()
        if existing:
            logger.info(f"[ADD CUSTOMER] Customer with phone {phone} already exists: {existing.name}")
            return existing, False

        c = Customer(
            business_id=business_id,
            name=name,
            phone=phone,
            balance=balance,
            version=1,
            is_walkin=WALKIN_MARKER in name.lower(),
        )
        db.add(c)
        db.commit()
        db.refresh(c)
    logger.info(f"[ADD CUSTOMER] Added {c.name} ({c.phone}) for business {business_id}")
    return c, True


def list_customers(db: Session, business_id: str, search: str | None = None) -> list[Customer]:
    with store_call(db, "list customers"):
        q = db.query(Customer).filter(Customer.business_id == business_id)
        if search:
            q = q.filter(Customer.name.ilike(f"%{search}%") | Customer.phone.ilike(f"%{search}%"))
        return q.order_by(Customer.name).all()


def get_customer(db: Session, business_id: str, customer_id: int) -> Customer:
    with store_call(db, f"read customer {customer_id}"):
        c = db.query(Customer).filter(
            Customer.business_id == business_id,
            Customer.id == customer_id,
        ).first()
    if not c:
        raise CustomerNotFoundError(f"Customer {customer_id} not found in {business_id}")
    return c


def get_customer_by_phone(db: Session, business_id: str, phone: str) -> Customer:
    """Real-time lookup by phone: name and balance straight from the table."""
    phone = clean_phone(phone)
    with store_call(db, f"read customer by phone {phone}"):
        c = db.query(Customer).populate_existing().filter(
            Customer.business_id == business_id,
            Customer.phone == phone,
        ).first()
    if not c:
        raise CustomerNotFoundError(f"No customer with phone {phone} in {business_id}")
    return c


def delete_customer(db: Session, business_id: str, customer_id: int) -> int:
    """Delete a customer together with all of their bills.

    Returns the number of bills removed.
    """
    c = get_customer(db, business_id, customer_id)
    with store_call(db, f"delete customer {customer_id}"):
        removed = db.query(Bill).filter(
            Bill.business_id == business_id,
            Bill.customer_id == c.id,
        ).delete(synchronize_session=False)
        db.delete(c)
        db.commit()
    logger.info(f"[DELETE CUSTOMER] Deleted {c.name} and {removed} bills from {business_id}")
    return removed
