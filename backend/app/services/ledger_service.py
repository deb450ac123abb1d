"""Ledger store: bill rows, always scoped to one business."""
import logging
from typing import Any, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import BillNotFoundError, DuplicateBillError, ValidationError
from app.db.errors import store_call
from app.models.bill import Bill

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    def create_bill(self, business_id: str, record: dict[str, Any]) -> Bill: ...

    def update_bill(self, business_id: str, bill_id: int, fields: dict[str, Any]) -> Bill: ...

    def delete_bill(self, business_id: str, bill_id: int) -> None: ...

    def get_bill(self, business_id: str, bill_id: int) -> Optional[Bill]: ...

    def find_by_idempotency_key(self, business_id: str, key: str) -> Optional[Bill]: ...

    def list_bills(
        self, business_id: str, phone: Optional[str] = None, limit: int = 500, offset: int = 0
    ) -> list[Bill]: ...

    def customer_bills(self, business_id: str, customer_id: int) -> list[Bill]: ...

    def latest_bill(self, business_id: str, customer_id: int) -> Optional[Bill]: ...

    def latest_bill_for_phone(self, business_id: str, phone: str) -> Optional[Bill]: ...


_IMMUTABLE = {"id", "business_id", "customer_id", "created_at"}


class SqlLedgerStore:
    """LedgerStore over the bills table. Commits per call, like the remote store it replaces."""

    def __init__(self, db: Session):
        self.db = db

    def _query(self, business_id: str):
        if not business_id:
            raise ValidationError("Business id is required")
        return self.db.query(Bill).filter(Bill.business_id == business_id)

    def create_bill(self, business_id: str, record: dict[str, Any]) -> Bill:
        bill = Bill(**{k: v for k, v in record.items() if k not in ("id", "business_id")})
        bill.business_id = business_id
        key = record.get("idempotency_key")
        with store_call(self.db, f"insert bill for {record.get('customer_name')}"):
            try:
                self.db.add(bill)
                self.db.flush()  # Get ID before the default bill number is derived from it
                if not bill.bill_number:
                    bill.bill_number = f"B{bill.id}"
                self.db.commit()
            except IntegrityError:
                # Same idempotency key committed by a concurrent request
                self.db.rollback()
                existing = self.find_by_idempotency_key(business_id, key) if key else None
                if existing is None:
                    raise
                raise DuplicateBillError(
                    f"Idempotency key {key} already used by bill {existing.id}", existing=existing
                )
            self.db.refresh(bill)
        logger.info(f"[ADD BILL] Bill {bill.id} saved for {bill.customer_name} in {business_id}")
        return bill

    def update_bill(self, business_id: str, bill_id: int, fields: dict[str, Any]) -> Bill:
        with store_call(self.db, f"update bill {bill_id}"):
            bill = self._query(business_id).filter(Bill.id == bill_id).first()
            if not bill:
                raise BillNotFoundError(f"Bill {bill_id} not found in {business_id}")
            for name, value in fields.items():
                if name not in _IMMUTABLE:
                    setattr(bill, name, value)
            self.db.commit()
            self.db.refresh(bill)
        logger.info(f"[UPDATE BILL] Bill {bill_id} updated in {business_id}")
        return bill

    def delete_bill(self, business_id: str, bill_id: int) -> None:
        with store_call(self.db, f"delete bill {bill_id}"):
            removed = self._query(business_id).filter(Bill.id == bill_id).delete(synchronize_session=False)
            self.db.commit()
        if not removed:
            raise BillNotFoundError(f"Bill {bill_id} not found in {business_id}")
        logger.info(f"[DELETE BILL] Bill {bill_id} deleted from {business_id}")

    def get_bill(self, business_id: str, bill_id: int) -> Optional[Bill]:
        with store_call(self.db, f"read bill {bill_id}"):
            return self._query(business_id).populate_existing().filter(Bill.id == bill_id).first()

    def find_by_idempotency_key(self, business_id: str, key: str) -> Optional[Bill]:
        with store_call(self.db, f"read bill by idempotency key {key}"):
            return self._query(business_id).filter(Bill.idempotency_key == key).first()

    def list_bills(
        self, business_id: str, phone: Optional[str] = None, limit: int = 500, offset: int = 0
    ) -> list[Bill]:
        """Newest first, one page at a time."""
        with store_call(self.db, "list bills"):
            q = self._query(business_id)
            if phone:
                q = q.filter(Bill.customer_phone == phone)
            return q.order_by(Bill.bill_date.desc(), Bill.id.desc()).offset(offset).limit(limit).all()

    def customer_bills(self, business_id: str, customer_id: int) -> list[Bill]:
        """All of a customer's bills, oldest first (the order balances chain in)."""
        with store_call(self.db, f"read bills for customer {customer_id}"):
            return (
                self._query(business_id)
                .populate_existing()
                .filter(Bill.customer_id == customer_id)
                .order_by(Bill.bill_date.asc(), Bill.id.asc())
                .all()
            )

    def latest_bill(self, business_id: str, customer_id: int) -> Optional[Bill]:
        """Most recent bill by date; same-day ties go to the later insert."""
        with store_call(self.db, f"read latest bill for customer {customer_id}"):
            return (
                self._query(business_id)
                .filter(Bill.customer_id == customer_id)
                .order_by(Bill.bill_date.desc(), Bill.id.desc())
                .first()
            )

    def latest_bill_for_phone(self, business_id: str, phone: str) -> Optional[Bill]:
        with store_call(self.db, f"read latest bill for phone {phone}"):
            return (
                self._query(business_id)
                .filter(Bill.customer_phone == phone)
                .order_by(Bill.bill_date.desc(), Bill.id.desc())
                .first()
            )
