"""Billing service: bill writes and the customer balance that follows them."""
from datetime import date

import pytest

from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    BillNotFoundError,
    ConsistencyError,
    CustomerNotFoundError,
    StoreError,
    ValidationError,
    to_http,
)
from app.db.errors import store_call
from app.models import Bill, Customer
from app.services import customer_service
from app.services.billing_service import BillChanges, BillDraft, BillingService
from app.services.customer_service import CustomerKey, SqlBalanceStore
from app.services.ledger_service import SqlLedgerStore

BIZ = "shop-1"


def draft(**overrides) -> BillDraft:
    """Rice 10 kg @ 150, delivery 50, cleaning 20, paid 1000 -> balance 570."""
    fields = dict(
        customer_name="Ramesh Kumar",
        customer_phone="9876543210",
        bill_date=date(2024, 3, 1),
        items=[{"item": "Rice", "quantity": "10", "rate": "150"}],
        delivery_charge="50",
        cleaning_charge="20",
        paid_amount="1000",
    )
    fields.update(overrides)
    return BillDraft(**fields)


def balance_of(service, customer_id, business_id=BIZ) -> int:
    return service.balances.get_account(CustomerKey(business_id, customer_id=customer_id)).balance


class FailingBalances(SqlBalanceStore):
    """Balance writes always time out."""

    def set_balance(self, key, amount, expected_version=None):
        raise StoreError("write balance timed out", retryable=True)


class RacingBalances(SqlBalanceStore):
    """Another counter writes the balance just before our conditional write."""

    def __init__(self, db, races=1, amount=5000):
        super().__init__(db)
        self.races = races
        self.amount = amount

    def set_balance(self, key, amount, expected_version=None):
        if self.races and expected_version is not None:
            self.races -= 1
            SqlBalanceStore(self.db).set_balance(key, self.amount)
        return super().set_balance(key, amount, expected_version)


class FailingLedger(SqlLedgerStore):
    """Bill inserts always time out."""

    def create_bill(self, business_id, record):
        raise StoreError("insert bill timed out", retryable=True)


class CountingBalances(SqlBalanceStore):
    def __init__(self, db):
        super().__init__(db)
        self.writes = 0

    def set_balance(self, key, amount, expected_version=None):
        self.writes += 1
        return super().set_balance(key, amount, expected_version)


class LateIdempotencyLedger(SqlLedgerStore):
    """The duplicate check misses a bill another request is committing."""

    def __init__(self, db):
        super().__init__(db)
        self.misses = 1

    def find_by_idempotency_key(self, business_id, key):
        if self.misses:
            self.misses -= 1
            return None
        return super().find_by_idempotency_key(business_id, key)


# ==============================================================================
# CREATE
# ==============================================================================

def test_create_bill_for_new_customer(service, db):
    bill = service.create_bill(BIZ, draft())

    assert bill.id is not None
    assert bill.bill_number == f"B{bill.id}"
    assert bill.previous_balance == 0
    assert bill.total_amount == 157000
    assert bill.paid_amount == 100000
    assert bill.balance_amount == 57000
    assert bill.advance_amount == 0
    assert bill.items[0]["amount"] == 150000

    customer = db.query(Customer).filter(Customer.phone == "9876543210").one()
    assert customer.name == "Ramesh Kumar"
    assert customer.version == 2
    assert balance_of(service, customer.id) == 57000
    assert service.cache.get(BIZ, customer.id).balance == 57000


def test_second_bill_uses_stored_balance_not_cache(service):
    first = service.create_bill(BIZ, draft())
    # A stale cached value must never be used as the previous balance
    service.cache.invalidate(CustomerKey(BIZ, customer_id=first.customer_id))

    second = service.create_bill(BIZ, draft(items=[], delivery_charge=0, cleaning_charge=0, paid_amount="600"))

    assert second.previous_balance == 57000
    assert second.total_amount == 0
    assert second.balance_amount == 0
    assert second.advance_amount == 3000
    assert balance_of(service, first.customer_id) == 0


def test_existing_customer_opening_balance_is_carried(service, db):
    customer, created = customer_service.add_customer(db, BIZ, "Sita", "9000000001", balance=25000)
    assert created

    bill = service.create_bill(BIZ, draft(customer_name="Sita", customer_phone="9000000001"))

    assert bill.customer_id == customer.id
    assert bill.previous_balance == 25000
    assert bill.balance_amount == 82000
    assert balance_of(service, customer.id) == 82000


def test_idempotency_key_returns_the_first_bill(service, db):
    first = service.create_bill(BIZ, draft(idempotency_key="counter-1:42"))
    again = service.create_bill(BIZ, draft(idempotency_key="counter-1:42"))

    assert again.id == first.id
    assert db.query(Bill).count() == 1
    assert balance_of(service, first.customer_id) == 57000


def test_validation_happens_before_any_write(service, db):
    with pytest.raises(ValidationError):
        service.create_bill(BIZ, draft(customer_name="   "))
    with pytest.raises(ValidationError):
        service.create_bill(BIZ, draft(customer_phone=""))
    with pytest.raises(ValidationError, match="date"):
        service.create_bill(BIZ, draft(bill_date=None))
    with pytest.raises(ValidationError, match="paid_amount"):
        service.create_bill(BIZ, draft(paid_amount="lots"))
    with pytest.raises(ValidationError):
        service.create_bill(BIZ, draft(payment_method="barter"))

    assert db.query(Bill).count() == 0
    assert db.query(Customer).count() == 0


def test_lenient_amounts_become_zero(db):
    lenient = BillingService(SqlLedgerStore(db), SqlBalanceStore(db), strict_amounts=False)

    bill = lenient.create_bill(BIZ, draft(paid_amount="lots", delivery_charge=None))

    assert bill.paid_amount == 0
    assert bill.delivery_charge == 0
    assert bill.balance_amount == 152000


def test_manual_item_amount_and_bill_date_string(service):
    bill = service.create_bill(BIZ, draft(
        bill_date="2024-03-05",
        items=[{"item": "Ironing", "amount": "45.50"}],
        delivery_charge=0,
        cleaning_charge=0,
        paid_amount=0,
    ))
    assert bill.bill_date == date(2024, 3, 5)
    assert bill.items[0]["amount"] == 4550
    assert bill.balance_amount == 4550


def test_businesses_are_isolated(service, db):
    a = service.create_bill("shop-a", draft())
    b = service.create_bill("shop-b", draft(paid_amount=0))

    assert a.customer_id != b.customer_id
    assert balance_of(service, a.customer_id, "shop-a") == 57000
    assert balance_of(service, b.customer_id, "shop-b") == 157000
    assert service.ledger.get_bill("shop-b", a.id) is None
    with pytest.raises(BillNotFoundError):
        service.delete_bill("shop-b", a.id)
    assert balance_of(service, a.customer_id, "shop-a") == 57000


# ==============================================================================
# BALANCE PROPAGATION FAILURES
# ==============================================================================

def test_failed_balance_write_raises_consistency_error(db):
    service = BillingService(SqlLedgerStore(db), FailingBalances(db))

    with pytest.raises(ConsistencyError) as exc:
        service.create_bill(BIZ, draft())

    err = exc.value
    saved = db.query(Bill).one()
    assert err.bill_id == saved.id
    assert err.attempted_balance == 57000
    assert err.customer_key.customer_id == saved.customer_id
    # The bill stays; the balance is stale until reconciled
    assert db.query(Customer).one().balance == 0


def test_version_conflict_recomputes_against_fresh_balance(db):
    balances = RacingBalances(db, races=1, amount=5000)
    service = BillingService(SqlLedgerStore(db), balances)

    bill = service.create_bill(BIZ, draft())

    assert bill.previous_balance == 5000
    assert bill.balance_amount == 62000
    assert balance_of(service, bill.customer_id) == 62000


def test_version_conflicts_beyond_retry_limit(db):
    balances = RacingBalances(db, races=10, amount=100)
    service = BillingService(SqlLedgerStore(db), balances, max_balance_retries=2)

    with pytest.raises(ConsistencyError):
        service.create_bill(BIZ, draft())

    assert db.query(Bill).count() == 1
    assert db.query(Customer).one().balance == 100


# ==============================================================================
# UPDATE / DELETE
# ==============================================================================

def test_update_moves_balance_by_the_difference(service, db):
    customer, _ = customer_service.add_customer(db, BIZ, "Sita", "9000000001", balance=10000)
    bill = service.create_bill(BIZ, draft(
        customer_name="Sita",
        customer_phone="9000000001",
        items=[{"item": "Dal", "amount": "100"}],
        delivery_charge=0,
        cleaning_charge=0,
        paid_amount=0,
    ))
    assert bill.balance_amount == 20000
    assert balance_of(service, customer.id) == 20000

    updated = service.update_bill(BIZ, bill.id, BillChanges(items=[{"item": "Dal", "amount": "250"}]))

    assert updated.previous_balance == 10000
    assert updated.balance_amount == 35000
    assert balance_of(service, customer.id) == 35000  # +15000, not +35000


def test_update_keeps_unchanged_fields(service):
    bill = service.create_bill(BIZ, draft(payment_method="upi", upi_type="gpay"))

    updated = service.update_bill(BIZ, bill.id, BillChanges(paid_amount="1200"))

    assert updated.items[0]["amount"] == 150000
    assert updated.delivery_charge == 5000
    assert updated.payment_method == "upi"
    assert updated.upi_type == "gpay"
    assert updated.balance_amount == 37000
    assert balance_of(service, bill.customer_id) == 37000


def test_update_with_bad_input_changes_nothing(service):
    bill = service.create_bill(BIZ, draft())

    with pytest.raises(ValidationError):
        service.update_bill(BIZ, bill.id, BillChanges(paid_amount="abc"))

    assert service.ledger.get_bill(BIZ, bill.id).balance_amount == 57000
    assert balance_of(service, bill.customer_id) == 57000


def test_update_missing_bill(service):
    with pytest.raises(BillNotFoundError):
        service.update_bill(BIZ, 999, BillChanges(paid_amount=1))


def test_delete_only_bill_clears_balance(service):
    bill = service.create_bill(BIZ, draft())
    assert balance_of(service, bill.customer_id) == 57000

    service.delete_bill(BIZ, bill.id)

    assert service.ledger.get_bill(BIZ, bill.id) is None
    assert balance_of(service, bill.customer_id) == 0
    assert service.cache.get(BIZ, bill.customer_id).balance == 0


def test_delete_never_leaves_negative_balance(service):
    first = service.create_bill(BIZ, draft())
    service.create_bill(BIZ, draft(items=[], delivery_charge=0, cleaning_charge=0, paid_amount="570"))
    assert balance_of(service, first.customer_id) == 0

    service.delete_bill(BIZ, first.id)

    assert balance_of(service, first.customer_id) == 0


def test_delete_bill_of_missing_customer(service, db):
    bill = service.create_bill(BIZ, draft())
    db.query(Customer).filter(Customer.id == bill.customer_id).delete(synchronize_session=False)
    db.commit()

    service.delete_bill(BIZ, bill.id)

    assert db.query(Bill).count() == 0


def test_delete_missing_bill(service):
    with pytest.raises(BillNotFoundError):
        service.delete_bill(BIZ, 12345)


# ==============================================================================
# REFRESH / CONSISTENCY
# ==============================================================================

def test_refresh_customer_overwrites_cache(service):
    bill = service.create_bill(BIZ, draft())
    key = CustomerKey(BIZ, customer_id=bill.customer_id)
    SqlBalanceStore(service.balances.db).set_balance(key, 1234)

    snapshot = service.refresh_customer(key)

    assert snapshot.balance == 1234
    assert service.cache.get(BIZ, bill.customer_id).balance == 1234


def test_refresh_unknown_customer(service):
    with pytest.raises(CustomerNotFoundError):
        service.refresh_customer(CustomerKey(BIZ, customer_id=404))


def test_reconcile_restores_latest_bill_balance(service):
    bill = service.create_bill(BIZ, draft())
    key = CustomerKey(BIZ, customer_id=bill.customer_id)
    service.balances.set_balance(key, 999)

    report = service.check_consistency(key)
    assert not report.consistent
    assert report.latest_bill_id == bill.id
    assert report.latest_balance == 57000

    fixed = service.reconcile_customer(key)

    assert fixed.balance == 57000
    assert service.check_consistency(key).consistent


def test_reconcile_without_bills_is_zero(service, db):
    customer, _ = customer_service.add_customer(db, BIZ, "Walk-in Customer", "0000000000", balance=500)
    assert customer.is_walkin

    fixed = service.reconcile_customer(CustomerKey(BIZ, customer_id=customer.id))

    assert fixed.balance == 0


def test_get_balance_of_unknown_customer_is_zero(service):
    assert service.balances.get_balance(CustomerKey(BIZ, phone="5555555555")) == 0
    bill = service.create_bill(BIZ, draft())
    assert service.balances.get_balance(CustomerKey(BIZ, phone="9876543210")) == 57000
    assert service.balances.get_balance(CustomerKey(BIZ, customer_id=bill.customer_id)) == 57000


# ==============================================================================
# EDITING OLDER BILLS
# ==============================================================================

def test_edit_older_bill_after_overpayment(service):
    first = service.create_bill(BIZ, draft(
        items=[{"item": "Dal", "amount": "100"}], delivery_charge=0, cleaning_charge=0, paid_amount=0,
    ))
    second = service.create_bill(BIZ, draft(
        bill_date=date(2024, 3, 2), items=[], delivery_charge=0, cleaning_charge=0, paid_amount="300",
    ))
    assert second.advance_amount == 20000
    assert balance_of(service, first.customer_id) == 0

    updated = service.update_bill(BIZ, first.id, BillChanges(paid_amount="0"))

    assert updated.previous_balance == 0
    assert updated.balance_amount == 10000
    assert balance_of(service, first.customer_id) == 0
    assert service.check_consistency(CustomerKey(BIZ, customer_id=first.customer_id)).consistent


def test_edit_older_bill_rechains_later_bills(service):
    first = service.create_bill(BIZ, draft(
        items=[{"item": "Dal", "amount": "100"}], delivery_charge=0, cleaning_charge=0, paid_amount=0,
    ))
    second = service.create_bill(BIZ, draft(
        bill_date=date(2024, 3, 2),
        items=[{"item": "Oil", "amount": "50"}],
        delivery_charge=0,
        cleaning_charge=0,
        paid_amount=0,
    ))
    assert balance_of(service, first.customer_id) == 15000

    updated = service.update_bill(BIZ, first.id, BillChanges(items=[{"item": "Dal", "amount": "110"}]))

    assert updated.previous_balance == 0
    assert updated.balance_amount == 11000
    later = service.ledger.get_bill(BIZ, second.id)
    assert later.previous_balance == 11000
    assert later.balance_amount == 16000
    assert balance_of(service, first.customer_id) == 16000
    assert service.check_consistency(CustomerKey(BIZ, customer_id=first.customer_id)).consistent


# ==============================================================================
# STORE FAILURES
# ==============================================================================

def test_failed_bill_write_touches_no_balance(db):
    customer, _ = customer_service.add_customer(db, BIZ, "Sita", "9000000001", balance=25000)
    balances = CountingBalances(db)
    service = BillingService(FailingLedger(db), balances)

    with pytest.raises(StoreError) as exc:
        service.create_bill(BIZ, draft(customer_name="Sita", customer_phone="9000000001"))

    assert exc.value.retryable
    assert balances.writes == 0
    assert db.query(Bill).count() == 0
    assert balance_of(service, customer.id) == 25000
    assert db.query(Customer).count() == 1


def test_failed_bill_write_removes_new_customer(db):
    balances = CountingBalances(db)
    service = BillingService(FailingLedger(db), balances)

    with pytest.raises(StoreError):
        service.create_bill(BIZ, draft())

    assert balances.writes == 0
    assert db.query(Customer).count() == 0
    assert db.query(Bill).count() == 0


def test_concurrent_duplicate_idempotency_key_returns_first_bill(service, db):
    first = service.create_bill(BIZ, draft(idempotency_key="counter-1:7"))
    racing = BillingService(LateIdempotencyLedger(db), SqlBalanceStore(db))

    again = racing.create_bill(BIZ, draft(idempotency_key="counter-1:7"))

    assert again.id == first.id
    assert db.query(Bill).count() == 1
    assert balance_of(service, first.customer_id) == 57000


def test_timeout_becomes_retryable_store_error(db):
    with pytest.raises(StoreError) as exc:
        with store_call(db, "read balance"):
            raise OperationalError("SELECT balance FROM customers", {}, Exception("database is locked"))

    assert exc.value.retryable
    response = to_http(exc.value)
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"


def test_non_retryable_store_error_is_500():
    assert to_http(StoreError("bad sql")).status_code == 500
