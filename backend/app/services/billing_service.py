"""
Bill create/update/delete that keeps customer balances in step with the ledger.

Protocol for every mutation:
1. Validate input (no store call yet).
2. Re-read the customer's balance from the store, never from a cache.
3. Run the money engine against that balance.
4. Write the bill.
5. Write the customer's new balance with a version check. On a version
   conflict, re-read, recompute, rewrite the bill and try again.
6. Re-read the customer into the cache.

A failure at step 4 aborts with nothing written; a customer created for
the bill is removed again. A failure at step 5 leaves the bill saved and
the balance stale: that is a ConsistencyError, logged to the audit log
with what is needed to reconcile.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Optional

from app.core.audit import AuditLog
from app.core.exceptions import (
    BillNotFoundError,
    ConcurrentUpdateError,
    ConsistencyError,
    CustomerNotFoundError,
    DuplicateBillError,
    StoreError,
    ValidationError,
)
from app.models.bill import Bill
from app.services.balance_cache import BalanceCache
from app.services.customer_service import AccountSnapshot, BalanceStore, CustomerKey, clean_name, clean_phone
from app.services.ledger_service import LedgerStore
from app.services.money import BillTotals, clamp_min, compute_totals, line_amount, parse_cents, to_cents

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "upi", "check", "cash_gpay")


@dataclass
class BillDraft:
    """A bill as entered at the counter. Money fields are rupees, unparsed."""
    customer_name: str
    customer_phone: str
    bill_date: Any
    items: list[dict] = field(default_factory=list)
    paid_amount: Any = 0
    delivery_charge: Any = 0
    cleaning_charge: Any = 0
    payment_method: str = "cash"
    upi_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    cash_amount: Any = None
    gpay_amount: Any = None
    bill_number: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class BillChanges:
    """Edits to a saved bill. None means keep the saved value."""
    bill_date: Any = None
    items: Optional[list[dict]] = None
    paid_amount: Any = None
    delivery_charge: Any = None
    cleaning_charge: Any = None
    payment_method: Optional[str] = None
    upi_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    cash_amount: Any = None
    gpay_amount: Any = None
    bill_number: Optional[str] = None


@dataclass(frozen=True)
class ConsistencyReport:
    customer_id: int
    balance: int
    latest_bill_id: Optional[int]
    latest_balance: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.latest_balance


@dataclass(frozen=True)
class _Money:
    """Engine inputs for one bill, in cents."""
    items_total: int
    delivery_charge: int
    cleaning_charge: int
    paid_amount: int

    @classmethod
    def of(cls, bill: Bill) -> "_Money":
        """Engine inputs as already saved on a bill."""
        return cls(
            items_total=sum(_stored_cents(it.get("amount")) for it in bill.items or []),
            delivery_charge=int(bill.delivery_charge or 0),
            cleaning_charge=int(bill.cleaning_charge or 0),
            paid_amount=int(bill.paid_amount or 0),
        )

    def totals(self, opening: int) -> BillTotals:
        return compute_totals(
            previous_balance=opening,
            items_total=self.items_total,
            delivery_charge=self.delivery_charge,
            cleaning_charge=self.cleaning_charge,
            paid_amount=self.paid_amount,
        )

    def fields(self, opening: int, totals: BillTotals) -> dict[str, int]:
        return {
            "previous_balance": opening,
            "total_amount": totals.transaction_amount,
            "paid_amount": self.paid_amount,
            "balance_amount": totals.new_balance,
            "advance_amount": totals.advance_amount,
            "delivery_charge": self.delivery_charge,
            "cleaning_charge": self.cleaning_charge,
        }


def _stored_cents(value) -> int:
    """Saved item amounts are already cents; anything else counts as 0."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


# replan(account) -> (new customer balance, bill fields to rewrite or None)
Replan = Callable[[AccountSnapshot], tuple[int, Optional[dict[str, Any]]]]


class BillingService:
    """Balance synchronization over an injected ledger and balance store."""

    def __init__(
        self,
        ledger: LedgerStore,
        balances: BalanceStore,
        cache: BalanceCache | None = None,
        max_balance_retries: int = 3,
        strict_amounts: bool = True,
    ):
        self.ledger = ledger
        self.balances = balances
        self.cache = cache if cache is not None else BalanceCache()
        self.max_balance_retries = max_balance_retries
        self.strict_amounts = strict_amounts

    # ------------------------------------------------------------------
    # input handling
    # ------------------------------------------------------------------

    def parse_amount(self, value, field_name: str) -> int:
        """Rupees to cents under the configured strictness."""
        if self.strict_amounts:
            return parse_cents(value, field_name)
        return to_cents(value)

    def _optional_amount(self, value, field_name: str) -> Optional[int]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return self.parse_amount(value, field_name)

    @staticmethod
    def _date(value) -> date:
        if isinstance(value, date):
            return value
        if isinstance(value, str) and value.strip():
            try:
                return date.fromisoformat(value.strip())
            except ValueError:
                raise ValidationError(f"Invalid bill date: {value!r}")
        raise ValidationError("Bill date is required")

    def _items(self, raw_items) -> list[dict]:
        """Normalise line items; each amount is recomputed in cents."""
        items = []
        for no, raw in enumerate(raw_items or [], start=1):
            if not isinstance(raw, dict):
                raise ValidationError(f"Item {no} is not an object")
            quantity = raw.get("quantity", raw.get("weight"))
            rate = raw.get("rate")
            has_qty_rate = quantity not in (None, "") and rate not in (None, "")
            if has_qty_rate:
                if self.strict_amounts:
                    # Rate is money, quantity is a plain number; both must parse
                    self.parse_amount(rate, f"items[{no}].rate")
                    self.parse_amount(quantity, f"items[{no}].quantity")
                amount = line_amount(quantity, rate)
            else:
                amount = self.parse_amount(raw.get("amount"), f"items[{no}].amount")
            items.append({
                "no": no,
                "item": str(raw.get("item") or "").strip(),
                "quantity": str(quantity) if quantity not in (None, "") else None,
                "rate": str(rate) if rate not in (None, "") else None,
                "amount": amount,
            })
        if not items:
            logger.warning("[ADD BILL] Bill with no items - balance-only transaction")
        return items

    @staticmethod
    def _payment_method(value: Optional[str]) -> str:
        method = (value or "cash").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method: {value!r}")
        return method

    def _payment_fields(self, src) -> dict[str, Any]:
        return {
            "upi_type": src.upi_type,
            "bank_name": src.bank_name,
            "check_number": src.check_number,
            "cash_amount": self._optional_amount(src.cash_amount, "cash_amount"),
            "gpay_amount": self._optional_amount(src.gpay_amount, "gpay_amount"),
        }

    # ------------------------------------------------------------------
    # balance propagation
    # ------------------------------------------------------------------

    def _diverged(self, business_id: str, bill_id, key: CustomerKey, attempted: int, error: Exception) -> ConsistencyError:
        logger.error(
            f"[BALANCE SYNC] Bill {bill_id} saved but balance of {key} not updated "
            f"(attempted {attempted}): {error}"
        )
        AuditLog.log_consistency_failure(business_id, bill_id, str(key), attempted, str(error))
        return ConsistencyError(
            f"Bill {bill_id} saved but customer {key} balance could not be set to {attempted}",
            bill_id=bill_id,
            customer_key=key,
            attempted_balance=attempted,
        )

    def _propagate(
        self,
        business_id: str,
        bill_id: int,
        account: AccountSnapshot,
        new_balance: int,
        replan: Replan,
        reason: str,
    ) -> AccountSnapshot:
        """Compare-and-set the customer balance after the bill is written."""
        conflicts = 0
        while True:
            try:
                written = self.balances.set_balance(account.key, new_balance, expected_version=account.version)
            except ConcurrentUpdateError as e:
                conflicts += 1
                if conflicts > self.max_balance_retries:
                    raise self._diverged(business_id, bill_id, account.key, new_balance, e) from e
                logger.warning(f"[BALANCE SYNC] Version conflict on {account.key}, retry {conflicts}")
                try:
                    account = self.balances.get_account(account.key)
                    new_balance, fields = replan(account)
                    if fields:
                        self.ledger.update_bill(business_id, bill_id, fields)
                except (StoreError, CustomerNotFoundError, BillNotFoundError) as e2:
                    raise self._diverged(business_id, bill_id, account.key, new_balance, e2) from e2
                continue
            except (StoreError, CustomerNotFoundError) as e:
                raise self._diverged(business_id, bill_id, account.key, new_balance, e) from e
            AuditLog.log_balance_change(business_id, str(account.key), account.balance, new_balance, reason)
            return written

    def _discard_new_account(self, account: AccountSnapshot) -> None:
        """Undo a customer created for a bill that was never saved."""
        try:
            self.balances.discard_account(account.key, account.version)
        except StoreError as e:
            logger.warning(f"[ADD BILL] Could not remove new customer {account.key} after failed bill write: {e}")

    def _refresh_after(self, key: CustomerKey) -> Optional[AccountSnapshot]:
        """Refresh following a successful mutation; a failed read only drops the cache entry."""
        try:
            return self.refresh_customer(key)
        except (StoreError, CustomerNotFoundError) as e:
            logger.warning(f"[BALANCE SYNC] Could not refresh {key} after mutation: {e}")
            self.cache.invalidate(key)
            return None

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def create_bill(self, business_id: str, draft: BillDraft) -> Bill:
        """Save a new bill and move the customer's balance to the bill's balance."""
        if not business_id:
            raise ValidationError("Business id is required")
        name = clean_name(draft.customer_name)
        phone = clean_phone(draft.customer_phone)
        bill_date = self._date(draft.bill_date)
        items = self._items(draft.items)
        money = _Money(
            items_total=sum(it["amount"] for it in items),
            delivery_charge=self.parse_amount(draft.delivery_charge, "delivery_charge"),
            cleaning_charge=self.parse_amount(draft.cleaning_charge, "cleaning_charge"),
            paid_amount=self.parse_amount(draft.paid_amount, "paid_amount"),
        )
        record = {
            "bill_number": draft.bill_number,
            "bill_date": bill_date,
            "items": items,
            "payment_method": self._payment_method(draft.payment_method),
            "idempotency_key": draft.idempotency_key,
            **self._payment_fields(draft),
        }

        if draft.idempotency_key:
            existing = self.ledger.find_by_idempotency_key(business_id, draft.idempotency_key)
            if existing is not None:
                logger.info(f"[ADD BILL] Idempotency key {draft.idempotency_key} already used by bill {existing.id}")
                self._refresh_after(CustomerKey(business_id, customer_id=existing.customer_id))
                return existing

        key = CustomerKey(business_id, name=name, phone=phone)
        try:
            account = self.balances.get_account(key)
            created = False
        except CustomerNotFoundError:
            account = self.balances.ensure_account(key)
            created = True
        opening = account.balance
        totals = money.totals(opening)
        try:
            bill = self.ledger.create_bill(business_id, {
                **record,
                **money.fields(opening, totals),
                "customer_id": account.customer_id,
                "customer_name": account.name,
                "customer_phone": account.phone,
            })
        except DuplicateBillError as e:
            if created:
                self._discard_new_account(account)
            logger.info(f"[ADD BILL] {e}")
            self._refresh_after(CustomerKey(business_id, customer_id=e.existing.customer_id))
            return e.existing
        except StoreError:
            if created:
                self._discard_new_account(account)
            raise
        bill_id = bill.id

        def replan(acc: AccountSnapshot):
            t = money.totals(acc.balance)
            return t.new_balance, money.fields(acc.balance, t)

        self._propagate(business_id, bill_id, account, totals.new_balance, replan, reason=f"bill.create:{bill_id}")
        AuditLog.log_bill_event("create", business_id, bill_id, str(account.key), changes={
            "previous_balance": opening,
            "total_amount": totals.transaction_amount,
            "paid_amount": money.paid_amount,
            "balance_amount": totals.new_balance,
        })
        self._refresh_after(account.key)
        return bill

    def update_bill(self, business_id: str, bill_id: int, changes: BillChanges) -> Bill:
        """Edit a bill and keep the customer balance in step with it.

        Latest bill: the opening balance is re-derived from the customer row
        with this bill's own effect backed out, then the customer balance is
        overwritten with the recomputed bill balance, i.e. it moves by
        exactly new - old.

        Older bill: it keeps its own saved opening balance, every later bill
        is recomputed on top of it, and the customer balance moves by the
        change in the last bill's balance. Bill order is the one before the
        edit, even when the edit changes the bill date.
        """
        old = self.ledger.get_bill(business_id, bill_id)
        if old is None:
            raise BillNotFoundError(f"Bill {bill_id} not found in {business_id}")
        old_balance = int(old.balance_amount or 0)
        old_previous = int(old.previous_balance or 0)
        key = CustomerKey(business_id, customer_id=old.customer_id)

        items = self._items(changes.items) if changes.items is not None else list(old.items or [])
        money = _Money(
            items_total=sum(_stored_cents(it.get("amount")) for it in items),
            delivery_charge=(
                self.parse_amount(changes.delivery_charge, "delivery_charge")
                if changes.delivery_charge is not None else int(old.delivery_charge or 0)
            ),
            cleaning_charge=(
                self.parse_amount(changes.cleaning_charge, "cleaning_charge")
                if changes.cleaning_charge is not None else int(old.cleaning_charge or 0)
            ),
            paid_amount=(
                self.parse_amount(changes.paid_amount, "paid_amount")
                if changes.paid_amount is not None else int(old.paid_amount or 0)
            ),
        )
        record: dict[str, Any] = {"items": items}
        if changes.bill_date is not None:
            record["bill_date"] = self._date(changes.bill_date)
        if changes.payment_method is not None:
            record["payment_method"] = self._payment_method(changes.payment_method)
        if changes.bill_number is not None:
            record["bill_number"] = changes.bill_number
        for name, value in self._payment_fields(changes).items():
            if value is not None:
                record[name] = value

        account = self.balances.get_account(key)
        history = self.ledger.customer_bills(business_id, old.customer_id)
        ids = [b.id for b in history]
        later = history[ids.index(bill_id) + 1:] if bill_id in ids else []

        if not later:
            def replan(acc: AccountSnapshot):
                opening = clamp_min(0, acc.balance - old_balance + old_previous)
                t = money.totals(opening)
                return t.new_balance, money.fields(opening, t)

            new_balance, money_fields = replan(account)
            bill = self.ledger.update_bill(business_id, bill_id, {**record, **money_fields})
        else:
            bill, delta = self._update_within_history(business_id, bill_id, record, money, old_previous, later)

            def replan(acc: AccountSnapshot):
                return clamp_min(0, acc.balance + delta), None

            new_balance, _ = replan(account)
        self._propagate(business_id, bill_id, account, new_balance, replan, reason=f"bill.update:{bill_id}")
        AuditLog.log_bill_event("update", business_id, bill_id, str(key), changes={
            "old_balance_amount": old_balance,
            "balance_amount": bill.balance_amount,
        })
        self._refresh_after(key)
        return bill

    def _update_within_history(
        self,
        business_id: str,
        bill_id: int,
        record: dict[str, Any],
        money: _Money,
        opening: int,
        later: list[Bill],
    ) -> tuple[Bill, int]:
        """Rewrite an older bill on its own opening balance, then re-chain
        every later bill onto it.

        Returns the edited bill and how far the last bill's balance moved,
        which is what the customer balance moves by.
        """
        last_before = int(later[-1].balance_amount or 0)
        chain = [(b.id, _Money.of(b)) for b in later]

        t = money.totals(opening)
        bill = self.ledger.update_bill(business_id, bill_id, {**record, **money.fields(opening, t)})
        carried = t.new_balance
        for later_id, later_money in chain:
            lt = later_money.totals(carried)
            self.ledger.update_bill(business_id, later_id, later_money.fields(carried, lt))
            carried = lt.new_balance
        logger.info(f"[UPDATE BILL] Bill {bill_id} edited, {len(chain)} later bills re-chained")
        return bill, carried - last_before

    def delete_bill(self, business_id: str, bill_id: int) -> None:
        """Remove a bill and take its balance back off the customer."""
        bill = self.ledger.get_bill(business_id, bill_id)
        if bill is None:
            raise BillNotFoundError(f"Bill {bill_id} not found in {business_id}")
        bill_balance = int(bill.balance_amount or 0)
        key = CustomerKey(business_id, customer_id=bill.customer_id)

        try:
            account = self.balances.get_account(key)
        except CustomerNotFoundError:
            account = None
            logger.warning(f"[DELETE BILL] Customer {key} missing; deleting bill {bill_id} without balance adjustment")

        self.ledger.delete_bill(business_id, bill_id)
        AuditLog.log_bill_event("delete", business_id, bill_id, str(key), changes={"balance_amount": bill_balance})
        if account is None:
            return

        def replan(acc: AccountSnapshot):
            return clamp_min(0, acc.balance - bill_balance), None

        adjusted, _ = replan(account)
        self._propagate(business_id, bill_id, account, adjusted, replan, reason=f"bill.delete:{bill_id}")
        self._refresh_after(key)

    def refresh_customer(self, key: CustomerKey) -> AccountSnapshot:
        """Re-read the customer from the store and overwrite the cached copy."""
        snapshot = self.balances.get_account(key)
        self.cache.put(snapshot)
        logger.debug(f"[BALANCE SYNC] {snapshot.name}: {snapshot.balance}")
        return snapshot

    def check_consistency(self, key: CustomerKey) -> ConsistencyReport:
        """Compare the customer balance with their latest bill's balance."""
        account = self.balances.get_account(key)
        latest = self.ledger.latest_bill(account.business_id, account.customer_id)
        return ConsistencyReport(
            customer_id=account.customer_id,
            balance=account.balance,
            latest_bill_id=latest.id if latest else None,
            latest_balance=int(latest.balance_amount or 0) if latest else 0,
        )

    def reconcile_customer(self, key: CustomerKey) -> AccountSnapshot:
        """Set the customer balance to their latest bill's balance (0 with no bills)."""
        for _ in range(self.max_balance_retries + 1):
            account = self.balances.get_account(key)
            latest = self.ledger.latest_bill(account.business_id, account.customer_id)
            target = int(latest.balance_amount or 0) if latest else 0
            if account.balance == target:
                return self.refresh_customer(key)
            try:
                self.balances.set_balance(key, target, expected_version=account.version)
            except ConcurrentUpdateError:
                logger.warning(f"[RECONCILE] Version conflict on {key}, retrying")
                continue
            AuditLog.log_balance_change(
                account.business_id, str(key), account.balance, target,
                reason=f"reconcile:{latest.id if latest else None}",
            )
            logger.info(f"[RECONCILE] {key} balance {account.balance} -> {target}")
            return self.refresh_customer(key)
        raise ConcurrentUpdateError(f"Could not reconcile {key}: balance kept changing")
