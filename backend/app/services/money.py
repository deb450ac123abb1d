"""Money helpers: operate in paise/cents to avoid floating precision issues.

Every amount inside the service layer is an int number of cents. Decimal
rupee values only exist at the edges (request parsing, responses), through
to_cents / from_cents / format_inr.

Rounding: half away from zero on the decimal text of the value, so
to_cents(1.005) == 101 and to_cents(-0.005) == -1.
"""
from dataclasses import dataclass
from decimal import Decimal, DecimalException, ROUND_HALF_UP

from app.core.exceptions import ValidationError

HUNDRED = Decimal(100)
# Largest amount accepted: fits BigInteger columns with room for sums
MAX_CENTS = 10 ** 15


def _to_decimal(value) -> Decimal | None:
    """Decimal for numbers and numeric strings, None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, (int, float)):
        d = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            d = Decimal(text)
        except DecimalException:
            return None
    else:
        return None
    if not d.is_finite():
        return None
    return d


def _round(d: Decimal, *factors: Decimal) -> int | None:
    """Nearest integer to d * factors, half away from zero.

    None when the product leaves Decimal range or exceeds MAX_CENTS.
    """
    try:
        for f in factors:
            d = d * f
        n = int(d.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except DecimalException:
        return None
    return n if abs(n) <= MAX_CENTS else None


def to_cents(value) -> int:
    """Rupees (number or numeric string) to integer cents.

    Never raises: None, NaN, infinities, booleans, unparseable strings
    and amounts beyond MAX_CENTS all come back as 0.
    """
    d = _to_decimal(value)
    if d is None:
        return 0
    cents = _round(d, HUNDRED)
    return cents if cents is not None else 0


def parse_cents(value, field: str = "amount") -> int:
    """Strict variant of to_cents for request boundaries.

    Blank input is 0; anything else that isn't a finite number within
    MAX_CENTS raises ValidationError naming the field.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0
    d = _to_decimal(value)
    cents = _round(d, HUNDRED) if d is not None else None
    if cents is None:
        raise ValidationError(f"Invalid amount for {field}: {value!r}")
    return cents


def _cents(value) -> int:
    """Coerce an already-converted amount to int cents; garbage becomes 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    d = _to_decimal(value)
    if d is None:
        return 0
    cents = _round(d)
    return cents if cents is not None else 0


def from_cents(cents) -> Decimal:
    """Cents back to rupees. Exact: the numerator is already an integer."""
    cents = _cents(cents)
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return Decimal(f"{sign}{whole}.{frac:02d}")


def add_cents(*values) -> int:
    return sum(_cents(v) for v in values)


def clamp_min(minimum: int, value: int) -> int:
    return minimum if value < minimum else value


def safe_subtract(a: int, b: int) -> int:
    return _cents(a) - _cents(b)


def format_inr(cents: int) -> str:
    """Display form with two decimals, e.g. 157000 -> '1570.00'."""
    return str(from_cents(cents))


def line_amount(quantity, rate, amount=None) -> int:
    """Cents for one bill line.

    quantity * rate when both are numeric (weights like "2.5" kg are
    common), otherwise the amount typed in by hand.
    """
    q = _to_decimal(quantity)
    r = _to_decimal(rate)
    if q is not None and r is not None:
        cents = _round(q, r, HUNDRED)
        if cents is not None:
            return cents
    return to_cents(amount)


@dataclass(frozen=True)
class BillTransaction:
    previous_balance: int = 0
    items_total: int = 0
    delivery_charge: int = 0
    cleaning_charge: int = 0
    paid_amount: int = 0


@dataclass(frozen=True)
class BillTotals:
    total_amount: int  # previous + items + charges
    new_balance: int  # max(total - paid, 0)
    advance_amount: int  # max(paid - total, 0)
    transaction_amount: int  # items + charges (excludes previous balance)


def compute_totals(
    previous_balance: int = 0,
    items_total: int = 0,
    delivery_charge: int = 0,
    cleaning_charge: int = 0,
    paid_amount: int = 0,
) -> BillTotals:
    """Balance arithmetic for one bill. Pure; garbage inputs count as 0."""
    paid = _cents(paid_amount)
    charges = add_cents(delivery_charge, cleaning_charge)
    transaction_amount = add_cents(items_total, charges)
    total_amount = add_cents(previous_balance, transaction_amount)
    diff = safe_subtract(total_amount, paid)
    new_balance = clamp_min(0, diff)
    overpay = safe_subtract(paid, total_amount)
    advance_amount = overpay if overpay > 0 else 0
    return BillTotals(
        total_amount=total_amount,
        new_balance=new_balance,
        advance_amount=advance_amount,
        transaction_amount=transaction_amount,
    )


def compute_bill(tx: BillTransaction) -> BillTotals:
    return compute_totals(
        previous_balance=tx.previous_balance,
        items_total=tx.items_total,
        delivery_charge=tx.delivery_charge,
        cleaning_charge=tx.cleaning_charge,
        paid_amount=tx.paid_amount,
    )
