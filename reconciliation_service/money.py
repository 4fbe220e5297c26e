"""
Integer-cents arithmetic, installment splitting and the date formats used by
invoices and accounting exports. Everything here is pure.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Union

CENT = Decimal("0.01")

def split_installments(total: int) -> Tuple[int, int]:
    """Split a tuition total into (now, later) so that now + later == total."""
    if total < 0:
        raise ValueError(f"cannot split a negative amount: {total}")
    now = total // 2
    return now, total - now

def cents_to_dollars(cents: int) -> str:
    return str((Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP))

def format_currency(cents: int) -> str:
    amount = (Decimal(cents) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"

def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def line_total(amount_due: Optional[int], quantity: Union[Decimal, int, None]) -> Decimal:
    """amount_due x quantity, with a missing quantity counted as one."""
    qty = Decimal(1) if quantity is None else Decimal(quantity)
    return Decimal(amount_due or 0) * qty

def format_quantity(quantity: Union[Decimal, int, None]) -> str:
    if quantity is None:
        return "1"
    normalized = Decimal(quantity).normalize()
    # normalize() turns 100 into 1E+2
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal("1")))
    return format(normalized, "f")

def follow_up_due_dates(
    due_date_1: Optional[date],
    due_date_2: Optional[date],
    class_start_date: Optional[date],
    offset_1_days: int = -21,
    offset_2_days: int = 7,
    derive_from_start: bool = True,
) -> Optional[Tuple[date, date]]:
    """
    Resolve the two installment due dates.

    An explicit date always wins for its installment. A missing one is derived
    from the class start date using the configured offsets. Returns None when
    either date cannot be determined; callers must not guess.
    """
    def resolve(explicit: Optional[date], offset: int) -> Optional[date]:
        if explicit is not None:
            return explicit
        if derive_from_start and class_start_date is not None:
            return class_start_date + timedelta(days=offset)
        return None

    first = resolve(due_date_1, offset_1_days)
    second = resolve(due_date_2, offset_2_days)
    if first is None or second is None:
        return None
    return first, second

def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value

def format_date_mdy(value: Union[date, datetime, None]) -> str:
    if value is None:
        return ""
    d = _as_date(value)
    return f"{d.month}/{d.day}/{d.year}"

def format_date_mmddyy(value: Union[date, datetime]) -> str:
    return _as_date(value).strftime("%m%d%y")

def format_long_date(value: Union[date, datetime]) -> str:
    d = _as_date(value)
    return f"{d.strftime('%B')} {d.day}, {d.year}"

def format_short_date(value: Union[date, datetime]) -> str:
    d = _as_date(value)
    return f"{d.strftime('%b')} {d.day}, {d.year}"
