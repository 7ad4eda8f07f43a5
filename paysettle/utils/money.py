"""
PaySettle - Money Helpers

Decimal rounding, tolerance checks and amount-in-words for payslips.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

Number = Union[Decimal, int, float, str]

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value: Number) -> Decimal:
    """Round to two decimal places, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(base: Number, rate: Number) -> Decimal:
    """``rate`` percent of ``base``, rounded to money."""
    return round_money(to_decimal(base) * to_decimal(rate) / HUNDRED)


def sum_money(values: Iterable[Number]) -> Decimal:
    total = ZERO
    for value in values:
        total += to_decimal(value)
    return round_money(total)


def within(actual: Number, expected: Number, tolerance: Number) -> bool:
    return abs(to_decimal(actual) - to_decimal(expected)) <= to_decimal(tolerance)


_ONES = [
    "", "One", "Two", "Three", "Four", "Five", "Six", "Seven", "Eight", "Nine",
    "Ten", "Eleven", "Twelve", "Thirteen", "Fourteen", "Fifteen", "Sixteen",
    "Seventeen", "Eighteen", "Nineteen",
]
_TENS = ["", "", "Twenty", "Thirty", "Forty", "Fifty", "Sixty", "Seventy", "Eighty", "Ninety"]


def _below_hundred(n: int) -> str:
    if n < 20:
        return _ONES[n]
    tens, ones = divmod(n, 10)
    return f"{_TENS[tens]} {_ONES[ones]}".strip()


def _below_thousand(n: int) -> str:
    hundreds, rest = divmod(n, 100)
    parts = []
    if hundreds:
        parts.append(f"{_ONES[hundreds]} Hundred")
    if rest:
        parts.append(_below_hundred(rest))
    return " ".join(parts)


def _integer_words(n: int) -> str:
    # Indian grouping: crore (10^7), lakh (10^5), thousand, hundreds
    if n == 0:
        return "Zero"
    parts = []
    crore, n = divmod(n, 10_000_000)
    if crore:
        parts.append(f"{_integer_words(crore)} Crore")
    lakh, n = divmod(n, 100_000)
    if lakh:
        parts.append(f"{_below_hundred(lakh)} Lakh")
    thousand, n = divmod(n, 1000)
    if thousand:
        parts.append(f"{_below_hundred(thousand)} Thousand")
    if n:
        parts.append(_below_thousand(n))
    return " ".join(parts)


def amount_in_words(amount: Number, currency: str = "Rupees", subunit: str = "Paise") -> str:
    """
    Spell out a money amount for payslips.

    >>> amount_in_words(Decimal("102666.67"))
    'Rupees One Lakh Two Thousand Six Hundred Sixty Six and Sixty Seven Paise Only'
    """
    value = round_money(amount)
    if value < 0:
        return f"Minus {amount_in_words(-value, currency, subunit)}"
    whole = int(value)
    fraction = int((value - whole) * 100)
    words = f"{currency} {_integer_words(whole)}"
    if fraction:
        words += f" and {_below_hundred(fraction)} {subunit}"
    return f"{words} Only"
