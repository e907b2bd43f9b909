"""
Utility functions for Budget Manager
"""
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from dateutil import parser as date_parser

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_amount(amount_str: Union[str, int, float, Decimal]) -> Decimal:
    """
    Parse an amount coming from a bank CSV export.

    Literal quote characters and spaces are stripped and a decimal comma is
    turned into a decimal point. Thousands separators are NOT removed, so
    "1.234,56" is rejected rather than silently misread.

    Examples:
        "123,45" -> Decimal("123.45")
        '"-50,00"' -> Decimal("-50.00")
        "1234.56" -> Decimal("1234.56")

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(amount_str, Decimal):
        amount = amount_str
    elif isinstance(amount_str, (int, float)) and not isinstance(amount_str, bool):
        amount = Decimal(str(amount_str))
    else:
        if not amount_str or not isinstance(amount_str, str):
            raise ValueError("Amount is required and must be a string")

        cleaned = amount_str.replace('"', "").strip()
        cleaned = cleaned.replace(" ", "")
        cleaned = cleaned.replace("\xa0", "")  # Non-breaking space
        cleaned = cleaned.replace(",", ".")

        try:
            amount = Decimal(cleaned)
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount format: '{amount_str}'") from e

    if not amount.is_finite():
        raise ValueError(f"Invalid amount format: '{amount_str}'")

    return amount


def classify_type(amount: Decimal) -> str:
    """Imported rows are income when non-negative, expense otherwise."""
    return "income" if amount >= 0 else "expense"


def _day_first(parts: list, raw: str) -> str:
    if len(parts) != 3 or not all(p.strip().isdigit() for p in parts):
        raise ValueError(f"Invalid date format: '{raw}'")

    day, month, year = (p.strip() for p in parts)
    iso_date = f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    try:
        datetime.strptime(iso_date, "%Y-%m-%d")
    except ValueError as e:
        raise ValueError(f"Invalid date: '{raw}'") from e

    return f"{iso_date}T00:00:00.000Z"


def parse_import_date(raw: str) -> str:
    """
    Normalize a CSV date to an ISO-8601 timestamp at midnight UTC.

    Rules, in order:
        1. contains "T" or "Z"  -> returned unchanged
        2. YYYY-MM-DD           -> YYYY-MM-DDT00:00:00.000Z
        3. contains "-"         -> read as DD-MM-YYYY
        4. contains "/"         -> read as DD/MM/YYYY
        5. anything else        -> read as DD-MM-YYYY

    Raises:
        ValueError: If the value cannot be read with the matching rule
    """
    if not raw or not isinstance(raw, str):
        raise ValueError("Date is required")

    value = raw.strip()

    if "T" in value or "Z" in value:
        return value
    if ISO_DATE_PATTERN.match(value):
        return f"{value}T00:00:00.000Z"
    if "-" in value:
        return _day_first(value.split("-"), raw)
    if "/" in value:
        return _day_first(value.split("/"), raw)
    return _day_first(value.split("-"), raw)


def to_timestamp(value: Any) -> str:
    """
    Canonical storage form for ledger dates: YYYY-MM-DDTHH:MM:SS.mmmZ (UTC).

    Naive values are taken as UTC. Plain dates become midnight.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            dt = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid date: '{value}'") from e
    else:
        raise ValueError("Date is required")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)

    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def from_timestamp(value: str) -> datetime:
    """Parse a stored ledger timestamp back into an aware datetime."""
    return date_parser.isoparse(value)


def utc_now() -> str:
    return to_timestamp(datetime.now(timezone.utc))


def to_money_str(value: Any) -> Optional[str]:
    """
    Decimal-safe text form used for every stored amount.

    Equal values always map to the same text ("-50", "-50.00" -> "-50") so
    amounts can be compared with plain SQL equality.
    """
    if value is None:
        return None
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def from_money_str(value: Optional[str]) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def transfer_direction(transaction: dict) -> Optional[str]:
    """Outgoing/incoming marker for a transfer leg, derived from the amount sign."""
    if transaction.get("type") != "transfer":
        return None
    amount = Decimal(str(transaction["amount"]))
    if amount == 0:
        # No sign to read, fall back to which side of the transfer the row sits on
        is_outgoing = transaction.get("account_id") == transaction.get("from_account_id")
        return "outgoing" if is_outgoing else "incoming"
    return "outgoing" if amount < 0 else "incoming"
