"""
Validation utilities for Budget Manager.

Centralizes validation logic for consistent error handling across the application.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

ACCOUNT_TYPES = ("bank", "credit", "savings", "investment")
TRANSACTION_TYPES = ("income", "expense", "transfer")
TRANSACTION_STATUSES = ("pending", "cleared", "duplicated")

HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")


def validate_required_fields(
    fields: Dict[str, Any],
    field_labels: Optional[Dict[str, str]] = None
) -> Tuple[bool, List[str]]:
    """
    Validate that all required fields have values.

    Args:
        fields: Dictionary of {field_name: value} to validate
        field_labels: Optional dictionary of {field_name: display_label} for better error messages

    Returns:
        Tuple of (all_valid, list_of_errors)

    Examples:
        >>> validate_required_fields({'name': 'Groceries', 'color': '#22c55e'})
        (True, [])

        >>> validate_required_fields({'from_account_id': None, 'to_account_id': 3})
        (False, ['From Account Id is required'])
    """
    errors = []
    labels = field_labels or {}

    for field_name, value in fields.items():
        label = labels.get(field_name, field_name.replace('_', ' ').title())

        if value is None:
            errors.append(f"{label} is required")
        elif isinstance(value, str) and not value.strip():
            errors.append(f"{label} is required")

    return len(errors) == 0, errors


def validate_choice(value: Any, choices: Tuple[str, ...], field_name: str = "Value") -> Tuple[bool, str]:
    """
    Validate that value is one of the allowed choices.

    Examples:
        >>> validate_choice('bank', ACCOUNT_TYPES, 'Account type')
        (True, '')

        >>> validate_choice('loan', ACCOUNT_TYPES, 'Account type')
        (False, 'Account type must be one of: bank, credit, savings, investment')
    """
    if value not in choices:
        return False, f"{field_name} must be one of: {', '.join(choices)}"
    return True, ""


def validate_color(color: str) -> Tuple[bool, str]:
    """
    Validate a #RRGGBB colour string.

    Examples:
        >>> validate_color('#3b82f6')
        (True, '')

        >>> validate_color('blue')
        (False, "Invalid color 'blue', expected #RRGGBB")
    """
    if not color or not HEX_COLOR_PATTERN.match(color):
        return False, f"Invalid color '{color}', expected #RRGGBB"
    return True, ""


def validate_date_range(
    start_date: Optional[str],
    end_date: Optional[str],
    start_label: str = "Start date",
    end_label: str = "End date"
) -> Tuple[bool, str]:
    """
    Validate that start_date is before or equal to end_date.

    Either bound may be omitted.

    Examples:
        >>> validate_date_range('2024-01-01', '2024-12-31')
        (True, '')

        >>> validate_date_range('2024-12-31', '2024-01-01')
        (False, 'Start date must be before or equal to End date')
    """
    if not start_date or not end_date:
        return True, ""

    if start_date > end_date:
        return False, f"{start_label} must be before or equal to {end_label}"
    return True, ""


def validate_amount(
    amount: Any,
    field_name: str = "Amount",
    allow_zero: bool = True,
    allow_negative: bool = False
) -> Tuple[bool, str]:
    """
    Validate amount value with configurable rules.

    Examples:
        >>> validate_amount(0.5)
        (True, '')

        >>> validate_amount(-2)
        (False, 'Amount cannot be negative')
    """
    if amount is None:
        return False, f"{field_name} is required"

    if not allow_zero and amount == 0:
        return False, f"{field_name} cannot be zero"

    if not allow_negative and amount < 0:
        return False, f"{field_name} cannot be negative"

    return True, ""
