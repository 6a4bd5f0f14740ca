"""
Data conversion and transformation utilities.

Provides lenient type conversion for AppFolio report payloads, where
dates, amounts and flags arrive as strings and cannot be trusted as native
types. Every converter returns None (or the given default) instead of
raising on bad input.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import dateutil.parser


_AMOUNT_STRIP = re.compile(r'[^0-9.\-]')
_GL_PREFIX = re.compile(r'^(\d+)')


def coalesce(item: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """
    Return the first non-None value among the given keys.

    Args:
        item: Source record
        *keys: Candidate keys, in priority order
        default: Value returned when every key is missing or None

    Returns:
        First present value or default

    Example:
        >>> coalesce({'name': None, 'company_name': 'Acme'}, 'name', 'company_name')
        'Acme'
    """
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return default


def convert_to_bool(value: Any, default: bool = False) -> bool:
    """
    Convert a provider flag to bool.

    Handles "Yes"/"No", "true"/"false", "1"/"0" strings as well as
    actual booleans and numbers.

    Args:
        value: Value to convert
        default: Result for None/empty input

    Returns:
        bool: Converted boolean value
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('yes', 'true', '1', 'y')
    return bool(value)


def convert_to_int(value: Any) -> Optional[int]:
    """
    Convert value to integer, handling None and empty strings.

    Args:
        value: Value to convert

    Returns:
        int or None: Converted integer or None if conversion fails
    """
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (ValueError, TypeError, OverflowError):
        return None


def convert_to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert value to Decimal, handling None and empty strings.

    Uses string conversion to preserve precision for monetary values.

    Args:
        value: Value to convert

    Returns:
        Decimal or None: Converted Decimal or None if conversion fails
    """
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return result if result.is_finite() else None


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a currency amount that may carry symbols or thousands separators.

    Args:
        value: Amount such as 1200, "1200.50", "$1,200.50" or "-45.00"

    Returns:
        Decimal or None if the value holds no parsable number
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return convert_to_decimal(value)
    if isinstance(value, str):
        cleaned = _AMOUNT_STRIP.sub('', value)
        if cleaned in ('', '-', '.', '-.'):
            return None
        return convert_to_decimal(cleaned)
    return None


def convert_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert value to a naive Python datetime.

    Handles multiple input types:
    - None/empty string: returns None
    - datetime object: returned as-is (timezone dropped)
    - date object: midnight of that day
    - string: parsed using dateutil.parser

    Args:
        value: Datetime string, datetime/date object, or None

    Returns:
        datetime or None: Parsed datetime or None if parsing fails
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        return None
    try:
        return dateutil.parser.parse(value).replace(tzinfo=None)
    except (ValueError, TypeError, OverflowError):
        return None


def convert_to_date(value: Any) -> Optional[date]:
    """
    Convert value to a Python date.

    Args:
        value: Date string, date/datetime object, or None

    Returns:
        date or None: Parsed date or None if parsing fails
    """
    parsed = convert_to_datetime(value)
    return parsed.date() if parsed else None


def digits_only(value: Any) -> str:
    """Strip everything but digits (used for phone comparison)."""
    if value is None:
        return ''
    return re.sub(r'\D', '', str(value))


def extract_gl_account_number(item: Dict[str, Any]) -> Optional[str]:
    """
    Extract the GL account number from a bill or expense record.

    AppFolio sends the account under several keys, sometimes as a nested
    object, and often in "6210 - Water" form. Only the numeric prefix is kept.

    Args:
        item: Source record

    Returns:
        GL account number string, or None when absent

    Example:
        >>> extract_gl_account_number({'account': '6210 - Water'})
        '6210'
    """
    gl_account = coalesce(item, 'gl_account_number', 'account_number', 'gl_account', 'expense_account', 'account')

    if isinstance(gl_account, dict):
        gl_account = coalesce(gl_account, 'number', 'account_number')

    if gl_account is None or gl_account == '':
        return None

    match = _GL_PREFIX.match(str(gl_account).strip())
    if match:
        return match.group(1)
    return str(gl_account).strip()
