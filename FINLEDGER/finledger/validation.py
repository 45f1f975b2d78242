"""
Input Validation and Sanitization Module
Handles validation of amounts, dates, account codes and journal lines.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple
import logging

from .errors import ValidationError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500
ACCOUNT_CODE_PATTERN = r'^[A-Za-z0-9_-]{2,20}$'


def sanitize_string(value: Any, max_length: Optional[int] = None) -> str:
    """Sanitize a string input."""
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)

    # Remove null bytes
    value = value.replace('\x00', '').strip()

    if max_length and len(value) > max_length:
        value = value[:max_length]
        logger.warning(f"String truncated to {max_length} characters")

    return value


def validate_date(date_str: Any) -> Tuple[bool, Optional[date]]:
    """Validate date string in YYYY-MM-DD format."""
    if isinstance(date_str, datetime):
        return True, date_str.date()
    if isinstance(date_str, date):
        return True, date_str
    try:
        return True, datetime.strptime(str(date_str).strip(), "%Y-%m-%d").date()
    except (ValueError, AttributeError):
        return False, None


def parse_amount(amount: Any) -> Tuple[bool, Optional[int]]:
    """
    Parse an amount expressed in major units ("1,250.50", 1250.5) into
    integer minor units. Values with more than two decimal places are
    rejected rather than rounded.
    """
    if amount is None or isinstance(amount, bool):
        return False, None
    try:
        cleaned = re.sub(r'[,\s$€£]|KES|KSh', '', str(amount).strip())
        value = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return False, None
    if not value.is_finite() or value < 0:
        return False, None
    minor = value * 100
    if minor != minor.to_integral_value():
        return False, None
    return True, int(minor)


def format_amount(minor_units: int) -> str:
    """Render minor units as a major-unit string, e.g. 123456 -> '1,234.56'."""
    sign = "-" if minor_units < 0 else ""
    whole, cents = divmod(abs(int(minor_units)), 100)
    return f"{sign}{whole:,}.{cents:02d}"


def validate_account_code(code: Any) -> bool:
    """Validate account code format."""
    if not code or not isinstance(code, str):
        return False
    return bool(re.match(ACCOUNT_CODE_PATTERN, code.strip()))


def validate_account_name(name: Any) -> bool:
    if not name or not isinstance(name, str):
        return False
    name = name.strip()
    if len(name) < 2 or len(name) > 100:
        return False
    # Printable characters only
    return all(c.isprintable() for c in name)


def validate_actor(user: Any) -> Tuple[bool, Optional[str]]:
    if user is None or not str(user).strip():
        return False, "An acting user is required for this operation"
    return True, None


def require_actor(user: Any) -> str:
    ok, msg = validate_actor(user)
    if not ok:
        raise ValidationError(msg)
    return str(user)


def _is_minor_units(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_journal_entry_lines(lines: List[Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate journal entry lines (objects with debit/credit attributes or
    (code, debit, credit) tuples). Amounts are integer minor units and must
    balance exactly.
    """
    if not lines or len(lines) < 2:
        return False, "Journal entry must have at least 2 lines (debit and credit)"

    total_debit = 0
    total_credit = 0
    for idx, line in enumerate(lines, start=1):
        try:
            if hasattr(line, 'debit'):
                debit, credit = line.debit, line.credit
            else:
                _, debit, credit = line
        except (TypeError, ValueError):
            return False, f"Line {idx}: invalid journal line format"

        if not _is_minor_units(debit) or not _is_minor_units(credit):
            return False, f"Line {idx}: amounts must be whole minor currency units"
        if debit < 0 or credit < 0:
            return False, f"Line {idx}: debit and credit amounts cannot be negative"
        if debit > 0 and credit > 0:
            return False, f"Line {idx}: a line cannot have both debit and credit"
        if debit == 0 and credit == 0:
            return False, f"Line {idx}: a line must have either debit or credit"

        total_debit += debit
        total_credit += credit

    if total_debit != total_credit:
        return False, (
            f"Debits ({format_amount(total_debit)}) must equal credits ({format_amount(total_credit)})"
        )

    return True, None
