"""
StockLens - Data Validation

PURPOSE: Amount sanity checks and receipt input validation
SCOPE: OCR amount bounds, manual entry parsing, form sanitization
DEPENDENCIES: math, parsers.py, config.py
"""

import math
from decimal import Decimal
from numbers import Real
from typing import Any, Dict, List, Optional, Tuple

from .config import config
from .parsers import parse_amount_token


def is_valid_amount(amount: Any, ceiling: Optional[float] = None) -> bool:
    """Return True for finite positive amounts at or below the realistic ceiling."""
    if amount is None or isinstance(amount, bool) or not isinstance(amount, (Real, Decimal)):
        return False
    if not math.isfinite(amount):
        return False
    if amount <= 0:
        return False

    limit = config.MAX_RECEIPT_AMOUNT if ceiling is None else ceiling
    return amount <= limit


def parse_manual_amount(text: Optional[str]) -> Optional[float]:
    """Parse a user-typed total using the same separator rules as OCR tokens."""
    if text is None:
        return None
    value = parse_amount_token(str(text).strip())
    if value is None or not math.isfinite(value) or value <= 0:
        return None
    return value


def validate_receipt_data(receipt_data: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Validate receipt update data and return validation result with error messages."""
    errors = []

    if 'user_id' in receipt_data and not str(receipt_data.get('user_id') or '').strip():
        errors.append("User is required")

    amount = receipt_data.get('total_amount')
    if amount is not None and not is_valid_amount(amount):
        errors.append("Amount must be greater than 0 and realistic")

    synced = receipt_data.get('synced')
    if synced is not None and not isinstance(synced, bool):
        errors.append("Synced must be true or false")

    return len(errors) == 0, errors


def sanitize_form_data(form_data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip text fields and treat blank ones as not supplied.

    A blank owner on a receipt edit means "leave it alone", not "clear it".
    """
    return {
        key: (value.strip() or None) if isinstance(value, str) else value
        for key, value in form_data.items()
    }
