"""
StockLens - Receipt Amount Parser

PURPOSE: Turn noisy OCR text into a best-guess receipt total
SCOPE: Token normalization, keyword-line extraction, bottom-up fallback scan
DEPENDENCIES: re, logging, config.py
"""

import logging
import re
from typing import List, Optional, Tuple

from .config import config

logger = logging.getLogger(__name__)

KEYWORD_PATTERN = re.compile(
    r'\b(grand total|total payable|total|amount due|amount|amt|balance due|balance|to pay|sum)\b',
    re.IGNORECASE
)
SUBTOTAL_PATTERN = re.compile(r'\bsub\s*-?\s*total\b', re.IGNORECASE)
IGNORED_LINE_PATTERN = re.compile(r'\b(change|cash change|saved|savings)\b', re.IGNORECASE)
MONEY_TOKEN_PATTERN = re.compile(r'\d[\d.,]*\d|\d')
CURRENCY = r'(?:[£$€¥]|EUR|USD|GBP|CAD|AUD|CHF|JPY)'
STANDALONE_AMOUNT_PATTERN = re.compile(
    rf'^{CURRENCY}?\s*(\d[\d.,]*\d|\d)\s*{CURRENCY}?$', re.IGNORECASE
)
NUMBER_PATTERN = re.compile(r'-?(?:\d+(?:\.\d*)?|\.\d+)')


class ReceiptAmountParser:
    """Extracts the total amount from receipt OCR text."""

    def __init__(self, implied_decimal_threshold: Optional[int] = None,
                 bottom_scan_lines: Optional[int] = None):
        self.implied_decimal_threshold = (
            implied_decimal_threshold if implied_decimal_threshold is not None
            else config.IMPLIED_DECIMAL_THRESHOLD
        )
        self.bottom_scan_lines = (
            bottom_scan_lines if bottom_scan_lines is not None
            else config.BOTTOM_SCAN_LINES
        )

    @staticmethod
    def parse_amount_token(amount_str: str) -> Optional[float]:
        """Parse a monetary token, resolving comma-as-decimal versus thousands separators.

        A comma is read as the decimal separator only when it is the single
        comma, no dot is present and at most two digits follow it. Every other
        comma is a thousands separator. A comma after a dot (European "1.234,56")
        is ambiguous and the token is rejected.
        """
        if not amount_str:
            return None

        # Remove currency symbols, codes and whitespace
        cleaned = re.sub(r'[^\d.,-]', '', amount_str)
        if not any(ch.isdigit() for ch in cleaned):
            return None

        if '.' in cleaned and cleaned.rfind(',') > cleaned.find('.'):
            logger.debug(f"Ambiguous separators in amount: {amount_str}")
            return None

        if cleaned.count(',') == 1 and '.' not in cleaned and len(cleaned.split(',')[1]) <= 2:
            cleaned = cleaned.replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')

        if not NUMBER_PATTERN.fullmatch(cleaned):
            logger.debug(f"Could not parse amount: {amount_str}")
            return None
        return float(cleaned)

    @staticmethod
    def normalize_line(line: str) -> str:
        """Fix common OCR letter/digit confusions, only inside tokens that contain digits."""
        parts = re.split(r'(\s+)', line)
        fixed = []
        for part in parts:
            if re.search(r'\d', part):
                part = re.sub(r'[Oo]', '0', part)
                part = re.sub(r'[lI]', '1', part)
            fixed.append(part)
        return ''.join(fixed)

    def extract_amount(self, text: str) -> Optional[float]:
        """Return the best-guess total for the receipt text, or None."""
        if not text or not text.strip():
            return None

        raw_lines = [line.strip() for line in text.splitlines()]
        lines = [self.normalize_line(line) for line in raw_lines]

        amount = self._from_keyword_lines(raw_lines, lines)
        if amount is not None:
            return amount

        amount = self._from_bottom_scan(lines)
        if amount is not None:
            return amount

        logger.debug("No amount found in OCR text")
        return None

    def _keyword_line_indexes(self, raw_lines: List[str]) -> List[int]:
        primary, subtotals = [], []
        for index, line in enumerate(raw_lines):
            if not line or IGNORED_LINE_PATTERN.search(line):
                continue
            if SUBTOTAL_PATTERN.search(line):
                subtotals.append(index)
            elif KEYWORD_PATTERN.search(line):
                primary.append(index)
        # Subtotals only when nothing better exists
        return primary + subtotals

    def _from_keyword_lines(self, raw_lines: List[str], lines: List[str]) -> Optional[float]:
        for index in self._keyword_line_indexes(raw_lines):
            found = self._rightmost_amount(lines[index])
            if found is None and index + 1 < len(lines):
                # Label and value are often split across two lines
                found = self._standalone_amount(lines[index + 1])
            if found is None:
                continue

            value, had_separator = found
            if not had_separator and value >= self.implied_decimal_threshold:
                inferred = round(value / 100, 2)
                logger.info(f"Inferred implied decimal: {value:g} -> {inferred}")
                return inferred
            logger.debug(f"Amount from keyword line {index}: {value}")
            return value
        return None

    def _from_bottom_scan(self, lines: List[str]) -> Optional[float]:
        non_empty = [line for line in lines if line]
        for line in reversed(non_empty[-self.bottom_scan_lines:]):
            found = self._standalone_amount(line)
            if found is not None:
                logger.debug(f"Amount from bottom scan: {found[0]}")
                return found[0]
        return None

    def _rightmost_amount(self, line: str) -> Optional[Tuple[float, bool]]:
        for token in reversed(MONEY_TOKEN_PATTERN.findall(line)):
            value = self.parse_amount_token(token)
            if value is not None and value > 0:
                return value, ('.' in token or ',' in token)
        return None

    def _standalone_amount(self, line: str) -> Optional[Tuple[float, bool]]:
        match = STANDALONE_AMOUNT_PATTERN.match(line.strip())
        if not match:
            return None
        token = match.group(1)
        value = self.parse_amount_token(token)
        if value is None or value <= 0:
            return None
        return value, ('.' in token or ',' in token)


def extract_amount(ocr_text: str) -> Optional[float]:
    """Best-guess monetary total for OCR text using the configured thresholds."""
    return ReceiptAmountParser().extract_amount(ocr_text)


def parse_amount_token(amount_str: str) -> Optional[float]:
    """Module-level shortcut for ReceiptAmountParser.parse_amount_token."""
    return ReceiptAmountParser.parse_amount_token(amount_str)
