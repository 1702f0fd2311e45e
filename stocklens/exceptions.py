"""Custom exceptions for receipt capture and projection operations."""

from typing import Optional


class StockLensError(Exception):
    """Base exception for the receipt pipeline."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class InvalidAmountError(StockLensError):
    """Raised when a manually entered amount is not a finite number above zero."""

    def __init__(self, raw_value: Optional[str]):
        self.raw_value = raw_value
        super().__init__(f"Invalid amount: {raw_value!r}. Enter a valid number")


class PersistenceError(StockLensError):
    """Raised when the receipt store fails while saving a confirmed amount."""


class WorkflowStateError(StockLensError):
    """Raised when a capture action is not allowed in the current state."""

    def __init__(self, action: str, state: str):
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while capture is {state}")


class MarketDataError(StockLensError):
    """Raised when historical prices cannot be fetched or parsed."""


class OCRServiceUnavailable(StockLensError):
    """Raised when the OCR service cannot be reached or returns an error."""
