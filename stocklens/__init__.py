"""
StockLens Package

PURPOSE: Package initialization for the receipt-to-investment pipeline
SCOPE: Module imports and package configuration
"""

__version__ = "1.0.0"
__description__ = "Receipt amount capture with historical investment projections"

# Package imports for easier access
from .config import config
from .cache import TimeSeriesCache
from .database import DatabaseManager
from .events import EventBus
from .managers import ReceiptManager
from .market_data import AlphaVantageClient, PriceHistoryService
from .ocr_processor import OCRProcessingService
from .parsers import ReceiptAmountParser, extract_amount
from .projections import ProjectionService, compute_cagr_from_series
from .validators import is_valid_amount, parse_manual_amount
from .workflow import CaptureWorkflow, CaptureState

__all__ = [
    "config",
    "TimeSeriesCache",
    "DatabaseManager",
    "EventBus",
    "ReceiptManager",
    "AlphaVantageClient",
    "PriceHistoryService",
    "OCRProcessingService",
    "ReceiptAmountParser",
    "extract_amount",
    "ProjectionService",
    "compute_cagr_from_series",
    "is_valid_amount",
    "parse_manual_amount",
    "CaptureWorkflow",
    "CaptureState",
]
