"""
StockLens - Configuration and Constants

PURPOSE: Central configuration management for the application
SCOPE: Application settings, constants, and environment variables
DEPENDENCIES: None (foundational module)
"""

import logging
import os
from dataclasses import dataclass
from typing import Dict


@dataclass
class AppConfig:
    """Application configuration constants."""
    DB_FILE: str = os.environ.get('STOCKLENS_DB_FILE', 'stocklens.db')
    UPLOAD_DIR: str = os.environ.get('STOCKLENS_UPLOAD_DIR', 'uploads')
    DEFAULT_USER_ID: str = 'anon'

    # Receipt amount sanity bounds
    MAX_RECEIPT_AMOUNT: float = 100000.0
    IMPLIED_DECIMAL_THRESHOLD: int = 1000
    BOTTOM_SCAN_LINES: int = 8

    # OCR
    OCR_TIMEOUT_SECONDS: float = 30.0
    OCR_SPACE_API_KEY: str = os.environ.get('OCR_SPACE_API_KEY', '')
    OCR_SPACE_URL: str = 'https://api.ocr.space/parse/image'
    OCR_LANGUAGE: str = 'eng'

    # Historical prices
    ALPHA_VANTAGE_API_KEY: str = os.environ.get('ALPHA_VANTAGE_KEY', '')
    ALPHA_VANTAGE_URL: str = 'https://www.alphavantage.co/query'
    HTTP_TIMEOUT_SECONDS: float = 10.0
    CACHE_TTL_SECONDS: Dict[str, int] = None
    CACHE_PRUNE_DAYS: int = 180

    # Projections
    DEFAULT_ANNUAL_RETURN: float = 0.07

    def __post_init__(self):
        if self.CACHE_TTL_SECONDS is None:
            day = 24 * 60 * 60
            self.CACHE_TTL_SECONDS = {
                'daily': day,
                'weekly': 7 * day,
                'monthly': 30 * day,
                'yearly': 90 * day,
            }

    def ttl_for_interval(self, interval: str) -> int:
        """Freshness window in seconds for a sampling interval."""
        return self.CACHE_TTL_SECONDS.get(interval, self.CACHE_TTL_SECONDS['daily'])


# Global configuration instance
config = AppConfig()

# Set up logging
logging.basicConfig(
    level=os.environ.get('STOCKLENS_LOG_LEVEL', 'INFO').upper(),
    format='%(levelname)s [%(name)s] %(message)s'
)
logger = logging.getLogger(__name__)
