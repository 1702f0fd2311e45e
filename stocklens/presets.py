"""
StockLens - Stock Presets

PURPOSE: Reference tickers for projections and their fallback annual returns
SCOPE: Static data, loaded at import time
DEPENDENCIES: models.py
"""

from typing import Dict, Optional, Tuple

from .models import StockPreset

PREFETCH_TICKERS: Tuple[str, ...] = (
    'NVDA', 'AAPL', 'MSFT', 'TSLA', 'NKE', 'AMZN', 'GOOGL', 'META', 'JPM', 'UNH'
)

# Used when no historical series is available
PRESET_RATES: Dict[str, float] = {
    'NVDA': 0.26,
    'AAPL': 0.11,
    'MSFT': 0.18,
    'TSLA': 0.25,
    'NKE': 0.08,
    'AMZN': 0.17,
    'GOOGL': 0.16,
    'META': 0.20,
    'JPM': 0.10,
    'UNH': 0.12,
}

NAME_MAP: Dict[str, str] = {
    'NVDA': 'NVIDIA',
    'AAPL': 'Apple',
    'MSFT': 'Microsoft',
    'TSLA': 'Tesla',
    'NKE': 'Nike',
    'AMZN': 'Amazon',
    'GOOGL': 'Alphabet',
    'META': 'Meta',
    'JPM': 'JPMorgan Chase',
    'UNH': 'UnitedHealth',
}

STOCK_PRESETS: Tuple[StockPreset, ...] = tuple(
    StockPreset(name=NAME_MAP.get(ticker, ticker), ticker=ticker, return_rate=PRESET_RATES[ticker])
    for ticker in PREFETCH_TICKERS
)


def preset_rate(ticker: str) -> Optional[float]:
    """Fallback annual return for a ticker, case-insensitive."""
    return PRESET_RATES.get(ticker.upper())
