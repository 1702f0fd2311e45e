"""
StockLens - Investment Projections

PURPOSE: What a receipt's money could have become if invested instead
SCOPE: CAGR from price series, historical CAGR up to today, compound projections
       with preset fallback rates, multi-ticker fan-out
DEPENDENCIES: asyncio, math, market_data.py, presets.py

Illustrative compound-growth math only; not financial advice.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import config
from .market_data import PriceHistoryService
from .models import PricePoint
from .presets import preset_rate

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25


@dataclass(frozen=True)
class Projection:
    ticker: str
    rate: float
    future_value: float
    source: str  # 'historical', 'preset' or 'default'

    def to_dict(self) -> Dict[str, object]:
        return {
            'ticker': self.ticker,
            'rate': self.rate,
            'future_value': self.future_value,
            'source': self.source,
        }


def _cagr_between(start: PricePoint, end: PricePoint) -> Optional[float]:
    first, last = start.price, end.price
    if not first or not last or first <= 0 or last <= 0:
        return None
    years = (end.date - start.date).days / DAYS_PER_YEAR
    if not years > 0:
        return None
    return (last / first) ** (1 / years) - 1


def compute_cagr_from_series(series: Sequence[PricePoint]) -> Optional[float]:
    """Annualized growth between the first and last points of an oldest-first series.

    Returns None for fewer than two points, non-positive prices, or a
    non-positive time span.
    """
    if not series or len(series) < 2:
        return None
    return _cagr_between(series[0], series[-1])


def compound_future_value(principal: float, rate: float, years: float) -> float:
    """principal * (1 + rate) ** years"""
    return principal * math.pow(1 + rate, years)


def _years_before(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # 29 February
        return today.replace(year=today.year - years, day=28)


class ProjectionService:
    """Historical CAGR lookups and projections with a guaranteed numeric result."""

    def __init__(self, history: PriceHistoryService, default_rate: Optional[float] = None):
        self.history = history
        self.default_rate = default_rate if default_rate is not None else config.DEFAULT_ANNUAL_RETURN

    async def cagr_from_today(self, ticker: str, years: float,
                              today: Optional[date] = None) -> Optional[float]:
        """CAGR from the price at (today - years) to the most recent price."""
        today = today or date.today()
        try:
            years_int = max(1, int(years or 1))
        except (TypeError, ValueError):
            years_int = 1

        data: List[PricePoint] = []
        try:
            data = await self.history.get_historical_for_ticker(ticker, years_int, today=today)
        except Exception as e:
            logger.warning(f"Historical data unavailable for {ticker}: {e}")

        if len(data) < 2 and years_int <= 1:
            # Monthly series over two years usually exists when daily data does not
            try:
                longer = await self.history.get_historical_for_ticker(ticker, 2, today=today)
                if len(longer) >= 2:
                    data = longer
            except Exception as e:
                logger.warning(f"Two-year fallback unavailable for {ticker}: {e}")

        if len(data) < 2:
            return None

        target = _years_before(today, years_int)
        start = data[0]
        for point in data:
            if point.date <= target:
                start = point
            else:
                break

        return _cagr_between(start, data[-1])

    def fallback_rate(self, ticker: str) -> Tuple[float, str]:
        """Preset rate for the ticker, else the documented default."""
        rate = preset_rate(ticker)
        if rate is not None:
            return rate, 'preset'
        return self.default_rate, 'default'

    async def project_future_value(self, principal: float, ticker: str, years: float) -> Projection:
        """Project principal forward using historical CAGR, else the preset or default rate."""
        rate = await self.cagr_from_today(ticker, years)
        source = 'historical'
        if rate is None:
            rate, source = self.fallback_rate(ticker)
            logger.info(f"Using {source} rate {rate:.2%} for {ticker.upper()}")

        future_value = compound_future_value(principal, rate, years)
        return Projection(ticker=ticker.upper(), rate=rate, future_value=future_value, source=source)

    async def project_many(self, principal: float, tickers: Iterable[str],
                           years: float) -> Dict[str, Projection]:
        """Project across several tickers concurrently; one failure never affects the rest."""
        tickers = [ticker.upper() for ticker in tickers]
        results = await asyncio.gather(
            *(self.project_future_value(principal, ticker, years) for ticker in tickers),
            return_exceptions=True
        )

        projections = {}
        for ticker, result in zip(tickers, results):
            if isinstance(result, BaseException):
                logger.error(f"Projection failed for {ticker}: {result}")
                rate, source = self.fallback_rate(ticker)
                result = Projection(ticker, rate, compound_future_value(principal, rate, years), source)
            projections[ticker] = result
        return projections
