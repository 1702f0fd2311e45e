"""
StockLens - Historical Market Data

PURPOSE: Fetch historical price series and serve them through the local cache
SCOPE: Alpha Vantage client with retry, cache-first history lookups,
       in-flight de-duplication, startup prefetch and prune
DEPENDENCIES: httpx, asyncio, cache.py, events.py, presets.py
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from .cache import CacheKey, TimeSeriesCache
from .config import config
from .events import HISTORICAL_UPDATED, EventBus
from .exceptions import MarketDataError
from .models import PricePoint
from .presets import PREFETCH_TICKERS

logger = logging.getLogger(__name__)

SERIES_FUNCTIONS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    'daily': ('TIME_SERIES_DAILY_ADJUSTED', ('Time Series (Daily)', 'Daily Time Series')),
    'weekly': ('TIME_SERIES_WEEKLY_ADJUSTED', ('Weekly Adjusted Time Series', 'Weekly Time Series')),
    'monthly': ('TIME_SERIES_MONTHLY_ADJUSTED', ('Monthly Adjusted Time Series', 'Monthly Time Series')),
}


class AlphaVantageClient:
    """Historical price fetcher backed by the Alpha Vantage REST API."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, max_attempts: int = 3,
                 backoff_seconds: float = 0.25):
        self.api_key = api_key if api_key is not None else config.ALPHA_VANTAGE_API_KEY
        self.base_url = base_url or config.ALPHA_VANTAGE_URL
        self.timeout = timeout or config.HTTP_TIMEOUT_SECONDS
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def fetch_series(self, ticker: str, interval: str) -> List[PricePoint]:
        """Fetch a full adjusted series for ticker, oldest point first."""
        if not self.api_key:
            raise MarketDataError("Alpha Vantage API key not configured. Set ALPHA_VANTAGE_KEY.")
        if interval not in SERIES_FUNCTIONS:
            raise MarketDataError(f"Unsupported interval: {interval}")

        function, _ = SERIES_FUNCTIONS[interval]
        params = {'function': function, 'symbol': ticker, 'apikey': self.api_key}
        if interval == 'daily':
            params['outputsize'] = 'full'

        payload = await self._fetch_json(params)
        return self.parse_series(payload, interval)

    async def _fetch_json(self, params: Dict[str, str]) -> Dict[str, Any]:
        """GET with exponential backoff between attempts."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.base_url, params=params)
                    response.raise_for_status()
                    data = response.json()

                if 'Error Message' in data:
                    raise MarketDataError(f"Alpha Vantage API error: {data['Error Message']}")
                if 'Note' in data or 'Information' in data:
                    # Rate limit or plan notice
                    raise MarketDataError(f"Alpha Vantage note: {data.get('Note') or data.get('Information')}")
                return data

            except (httpx.HTTPError, ValueError, MarketDataError) as e:
                last_error = e
                logger.warning(f"Alpha Vantage attempt {attempt + 1}/{self.max_attempts} failed: {e}")
                if attempt + 1 < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise MarketDataError(f"Alpha Vantage request failed: {last_error}") from last_error

    @staticmethod
    def parse_series(payload: Dict[str, Any], interval: str) -> List[PricePoint]:
        """Normalize an Alpha Vantage time series payload into PricePoints."""
        _, series_keys = SERIES_FUNCTIONS[interval]
        series = next((payload[key] for key in series_keys if key in payload), None)
        if not isinstance(series, dict):
            raise MarketDataError(f"Unexpected Alpha Vantage {interval} response")

        points = []
        for day, row in series.items():
            try:
                adjusted = row.get('5. adjusted close')
                points.append(PricePoint(
                    date=date.fromisoformat(day),
                    close=float(row['4. close']),
                    adjusted_close=float(adjusted) if adjusted else None,
                ))
            except (KeyError, ValueError, AttributeError) as e:
                logger.debug(f"Skipping malformed {interval} row {day}: {e}")

        return sorted(points, key=lambda point: point.date)


class PriceHistoryService:
    """Cache-first access to historical prices."""

    def __init__(self, cache: TimeSeriesCache, fetcher: Any = None,
                 event_bus: Optional[EventBus] = None,
                 prefetch_tickers: Iterable[str] = PREFETCH_TICKERS):
        self.cache = cache
        self.fetcher = fetcher or AlphaVantageClient()
        self.event_bus = event_bus
        self.prefetch_tickers = tuple(prefetch_tickers)
        self._in_flight: Dict[CacheKey, asyncio.Future] = {}
        self._prefetch_task: Optional[asyncio.Task] = None

    async def get_series(self, ticker: str, interval: str, params: str = '') -> List[PricePoint]:
        """Serve from cache, otherwise fetch once per key and store.

        A stale entry is returned right away while a single background fetch
        replaces it. Only a miss waits on the network.
        """
        key = self.cache.make_key(ticker, interval, params)
        entry = await self.cache.get_entry(*key)
        if entry is not None and entry.series:
            if self.cache.is_fresh(entry):
                return list(entry.series)
            if key not in self._in_flight:
                logger.info(f"Refreshing stale {interval} series for {ticker} in the background")
                self._start_fetch(key).add_done_callback(self._log_refresh_failure)
            return list(entry.series)

        return await asyncio.shield(self._start_fetch(key))

    def _start_fetch(self, key: CacheKey) -> asyncio.Future:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        return task

    @staticmethod
    def _log_refresh_failure(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background refresh failed: {error}")

    async def _fetch_and_store(self, key: CacheKey) -> List[PricePoint]:
        ticker, interval, params = key
        try:
            series = await self.fetcher.fetch_series(ticker, interval)
            if not series:
                raise MarketDataError(f"No {interval} data returned for {ticker}")
        except Exception as e:
            stale = await self.cache.get_entry(ticker, interval, params)
            if stale is not None and stale.series:
                logger.warning(f"Serving stale {interval} series for {ticker}: {e}")
                return list(stale.series)
            if isinstance(e, MarketDataError):
                raise
            raise MarketDataError(f"Failed to fetch historical data for {ticker}: {e}") from e

        await self.cache.put(ticker, interval, series, params=params)
        if self.event_bus is not None:
            self.event_bus.publish(HISTORICAL_UPDATED, {'ticker': ticker, 'interval': interval})
        return series

    async def get_historical_for_ticker(self, ticker: str, years: float = 5,
                                        today: Optional[date] = None) -> List[PricePoint]:
        """History covering roughly `years` back: daily for a year or less, monthly otherwise."""
        today = today or date.today()
        if years <= 1:
            daily = await self.get_series(ticker, 'daily')
            cutoff = today - timedelta(days=365)
            return [point for point in daily if point.date >= cutoff]

        monthly = await self.get_series(ticker, 'monthly')
        months_needed = max(int(12 * years), 12)
        return monthly[-months_needed:]

    def ensure_prefetch(self) -> asyncio.Task:
        """Start warming the cache for the preset tickers. Safe to call repeatedly."""
        if self._prefetch_task is None:
            self._prefetch_task = asyncio.ensure_future(self._prefetch())
        return self._prefetch_task

    async def _prefetch(self) -> int:
        warmed = 0
        for ticker in self.prefetch_tickers:
            try:
                await self.get_series(ticker, 'monthly')
                warmed += 1
            except Exception as e:
                logger.warning(f"Prefetch failed for {ticker}: {e}")
        logger.info(f"Prefetch warmed {warmed}/{len(self.prefetch_tickers)} tickers")
        return warmed

    async def prune_cache(self, days: Optional[int] = None) -> int:
        """Best-effort sweep of old cache entries."""
        return await self.cache.prune_older_than(days if days is not None else config.CACHE_PRUNE_DAYS)
