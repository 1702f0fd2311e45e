"""
StockLens - Historical Price Cache

PURPOSE: Keep fetched price series locally so the rate-limited data source is hit rarely
SCOPE: TTL lookups per sampling interval, overwrite-on-put, age-based pruning
DEPENDENCIES: aiosqlite, json, config.py, models.py

Entries are keyed by (ticker, interval, params). A memory layer sits in front
of the SQLite table; SQLite failures degrade to memory-only caching.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import aiosqlite

from .config import config
from .models import CachedSeriesEntry, PricePoint

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _format_timestamp(moment: datetime) -> str:
    return _utc(moment).isoformat(timespec='microseconds')


class TimeSeriesCache:
    """TTL cache of historical price series backed by the price_cache table."""

    def __init__(self, db_file: str, ttl_for_interval: Optional[Callable[[str], int]] = None):
        self.db_file = db_file
        self._ttl_for_interval = ttl_for_interval or config.ttl_for_interval
        self._memory: Dict[CacheKey, CachedSeriesEntry] = {}

    @staticmethod
    def make_key(ticker: str, interval: str, params: str = '') -> CacheKey:
        return (ticker.upper(), interval, params or '')

    def is_fresh(self, entry: CachedSeriesEntry, now: Optional[datetime] = None) -> bool:
        """True while the entry is younger than its interval's freshness window."""
        now = _utc(now or datetime.now(timezone.utc))
        ttl = timedelta(seconds=self._ttl_for_interval(entry.interval))
        return now - _utc(entry.fetched_at) < ttl

    async def get(self, ticker: str, interval: str, params: str = '') -> Optional[List[PricePoint]]:
        """Return the cached series if it is fresh, None on a miss."""
        entry = await self.get_entry(ticker, interval, params)
        if entry is None:
            logger.debug(f"Cache miss: {ticker} {interval}")
            return None
        if not self.is_fresh(entry):
            logger.debug(f"Cache stale: {ticker} {interval} fetched at {entry.fetched_at}")
            return None
        logger.debug(f"Cache hit: {ticker} {interval}")
        return list(entry.series)

    async def get_entry(self, ticker: str, interval: str, params: str = '') -> Optional[CachedSeriesEntry]:
        """Return the stored entry regardless of freshness."""
        key = self.make_key(ticker, interval, params)
        entry = self._memory.get(key)
        if entry is not None:
            return entry

        try:
            async with aiosqlite.connect(self.db_file) as conn:
                cursor = await conn.execute(
                    'SELECT fetched_at, payload FROM price_cache '
                    'WHERE ticker = ? AND interval = ? AND params = ? LIMIT 1',
                    key
                )
                row = await cursor.fetchone()
        except Exception as e:
            logger.warning(f"Price cache read failed for {key}: {e}")
            return None

        if not row:
            return None

        try:
            series = [PricePoint.from_dict(item) for item in json.loads(row[1])]
            fetched_at = _utc(datetime.fromisoformat(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache row for {key}: {e}")
            return None

        entry = CachedSeriesEntry(
            ticker=key[0], interval=interval, params=key[2],
            fetched_at=fetched_at, series=series
        )
        self._memory[key] = entry
        return entry

    async def put(self, ticker: str, interval: str, series: List[PricePoint],
                  fetched_at: Optional[datetime] = None, params: str = '') -> CachedSeriesEntry:
        """Store a series, overwriting any entry with the same key."""
        key = self.make_key(ticker, interval, params)
        entry = CachedSeriesEntry(
            ticker=key[0], interval=interval, params=key[2],
            fetched_at=_utc(fetched_at or datetime.now(timezone.utc)),
            series=list(series)
        )
        self._memory[key] = entry

        try:
            async with aiosqlite.connect(self.db_file) as conn:
                await conn.execute(
                    'INSERT OR REPLACE INTO price_cache (ticker, interval, params, fetched_at, payload) '
                    'VALUES (?, ?, ?, ?, ?)',
                    (*key, _format_timestamp(entry.fetched_at),
                     json.dumps([point.to_dict() for point in entry.series]))
                )
                await conn.commit()
            logger.info(f"Cached {len(entry.series)} {interval} points for {key[0]}")
        except Exception as e:
            logger.warning(f"Price cache write failed for {key}, keeping in memory only: {e}")

        return entry

    async def prune_older_than(self, days: int) -> int:
        """Delete entries fetched more than `days` ago. Best-effort; returns rows removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        for key in [k for k, e in self._memory.items() if _utc(e.fetched_at) < cutoff]:
            del self._memory[key]

        try:
            async with aiosqlite.connect(self.db_file) as conn:
                cursor = await conn.execute(
                    'DELETE FROM price_cache WHERE fetched_at < ?', (_format_timestamp(cutoff),)
                )
                await conn.commit()
                removed = cursor.rowcount
        except Exception as e:
            logger.warning(f"Price cache prune failed: {e}")
            return 0

        logger.info(f"Pruned {removed} price cache entries older than {days} days")
        return removed
