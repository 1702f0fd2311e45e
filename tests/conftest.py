import asyncio
from typing import Dict, List

import pytest

from stocklens.cache import TimeSeriesCache
from stocklens.database import DatabaseManager
from stocklens.events import EventBus
from stocklens.managers import ReceiptManager
from stocklens.models import OcrResult, PricePoint


class FakeOCR:
    """OCR stand-in returning canned text, optionally after a delay."""

    def __init__(self, text: str = '', delay: float = 0.0, error: Exception = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.calls = 0

    async def recognize(self, photo):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return OcrResult(text=self.text, success=bool(self.text))


class FakeFetcher:
    """Historical price source keyed by (ticker, interval)."""

    def __init__(self, series: Dict[tuple, List[PricePoint]] = None, delay: float = 0.0,
                 error: Exception = None):
        self.series = series or {}
        self.delay = delay
        self.error = error
        self.calls = []

    async def fetch_series(self, ticker: str, interval: str) -> List[PricePoint]:
        self.calls.append((ticker, interval))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.series.get((ticker, interval), []))


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / 'stocklens_test.db')
    asyncio.run(DatabaseManager(path).initialize_database())
    return path


@pytest.fixture
def receipt_manager(db_file):
    return ReceiptManager(db_file)


@pytest.fixture
def price_cache(db_file):
    return TimeSeriesCache(db_file)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    events = []
    event_bus.subscribe('receipts-changed', lambda payload: events.append(('receipts-changed', payload)))
    event_bus.subscribe('historical-updated', lambda payload: events.append(('historical-updated', payload)))
    return events


@pytest.fixture
def fake_ocr():
    return FakeOCR()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()
