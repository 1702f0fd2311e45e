"""
StockLens - Domain Models

PURPOSE: Typed values passed between the parser, workflow, cache and projections
SCOPE: Receipt records, captured photos, price points and cache entries
DEPENDENCIES: dataclasses, datetime
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass
class ReceiptRecord:
    """A stored receipt. Drafts have no total until the user confirms one."""
    user_id: str
    image_uri: Optional[str] = None
    total_amount: Optional[float] = None
    ocr_data: Optional[str] = None
    synced: bool = False
    id: Optional[int] = None
    date_scanned: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ReceiptRecord':
        amount = row.get('total_amount')
        return cls(
            id=int(row['id']),
            user_id=str(row.get('user_id', '')),
            image_uri=row.get('image_uri'),
            total_amount=float(amount) if amount is not None else None,
            ocr_data=row.get('ocr_data'),
            synced=bool(row.get('synced', 0)),
            date_scanned=row.get('date_scanned'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'image_uri': self.image_uri,
            'total_amount': self.total_amount,
            'ocr_data': self.ocr_data,
            'synced': self.synced,
            'date_scanned': self.date_scanned,
        }


@dataclass(frozen=True)
class CapturedPhoto:
    """A photo handed to the capture workflow: a URI and optionally its bytes."""
    uri: str
    data: Optional[bytes] = None

    @property
    def filename(self) -> str:
        name = self.uri.rstrip('/').split('/')[-1]
        return name or 'photo.jpg'

    @property
    def local_path(self) -> str:
        if self.uri.startswith('file://'):
            return self.uri[len('file://'):]
        return self.uri


@dataclass(frozen=True)
class OcrResult:
    """Normalized OCR response."""
    text: str = ''
    success: bool = False
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PricePoint:
    """One sample of a historical price series."""
    date: date
    close: float
    adjusted_close: Optional[float] = None

    @property
    def price(self) -> float:
        """Adjusted close when available, since it accounts for splits and dividends."""
        return self.adjusted_close if self.adjusted_close is not None else self.close

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'close': self.close,
            'adjusted_close': self.adjusted_close,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PricePoint':
        adjusted = data.get('adjusted_close')
        return cls(
            date=date.fromisoformat(str(data['date'])[:10]),
            close=float(data['close']),
            adjusted_close=float(adjusted) if adjusted is not None else None,
        )


@dataclass
class CachedSeriesEntry:
    """A cached price series keyed by (ticker, interval, params)."""
    ticker: str
    interval: str
    fetched_at: datetime
    series: List[PricePoint] = field(default_factory=list)
    params: str = ''

    @property
    def key(self):
        return (self.ticker, self.interval, self.params)


@dataclass(frozen=True)
class StockPreset:
    """Static reference data for a projection ticker."""
    name: str
    ticker: str
    return_rate: float
