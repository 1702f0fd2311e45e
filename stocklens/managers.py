"""
StockLens - Data Managers

PURPOSE: Data access layer for receipt records
SCOPE: CRUD operations used by the capture workflow and the HTTP layer
DEPENDENCIES: aiosqlite, models.py
"""

import logging
from typing import Any, Dict, List, Optional

import aiosqlite

from .models import ReceiptRecord

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('user_id', 'image_uri', 'total_amount', 'date_scanned', 'ocr_data', 'synced')


class ReceiptManager:
    """Handles receipt CRUD operations, drafts included."""

    def __init__(self, db_file: str):
        self.db_file = db_file

    async def create(self, receipt: ReceiptRecord) -> int:
        """Create a new receipt record and return its id."""
        async with aiosqlite.connect(self.db_file) as conn:
            cursor = await conn.execute('''
                INSERT INTO receipts (user_id, image_uri, total_amount, ocr_data, synced)
                VALUES (?, ?, ?, ?, ?)
            ''', (
                receipt.user_id,
                receipt.image_uri,
                receipt.total_amount,
                receipt.ocr_data,
                int(bool(receipt.synced)),
            ))
            receipt_id = cursor.lastrowid
            await conn.commit()
            logger.info(f"Created receipt {receipt_id} for user {receipt.user_id}")
            return receipt_id

    async def update(self, receipt_id: int, fields: Dict[str, Any]) -> bool:
        """Update the given columns of a receipt. Returns False when the row does not exist."""
        columns = [key for key in UPDATABLE_FIELDS if key in fields]
        if not columns:
            return await self.get_by_id(receipt_id) is not None

        values = [int(fields[key]) if key == 'synced' else fields[key] for key in columns]
        set_clause = ', '.join(f'{column} = ?' for column in columns)

        async with aiosqlite.connect(self.db_file) as conn:
            cursor = await conn.execute(
                f'UPDATE receipts SET {set_clause} WHERE id = ?', (*values, receipt_id)
            )
            await conn.commit()
            return cursor.rowcount > 0

    async def delete(self, receipt_id: int) -> bool:
        """Delete a receipt. Deleting a missing id is not an error."""
        async with aiosqlite.connect(self.db_file) as conn:
            cursor = await conn.execute('DELETE FROM receipts WHERE id = ?', (receipt_id,))
            await conn.commit()
            return cursor.rowcount > 0

    async def get_by_id(self, receipt_id: int) -> Optional[ReceiptRecord]:
        """Get a single receipt by ID."""
        async with aiosqlite.connect(self.db_file) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute('SELECT * FROM receipts WHERE id = ?', (receipt_id,))
            row = await cursor.fetchone()
            return ReceiptRecord.from_row(dict(row)) if row else None

    async def list_by_user(self, user_id: str) -> List[ReceiptRecord]:
        """Get all receipts for a user, most recent first."""
        async with aiosqlite.connect(self.db_file) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                'SELECT * FROM receipts WHERE user_id = ? ORDER BY date_scanned DESC, id DESC',
                (user_id,)
            )
            return [ReceiptRecord.from_row(dict(row)) for row in await cursor.fetchall()]

    async def list_unsynced(self, user_id: str) -> List[ReceiptRecord]:
        """Receipts the external sync collaborator has not picked up yet."""
        async with aiosqlite.connect(self.db_file) as conn:
            conn.row_factory = aiosqlite.Row
            cursor = await conn.execute(
                'SELECT * FROM receipts WHERE user_id = ? AND synced = 0 ORDER BY id',
                (user_id,)
            )
            return [ReceiptRecord.from_row(dict(row)) for row in await cursor.fetchall()]

    async def mark_as_synced(self, receipt_id: int) -> bool:
        async with aiosqlite.connect(self.db_file) as conn:
            cursor = await conn.execute('UPDATE receipts SET synced = 1 WHERE id = ?', (receipt_id,))
            await conn.commit()
            return cursor.rowcount > 0
