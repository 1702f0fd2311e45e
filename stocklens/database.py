"""
StockLens - Database Management

PURPOSE: SQLite schema for receipts and cached price series
SCOPE: Versioned migrations applied in order at startup
DEPENDENCIES: aiosqlite
"""

import logging

import aiosqlite

logger = logging.getLogger(__name__)

RECEIPTS_TABLE = '''
    CREATE TABLE IF NOT EXISTS receipts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        image_uri TEXT,
        total_amount REAL,
        date_scanned TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        ocr_data TEXT,
        synced INTEGER DEFAULT 0
    )
'''

PRICE_CACHE_TABLE = '''
    CREATE TABLE IF NOT EXISTS price_cache (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticker TEXT NOT NULL,
        interval TEXT NOT NULL,
        params TEXT NOT NULL DEFAULT '',
        fetched_at TEXT NOT NULL,
        payload TEXT NOT NULL,
        UNIQUE(ticker, interval, params)
    )
'''


class DatabaseManager:
    """Creates and migrates the StockLens schema."""

    def __init__(self, db_file: str):
        self.db_file = db_file
        self.migrations = {
            1: self._create_receipts_and_price_cache,
        }

    @property
    def latest_version(self) -> int:
        return max(self.migrations)

    async def initialize_database(self) -> None:
        """Bring the database up to the latest schema version."""
        async with aiosqlite.connect(self.db_file) as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            version = await self.schema_version(conn)
            logger.info(f"Database schema at version {version}, latest is {self.latest_version}")

            for target in sorted(v for v in self.migrations if v > version):
                logger.info(f"Applying schema migration {target}")
                await self.migrations[target](conn)
                await conn.execute('INSERT OR REPLACE INTO schema_version (version) VALUES (?)', (target,))

            await conn.commit()

    @staticmethod
    async def schema_version(conn: aiosqlite.Connection) -> int:
        cursor = await conn.execute('SELECT MAX(version) FROM schema_version')
        row = await cursor.fetchone()
        return row[0] or 0

    async def _create_receipts_and_price_cache(self, conn: aiosqlite.Connection) -> None:
        # Drafts are receipts whose total_amount is still NULL
        await conn.execute(RECEIPTS_TABLE)
        await conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_receipts_user_id_synced ON receipts (user_id, synced)'
        )
        await conn.execute(
            'CREATE INDEX IF NOT EXISTS idx_receipts_date_scanned ON receipts (date_scanned DESC)'
        )
        await conn.execute(PRICE_CACHE_TABLE)
