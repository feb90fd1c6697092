import asyncio
import time
from typing import List, Optional

import aiosqlite

BLOCK_SENTINEL_HASH = ""


class ProcessedTxRepo:
    """Bookkeeping for applied chain transactions.

    A row with an empty hash marks the whole block at that height as done.
    """

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def get(self, height: int, tx_hash: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT height, hash, is_processed, processed_at "
            "FROM processed_txs WHERE height = ? AND hash = ?",
            (height, tx_hash.lower()),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "height": row[0],
            "hash": row[1],
            "is_processed": bool(row[2]),
            "processed_at": row[3],
        }

    async def is_processed(self, height: int, tx_hash: str) -> bool:
        record = await self.get(height, tx_hash)
        return bool(record and record["is_processed"])

    async def is_block_processed(self, height: int) -> bool:
        return await self.is_processed(height, BLOCK_SENTINEL_HASH)

    async def mark_processed(self, height: int, tx_hash: str = BLOCK_SENTINEL_HASH):
        async with self._lock:
            await self._db.execute(
                "INSERT INTO processed_txs (height, hash, is_processed, processed_at) "
                "VALUES (?, ?, 1, ?) "
                "ON CONFLICT(height, hash) DO UPDATE SET is_processed = 1, "
                "processed_at = excluded.processed_at WHERE processed_txs.is_processed = 0",
                (height, tx_hash.lower(), time.time()),
            )
            await self._db.commit()

    async def latest_height(self) -> Optional[int]:
        async with self._db.execute("SELECT MAX(height) FROM processed_txs") as cursor:
            row = await cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return row[0]

    async def list_for_height(self, height: int) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT height, hash, is_processed, processed_at "
            "FROM processed_txs WHERE height = ? ORDER BY hash",
            (height,),
        ) as cursor:
            async for row in cursor:
                results.append({
                    "height": row[0],
                    "hash": row[1],
                    "is_processed": bool(row[2]),
                    "processed_at": row[3],
                })
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM processed_txs") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
