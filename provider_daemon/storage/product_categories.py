import asyncio
import json
import logging
import time
from typing import List, Optional

import aiosqlite

logger = logging.getLogger("storage")


class ProductCategoryRepo:
    """CRUD operations for the product_categories table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def save(self, address: str, details: Optional[dict] = None) -> dict:
        """Insert the category unless its address is already stored."""
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO product_categories (address, details_json, created_at) "
                "VALUES (?, ?, ?) ON CONFLICT(address) DO NOTHING",
                (address.lower(), json.dumps(details or {}, sort_keys=True), time.time()),
            )
            await self._db.commit()
        if cursor.rowcount:
            logger.info("Product category saved: %s", address.lower())
        return await self.get(address)

    async def get(self, address: str) -> Optional[dict]:
        async with self._db.execute(
            "SELECT id, address, details_json, created_at FROM product_categories WHERE address = ?",
            (address.lower(),),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "id": row[0],
            "address": row[1],
            "details": json.loads(row[2]),
            "created_at": row[3],
        }

    async def list_all(self) -> List[dict]:
        results = []
        async with self._db.execute(
            "SELECT id, address, details_json, created_at FROM product_categories ORDER BY id"
        ) as cursor:
            async for row in cursor:
                results.append({
                    "id": row[0],
                    "address": row[1],
                    "details": json.loads(row[2]),
                    "created_at": row[3],
                })
        return results
