import asyncio
import json
import logging
import time
from typing import List, Optional, Union

import aiosqlite

logger = logging.getLogger("storage")

_COLS = "id, owner_address, operator_address, details_json, created_at"


def _row_to_dict(row) -> dict:
    return {
        "id": row[0],
        "owner_address": row[1],
        "operator_address": row[2],
        "details": json.loads(row[3]),
        "created_at": row[4],
    }


class ProviderRepo:
    """CRUD operations for the providers table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def save(
        self,
        provider_id: int,
        owner_address: str,
        operator_address: str = "",
        details: Optional[dict] = None,
    ) -> dict:
        """Insert the provider unless it is already stored."""
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO providers (id, owner_address, operator_address, details_json, created_at) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT DO NOTHING",
                (
                    provider_id,
                    owner_address.lower(),
                    operator_address.lower(),
                    json.dumps(details or {}, sort_keys=True),
                    time.time(),
                ),
            )
            await self._db.commit()
        if cursor.rowcount:
            logger.info("Provider #%d saved (%s)", provider_id, owner_address.lower())
        return await self.get(provider_id)

    async def get(self, provider_id_or_address: Union[int, str]) -> Optional[dict]:
        if isinstance(provider_id_or_address, str):
            query = f"SELECT {_COLS} FROM providers WHERE owner_address = ?"
            params: tuple = (provider_id_or_address.lower(),)
        else:
            query = f"SELECT {_COLS} FROM providers WHERE id = ?"
            params = (provider_id_or_address,)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    async def list_all(self) -> List[dict]:
        results = []
        async with self._db.execute(f"SELECT {_COLS} FROM providers ORDER BY id") as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results
