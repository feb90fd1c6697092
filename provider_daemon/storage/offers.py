import asyncio
import json
import logging
import time
from typing import List, Optional

import aiosqlite

from provider_daemon.errors import DataIntegrityError

logger = logging.getLogger("storage")

_SELECT = (
    "SELECT o.id, o.pc_id, pc.address, o.provider_id, o.deployment_params_json, "
    "o.details_json, o.created_at "
    "FROM offers o JOIN product_categories pc ON pc.id = o.pc_id"
)


def _row_to_dict(row) -> dict:
    return {
        "id": row[0],
        "product_category_id": row[1],
        "product_category": row[2],
        "provider_id": row[3],
        "deployment_params": json.loads(row[4]),
        "details": json.loads(row[5]),
        "created_at": row[6],
    }


class OfferRepo:
    """CRUD operations for the offers table.

    Rows returned here carry deployment_params; the query layer is
    responsible for never handing them to callers.
    """

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def save(
        self,
        offer_id: int,
        category_address: str,
        provider_id: int,
        deployment_params=None,
        details: Optional[dict] = None,
    ) -> dict:
        """Insert the offer unless (id, category) is already stored."""
        async with self._lock:
            async with self._db.execute(
                "SELECT id FROM product_categories WHERE address = ?",
                (category_address.lower(),),
            ) as cursor:
                pc_row = await cursor.fetchone()
            if pc_row is None:
                raise DataIntegrityError(
                    f"Product category not found in the database: {category_address.lower()}"
                )
            cursor = await self._db.execute(
                "INSERT INTO offers (id, pc_id, provider_id, deployment_params_json, details_json, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT(id, pc_id) DO NOTHING",
                (
                    offer_id,
                    pc_row[0],
                    provider_id,
                    json.dumps(deployment_params, sort_keys=True),
                    json.dumps(details or {}, sort_keys=True),
                    time.time(),
                ),
            )
            await self._db.commit()
        if cursor.rowcount:
            logger.info("Offer #%d saved (category=%s)", offer_id, category_address.lower())
        return await self.get(offer_id, category_address)

    async def get(self, offer_id: int, category_address: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE o.id = ? AND pc.address = ?",
            (offer_id, category_address.lower()),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    async def list_all(
        self, category_address: Optional[str] = None, provider_id: Optional[int] = None,
    ) -> List[dict]:
        query = f"{_SELECT} WHERE 1 = 1"
        params: tuple = ()
        if category_address:
            query += " AND pc.address = ?"
            params += (category_address.lower(),)
        if provider_id is not None:
            query += " AND o.provider_id = ?"
            params += (provider_id,)
        query += " ORDER BY pc.address, o.id"
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results
