import asyncio
import logging
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .offers import OfferRepo
from .processed_txs import ProcessedTxRepo
from .product_categories import ProductCategoryRepo
from .providers import ProviderRepo
from .resources import ResourceRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos.

    All repos share one connection and one write lock, so a write made of
    several statements is committed as a unit.
    """

    def __init__(self, db_path: str = "data/provider.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.providers: Optional[ProviderRepo] = None
        self.product_categories: Optional[ProductCategoryRepo] = None
        self.offers: Optional[OfferRepo] = None
        self.resources: Optional[ResourceRepo] = None
        self.processed_txs: Optional[ProcessedTxRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await run_migrations(self._db)

        self.providers = ProviderRepo(self._db, self._lock)
        self.product_categories = ProductCategoryRepo(self._db, self._lock)
        self.offers = OfferRepo(self._db, self._lock)
        self.resources = ResourceRepo(self._db, self._lock)
        self.processed_txs = ProcessedTxRepo(self._db, self._lock)

        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
