"""
synchronizer.py - Chain synchronizer.

Walks the ledger one block at a time and applies the agreement events of
every block exactly once, even across restarts:
 - each applied transaction is recorded as (height, hash)
 - each finished block is recorded with the whole-block sentinel (height, '')
 - on startup the cursor resumes after the last finished block

Events go to the LifecycleOrchestrator, with the resource backend of the
event's (category, provider owner).
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

from provider_daemon.errors import DaemonError
from provider_daemon.events import AgreementClosed, AgreementCreated, AgreementEvent, EventDecoder

if TYPE_CHECKING:
    from provider_daemon.backends import BackendRegistry
    from provider_daemon.ledger import Agreement, Block, LedgerClient, Transaction
    from provider_daemon.lifecycle import LifecycleOrchestrator
    from provider_daemon.storage import StorageManager

logger = logging.getLogger("sync")

DEFAULT_BLOCK_POLL_INTERVAL = 3.0
DEFAULT_RETRY_INTERVAL = 5.0


class ChainSynchronizer:
    """Block-by-block event loop over the marketplace ledger."""

    def __init__(
        self,
        ledger: "LedgerClient",
        storage: "StorageManager",
        orchestrator: "LifecycleOrchestrator",
        registry: "BackendRegistry",
        provider_owners: Iterable[str],
        extra_contracts: Iterable[str] = (),
        block_poll_interval: float = DEFAULT_BLOCK_POLL_INTERVAL,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self._ledger = ledger
        self._storage = storage
        self._orchestrator = orchestrator
        self._registry = registry
        self.decoder = EventDecoder(ledger, registry.categories(), provider_owners)
        self._contracts = set(self.decoder.categories) | {a.lower() for a in extra_contracts}
        self.block_poll_interval = block_poll_interval
        self.retry_interval = retry_interval

        self.cursor: Optional[int] = None
        self._running = False

    # -------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------

    async def find_start_block(self) -> int:
        """Height the loop should resume from."""
        processed = self._storage.processed_txs
        latest = await processed.latest_height()
        if latest is None:
            height = await self._ledger.get_block_number()
            logger.info("No processed blocks recorded, starting at the chain head #%d", height)
            return height
        if await processed.is_block_processed(latest):
            logger.info("Resuming after block #%d", latest)
            return latest + 1
        logger.info("Block #%d was not finished, processing it again", latest)
        return latest

    # -------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------

    async def step(self) -> bool:
        """Process the block at the cursor. False if it is not mined yet."""
        if self.cursor is None:
            self.cursor = await self.find_start_block()
        block = await self._ledger.get_block(self.cursor)
        if block is None:
            return False
        await self.process_block(block)
        self.cursor = block.number + 1
        return True

    async def wait_block(self, height: int) -> "Block":
        while True:
            try:
                block = await self._ledger.get_block(height)
            except Exception as e:
                logger.debug("Block #%d not available yet: %s", height, e)
                block = None
            if block is not None:
                return block
            await asyncio.sleep(self.block_poll_interval)

    async def run(self):
        self._running = True
        logger.info("Chain synchronizer started")
        while self._running:
            try:
                if not await self.step():
                    await self.wait_block(self.cursor)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error while processing block #%s, retrying", self.cursor)
                await asyncio.sleep(self.retry_interval)
        logger.info("Chain synchronizer stopped")

    def stop(self):
        self._running = False

    # -------------------------------------------------------------------
    # Block processing
    # -------------------------------------------------------------------

    async def process_block(self, block: "Block"):
        processed = self._storage.processed_txs
        height = block.number
        if await processed.is_block_processed(height):
            logger.debug("Block #%d already processed", height)
            return

        if not block.transactions:
            await processed.mark_processed(height)
            return

        for tx in block.transactions:
            if not tx.to_address or tx.to_address.lower() not in self._contracts:
                continue
            await self.process_transaction(height, tx)

        await processed.mark_processed(height)
        logger.debug("Block #%d processed", height)

    async def process_transaction(self, height: int, tx: "Transaction"):
        processed = self._storage.processed_txs
        if await processed.is_processed(height, tx.hash):
            logger.debug("Transaction %s already processed", tx.hash)
            return

        receipt = await self._ledger.get_transaction_receipt(tx.hash)
        if receipt.reverted:
            logger.debug("Transaction %s reverted, skipping", tx.hash)
            await processed.mark_processed(height, tx.hash)
            return

        # Ledger reads happen before any event is applied, so a failure here
        # leaves the transaction unmarked and the block is retried.
        resolved: List[Tuple[AgreementEvent, "Agreement"]] = []
        for event in self.decoder.decode(receipt):
            agreement = await self._ledger.get_agreement(event.category, event.agreement_id)
            resolved.append((event, agreement))

        for event, agreement in resolved:
            await self.apply_event(event, agreement)

        await processed.mark_processed(height, tx.hash)

    async def apply_event(self, event: AgreementEvent, agreement: "Agreement"):
        backend = self._registry.resolve(event.category, event.provider_owner_address)
        try:
            if isinstance(event, AgreementCreated):
                if backend is None:
                    raise DaemonError(f"No resource backend for category {event.category}")
                logger.info(
                    "AgreementCreated #%d (offer #%d) for %s in tx %s",
                    event.agreement_id, event.offer_id, event.owner_address, event.transaction_hash,
                )
                await self._orchestrator.on_agreement_created(agreement, backend)
            elif isinstance(event, AgreementClosed):
                logger.info(
                    "AgreementClosed #%d for %s in tx %s",
                    event.agreement_id, event.owner_address, event.transaction_hash,
                )
                await self._orchestrator.on_agreement_closed(agreement, backend)
        except DaemonError as e:
            logger.error("Event %s #%d dropped: %s", type(event).__name__, event.agreement_id, e)
        except Exception:
            logger.exception(
                "Error while applying %s #%d", type(event).__name__, event.agreement_id,
            )
