"""
sweeper.py - Balance sweeper.

Periodically force-closes the agreements of the served providers whose
prepaid balance is exhausted. Closing is done on the ledger only: the
resulting AgreementClosed event reaches the resource store through the
chain synchronizer like any other close.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from provider_daemon.ledger import LedgerClient

logger = logging.getLogger("sweeper")

DEFAULT_SWEEP_INTERVAL = 60.0


class BalanceSweeper:

    def __init__(
        self,
        ledger: "LedgerClient",
        categories: Iterable[str],
        provider_owners: Iterable[str],
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._ledger = ledger
        self._categories = sorted({c.lower() for c in categories})
        self._provider_owners = sorted({p.lower() for p in provider_owners})
        self.sweep_interval = sweep_interval
        self.last_sweep: Optional[dict] = None
        self._running = False

    async def sweep(self) -> dict:
        """Check every active agreement once and close the exhausted ones."""
        checked = 0
        unreadable = 0
        to_close: List[Tuple[str, int]] = []

        for category in self._categories:
            for owner in self._provider_owners:
                try:
                    agreements = await self._ledger.get_active_agreements(category, owner)
                except Exception:
                    logger.exception(
                        "Error while listing active agreements of %s on %s", owner, category,
                    )
                    continue
                for agreement in agreements:
                    try:
                        balance = await self._ledger.get_agreement_balance(category, agreement.id)
                    except Exception:
                        unreadable += 1
                        logger.exception(
                            "Error while reading the balance of agreement #%d on %s",
                            agreement.id, category,
                        )
                        continue
                    checked += 1
                    if balance <= 0:
                        logger.info(
                            "Agreement #%d on %s has no balance left (%d), closing",
                            agreement.id, category, balance,
                        )
                        to_close.append((category, agreement.id))

        results = await asyncio.gather(
            *(self._ledger.close_agreement(category, agreement_id) for category, agreement_id in to_close),
            return_exceptions=True,
        )

        failed = 0
        for (category, agreement_id), result in zip(to_close, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error(
                    "Error while closing agreement #%d on %s: %s", agreement_id, category, result,
                )
            else:
                logger.info("Agreement #%d on %s closed (tx %s)", agreement_id, category, result)

        summary = {
            "checked": checked,
            "unreadable": unreadable,
            "closing": len(to_close),
            "closed": len(to_close) - failed,
            "failed": failed,
            "finished_at": time.time(),
        }
        self.last_sweep = summary
        if to_close:
            logger.info(
                "Balance sweep done: %d checked, %d unreadable, %d closed, %d failed",
                checked, unreadable, summary["closed"], failed,
            )
        return summary

    async def run(self):
        self._running = True
        logger.info("Balance sweeper started (interval=%.0fs)", self.sweep_interval)
        while self._running:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in balance sweeper")
            await asyncio.sleep(self.sweep_interval)

    def stop(self):
        self._running = False
