"""
chain_simulator.py - In-memory marketplace ledger.

Implements the LedgerClient capability without a node, for fully offline
testing and the ``--simulate`` development mode:
 - blocks are mined on demand from pending transactions
 - agreements are created and closed by transactions that emit
   AgreementCreated / AgreementClosed logs from the category contract
 - balances are set explicitly (set_balance) instead of draining over time
 - any ledger call can be told to fail once (fail_next), and force-closes
   can be made to fail for chosen agreements (fail_close)

Usage (integrated into the daemon HTTP app):
    from provider_daemon.chain_simulator import SimulatedLedger
    ledger = SimulatedLedger()
    ledger.register_routes(fastapi_app)
"""

import hashlib
import itertools
import logging
import time
from collections import Counter
from typing import Dict, List, Optional, Set, Tuple

from provider_daemon.errors import TransientChainError
from provider_daemon.ledger import (
    AGREEMENT_CLOSED,
    AGREEMENT_CREATED,
    Agreement,
    AgreementStatus,
    Block,
    Receipt,
    Transaction,
)

logger = logging.getLogger("chain")

DEFAULT_BALANCE = 1000
SYSTEM_ADDRESS = "0x" + "00" * 20


def _hash(*parts) -> str:
    payload = ":".join(str(p) for p in parts).encode()
    return "0x" + hashlib.sha256(payload).hexdigest()


class SimulatedLedger:
    """Mock marketplace chain with agreement bookkeeping."""

    def __init__(self, start_height: int = 0):
        self._blocks: Dict[int, Block] = {}
        self._receipts: Dict[str, Receipt] = {}
        self._pending: List[Tuple[Transaction, Receipt]] = []
        self._height = start_height - 1
        self._nonce = itertools.count()

        self._agreements: Dict[Tuple[str, int], Agreement] = {}
        self._next_agreement_id: Dict[str, int] = {}
        self._providers: Dict[str, dict] = {}

        self._fail_next: Dict[str, Exception] = {}
        self._fail_close: Set[Tuple[str, int]] = set()
        self.calls: Counter = Counter()

        self.mine_block()
        logger.info("Chain simulator initialized (height=%d)", self._height)

    # -------------------------------------------------------------------
    # Chain driving (test and dev side)
    # -------------------------------------------------------------------

    @property
    def height(self) -> int:
        return self._height

    def mine_block(self) -> Block:
        """Mine every pending transaction into a new block."""
        self._height += 1
        number = self._height
        transactions = []
        for tx, receipt in self._pending:
            tx.block_number = number
            receipt.block_number = number
            transactions.append(tx)
        self._pending.clear()
        block = Block(
            number=number,
            hash=_hash("block", number, next(self._nonce)),
            transactions=transactions,
            timestamp=int(time.time()),
        )
        self._blocks[number] = block
        if transactions:
            logger.debug("Block #%d mined with %d transaction(s)", number, len(transactions))
        return block

    def mine_empty_blocks(self, count: int) -> List[Block]:
        return [self.mine_block() for _ in range(count)]

    def send_transaction(
        self,
        to_address: Optional[str],
        from_address: str = SYSTEM_ADDRESS,
        logs: Optional[List[dict]] = None,
        reverted: bool = False,
        mine: bool = False,
    ) -> str:
        """Queue a raw transaction. Returns its hash."""
        tx_hash = _hash("tx", next(self._nonce))
        tx = Transaction(
            hash=tx_hash,
            block_number=-1,
            from_address=from_address.lower(),
            to_address=to_address.lower() if to_address else None,
        )
        receipt_logs = [] if reverted else list(logs or [])
        for index, log in enumerate(receipt_logs):
            log.setdefault("log_index", index)
        receipt = Receipt(
            transaction_hash=tx_hash,
            block_number=-1,
            status=0 if reverted else 1,
            logs=receipt_logs,
        )
        self._pending.append((tx, receipt))
        self._receipts[tx_hash] = receipt
        if mine:
            self.mine_block()
        return tx_hash

    def register_provider(
        self,
        owner_address: str,
        provider_id: Optional[int] = None,
        operator_address: str = "",
        details: Optional[dict] = None,
    ) -> dict:
        owner = owner_address.lower()
        provider = {
            "id": provider_id if provider_id is not None else len(self._providers) + 1,
            "owner_address": owner,
            "operator_address": operator_address.lower(),
            "details": dict(details or {}),
        }
        self._providers[owner] = provider
        return provider

    def create_agreement(
        self,
        category: str,
        offer_id: int,
        user_address: str,
        provider_owner: str,
        balance: int = DEFAULT_BALANCE,
        mine: bool = True,
    ) -> Agreement:
        """Enter an agreement as a user would, emitting AgreementCreated."""
        category = category.lower()
        agreement_id = self._next_agreement_id.get(category, 1)
        self._next_agreement_id[category] = agreement_id + 1
        agreement = Agreement(
            id=agreement_id,
            offer_id=offer_id,
            owner_address=user_address.lower(),
            provider_owner_address=provider_owner.lower(),
            product_category=category,
            status=AgreementStatus.ACTIVE,
            balance=balance,
            start_ts=int(time.time()),
        )
        self._agreements[(category, agreement_id)] = agreement
        self.send_transaction(
            category,
            from_address=user_address,
            logs=[self._agreement_log(AGREEMENT_CREATED, agreement)],
            mine=mine,
        )
        logger.info(
            "Agreement #%d created on %s (offer=%d user=%s)",
            agreement_id, category, offer_id, agreement.owner_address,
        )
        return agreement

    def end_agreement(self, category: str, agreement_id: int, sender: str = "", mine: bool = True) -> str:
        """Close an agreement from the user side, emitting AgreementClosed."""
        agreement = self._agreement(category, agreement_id)
        agreement.status = AgreementStatus.NOT_ACTIVE
        agreement.end_ts = int(time.time())
        tx_hash = self.send_transaction(
            agreement.product_category,
            from_address=sender or agreement.owner_address,
            logs=[self._agreement_log(AGREEMENT_CLOSED, agreement)],
            mine=mine,
        )
        logger.info("Agreement #%d closed on %s", agreement_id, agreement.product_category)
        return tx_hash

    def set_balance(self, category: str, agreement_id: int, balance: int):
        self._agreement(category, agreement_id).balance = balance

    def fail_next(self, method: str, exc: Optional[Exception] = None):
        """Make the next call of ledger method ``method`` raise ``exc``."""
        self._fail_next[method] = exc or TransientChainError(f"simulated {method} failure")

    def fail_close(self, category: str, agreement_id: int):
        self._fail_close.add((category.lower(), agreement_id))

    def get_stats(self) -> dict:
        active = sum(1 for a in self._agreements.values() if a.status == AgreementStatus.ACTIVE)
        return {
            "height": self._height,
            "pending_transactions": len(self._pending),
            "total_agreements": len(self._agreements),
            "active_agreements": active,
            "providers": len(self._providers),
        }

    # -------------------------------------------------------------------
    # LedgerClient
    # -------------------------------------------------------------------

    async def get_block_number(self) -> int:
        self._record_call("get_block_number")
        return self._height

    async def get_block(self, height: int) -> Optional[Block]:
        self._record_call("get_block")
        return self._blocks.get(height)

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt:
        self._record_call("get_transaction_receipt")
        receipt = self._receipts.get(tx_hash.lower())
        if receipt is None:
            raise TransientChainError(f"Receipt not found: {tx_hash}")
        return receipt

    def decode_logs(self, logs: List[dict]) -> List[dict]:
        # Simulated logs are stored already decoded
        return [dict(log) for log in logs]

    async def get_agreement(self, category: str, agreement_id: int) -> Agreement:
        self._record_call("get_agreement")
        return self._agreement(category, agreement_id)

    async def get_agreement_balance(self, category: str, agreement_id: int) -> int:
        self._record_call("get_agreement_balance")
        return self._agreement(category, agreement_id).balance

    async def close_agreement(self, category: str, agreement_id: int) -> str:
        self._record_call("close_agreement")
        if (category.lower(), agreement_id) in self._fail_close:
            raise TransientChainError(f"simulated close failure for agreement #{agreement_id}")
        agreement = self._agreement(category, agreement_id)
        if agreement.status != AgreementStatus.ACTIVE:
            raise TransientChainError(f"Agreement #{agreement_id} is not active")
        return self.end_agreement(
            category, agreement_id, sender=agreement.provider_owner_address, mine=True,
        )

    async def get_active_agreements(self, category: str, provider_owner: str) -> List[Agreement]:
        self._record_call("get_active_agreements")
        category = category.lower()
        owner = provider_owner.lower()
        return [
            a for (cat, _), a in sorted(self._agreements.items())
            if cat == category and a.provider_owner_address == owner
            and a.status == AgreementStatus.ACTIVE
        ]

    async def get_provider(self, owner_address: str) -> Optional[dict]:
        self._record_call("get_provider")
        provider = self._providers.get(owner_address.lower())
        return dict(provider) if provider else None

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _record_call(self, method: str):
        self.calls[method] += 1
        exc = self._fail_next.pop(method, None)
        if exc is not None:
            raise exc

    def _agreement(self, category: str, agreement_id: int) -> Agreement:
        agreement = self._agreements.get((category.lower(), agreement_id))
        if agreement is None:
            raise TransientChainError(f"Agreement #{agreement_id} not found on {category}")
        return agreement

    @staticmethod
    def _agreement_log(event: str, agreement: Agreement) -> dict:
        args = {
            "id": agreement.id,
            "userAddr": agreement.owner_address,
            "providerOwnerAddr": agreement.provider_owner_address,
        }
        if event == AGREEMENT_CREATED:
            args["offerId"] = agreement.offer_id
        return {"event": event, "args": args, "address": agreement.product_category}

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Register /chain/* development endpoints on an existing FastAPI app."""
        from fastapi.responses import JSONResponse

        @app.get("/chain/stats")
        async def chain_stats():
            return self.get_stats()

        @app.get("/chain/blocks")
        async def chain_blocks(limit: int = 20):
            numbers = sorted(self._blocks)[-limit:]
            return [
                {
                    "number": n,
                    "hash": self._blocks[n].hash,
                    "transactions": [tx.hash for tx in self._blocks[n].transactions],
                }
                for n in reversed(numbers)
            ]

        @app.post("/chain/mine")
        async def chain_mine(payload: dict):
            count = int(payload.get("count", 1))
            blocks = self.mine_empty_blocks(max(1, count))
            return {"height": blocks[-1].number}

        @app.post("/chain/providers")
        async def chain_register_provider(payload: dict):
            if not payload.get("owner_address"):
                return JSONResponse(status_code=400, content={"detail": "owner_address is required"})
            return self.register_provider(
                payload["owner_address"],
                provider_id=payload.get("id"),
                operator_address=payload.get("operator_address", ""),
                details=payload.get("details"),
            )

        @app.post("/chain/agreements")
        async def chain_create_agreement(payload: dict):
            missing = [k for k in ("category", "offer_id", "user", "provider") if k not in payload]
            if missing:
                return JSONResponse(
                    status_code=400,
                    content={"detail": f"missing fields: {', '.join(missing)}"},
                )
            agreement = self.create_agreement(
                payload["category"],
                int(payload["offer_id"]),
                payload["user"],
                payload["provider"],
                balance=int(payload.get("balance", DEFAULT_BALANCE)),
            )
            return agreement.to_dict()

        @app.post("/chain/agreements/{category}/{agreement_id}/close")
        async def chain_close_agreement(category: str, agreement_id: int):
            try:
                tx_hash = self.end_agreement(category, agreement_id)
            except TransientChainError as e:
                return JSONResponse(status_code=404, content={"detail": str(e)})
            return {"transaction_hash": tx_hash}

        @app.post("/chain/agreements/{category}/{agreement_id}/balance")
        async def chain_set_balance(category: str, agreement_id: int, payload: dict):
            try:
                self.set_balance(category, agreement_id, int(payload.get("balance", 0)))
            except TransientChainError as e:
                return JSONResponse(status_code=404, content={"detail": str(e)})
            return self._agreement(category, agreement_id).to_dict()

        logger.info("Chain simulator routes registered on FastAPI app")
