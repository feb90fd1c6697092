"""
ledger.py - Marketplace ledger types and the client capability.

The daemon only ever talks to the chain through a LedgerClient. Two
implementations ship with the package: Web3Ledger (a real EVM node) and
SimulatedLedger (in-memory, for tests and local development).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


class DeploymentStatus(str, Enum):
    DEPLOYING = "Deploying"
    RUNNING = "Running"
    FAILED = "Failed"
    CLOSED = "Closed"


class AgreementStatus(str, Enum):
    NOT_ACTIVE = "NotActive"
    ACTIVE = "Active"


# Event names emitted by product category contracts
AGREEMENT_CREATED = "AgreementCreated"
AGREEMENT_CLOSED = "AgreementClosed"


@dataclass
class Transaction:
    hash: str
    block_number: int
    from_address: str
    to_address: Optional[str]


@dataclass
class Block:
    number: int
    hash: str
    transactions: List[Transaction] = field(default_factory=list)
    timestamp: int = 0


@dataclass
class Receipt:
    transaction_hash: str
    block_number: int
    status: int  # 1 = success, 0 = reverted
    logs: List[Any] = field(default_factory=list)

    @property
    def reverted(self) -> bool:
        return self.status == 0


@dataclass
class Agreement:
    id: int
    offer_id: int
    owner_address: str
    provider_owner_address: str
    product_category: str
    status: AgreementStatus = AgreementStatus.ACTIVE
    balance: int = 0
    start_ts: int = 0
    end_ts: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "offer_id": self.offer_id,
            "owner_address": self.owner_address,
            "provider_owner_address": self.provider_owner_address,
            "product_category": self.product_category,
            "status": self.status.value,
            "balance": self.balance,
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
        }


class LedgerClient(Protocol):
    """Read and write capability over the marketplace ledger.

    Agreement ids are only unique within a product category, so every
    agreement call is addressed by (category address, agreement id).
    """

    async def get_block_number(self) -> int: ...

    async def get_block(self, height: int) -> Optional[Block]:
        """Return the block with its transactions, or None if not mined yet."""
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt: ...

    def decode_logs(self, logs: List[Any]) -> List[Dict[str, Any]]:
        """Decode receipt logs into dicts with event, args, address and log_index."""
        ...

    async def get_agreement(self, category: str, agreement_id: int) -> Agreement: ...

    async def get_agreement_balance(self, category: str, agreement_id: int) -> int: ...

    async def close_agreement(self, category: str, agreement_id: int) -> str: ...

    async def get_active_agreements(self, category: str, provider_owner: str) -> List[Agreement]: ...

    async def get_provider(self, owner_address: str) -> Optional[dict]: ...
