"""
web3_ledger.py - LedgerClient over an EVM JSON-RPC node.

Reads blocks, receipts and agreements through web3.py's AsyncWeb3, decodes
agreement events with the product category ABI and signs force-closes with
the operator key of the agreement's provider. Transactions sent from the
same process are serialized by a nonce lock.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_utils import to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, LogTopicError, MismatchedABI, TransactionNotFound

from provider_daemon.abi import PRODUCT_CATEGORY_ABI, REGISTRY_ABI
from provider_daemon.errors import ConfigError, TransientChainError
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

_EVENT_NAMES = (AGREEMENT_CREATED, AGREEMENT_CLOSED)


def _lower(address: Optional[str]) -> Optional[str]:
    return address.lower() if address else None


class Web3Ledger:

    def __init__(
        self,
        rpc_url: str,
        registry_address: str,
        operator_keys: Optional[Dict[str, str]] = None,
        chain_id: Optional[int] = None,
        request_timeout: float = 30.0,
    ):
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self._registry = self.w3.eth.contract(
            address=to_checksum_address(registry_address), abi=REGISTRY_ABI,
        )
        # Address-less contract, only used to decode logs of any category
        self._events = self.w3.eth.contract(abi=PRODUCT_CATEGORY_ABI)
        self._categories: Dict[str, Any] = {}
        self._operators = {
            owner.lower(): Account.from_key(key) for owner, key in (operator_keys or {}).items()
        }
        self._chain_id = chain_id
        self._nonce_lock = asyncio.Lock()

    def _category(self, address: str):
        address = address.lower()
        contract = self._categories.get(address)
        if contract is None:
            contract = self.w3.eth.contract(
                address=to_checksum_address(address), abi=PRODUCT_CATEGORY_ABI,
            )
            self._categories[address] = contract
        return contract

    # -------------------------------------------------------------------
    # Blocks and receipts
    # -------------------------------------------------------------------

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_block(self, height: int) -> Optional[Block]:
        try:
            raw = await self.w3.eth.get_block(height, full_transactions=True)
        except BlockNotFound:
            return None
        transactions = [
            Transaction(
                hash=self.w3.to_hex(tx["hash"]),
                block_number=height,
                from_address=_lower(tx["from"]),
                to_address=_lower(tx.get("to")),
            )
            for tx in raw["transactions"]
        ]
        return Block(
            number=raw["number"],
            hash=self.w3.to_hex(raw["hash"]),
            transactions=transactions,
            timestamp=raw["timestamp"],
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound as e:
            raise TransientChainError(f"Receipt not found: {tx_hash}") from e
        return Receipt(
            transaction_hash=self.w3.to_hex(raw["transactionHash"]),
            block_number=raw["blockNumber"],
            status=raw["status"],
            logs=list(raw["logs"]),
        )

    def decode_logs(self, logs: List[Any]) -> List[Dict[str, Any]]:
        decoded = []
        for log in logs:
            for name in _EVENT_NAMES:
                try:
                    event = self._events.events[name]().process_log(log)
                except (MismatchedABI, LogTopicError):
                    continue
                decoded.append({
                    "event": event["event"],
                    "args": dict(event["args"]),
                    "address": _lower(event["address"]),
                    "log_index": event["logIndex"],
                })
                break
        return decoded

    # -------------------------------------------------------------------
    # Agreements
    # -------------------------------------------------------------------

    @staticmethod
    def _to_agreement(category: str, raw) -> Agreement:
        agreement_id, offer_id, user, provider_owner, balance, start_ts, end_ts, status = raw
        return Agreement(
            id=agreement_id,
            offer_id=offer_id,
            owner_address=_lower(user),
            provider_owner_address=_lower(provider_owner),
            product_category=category.lower(),
            status=AgreementStatus.ACTIVE if status == 1 else AgreementStatus.NOT_ACTIVE,
            balance=balance,
            start_ts=start_ts,
            end_ts=end_ts,
        )

    async def get_agreement(self, category: str, agreement_id: int) -> Agreement:
        raw = await self._category(category).functions.getAgreement(agreement_id).call()
        return self._to_agreement(category, raw)

    async def get_agreement_balance(self, category: str, agreement_id: int) -> int:
        return await self._category(category).functions.getAgreementBalance(agreement_id).call()

    async def get_active_agreements(self, category: str, provider_owner: str) -> List[Agreement]:
        contract = self._category(category)
        ids = await contract.functions.getActiveAgreementIds(
            to_checksum_address(provider_owner)
        ).call()
        agreements = []
        for agreement_id in ids:
            agreements.append(await self.get_agreement(category, agreement_id))
        return agreements

    async def close_agreement(self, category: str, agreement_id: int) -> str:
        agreement = await self.get_agreement(category, agreement_id)
        account = self._operators.get(agreement.provider_owner_address)
        if account is None:
            raise ConfigError(
                f"No operator key for provider {agreement.provider_owner_address}"
            )
        if self._chain_id is None:
            self._chain_id = await self.w3.eth.chain_id

        async with self._nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
            tx = await self._category(category).functions.closeAgreement(agreement_id).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "chainId": self._chain_id,
            })
            signed = account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] == 0:
            raise TransientChainError(
                f"closeAgreement #{agreement_id} reverted (tx {self.w3.to_hex(tx_hash)})"
            )
        return self.w3.to_hex(tx_hash)

    # -------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------

    async def get_provider(self, owner_address: str) -> Optional[dict]:
        actor_id, owner, operator, details_link = await self._registry.functions.getActor(
            to_checksum_address(owner_address)
        ).call()
        if actor_id == 0:
            return None
        return {
            "id": actor_id,
            "owner_address": _lower(owner),
            "operator_address": _lower(operator),
            "details_link": details_link,
        }
