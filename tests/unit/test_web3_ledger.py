"""
test_web3_ledger.py - Unit tests for Web3Ledger without a node.

Event logs are built with eth_abi exactly as a node would return them, and
w3.eth is replaced by an in-process stand-in for block and receipt reads.
"""

import pytest
from eth_abi import encode
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

from provider_daemon.errors import ConfigError, TransientChainError
from provider_daemon.ledger import AGREEMENT_CLOSED, AGREEMENT_CREATED, Agreement, AgreementStatus
from provider_daemon.web3_ledger import Web3Ledger

from fakes import CATEGORY, OFFER_ID, PROVIDER_OWNER, USER

pytestmark = pytest.mark.asyncio

REGISTRY = "0x" + "ee" * 20
TX_HASH = HexBytes("0x" + "ab" * 32)
BLOCK_HASH = HexBytes("0x" + "cd" * 32)

CREATED_TOPIC = Web3.keccak(text="AgreementCreated(uint32,uint32,address,address,uint256)")
CLOSED_TOPIC = Web3.keccak(text="AgreementClosed(uint32,address,address)")
TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)")


def _topic(abi_type, value) -> HexBytes:
    return HexBytes(encode([abi_type], [value]))


def _log(topics, data=b"", log_index=0, address=CATEGORY):
    return {
        "address": to_checksum_address(address),
        "topics": topics,
        "data": HexBytes(data),
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": TX_HASH,
        "blockHash": BLOCK_HASH,
        "blockNumber": 12,
    }


def _created_log(agreement_id=5, deposit=1000, log_index=0):
    return _log(
        [
            CREATED_TOPIC,
            _topic("uint32", agreement_id),
            _topic("uint32", OFFER_ID),
            _topic("address", USER),
        ],
        encode(["address", "uint256"], [PROVIDER_OWNER, deposit]),
        log_index=log_index,
    )


def _closed_log(agreement_id=5, log_index=0):
    return _log(
        [
            CLOSED_TOPIC,
            _topic("uint32", agreement_id),
            _topic("address", USER),
            _topic("address", PROVIDER_OWNER),
        ],
        log_index=log_index,
    )


class FakeEth:
    """Answers get_block and get_transaction_receipt from dicts."""

    def __init__(self, blocks=None, receipts=None):
        self.blocks = blocks or {}
        self.receipts = receipts or {}
        self.block_requests = []

    async def get_block(self, height, full_transactions=False):
        self.block_requests.append((height, full_transactions))
        if height not in self.blocks:
            raise BlockNotFound(f"Block {height} not found")
        return self.blocks[height]

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction {tx_hash} not found")
        return self.receipts[tx_hash]


@pytest.fixture
def chain():
    return Web3Ledger("http://127.0.0.1:8545", REGISTRY)


@pytest.fixture
def fake_eth(chain, monkeypatch):
    eth = FakeEth()
    monkeypatch.setattr(chain.w3, "eth", eth)
    return eth


# ── Log decoding ──────────────────────────────────────────────────────────

class TestDecodeLogs:

    async def test_agreement_created(self, chain):
        decoded = chain.decode_logs([_created_log(agreement_id=5, deposit=1000, log_index=3)])

        assert len(decoded) == 1
        event = decoded[0]
        assert event["event"] == AGREEMENT_CREATED
        assert event["address"] == CATEGORY
        assert event["log_index"] == 3
        args = event["args"]
        assert args["id"] == 5
        assert args["offerId"] == OFFER_ID
        assert args["userAddr"].lower() == USER
        assert args["providerOwnerAddr"].lower() == PROVIDER_OWNER
        assert args["initialDeposit"] == 1000

    async def test_agreement_closed(self, chain):
        decoded = chain.decode_logs([_closed_log(agreement_id=9)])

        assert [e["event"] for e in decoded] == [AGREEMENT_CLOSED]
        args = decoded[0]["args"]
        assert args["id"] == 9
        assert args["userAddr"].lower() == USER
        assert args["providerOwnerAddr"].lower() == PROVIDER_OWNER

    async def test_unrelated_logs_skipped(self, chain):
        transfer = _log(
            [TRANSFER_TOPIC, _topic("address", USER), _topic("address", PROVIDER_OWNER)],
            encode(["uint256"], [1]),
            log_index=1,
        )
        anonymous = _log([], b"", log_index=2)

        decoded = chain.decode_logs([
            _created_log(log_index=0), transfer, anonymous, _closed_log(log_index=3),
        ])

        assert [(e["event"], e["log_index"]) for e in decoded] == [
            (AGREEMENT_CREATED, 0), (AGREEMENT_CLOSED, 3),
        ]

    async def test_no_logs(self, chain):
        assert chain.decode_logs([]) == []


# ── Agreement tuples ──────────────────────────────────────────────────────

class TestToAgreement:

    async def test_field_order(self):
        raw = (
            5, OFFER_ID, to_checksum_address(USER), to_checksum_address(PROVIDER_OWNER),
            -20, 1700000000, 1700003600, 1,
        )
        agreement = Web3Ledger._to_agreement(CATEGORY.upper().replace("0X", "0x"), raw)

        assert agreement == Agreement(
            id=5,
            offer_id=OFFER_ID,
            owner_address=USER,
            provider_owner_address=PROVIDER_OWNER,
            product_category=CATEGORY,
            status=AgreementStatus.ACTIVE,
            balance=-20,
            start_ts=1700000000,
            end_ts=1700003600,
        )

    @pytest.mark.parametrize("status", [0, 2])
    async def test_inactive_status(self, status):
        raw = (5, OFFER_ID, USER, PROVIDER_OWNER, 0, 0, 0, status)
        assert Web3Ledger._to_agreement(CATEGORY, raw).status == AgreementStatus.NOT_ACTIVE


# ── Blocks and receipts ───────────────────────────────────────────────────

class TestBlocksAndReceipts:

    async def test_missing_block_is_none(self, chain, fake_eth):
        assert await chain.get_block(99) is None
        assert fake_eth.block_requests == [(99, True)]

    async def test_block_transactions(self, chain, fake_eth):
        fake_eth.blocks[12] = {
            "number": 12,
            "hash": BLOCK_HASH,
            "timestamp": 1700000000,
            "transactions": [
                {"hash": TX_HASH, "from": to_checksum_address(USER), "to": to_checksum_address(CATEGORY)},
                {"hash": HexBytes("0x" + "01" * 32), "from": to_checksum_address(USER), "to": None},
            ],
        }

        block = await chain.get_block(12)

        assert block.number == 12
        assert block.hash == "0x" + "cd" * 32
        assert block.timestamp == 1700000000
        assert [tx.hash for tx in block.transactions] == ["0x" + "ab" * 32, "0x" + "01" * 32]
        assert block.transactions[0].from_address == USER
        assert block.transactions[0].to_address == CATEGORY
        assert block.transactions[1].to_address is None
        assert all(tx.block_number == 12 for tx in block.transactions)

    async def test_receipt(self, chain, fake_eth):
        log = _created_log()
        fake_eth.receipts["0x" + "ab" * 32] = {
            "transactionHash": TX_HASH, "blockNumber": 12, "status": 1, "logs": [log],
        }

        receipt = await chain.get_transaction_receipt("0x" + "ab" * 32)

        assert receipt.transaction_hash == "0x" + "ab" * 32
        assert receipt.block_number == 12
        assert not receipt.reverted
        assert chain.decode_logs(receipt.logs)[0]["event"] == AGREEMENT_CREATED

    async def test_missing_receipt_is_transient(self, chain, fake_eth):
        with pytest.raises(TransientChainError):
            await chain.get_transaction_receipt("0x" + "ff" * 32)


# ── Force close ───────────────────────────────────────────────────────────

class TestCloseAgreement:

    async def test_close_without_operator_key(self, chain, monkeypatch):
        async def get_agreement(category, agreement_id):
            return Agreement(agreement_id, OFFER_ID, USER, PROVIDER_OWNER, category)

        monkeypatch.setattr(chain, "get_agreement", get_agreement)
        with pytest.raises(ConfigError):
            await chain.close_agreement(CATEGORY, 5)
