"""Shared fixtures for the provider daemon unit tests."""

import pytest
import pytest_asyncio

from provider_daemon.backends import BackendRegistry
from provider_daemon.chain_simulator import SimulatedLedger
from provider_daemon.lifecycle import LifecycleOrchestrator
from provider_daemon.storage import StorageManager
from provider_daemon.synchronizer import ChainSynchronizer

from fakes import CATEGORY, OPERATOR, PROVIDER_ID, PROVIDER_OWNER, FakeBackend, seed


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest_asyncio.fixture
async def seeded(storage):
    await seed(storage)
    return storage


@pytest.fixture
def ledger():
    chain = SimulatedLedger()
    chain.register_provider(PROVIDER_OWNER, provider_id=PROVIDER_ID, operator_address=OPERATOR)
    return chain


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def registry(backend):
    reg = BackendRegistry()
    reg.register(CATEGORY, backend)
    return reg


@pytest_asyncio.fixture
async def orchestrator(seeded):
    orch = LifecycleOrchestrator(seeded, poll_interval=0.01)
    yield orch
    await orch.shutdown()


@pytest_asyncio.fixture
async def synchronizer(ledger, seeded, orchestrator, registry):
    sync = ChainSynchronizer(
        ledger, seeded, orchestrator, registry, [PROVIDER_OWNER],
        block_poll_interval=0.01, retry_interval=0.01,
    )
    sync.cursor = await sync.find_start_block()
    return sync
