"""
test_server.py - Unit tests for DaemonServer wiring.

Runs the daemon in simulate mode on an in-memory database, without
uvicorn: registration sync, backend loading and an agreement driven
through the ExampleBackend until it is Running.
"""

import pytest

from provider_daemon.chain_simulator import SimulatedLedger
from provider_daemon.config import DaemonConfig, DataConfig, OfferConfig, ProductCategoryConfig, ProviderConfig
from provider_daemon.errors import ConfigError
from provider_daemon.ledger import DeploymentStatus
from provider_daemon.server import DaemonServer, build_backend_registry
from provider_daemon.backends.example import ExampleBackend

from fakes import CATEGORY, OFFER_ID, PROVIDER_OWNER, USER, drain, wait_for

pytestmark = pytest.mark.asyncio


def _config(**overrides):
    values = dict(
        simulate=True,
        database_path=":memory:",
        deploy_poll_interval=0.01,
        block_poll_interval=0.01,
        retry_interval=0.01,
    )
    values.update(overrides)
    return DaemonConfig(**values)


def _data():
    return DataConfig(
        providers={"acme": ProviderConfig(tag="acme", owner_address=PROVIDER_OWNER, details={"name": "Acme"})},
        product_categories={
            CATEGORY: ProductCategoryConfig(
                address=CATEGORY, details={"name": "Vector DB"}, backend_options={"deploy_ticks": 1},
            ),
        },
        offers=[OfferConfig(id=OFFER_ID, product_category=CATEGORY, provider="acme", deployment_params={"plan": "small"})],
    )


class TestDaemonServer:

    async def test_backend_registry_from_config(self):
        registry = build_backend_registry(_data().product_categories)
        backend = registry.resolve(CATEGORY)
        assert isinstance(backend, ExampleBackend)
        assert backend.deploy_ticks == 1

    async def test_simulated_ledger_knows_providers(self):
        server = DaemonServer(_config(), _data())
        assert server.simulated is True
        assert (await server.ledger.get_provider(PROVIDER_OWNER))["id"] == 1

    async def test_init_saves_registration(self):
        server = DaemonServer(_config(), _data())
        try:
            await server._init_services()
            provider = await server.storage.providers.get(PROVIDER_OWNER)
            assert provider["id"] == 1
            assert provider["details"] == {"name": "Acme"}
            assert [c["address"] for c in await server.storage.product_categories.list_all()] == [CATEGORY]
            offer = await server.storage.offers.get(OFFER_ID, CATEGORY)
            assert offer["provider_id"] == 1
            assert offer["deployment_params"] == {"plan": "small"}
        finally:
            await server.stop()

    async def test_unregistered_provider(self):
        server = DaemonServer(_config(), _data(), ledger=SimulatedLedger())
        try:
            with pytest.raises(ConfigError, match="acme"):
                await server._init_services()
        finally:
            await server.stop()

    async def test_agreement_reaches_running(self):
        server = DaemonServer(_config(), _data())
        try:
            await server._init_services()
            server.synchronizer.cursor = await server.synchronizer.find_start_block()
            agreement = server.ledger.create_agreement(CATEGORY, OFFER_ID, USER, PROVIDER_OWNER)
            await drain(server.synchronizer)

            async def running():
                resource = await server.storage.resources.get(agreement.id, CATEGORY)
                return resource and resource["deployment_status"] == DeploymentStatus.RUNNING

            assert await wait_for(running)
            resource = await server.storage.resources.get(agreement.id, CATEGORY)
            assert resource["details"]["plan"] == "small"
            assert "_credentials" in resource["details"]
        finally:
            await server.stop()
