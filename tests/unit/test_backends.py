"""
test_backends.py - Unit tests for backend loading, lookup and ExampleBackend.
"""

import pytest
import pytest_asyncio

from provider_daemon.backends import BackendRegistry, load_backend_class
from provider_daemon.backends.example import ExampleBackend
from provider_daemon.errors import ConfigError
from provider_daemon.ledger import Agreement, DeploymentStatus
from provider_daemon.pipe import PipeRequest, PipeRouter
from provider_daemon.query import QueryService

from fakes import (
    CATEGORY, OFFER_ID, OTHER_CATEGORY, OTHER_PROVIDER, OTHER_USER, PROVIDER_ID, PROVIDER_OWNER,
    USER, FakeBackend,
)

pytestmark = pytest.mark.asyncio


def _agreement(agreement_id=1):
    return Agreement(
        id=agreement_id,
        offer_id=OFFER_ID,
        owner_address=USER,
        provider_owner_address=PROVIDER_OWNER,
        product_category=CATEGORY,
    )


# ── Loading ───────────────────────────────────────────────────────────────

class TestLoadBackendClass:

    async def test_load(self):
        assert load_backend_class("provider_daemon.backends.example:ExampleBackend") is ExampleBackend

    @pytest.mark.parametrize("spec", [
        "provider_daemon.backends.example",
        ":ExampleBackend",
        "provider_daemon.nope:Backend",
        "provider_daemon.backends.example:Missing",
        "provider_daemon.ledger:Agreement",
    ])
    async def test_bad_reference(self, spec):
        with pytest.raises(ConfigError):
            load_backend_class(spec)


# ── Registry ──────────────────────────────────────────────────────────────

class TestBackendRegistry:

    async def test_provider_specific_backend_wins(self):
        shared, dedicated = FakeBackend(), FakeBackend()
        registry = BackendRegistry()
        registry.register(CATEGORY, shared)
        registry.register(CATEGORY.upper().replace("0X", "0x"), dedicated, provider_owner=OTHER_PROVIDER)

        assert registry.resolve(CATEGORY, OTHER_PROVIDER) is dedicated
        assert registry.resolve(CATEGORY, PROVIDER_OWNER) is shared
        assert registry.resolve(CATEGORY) is shared
        assert registry.resolve(OTHER_CATEGORY) is None
        assert registry.categories() == [CATEGORY]

    async def test_backends_are_unique(self):
        backend = FakeBackend()
        registry = BackendRegistry()
        registry.register(CATEGORY, backend)
        registry.register(OTHER_CATEGORY, backend)
        assert registry.backends() == [backend]
        assert registry.categories() == [CATEGORY, OTHER_CATEGORY]

    async def test_close_all_survives_errors(self):
        class Broken(FakeBackend):
            async def close(self):
                raise RuntimeError("close failed")

        closed = []

        class Tracking(FakeBackend):
            async def close(self):
                closed.append(self)

        tracking = Tracking()
        registry = BackendRegistry()
        registry.register(CATEGORY, Broken())
        registry.register(OTHER_CATEGORY, tracking)

        await registry.close_all()
        assert closed == [tracking]


# ── ExampleBackend ────────────────────────────────────────────────────────

class TestExampleBackend:

    async def test_deploys_after_ticks(self):
        backend = ExampleBackend({"deploy_ticks": 2, "base_url": "https://res.test"})
        agreement = _agreement()

        created = await backend.create(agreement, {"deployment_params": {"plan": "small"}})
        assert created["status"] == DeploymentStatus.DEPLOYING
        assert created["endpoint"] == f"https://res.test/{CATEGORY}/1"
        assert created["plan"] == "small"
        assert "api_key" in created["_credentials"]

        resource = {"details": {"endpoint": created["endpoint"]}}
        first = await backend.get_details(agreement, resource)
        second = await backend.get_details(agreement, resource)
        assert first["status"] == DeploymentStatus.DEPLOYING
        assert second["status"] == DeploymentStatus.RUNNING
        assert second["endpoint"] == created["endpoint"]

    async def test_zero_ticks_is_running_immediately(self):
        backend = ExampleBackend({"deploy_ticks": 0})
        created = await backend.create(_agreement(), {"deployment_params": None})
        assert created["status"] == DeploymentStatus.RUNNING
        assert created["plan"] == "default"

    async def test_delete(self):
        backend = ExampleBackend()
        agreement = _agreement()
        await backend.create(agreement, {})
        assert await backend.delete(agreement, {"details": {}}) is None


# ── Backend routes ────────────────────────────────────────────────────────

class TestExampleBackendRoutes:

    @pytest_asyncio.fixture
    async def router(self, seeded):
        backend = ExampleBackend({"deploy_ticks": 0})
        created = await backend.create(_agreement(), {})
        created.pop("status")
        await seeded.resources.create(
            1, CATEGORY, OFFER_ID, PROVIDER_ID, USER, "res-1", DeploymentStatus.RUNNING, created,
        )
        router = PipeRouter()
        backend.register_routes(router, QueryService(seeded), seeded)
        return router

    async def _reset(self, router, body, requester=USER):
        return await router.dispatch(PipeRequest("POST", "/reset", requester, body=body))

    async def test_base_backend_adds_no_routes(self, seeded):
        router = PipeRouter()
        FakeBackend().register_routes(router, QueryService(seeded), seeded)
        assert router.routes() == []

    async def test_reset_rotates_stored_credentials(self, router, seeded):
        before = (await seeded.resources.get(1, CATEGORY))["details"]

        response = await self._reset(router, {"id": 1, "pc": CATEGORY})

        assert response.code == 200
        after = (await seeded.resources.get(1, CATEGORY))["details"]
        assert after["_credentials"] == response.body["credentials"]
        assert after["_credentials"]["api_key"] != before["_credentials"]["api_key"]
        assert after["endpoint"] == before["endpoint"]

    async def test_reset_by_other_user_is_not_found(self, router, seeded):
        before = (await seeded.resources.get(1, CATEGORY))["details"]

        response = await self._reset(router, {"id": 1, "pc": CATEGORY}, requester=OTHER_USER)

        assert response.code == 404
        assert response.body == {"message": "Resource not found"}
        assert (await seeded.resources.get(1, CATEGORY))["details"] == before

    async def test_reset_closed_resource_is_not_found(self, router, seeded):
        await seeded.resources.mark_closed(1, CATEGORY)
        response = await self._reset(router, {"id": 1, "pc": CATEGORY})
        assert response.code == 404

    async def test_reset_requires_category(self, router):
        response = await self._reset(router, {"id": 1})
        assert response.code == 400
        assert "pc" in response.body["message"]

    async def test_reset_only_accepts_post(self, router):
        response = await router.dispatch(PipeRequest("GET", "/reset", USER, params={"id": "1", "pc": CATEGORY}))
        assert response.code == 405
