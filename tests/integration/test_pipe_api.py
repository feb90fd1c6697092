"""
test_pipe_api.py - Integration tests for the daemon HTTP app.

Runs DaemonServer in simulate mode on in-memory SQLite and drives it through
FastAPI TestClient: /chain/* to create agreements, the synchronizer to apply
them, then POST /pipe and GET /health as a resource owner would.
"""

import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from provider_daemon.config import DaemonConfig, DataConfig, OfferConfig, ProductCategoryConfig, ProviderConfig
from provider_daemon.server import DaemonServer

from unit.fakes import CATEGORY, OFFER_ID, OTHER_USER, PROVIDER_OWNER, USER, drain

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def server():
    config = DaemonConfig(simulate=True, database_path=":memory:", deploy_poll_interval=0.01)
    data = DataConfig(
        providers={"acme": ProviderConfig(tag="acme", owner_address=PROVIDER_OWNER, details={"name": "Acme"})},
        product_categories={
            CATEGORY: ProductCategoryConfig(
                address=CATEGORY, details={"name": "Vector DB"}, backend_options={"deploy_ticks": 0},
            ),
        },
        offers=[
            OfferConfig(
                id=OFFER_ID, product_category=CATEGORY, provider="acme",
                deployment_params={"plan": "small"}, details={"name": "Small"},
            ),
        ],
    )
    srv = DaemonServer(config, data)
    await srv._init_services()
    srv.synchronizer.cursor = await srv.synchronizer.find_start_block()
    yield srv
    await srv.stop()


@pytest.fixture
def client(server):
    from fastapi.testclient import TestClient
    return TestClient(server.app)


def _pipe(client, path, params=None, requester=USER, method="GET", body=None):
    headers = {"X-Requester-Address": requester} if requester else {}
    call = {"method": method, "path": path, "params": params or {}, "body": body}
    return client.post("/pipe", json=call, headers=headers)


def _create_agreement(client, user=USER):
    r = client.post("/chain/agreements", json={
        "category": CATEGORY, "offer_id": OFFER_ID, "user": user, "provider": PROVIDER_OWNER,
    })
    assert r.status_code == 200
    return r.json()


# ── POST /pipe ────────────────────────────────────────────────────────────

class TestPipeEndpoint:

    async def test_requester_required(self, client):
        r = _pipe(client, "/resources", requester=None)
        assert r.status_code == 401
        assert r.json() == {"message": "Missing requester address"}

    async def test_malformed_call(self, client):
        r = client.post("/pipe", json={"path": "/resources"}, headers={"X-Requester-Address": USER})
        assert r.status_code == 422

    async def test_unknown_route(self, client):
        r = _pipe(client, "/nope")
        assert r.status_code == 404

    async def test_resource_lifecycle(self, server, client):
        agreement = _create_agreement(client)
        await drain(server.synchronizer)

        r = _pipe(client, "/resources", {"id": agreement["id"], "pc": CATEGORY})
        assert r.status_code == 200
        resource = r.json()
        assert resource["deployment_status"] == "Running"
        assert resource["details"]["plan"] == "small"
        assert "_credentials" not in resource["details"]

        listed = _pipe(client, "/resources", requester=USER.upper().replace("0X", "0x"))
        assert [x["id"] for x in listed.json()] == [agreement["id"]]

        r = client.post(f"/chain/agreements/{CATEGORY}/{agreement['id']}/close")
        assert r.status_code == 200
        await drain(server.synchronizer)

        r = _pipe(client, "/resources", {"id": agreement["id"], "pc": CATEGORY})
        assert r.status_code == 404

    async def test_foreign_resource_hidden(self, server, client):
        agreement = _create_agreement(client)
        await drain(server.synchronizer)

        r = _pipe(client, "/resources", {"id": agreement["id"], "pc": CATEGORY}, requester=OTHER_USER)
        assert r.status_code == 404
        assert r.json() == {"message": "Resource not found"}
        assert _pipe(client, "/resources", requester=OTHER_USER).json() == []

    async def test_backend_reset_route(self, server, client):
        agreement = _create_agreement(client)
        await drain(server.synchronizer)
        target = {"id": agreement["id"], "pc": CATEGORY}
        before = (await server.storage.resources.get(agreement["id"], CATEGORY))["details"]

        r = _pipe(client, "/reset", method="POST", body=target, requester=OTHER_USER)
        assert r.status_code == 404
        assert r.json() == {"message": "Resource not found"}

        r = _pipe(client, "/reset", method="POST", body=target)
        assert r.status_code == 200
        after = (await server.storage.resources.get(agreement["id"], CATEGORY))["details"]
        assert after["_credentials"] == r.json()["credentials"]
        assert after["_credentials"] != before["_credentials"]
        assert "_credentials" not in _pipe(client, "/resources", target).json()["details"]

    async def test_catalog(self, client):
        offers = _pipe(client, "/offers").json()
        assert [o["id"] for o in offers] == [OFFER_ID]
        assert "deployment_params" not in offers[0]

        details = _pipe(client, "/details", {"providerId": 1}).json()
        assert details["details"] == {"name": "Acme"}

        categories = _pipe(client, "/product-categories").json()
        assert categories == [{"address": CATEGORY, "details": {"name": "Vector DB"}}]


# ── Health and simulator ──────────────────────────────────────────────────

class TestHealthEndpoint:

    async def test_health(self, server, client):
        _create_agreement(client)
        await drain(server.synchronizer)

        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "ok"
        assert data["simulated"] is True
        assert data["resources"] == 1
        assert data["cursor"] == server.synchronizer.cursor

    async def test_chain_stats(self, client):
        client.post("/chain/mine", json={"count": 3})
        stats = client.get("/chain/stats").json()
        assert stats["height"] == 3
        assert stats["providers"] == 1
