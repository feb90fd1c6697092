"""
server.py - Provider daemon entry point.

Single-process daemon combining:
 - SQLite persistent storage via StorageManager
 - Chain synchronizer applying agreement events through the lifecycle
   orchestrator and the configured resource backends
 - Balance sweeper force-closing exhausted agreements
 - Pipe API (FastAPI on uvicorn): POST /pipe, GET /health

With --simulate the ledger is an in-memory SimulatedLedger and its /chain/*
development routes are served on the same app.

Usage:
    python -m provider_daemon.server [--data-dir data] [--db-path data/provider.db] [--api-port 8080]
    provider-daemon --simulate
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI

from provider_daemon import __version__
from provider_daemon.backends import BackendRegistry, load_backend_class
from provider_daemon.chain_simulator import SimulatedLedger
from provider_daemon.config import DaemonConfig, DataConfig, ProductCategoryConfig, load_data_dir
from provider_daemon.errors import ConfigError
from provider_daemon.ledger import LedgerClient
from provider_daemon.lifecycle import LifecycleOrchestrator
from provider_daemon.pipe import PipeRouter, register_query_routes
from provider_daemon.query import QueryService
from provider_daemon.routers import register_all_routers
from provider_daemon.storage import StorageManager
from provider_daemon.sweeper import BalanceSweeper
from provider_daemon.synchronizer import ChainSynchronizer
from provider_daemon.web3_ledger import Web3Ledger

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("server")


def build_backend_registry(categories: Dict[str, ProductCategoryConfig]) -> BackendRegistry:
    """Instantiate the configured backend of every product category."""
    registry = BackendRegistry()
    for address, category in sorted(categories.items()):
        backend_cls = load_backend_class(category.backend)
        registry.register(address, backend_cls(category.backend_options))
    return registry


# ---------------------------------------------------------------------------
# Daemon server
# ---------------------------------------------------------------------------

class DaemonServer:
    """Wires the ledger, storage, synchronizer, sweeper and pipe API together."""

    def __init__(self, config: DaemonConfig, data: DataConfig, ledger: Optional[LedgerClient] = None):
        self.config = config
        self.data = data
        self.ledger = ledger if ledger is not None else self._make_ledger()
        self.simulated = isinstance(self.ledger, SimulatedLedger)
        self.registry = build_backend_registry(data.product_categories)

        # Initialized async in start()
        self.storage: Optional[StorageManager] = None
        self.orchestrator: Optional[LifecycleOrchestrator] = None
        self.synchronizer: Optional[ChainSynchronizer] = None
        self.sweeper: Optional[BalanceSweeper] = None
        self.query: Optional[QueryService] = None
        self.pipe: Optional[PipeRouter] = None
        self._tasks: List[asyncio.Task] = []
        self._uvicorn_server: Optional[uvicorn.Server] = None

        self.app = FastAPI(title="Provider Daemon", version=__version__)
        self.app.state.server = self
        register_all_routers(self.app)

        if self.simulated:
            self.ledger.register_routes(self.app)
            logger.info("Chain simulator embedded on daemon server")

    def _make_ledger(self) -> LedgerClient:
        if self.config.simulate:
            ledger = SimulatedLedger()
            for index, provider in enumerate(self.data.providers.values(), start=1):
                ledger.register_provider(
                    provider.owner_address,
                    provider_id=index,
                    operator_address=provider.operator_address,
                    details=provider.details,
                )
            return ledger
        return Web3Ledger(
            self.config.rpc_url,
            self.config.registry_address,
            operator_keys={
                p.owner_address: p.operator_private_key
                for p in self.data.providers.values()
                if p.operator_private_key
            },
            chain_id=self.config.chain_id,
        )

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.config.database_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.config.database_path)
        await self.storage.initialize()
        await self.sync_registration()
        await self.registry.init_all()

        provider_owners = self.data.provider_owners()
        self.orchestrator = LifecycleOrchestrator(
            self.storage,
            poll_interval=self.config.deploy_poll_interval,
            deploy_timeout=self.config.deploy_timeout,
        )
        self.synchronizer = ChainSynchronizer(
            self.ledger,
            self.storage,
            self.orchestrator,
            self.registry,
            provider_owners,
            extra_contracts=self.config.extra_contract_addresses,
            block_poll_interval=self.config.block_poll_interval,
            retry_interval=self.config.retry_interval,
        )
        self.sweeper = BalanceSweeper(
            self.ledger,
            self.registry.categories(),
            provider_owners,
            sweep_interval=self.config.sweep_interval,
        )
        self.query = QueryService(self.storage)
        self.pipe = PipeRouter()
        register_query_routes(self.pipe, self.query)
        for backend in self.registry.backends():
            backend.register_routes(self.pipe, self.query, self.storage)

        await self.orchestrator.resume_deployments(self.ledger, self.registry)
        logger.info("Services initialized (db=%s)", self.config.database_path)

    async def sync_registration(self):
        """Save the configured providers, categories and offers locally.

        Every provider must already be registered in the protocol.
        """
        provider_ids: Dict[str, int] = {}
        for tag, provider in self.data.providers.items():
            actor = await self.ledger.get_provider(provider.owner_address)
            if actor is None:
                raise ConfigError(
                    f"Provider {tag!r} ({provider.owner_address}) is not registered in the protocol"
                )
            await self.storage.providers.save(
                actor["id"],
                provider.owner_address,
                operator_address=provider.operator_address or actor.get("operator_address") or "",
                details=provider.details,
            )
            provider_ids[tag] = actor["id"]

        for address, category in sorted(self.data.product_categories.items()):
            await self.storage.product_categories.save(address, category.details)

        for offer in self.data.offers:
            await self.storage.offers.save(
                offer.id,
                offer.product_category,
                provider_ids[offer.provider],
                deployment_params=offer.deployment_params,
                details=offer.details,
            )

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Start storage, background loops and the API server."""
        try:
            await self._init_services()

            self._tasks = [
                asyncio.create_task(self.synchronizer.run(), name="synchronizer"),
                asyncio.create_task(self.sweeper.run(), name="sweeper"),
            ]

            config = uvicorn.Config(
                self.app,
                host=self.config.api_host,
                port=self.config.api_port,
                log_level=self.config.log_level.lower(),
            )
            self._uvicorn_server = uvicorn.Server(config)
            logger.info("Pipe API starting on %s:%d", self.config.api_host, self.config.api_port)
            await self._uvicorn_server.serve()
        finally:
            await self.stop()

    async def stop(self):
        """Stop background loops, deployment pollers, backends and storage."""
        if self.synchronizer:
            self.synchronizer.stop()
        if self.sweeper:
            self.sweeper.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.orchestrator:
            await self.orchestrator.shutdown()
        await self.registry.close_all()
        if self.storage:
            await self.storage.close()
            self.storage = None
        if self._uvicorn_server:
            self._uvicorn_server.should_exit = True


def main(argv=None):
    """CLI entry point for the provider daemon."""
    parser = argparse.ArgumentParser(description="Marketplace provider daemon")
    parser.add_argument("--data-dir", default=None, help="Directory with providers.json, product-categories/ and offers/ (default: data)")
    parser.add_argument("--db-path", default=None, help="SQLite database path (default: data/provider.db)")
    parser.add_argument("--rpc-url", default=None, help="JSON-RPC endpoint of the chain node")
    parser.add_argument("--api-host", default=None, help="Pipe API host (default: 0.0.0.0)")
    parser.add_argument("--api-port", type=int, default=None, help="Pipe API port (default: 8080)")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")
    parser.add_argument("--simulate", action="store_true", help="Use the in-memory chain simulator instead of a node")
    args = parser.parse_args(argv)

    try:
        config = DaemonConfig.load(
            data_dir=args.data_dir,
            database_path=args.db_path,
            rpc_url=args.rpc_url,
            api_host=args.api_host,
            api_port=args.api_port,
            log_level=args.log_level,
            simulate=True if args.simulate else None,
        )
        data = load_data_dir(config.data_dir)
        logging.getLogger().setLevel(config.log_level_value)
        server = DaemonServer(config, data)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("  Provider Daemon %s", __version__)
    logger.info("  Pipe API:    http://%s:%d", config.api_host, config.api_port)
    logger.info("  Database:    %s", config.database_path)
    logger.info("  Ledger:      %s", "simulated" if config.simulate else config.rpc_url)
    logger.info("  Providers:   %d", len(data.providers))
    logger.info("  Categories:  %d", len(data.product_categories))
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
