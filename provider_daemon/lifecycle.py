"""
lifecycle.py - Resource lifecycle orchestrator.

Applies agreement events to the resource store through a resource backend:
 - AgreementCreated -> backend.create, resource row, deployment poller
 - AgreementClosed  -> backend.delete (best effort), resource marked Closed

Deployment pollers run as supervised tasks keyed by (category, agreement id)
and stop once the resource is Running, Failed, closed or gone.
"""

import asyncio
import logging
import random
import secrets
import time
from typing import TYPE_CHECKING, Awaitable, Dict, List, Optional, Tuple

from provider_daemon.errors import DataIntegrityError, EventApplicationError
from provider_daemon.ledger import DeploymentStatus

if TYPE_CHECKING:
    from provider_daemon.backends import BackendRegistry, ResourceBackend
    from provider_daemon.ledger import Agreement, LedgerClient
    from provider_daemon.storage import StorageManager

logger = logging.getLogger("lifecycle")

DEFAULT_DEPLOY_POLL_INTERVAL = 5.0

_ADJECTIVES = [
    "amber", "brisk", "calm", "dusty", "eager", "fuzzy", "gentle", "hollow",
    "icy", "jolly", "keen", "lucky", "mellow", "nimble", "quiet", "rapid",
    "silent", "tidy", "vivid", "witty",
]
_NOUNS = [
    "badger", "comet", "delta", "ember", "falcon", "glacier", "harbor", "island",
    "jaguar", "lantern", "meadow", "nebula", "orchid", "pebble", "quartz", "river",
    "summit", "tundra", "valley", "willow",
]

SupervisorKey = Tuple[str, int]


def generate_name() -> str:
    """Readable random resource name, e.g. ``brisk-falcon-3fa2``."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}-{secrets.token_hex(2)}"


def resource_key(agreement: "Agreement") -> SupervisorKey:
    return (agreement.product_category.lower(), agreement.id)


async def _backend_create(backend: "ResourceBackend", agreement: "Agreement", offer: dict):
    try:
        details = dict(await backend.create(agreement, offer) or {})
        status = DeploymentStatus(details.pop("status"))
    except Exception as e:
        raise EventApplicationError(
            f"{type(backend).__name__} could not create resource #{agreement.id}: {e!r}"
        ) from e
    return status, details


async def _backend_delete(backend: "ResourceBackend", agreement: "Agreement", resource: dict):
    try:
        await backend.delete(agreement, resource)
    except Exception as e:
        raise EventApplicationError(
            f"{type(backend).__name__} could not delete resource #{agreement.id}: {e!r}"
        ) from e


class DeploymentSupervisor:
    """Set of running deployment pollers, one per resource."""

    def __init__(self):
        self._tasks: Dict[SupervisorKey, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def keys(self) -> List[SupervisorKey]:
        return list(self._tasks)

    def is_supervised(self, key: SupervisorKey) -> bool:
        return key in self._tasks

    def start(self, key: SupervisorKey, coro: Awaitable) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.create_task(coro, name=f"deploy-{key[0]}-{key[1]}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return task

    def _on_done(self, key: SupervisorKey, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Deployment poller for resource #%d (%s) crashed",
                key[1], key[0], exc_info=task.exception(),
            )

    def cancel(self, key: SupervisorKey) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        return True

    async def join(self, key: SupervisorKey):
        """Wait for the poller of ``key`` to finish, if there is one."""
        task = self._tasks.get(key)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class LifecycleOrchestrator:
    """Creates, supervises and closes resources for agreement events."""

    def __init__(
        self,
        storage: "StorageManager",
        poll_interval: float = DEFAULT_DEPLOY_POLL_INTERVAL,
        deploy_timeout: Optional[float] = None,
    ):
        self._storage = storage
        self.poll_interval = poll_interval
        self.deploy_timeout = deploy_timeout
        self.supervisor = DeploymentSupervisor()

    # -------------------------------------------------------------------
    # AgreementCreated
    # -------------------------------------------------------------------

    async def on_agreement_created(
        self, agreement: "Agreement", backend: "ResourceBackend",
    ) -> dict:
        """Create the resource of a new agreement.

        Raises DataIntegrityError (and writes nothing) if the offer or the
        provider is unknown locally. Backend failures never propagate: the
        resource is recorded as Failed instead.
        """
        category = agreement.product_category
        offer = await self._storage.offers.get(agreement.offer_id, category)
        if offer is None:
            raise DataIntegrityError(
                f"Offer #{agreement.offer_id} of category {category} not found "
                f"for agreement #{agreement.id}"
            )
        provider = await self._storage.providers.get(agreement.provider_owner_address)
        if provider is None:
            raise DataIntegrityError(
                f"Provider {agreement.provider_owner_address} not found for agreement #{agreement.id}"
            )

        try:
            status, details = await _backend_create(backend, agreement, offer)
        except EventApplicationError:
            logger.exception("Error while creating the resource for agreement #%d", agreement.id)
            return await self._storage.resources.create(
                resource_id=agreement.id,
                category_address=category,
                offer_id=agreement.offer_id,
                provider_id=provider["id"],
                owner_address=agreement.owner_address,
                name="",
                deployment_status=DeploymentStatus.FAILED,
                details={},
            )

        name = details.pop("name", None) or generate_name()
        resource = await self._storage.resources.create(
            resource_id=agreement.id,
            category_address=category,
            offer_id=agreement.offer_id,
            provider_id=provider["id"],
            owner_address=agreement.owner_address,
            name=name,
            deployment_status=status,
            details=details,
        )

        logger.info(
            "Resource #%d (%s) created for %s: %s",
            agreement.id, name, agreement.owner_address, status.value,
        )
        if status != DeploymentStatus.RUNNING:
            self.watch_deployment(agreement, backend)
        return resource

    # -------------------------------------------------------------------
    # Deployment polling
    # -------------------------------------------------------------------

    def watch_deployment(self, agreement: "Agreement", backend: "ResourceBackend") -> asyncio.Task:
        key = resource_key(agreement)
        logger.debug("Watching deployment of resource #%d (%s)", key[1], key[0])
        return self.supervisor.start(key, self._poll_deployment(agreement, backend))

    async def _poll_deployment(self, agreement: "Agreement", backend: "ResourceBackend"):
        category = agreement.product_category
        started = time.monotonic()
        while True:
            await asyncio.sleep(self.poll_interval)

            resource = await self._storage.resources.get(agreement.id, category)
            if resource is None or not resource["is_active"]:
                logger.info("Resource #%d is gone, deployment polling stopped", agreement.id)
                return

            if self.deploy_timeout is not None and time.monotonic() - started >= self.deploy_timeout:
                logger.warning(
                    "Resource #%d did not become Running within %.0fs, marking as Failed",
                    agreement.id, self.deploy_timeout,
                )
                await self._storage.resources.update(
                    agreement.id, category, deployment_status=DeploymentStatus.FAILED,
                )
                return

            try:
                details = dict(await backend.get_details(agreement, resource) or {})
                status = DeploymentStatus(details.pop("status", resource["deployment_status"]))
            except Exception:
                logger.exception("Error while checking deployment of resource #%d", agreement.id)
                continue

            if status not in (DeploymentStatus.RUNNING, DeploymentStatus.FAILED):
                continue

            values = {"deployment_status": status, "details": details}
            name = details.pop("name", None)
            if name:
                values["name"] = name
            await self._storage.resources.update(agreement.id, category, **values)
            logger.info("Resource #%d is %s", agreement.id, status.value)
            return

    async def resume_deployments(self, ledger: "LedgerClient", registry: "BackendRegistry") -> int:
        """Restart pollers for resources left in Deploying by a previous run."""
        resumed = 0
        for resource in await self._storage.resources.list_all(status=DeploymentStatus.DEPLOYING):
            if not resource["is_active"]:
                continue
            try:
                agreement = await ledger.get_agreement(resource["product_category"], resource["id"])
            except Exception:
                logger.exception("Cannot resume deployment of resource #%d", resource["id"])
                continue
            backend = registry.resolve(agreement.product_category, agreement.provider_owner_address)
            if backend is None:
                logger.error("No backend for category %s, resource #%d not resumed",
                             agreement.product_category, resource["id"])
                continue
            self.watch_deployment(agreement, backend)
            resumed += 1
        if resumed:
            logger.info("Resumed deployment polling for %d resource(s)", resumed)
        return resumed

    # -------------------------------------------------------------------
    # AgreementClosed
    # -------------------------------------------------------------------

    async def on_agreement_closed(
        self, agreement: "Agreement", backend: Optional["ResourceBackend"],
    ) -> Optional[dict]:
        """Tear down the resource and mark it Closed.

        The local row is always closed, whatever the backend says: the
        on-chain closure is authoritative.
        """
        category = agreement.product_category
        self.supervisor.cancel(resource_key(agreement))

        resource = await self._storage.resources.get(agreement.id, category)
        if resource is not None and resource["is_active"] and backend is not None:
            try:
                await _backend_delete(backend, agreement, resource)
            except EventApplicationError:
                logger.exception("Error while deleting the resource #%d", agreement.id)

        closed = await self._storage.resources.mark_closed(agreement.id, category)
        logger.info("Resource #%d closed (owner %s)", agreement.id, agreement.owner_address)
        return closed

    async def shutdown(self):
        await self.supervisor.shutdown()
