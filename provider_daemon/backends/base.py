"""
base.py - Resource backend capability.

A backend owns the real artifact behind a resource (a database, an index,
a VM...). The daemon calls it when agreements are created or closed and
while a deployment is in progress.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from provider_daemon.ledger import Agreement
    from provider_daemon.pipe import PipeRouter
    from provider_daemon.query import QueryService
    from provider_daemon.storage import StorageManager


class ResourceBackend(ABC):
    """Base class for resource kinds.

    ``create`` and ``get_details`` return a dict with a ``status`` key
    (a DeploymentStatus value), an optional ``name`` and any extra detail
    fields. Detail keys starting with ``_`` are private: they are stored and
    handed back to the backend, but never returned to resource owners.
    """

    def __init__(self, options: Optional[dict] = None):
        self.options = dict(options or {})

    async def init(self):
        """Hook for async setup before the daemon starts applying events."""

    async def close(self):
        """Hook for releasing clients at shutdown."""

    def register_routes(self, router: "PipeRouter", query: "QueryService", storage: "StorageManager"):
        """Hook for adding resource-specific pipe routes.

        Handlers must check ownership through ``query.get_resource`` so that a
        requester who does not own the resource gets a not-found response. Several
        instances may register the same route, so handlers act on the stored
        resource rather than on instance state.
        """

    @abstractmethod
    async def create(self, agreement: "Agreement", offer: dict) -> dict:
        """Create the resource for a new agreement."""

    @abstractmethod
    async def get_details(self, agreement: "Agreement", resource: dict) -> dict:
        """Fetch current status and details of the resource."""

    @abstractmethod
    async def delete(self, agreement: "Agreement", resource: dict) -> Optional[dict]:
        """Tear down the resource of a closed agreement."""
