"""
query.py - Read side of the resource store.

Lookups served to external callers. Resource lookups always include the
requester in the key, so a resource owned by someone else reads exactly
like a missing one. Private detail keys (leading ``_``) and offer
deployment parameters never leave this module.
"""

from typing import TYPE_CHECKING, List, Optional, Union

from provider_daemon.errors import NotFoundError

if TYPE_CHECKING:
    from provider_daemon.storage import StorageManager


def strip_private(details: Optional[dict]) -> dict:
    """Drop detail keys starting with an underscore."""
    return {k: v for k, v in (details or {}).items() if not str(k).startswith("_")}


def public_resource(resource: dict) -> dict:
    return {
        "id": resource["id"],
        "product_category": resource["product_category"],
        "offer_id": resource["offer_id"],
        "provider_id": resource["provider_id"],
        "owner_address": resource["owner_address"],
        "name": resource["name"],
        "deployment_status": resource["deployment_status"].value,
        "group_name": resource["group_name"],
        "details": strip_private(resource["details"]),
        "created_at": resource["created_at"],
        "updated_at": resource["updated_at"],
    }


def public_offer(offer: dict) -> dict:
    return {
        "id": offer["id"],
        "product_category": offer["product_category"],
        "provider_id": offer["provider_id"],
        "details": offer["details"],
    }


def public_provider(provider: dict) -> dict:
    return {
        "id": provider["id"],
        "owner_address": provider["owner_address"],
        "operator_address": provider["operator_address"],
        "details": provider["details"],
    }


def public_category(category: dict) -> dict:
    return {"address": category["address"], "details": category["details"]}


class QueryService:

    def __init__(self, storage: "StorageManager"):
        self._storage = storage

    async def get_resource(self, resource_id: int, requester: str, category_address: str) -> dict:
        resource = await self._storage.resources.get(
            resource_id, category_address, owner_address=requester,
        )
        if resource is None or not resource["is_active"]:
            raise NotFoundError("Resource")
        return public_resource(resource)

    async def list_resources(self, requester: str, category_address: Optional[str] = None) -> List[dict]:
        resources = await self._storage.resources.list_for_owner(
            requester, category_address, active_only=True,
        )
        return [public_resource(r) for r in resources]

    async def get_offer(self, offer_id: int, category_address: str) -> dict:
        offer = await self._storage.offers.get(offer_id, category_address)
        if offer is None:
            raise NotFoundError("Offer")
        return public_offer(offer)

    async def list_offers(
        self, category_address: Optional[str] = None, provider_id: Optional[int] = None,
    ) -> List[dict]:
        offers = await self._storage.offers.list_all(category_address, provider_id)
        return [public_offer(o) for o in offers]

    async def get_provider(self, provider: Union[int, str]) -> dict:
        """Provider by on-chain id or by owner address."""
        row = await self._storage.providers.get(provider)
        if row is None:
            raise NotFoundError("Provider")
        return public_provider(row)

    async def list_providers(self) -> List[dict]:
        return [public_provider(p) for p in await self._storage.providers.list_all()]

    async def list_product_categories(self) -> List[dict]:
        return [public_category(c) for c in await self._storage.product_categories.list_all()]
