"""
example.py - Example backend that simulates an asynchronous deployment.

Useful for local runs against the simulated ledger: resources start in
Deploying and report Running after ``deploy_ticks`` detail polls.
"""

import logging
import secrets
from typing import Dict, Optional, Tuple

from provider_daemon.backends.base import ResourceBackend
from provider_daemon.ledger import DeploymentStatus
from provider_daemon.pipe import PipeRequest, int_param, require_param, str_param

logger = logging.getLogger("backends")


def _new_api_key() -> str:
    return secrets.token_hex(16)


class ExampleBackend(ResourceBackend):

    def __init__(self, options: Optional[dict] = None):
        super().__init__(options)
        self.deploy_ticks = int(self.options.get("deploy_ticks", 2))
        self.base_url = self.options.get("base_url", "https://resources.example.invalid")
        self._deployments: Dict[Tuple[str, int], dict] = {}

    async def create(self, agreement, offer: dict) -> dict:
        key = (agreement.product_category, agreement.id)
        self._deployments[key] = {"polls": 0}
        status = DeploymentStatus.RUNNING if self.deploy_ticks <= 0 else DeploymentStatus.DEPLOYING
        logger.info("Example resource for agreement #%d created (%s)", agreement.id, status.value)
        return {
            "status": status,
            "endpoint": f"{self.base_url}/{agreement.product_category}/{agreement.id}",
            "plan": (offer.get("deployment_params") or {}).get("plan", "default"),
            "_credentials": {"api_key": _new_api_key()},
        }

    async def get_details(self, agreement, resource: dict) -> dict:
        key = (agreement.product_category, agreement.id)
        deployment = self._deployments.setdefault(key, {"polls": 0})
        deployment["polls"] += 1
        ready = deployment["polls"] >= self.deploy_ticks
        return {
            **resource["details"],
            "status": DeploymentStatus.RUNNING if ready else DeploymentStatus.DEPLOYING,
        }

    async def delete(self, agreement, resource: dict) -> Optional[dict]:
        self._deployments.pop((agreement.product_category, agreement.id), None)
        logger.info("Example resource for agreement #%d deleted", agreement.id)
        return None

    def register_routes(self, router, query, storage):

        @router.route("POST", "/reset")
        async def reset_credentials(request: PipeRequest):
            """Rotate the API key of one of the requester's resources.

            body: {"id": <agreement id>, "pc": <product category address>}
            """
            body = request.body if isinstance(request.body, dict) else request.params
            resource_id = require_param(int_param(body, "id"), "id")
            category = require_param(str_param(body, "pc"), "pc")
            # Raises NotFoundError unless the requester owns the active resource
            await query.get_resource(resource_id, request.requester, category)

            stored = await storage.resources.get(resource_id, category)
            credentials = {"api_key": _new_api_key()}
            await storage.resources.update(
                resource_id, category, details={**stored["details"], "_credentials": credentials},
            )
            logger.info("Credentials of example resource #%d reset", resource_id)
            return {"credentials": credentials}
