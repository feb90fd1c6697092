"""
pipe.py - Inbound request router.

Requests arrive over the pipe transport already authenticated: each one
carries the verified requester address, a method, a path and string
params. The router maps (method, path) to a handler and turns its result,
or the error it raised, into a PipeResponse with an HTTP-like code.

Routes served (see register_query_routes):
    GET /details              providerId?
    GET /resources            id?, pc?
    GET /offers               id?, pc?, providerId?
    GET /product-categories

Backends may add their own routes through ResourceBackend.register_routes.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from provider_daemon.errors import NotFoundError, PipeError

if TYPE_CHECKING:
    from provider_daemon.query import QueryService

logger = logging.getLogger("pipe")

PIPE_OK = 200
PIPE_BAD_REQUEST = 400
PIPE_UNAUTHORIZED = 401
PIPE_NOT_FOUND = 404
PIPE_METHOD_NOT_ALLOWED = 405
PIPE_INTERNAL_ERROR = 500


@dataclass
class PipeRequest:
    method: str
    path: str
    requester: str
    params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None


@dataclass
class PipeResponse:
    code: int
    body: Any = None


Handler = Callable[[PipeRequest], Awaitable[Any]]


def _normalize_path(path: str) -> str:
    return "/" + path.strip().strip("/")


class PipeRouter:

    def __init__(self):
        self._routes: Dict[str, Dict[str, Handler]] = {}

    def route(self, method: str, path: str):
        """Decorator registering a handler for (method, path)."""
        def decorator(handler: Handler) -> Handler:
            self.add_route(method, path, handler)
            return handler
        return decorator

    def add_route(self, method: str, path: str, handler: Handler):
        self._routes.setdefault(_normalize_path(path), {})[method.upper()] = handler

    def routes(self):
        return sorted(
            (method, path) for path, methods in self._routes.items() for method in methods
        )

    async def dispatch(self, request: PipeRequest) -> PipeResponse:
        path = _normalize_path(request.path)
        methods = self._routes.get(path)
        if methods is None:
            return PipeResponse(PIPE_NOT_FOUND, {"message": f"Route {path} not found"})
        handler = methods.get(request.method.upper())
        if handler is None:
            return PipeResponse(
                PIPE_METHOD_NOT_ALLOWED,
                {"message": f"Method {request.method.upper()} not allowed on {path}"},
            )

        try:
            body = await handler(request)
        except NotFoundError as e:
            return PipeResponse(PIPE_NOT_FOUND, {"message": str(e)})
        except PipeError as e:
            return PipeResponse(e.code, e.body)
        except Exception:
            logger.exception("Error while handling %s %s", request.method.upper(), path)
            return PipeResponse(PIPE_INTERNAL_ERROR, {"message": "Internal error"})

        logger.debug("%s %s by %s", request.method.upper(), path, request.requester)
        return PipeResponse(PIPE_OK, body)


# ---------------------------------------------------------------------------
# Param helpers
# ---------------------------------------------------------------------------

def int_param(params: Dict[str, Any], name: str) -> Optional[int]:
    value = params.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PipeError(PIPE_BAD_REQUEST, {"message": f"Invalid '{name}' parameter: {value!r}"})


def str_param(params: Dict[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is None or value == "":
        return None
    return str(value)


def require_param(value, name: str):
    if value is None:
        raise PipeError(PIPE_BAD_REQUEST, {"message": f"Missing '{name}' parameter"})
    return value


# ---------------------------------------------------------------------------
# Query routes
# ---------------------------------------------------------------------------

def register_query_routes(router: PipeRouter, query: "QueryService"):

    @router.route("GET", "/details")
    async def provider_details(request: PipeRequest):
        provider_id = int_param(request.params, "providerId")
        if provider_id is not None:
            return await query.get_provider(provider_id)
        return await query.list_providers()

    @router.route("GET", "/resources")
    async def resources(request: PipeRequest):
        resource_id = int_param(request.params, "id")
        category = str_param(request.params, "pc")
        if resource_id is not None:
            return await query.get_resource(
                resource_id, request.requester, require_param(category, "pc"),
            )
        return await query.list_resources(request.requester, category)

    @router.route("GET", "/offers")
    async def offers(request: PipeRequest):
        offer_id = int_param(request.params, "id")
        category = str_param(request.params, "pc")
        if offer_id is not None:
            return await query.get_offer(offer_id, require_param(category, "pc"))
        return await query.list_offers(category, int_param(request.params, "providerId"))

    @router.route("GET", "/product-categories")
    async def product_categories(request: PipeRequest):
        return await query.list_product_categories()
