"""Health router: GET /health."""

from fastapi import APIRouter
from starlette.requests import Request

from provider_daemon.deps import get_server

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    srv = get_server(request)
    return {
        "status": "ok",
        "cursor": srv.synchronizer.cursor if srv.synchronizer else None,
        "deploying": len(srv.orchestrator.supervisor) if srv.orchestrator else 0,
        "resources": await srv.storage.resources.count() if srv.storage else 0,
        "last_sweep": srv.sweeper.last_sweep if srv.sweeper else None,
        "simulated": srv.simulated,
    }
