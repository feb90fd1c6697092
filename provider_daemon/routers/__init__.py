"""Router package: collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from provider_daemon.routers import health, pipe


def register_all_routers(app: FastAPI):
    app.include_router(health.router)
    app.include_router(pipe.router)
