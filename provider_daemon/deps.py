"""Accessors for the daemon services attached to the FastAPI app."""

from typing import TYPE_CHECKING

from starlette.requests import Request

if TYPE_CHECKING:
    from provider_daemon.pipe import PipeRouter
    from provider_daemon.server import DaemonServer


def get_server(request: Request) -> "DaemonServer":
    return request.app.state.server


def get_pipe(request: Request) -> "PipeRouter":
    return get_server(request).pipe
