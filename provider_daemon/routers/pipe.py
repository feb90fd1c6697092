"""Pipe router: POST /pipe, the HTTP carrier of pipe requests."""

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse
from starlette.requests import Request

from provider_daemon.deps import get_pipe
from provider_daemon.models import PipeCall
from provider_daemon.pipe import PIPE_UNAUTHORIZED, PipeRequest

router = APIRouter()


@router.post("/pipe")
async def pipe_call(
    request: Request, call: PipeCall,
    x_requester_address: str = Header(default=""),
):
    if not x_requester_address:
        return JSONResponse(
            status_code=PIPE_UNAUTHORIZED,
            content={"message": "Missing requester address"},
        )
    response = await get_pipe(request).dispatch(PipeRequest(
        method=call.method,
        path=call.path,
        requester=x_requester_address.lower(),
        params=call.params,
        body=call.body,
    ))
    return JSONResponse(status_code=response.code, content=response.body)
