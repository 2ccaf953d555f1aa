"""
Token endpoint (POST /token). HTTP adapter only: collects the form and Authorization header
and hands them to the TokenEndpoint orchestrator.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from token_server.endpoint import RawTokenRequest, TokenEndpoint

router = APIRouter()


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


@router.post("/token")
async def token(request: Request):
    """
    client_credentials, authorization_code (PKCE), refresh_token and password grants.
    Client credentials in the form body or via HTTP Basic.
    """
    form = await request.form()
    raw = RawTokenRequest(
        form=tuple(form.multi_items()),
        authorization=request.headers.get("Authorization"),
        client_ip=get_client_ip(request),
    )
    endpoint: TokenEndpoint = request.app.state.token_endpoint
    # Grant processing does blocking DB and bcrypt work
    result = await run_in_threadpool(endpoint.handle, raw)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)
