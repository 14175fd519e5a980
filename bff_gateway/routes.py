from typing import Awaitable, Callable, Optional

import anyio
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .logging_util import get_logger
from .proxy.executor import ProxyResponse
from .sessions import SUBJECT_KEY, get_session

logger = get_logger(__name__)

gatewayRouter = APIRouter()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# nginx's "client closed request"; nobody reads it
CLIENT_CLOSED_REQUEST = 499


@gatewayRouter.get("/health")
async def health():
    return {"status": "UP"}


@gatewayRouter.get("/auth/login")
async def login(request: Request, return_to: Optional[str] = Query(None)):
    """
    Starts the authorization code flow and redirects the browser to the
    identity provider, or straight back to the frontend when the session is
    already logged in.
    """
    session = get_session(request)
    url = await request.app.state.flow.initiate(
        session,
        return_to=return_to,
        referer=request.headers.get("referer"),
        origin=request.headers.get("origin"),
    )
    return RedirectResponse(url, status_code=302)


@gatewayRouter.get("/auth/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    session = get_session(request)
    url = await request.app.state.flow.handle_callback(session, code, state, error)
    return RedirectResponse(url, status_code=302)


@gatewayRouter.post("/auth/logout")
async def logout(request: Request, complete: bool = Query(False)):
    session = get_session(request)
    result = await request.app.state.flow.logout(session, complete=complete)
    body = {"message": result.message}
    if result.warning:
        body["warning"] = result.warning
    return JSONResponse(body)


@gatewayRouter.get("/auth/user")
async def current_user(request: Request):
    session = get_session(request)
    credential = await request.app.state.store.get_credential(session.id) if session.is_authenticated else None
    if credential is None:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "sub": credential.subject or session.get(SUBJECT_KEY),
        "issuer": credential.issuer,
    }


async def forward_unless_disconnected(
    request: Request,
    call: Callable[[], Awaitable[ProxyResponse]],
) -> Optional[ProxyResponse]:
    """
    Runs `call` while watching the client connection; a disconnect cancels
    the upstream call and returns None.
    """
    outcome = {}

    async def watch_disconnect(scope: anyio.CancelScope) -> None:
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                logger.info("Client disconnected; cancelling upstream call")
                scope.cancel()
                return

    async with anyio.create_task_group() as tg:
        tg.start_soon(watch_disconnect, tg.cancel_scope)
        try:
            outcome["response"] = await call()
        except Exception as e:
            outcome["error"] = e
        tg.cancel_scope.cancel()

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("response")


@gatewayRouter.api_route("/proxy/{path:path}", methods=PROXY_METHODS)
async def proxy(request: Request, path: str):
    state = request.app.state
    session = get_session(request)
    backend_path = "/" + path

    # unknown routes fail before any token work
    state.router.resolve(backend_path)

    access_token = None
    if session.is_authenticated:
        access_token = await state.tokens.get_valid_access_token(session.id)
        if access_token is None:
            logger.info("Session credential is gone; forwarding without a token")
            session.pop(SUBJECT_KEY)

    body = await request.body()
    result = await forward_unless_disconnected(
        request,
        lambda: state.proxy.forward(
            request.method,
            backend_path,
            request.headers,
            query_params=request.query_params.multi_items(),
            body=body,
            access_token=access_token,
        ),
    )
    if result is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    response = Response(content=result.body, status_code=result.status_code)
    response.raw_headers.extend(
        (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in result.headers
    )
    return response
