"""
Clawgate - FastAPI Application
==============================
Creates the public application that sits in front of the backend.

Responsibilities:
    - Build all components from GatewaySettings (token, config state,
      supervisor, proxy) and store them on app.state
    - Register the setup routes, which are never proxied
    - Route every other HTTP request and WebSocket upgrade:
        unconfigured          -> redirect to /setup (WebSocket: close 1008)
        backend not started   -> start it, answer 503 + Retry-After (close 1013)
        backend failed/exited -> 503 with the reason (close 1013)
        backend ready         -> AuthenticatingProxy
    - Stop the backend on shutdown

Requests are never queued behind a starting backend: clients get a
retriable 503 at once and come back.
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from clawgate import __version__
from clawgate.auth import TokenStore
from clawgate.config import ConfigManager, GatewaySettings
from clawgate.proxy import AuthenticatingProxy
from clawgate.readiness import ReadinessProbe
from clawgate.routes import create_router
from clawgate.state import ConfigurationStore
from clawgate.supervisor import GatewaySupervisor


SETUP_PREFIX = "/setup"


def create_app(
    settings: GatewaySettings | None = None,
    project_dir: str | None = None,
    probe: ReadinessProbe | None = None,
    proxy_transport: httpx.AsyncBaseTransport | None = None,
    ws_connector: Callable[..., Awaitable[Any]] | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Args:
        settings:        Resolved settings. Loaded from gateway.yaml and the
                         environment when omitted.
        project_dir:     Directory holding gateway.yaml. Defaults to the
                         directory above this package.
        probe:           Readiness probe override (tests).
        proxy_transport: httpx transport override for the proxy (tests).
        ws_connector:    WebSocket connect override for the proxy (tests).

    Returns:
        Configured FastAPI application ready to run with uvicorn.
    """
    if settings is None:
        if project_dir is None:
            project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        settings = ConfigManager(project_dir).settings()

    # -- Initialize components -------------------------------------------------
    config_store = ConfigurationStore(settings.config_path)
    token_store = TokenStore(settings.token_path, env_token=settings.env_token)
    token = token_store.get_or_create_token()
    supervisor = GatewaySupervisor(settings, token_store, probe=probe)
    proxy = AuthenticatingProxy(
        settings.target,
        token,
        retry_after=settings.retry_after,
        connect_timeout=settings.connect_timeout,
        transport=proxy_transport,
        ws_connector=ws_connector,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = "configured" if config_store.is_configured() else "unconfigured"
        print(
            f"[GATEWAY] {state}; backend target {settings.target.http_url}; "
            f"token from {token_store.source}",
            flush=True,
        )
        try:
            yield
        finally:
            await supervisor.stop()
            await proxy.aclose()

    app = FastAPI(
        title="Clawgate",
        description="Supervisor and authenticating proxy for the openclaw gateway",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # -- Store components on app state -----------------------------------------
    app.state.settings = settings
    app.state.config_store = config_store
    app.state.token_store = token_store
    app.state.supervisor = supervisor
    app.state.proxy = proxy

    # -- Setup routes (never proxied) ------------------------------------------
    app.include_router(create_router(config_store, supervisor, token_store))

    # -- Everything else -------------------------------------------------------

    async def proxy_http(request: Request) -> Response:
        if _is_setup_path(request.url.path):
            return JSONResponse({"error": "not_found"}, status_code=404)
        if not config_store.is_configured():
            return RedirectResponse(url=SETUP_PREFIX, status_code=302)

        rejection = _backend_gate(supervisor, settings.retry_after)
        if rejection is not None:
            return rejection
        return await proxy.forward_http(request)

    # A plain Starlette route has no method list, so every verb is forwarded.
    app.add_route("/{path:path}", proxy_http, include_in_schema=False)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        if _is_setup_path(websocket.url.path) or not config_store.is_configured():
            await websocket.close(code=1008)
            return

        if _backend_gate(supervisor, settings.retry_after) is not None:
            await websocket.close(code=1013)
            return
        await proxy.forward_websocket(websocket)

    return app


def _is_setup_path(path: str) -> bool:
    return path == SETUP_PREFIX or path.startswith(SETUP_PREFIX + "/")


def _backend_gate(supervisor: GatewaySupervisor, retry_after: int) -> Response | None:
    """
    Decide whether traffic may reach the backend.

    Returns:
        None when the backend is ready, otherwise the 503 to send. A backend
        that has not been started yet is launched in the background.
    """
    if supervisor.is_ready:
        return None

    if supervisor.state in ("idle", "starting"):
        supervisor.launch()
        return PlainTextResponse(
            "Gateway is starting, retry shortly",
            status_code=503,
            headers={"Retry-After": str(retry_after)},
        )

    return PlainTextResponse(
        f"Gateway not available: {supervisor.last_error or supervisor.state}",
        status_code=503,
    )
