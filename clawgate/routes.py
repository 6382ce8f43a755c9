"""
Clawgate - Setup Routes
=======================
The part of the public surface that is never proxied.

Route group:
    GET /setup             - Placeholder page while the gateway is unconfigured
    GET /setup/healthz     - Liveness of this wrapper (not of the backend)
    GET /setup/api/status  - Configuration and backend status (no secrets)

The onboarding wizard that writes the backend configuration is a
separate collaborator; these routes only report state.
"""

from typing import Any

from fastapi import APIRouter
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from clawgate.auth import TokenStore
from clawgate.state import ConfigurationStore
from clawgate.supervisor import GatewaySupervisor


# =============================================================================
# Response Models (Pydantic)
# =============================================================================

class HealthResponse(BaseModel):
    ok: bool = True

class StatusResponse(BaseModel):
    """Configuration and backend status."""
    configured: bool = Field(description="Whether the backend configuration file exists")
    gateway: dict[str, Any] = Field(description="Supervisor status snapshot")
    token_source: str | None = Field(default=None, description="env, file or generated")
    token_degraded: bool = Field(description="Token could not be persisted; a restart will change it")


SETUP_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Gateway setup</title></head>
<body>
  <h1>Gateway setup required</h1>
  <p>The gateway is not configured yet. Complete onboarding to create
  <code>{config_path}</code>; traffic is forwarded once it exists.</p>
  <p>Status: <a href="/setup/api/status">/setup/api/status</a></p>
</body>
</html>
"""


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    config_store: ConfigurationStore,
    supervisor: GatewaySupervisor,
    token_store: TokenStore,
) -> APIRouter:
    """
    Create the setup router.

    Args:
        config_store: Reports whether the backend is configured.
        supervisor:   Backend process supervisor.
        token_store:  Gateway token store (only its status is exposed).

    Returns:
        APIRouter mounted under /setup.
    """
    router = APIRouter(prefix="/setup")

    @router.get("", response_class=HTMLResponse)
    async def setup_page():
        return SETUP_PAGE.format(config_path=config_store.config_path)

    @router.get("/healthz", response_model=HealthResponse)
    async def healthz():
        return HealthResponse()

    @router.get("/api/status", response_model=StatusResponse)
    async def status():
        return StatusResponse(
            configured=config_store.is_configured(),
            gateway=supervisor.status,
            token_source=token_store.source,
            token_degraded=token_store.degraded,
        )

    return router
