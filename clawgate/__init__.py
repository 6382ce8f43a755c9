"""
Clawgate - Gateway Package
==========================
Supervisor and authenticating reverse proxy for a locally-hosted
openclaw gateway.

This package provides:
- FastAPI application that fronts the backend on a single public port
- Child process supervision with a readiness contract
- HTTP and WebSocket forwarding with gateway token injection
- Configuration-state gating that deflects traffic to /setup

Architecture:
    main.py       -> FastAPI app creation, request routing, lifespan
    config.py     -> gateway.yaml + environment settings
    state.py      -> Configured / Unconfigured detection
    auth.py       -> Gateway token resolution and persistence
    readiness.py  -> Health endpoint polling
    supervisor.py -> Backend process lifecycle (start/stop/status)
    proxy.py      -> HTTP and WebSocket forwarding
    routes.py     -> Setup surface endpoints
    errors.py     -> Exception types shared by all components
"""

__version__ = "1.0.0"
