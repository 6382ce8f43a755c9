#!/usr/bin/env python3
"""
Clawgate - Entry Point
======================
One-command startup for the gateway wrapper.

Usage:
    python app.py              # Start with default settings
    python app.py --port 9000  # Start on custom port
    python app.py --check      # Verify the backend command runs, then exit

This script:
    1. Loads environment variables from .env
    2. Loads settings from gateway.yaml and the environment
    3. Starts uvicorn with the clawgate application factory

The backend itself is started lazily, on the first request after the
gateway has been configured.
"""

import os
import sys
import asyncio
import argparse
import uvicorn
from dotenv import load_dotenv


def main():
    """Parse arguments, load config, and start the web server."""

    # -- Parse command-line arguments ------------------------------------------
    parser = argparse.ArgumentParser(
        description="Clawgate - openclaw gateway supervisor and proxy",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Public port (overrides PORT and gateway.yaml)",
    )
    parser.add_argument(
        "--host", type=str, default=None,
        help="Host binding address (overrides gateway.yaml)",
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Run the backend command with --version and exit",
    )
    args = parser.parse_args()

    project_dir = os.path.dirname(os.path.abspath(__file__))

    # -- Load environment variables from .env ----------------------------------
    env_path = os.path.join(project_dir, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path)

    from clawgate.auth import TokenStore
    from clawgate.config import ConfigManager
    from clawgate.errors import ProcessSpawnError
    from clawgate.supervisor import GatewaySupervisor

    settings = ConfigManager(project_dir).settings()

    if args.check:
        supervisor = GatewaySupervisor(settings, TokenStore(settings.token_path, settings.env_token))
        try:
            version = asyncio.run(supervisor.check_backend())
        except ProcessSpawnError as e:
            print(f"[FATAL] {e}", flush=True)
            sys.exit(1)
        print(f"openclaw ok: {version}", flush=True)
        return

    host = args.host or settings.host
    port = args.port or settings.port

    # -- Print startup banner --------------------------------------------------
    print()
    print(f"  Clawgate : http://{host}:{port}")
    print(f"  Backend  : {settings.target.http_url}")
    print(f"  State    : {settings.state_dir}")
    print()

    # -- Start the web server --------------------------------------------------
    uvicorn.run(
        "clawgate.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
