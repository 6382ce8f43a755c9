"""
Clawgate - Configuration Manager
================================
Loads gateway settings from three layers, later layers winning:

1. DEFAULTS       - Built-in values matching the stock openclaw image
2. gateway.yaml   - Optional file in the project directory
3. Environment    - PORT, OPENCLAW_* and GATEWAY_* variables (.env included,
                    app.py loads it before the app is created)

The merged dictionary is frozen into a GatewaySettings instance, which
is what every other component receives.

Usage:
    config = ConfigManager(project_dir="/app")
    settings = config.settings()
    settings.target.http_url   # "http://127.0.0.1:18789"
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Mapping


# Default configuration values used when gateway.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "state": {
        "state_dir": "~/.openclaw",
        "workspace_dir": None,   # -> <state_dir>/workspace
        "config_path": None,     # -> <state_dir>/openclaw.json
    },
    "backend": {
        "node": "node",
        "entry": "/openclaw/dist/entry.js",
        "command": None,         # explicit list overrides node + entry
        "args": ["gateway", "run", "--bind", "loopback", "--port", "{port}", "--auth", "token"],
        "host": "127.0.0.1",
        "port": 18789,
        "stop_timeout": 5.0,
    },
    "readiness": {
        "endpoints": ["/openclaw", "/", "/health"],
        "timeout_ms": 20000,
        "interval_ms": 250,
    },
    "proxy": {
        "retry_after": 2,
        "connect_timeout": 10.0,
    },
}

# Environment variable -> (section, key, converter)
ENV_OVERRIDES = {
    "PORT": ("web", "port", int),
    "OPENCLAW_STATE_DIR": ("state", "state_dir", str),
    "OPENCLAW_WORKSPACE_DIR": ("state", "workspace_dir", str),
    "OPENCLAW_CONFIG_PATH": ("state", "config_path", str),
    "OPENCLAW_NODE": ("backend", "node", str),
    "OPENCLAW_ENTRY": ("backend", "entry", str),
    "INTERNAL_GATEWAY_HOST": ("backend", "host", str),
    "INTERNAL_GATEWAY_PORT": ("backend", "port", int),
    "GATEWAY_STARTUP_TIMEOUT_MS": ("readiness", "timeout_ms", int),
    "GATEWAY_READY_ENDPOINTS": ("readiness", "endpoints", lambda v: _split_list(v)),
}

TOKEN_ENV = "OPENCLAW_GATEWAY_TOKEN"
TOKEN_FILENAME = "gateway.token"
CONFIG_FILENAME = "openclaw.json"


@dataclass(frozen=True)
class ProxyTarget:
    """Loopback address of the backend. Immutable for the process lifetime."""

    host: str
    port: int

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass(frozen=True)
class GatewaySettings:
    """
    Resolved, read-only gateway settings.

    Attributes:
        host, port:        Public bind address of this wrapper.
        state_dir:         Backend state directory (token + config live here).
        workspace_dir:     Backend workspace directory.
        config_path:       File whose existence means "configured".
        token_path:        Where a generated gateway token is persisted.
        env_token:         Explicit token override, or None.
        command:           Backend entry command (executable first).
        args:              Arguments appended to the command ("{port}" expanded).
        target:            Backend loopback address.
        ready_endpoints:   Health paths in priority order.
        startup_timeout_ms: Overall readiness timeout.
        ready_interval_ms: Delay between polling rounds.
        stop_timeout:      Seconds to wait after SIGTERM before SIGKILL.
        retry_after:       Retry-After seconds sent while the backend starts.
        connect_timeout:   Upstream connect timeout for proxied requests.
    """

    host: str
    port: int
    state_dir: str
    workspace_dir: str
    config_path: str
    token_path: str
    env_token: str | None
    command: tuple[str, ...]
    args: tuple[str, ...]
    target: ProxyTarget
    ready_endpoints: tuple[str, ...]
    startup_timeout_ms: int
    ready_interval_ms: int
    stop_timeout: float = 5.0
    retry_after: int = 2
    connect_timeout: float = 10.0
    config_error: str | None = field(default=None, compare=False)

    @property
    def backend_argv(self) -> list[str]:
        """Full argv used to start the backend gateway."""
        args = [a.replace("{port}", str(self.target.port)) for a in self.args]
        return [*self.command, *args]


class ConfigManager:
    """
    Reads gateway.yaml and the environment into GatewaySettings.

    Attributes:
        project_dir: Directory that may contain gateway.yaml.
        config_path: Full path to gateway.yaml.
        environ:     Environment mapping used for overrides.
    """

    def __init__(self, project_dir: str, environ: Mapping[str, str] | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the project root directory.
            environ:     Environment to read overrides from (default os.environ).
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "gateway.yaml")
        self.environ = os.environ if environ is None else environ

    def load(self) -> dict:
        """
        Load and merge configuration: defaults, gateway.yaml, environment.

        Returns:
            A dictionary containing the full configuration. A corrupt
            gateway.yaml leaves the defaults in place and records the
            problem under "_config_error".
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ValueError("top-level value must be a mapping")
                _check_shape(DEFAULTS, user_config)
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError, ValueError) as e:
                config["_config_error"] = str(e)

        for name, (section, key, convert) in ENV_OVERRIDES.items():
            raw = (self.environ.get(name) or "").strip()
            if not raw:
                continue
            try:
                config[section][key] = convert(raw)
            except ValueError:
                print(f"[WARN] Ignoring invalid {name}={raw!r}", flush=True)

        return config

    def settings(self) -> GatewaySettings:
        """Build the frozen GatewaySettings from load()."""
        config = self.load()
        if "_config_error" in config:
            print(
                f"[WARN] {self.config_path} could not be read, using defaults: "
                f"{config['_config_error']}",
                flush=True,
            )

        state = config["state"]
        backend = config["backend"]
        readiness = config["readiness"]
        proxy = config["proxy"]

        state_dir = os.path.abspath(os.path.expanduser(state["state_dir"]))
        workspace_dir = state.get("workspace_dir") or os.path.join(state_dir, "workspace")
        config_path = state.get("config_path") or os.path.join(state_dir, CONFIG_FILENAME)

        command = backend.get("command") or [backend["node"], backend["entry"]]
        env_token = (self.environ.get(TOKEN_ENV) or "").strip() or None

        return GatewaySettings(
            host=str(config["web"]["host"]),
            port=int(config["web"]["port"]),
            state_dir=state_dir,
            workspace_dir=os.path.abspath(os.path.expanduser(workspace_dir)),
            config_path=os.path.abspath(os.path.expanduser(config_path)),
            token_path=os.path.join(state_dir, TOKEN_FILENAME),
            env_token=env_token,
            command=tuple(str(c) for c in command),
            args=tuple(str(a) for a in backend.get("args") or ()),
            target=ProxyTarget(host=str(backend["host"]), port=int(backend["port"])),
            ready_endpoints=tuple(_normalize_path(p) for p in readiness["endpoints"]),
            startup_timeout_ms=int(readiness["timeout_ms"]),
            ready_interval_ms=int(readiness["interval_ms"]),
            stop_timeout=float(backend["stop_timeout"]),
            retry_after=int(proxy["retry_after"]),
            connect_timeout=float(proxy["connect_timeout"]),
            config_error=config.get("_config_error"),
        )


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _check_shape(defaults: dict, override: dict, prefix: str = "") -> None:
    """
    Reject overrides that would replace a section with a non-mapping or
    blank out a key whose default is set.

    Raises:
        ValueError: Naming the first offending key.
    """
    for key, value in override.items():
        if key not in defaults:
            continue
        name = prefix + str(key)
        default = defaults[key]
        if isinstance(default, dict):
            if not isinstance(value, dict):
                raise ValueError(f"section {name!r} must be a mapping")
            _check_shape(default, value, name + ".")
        elif value is None and default is not None:
            raise ValueError(f"{name!r} must not be empty")


def _split_list(value: str) -> list[str]:
    items = [part.strip() for part in value.split(",") if part.strip()]
    if not items:
        raise ValueError("empty list")
    return items


def _normalize_path(path: Any) -> str:
    path = str(path).strip()
    return path if path.startswith("/") else "/" + path
