"""
Clawgate - Error Types
======================
Exceptions raised by the gateway components.

Only per-request upstream failures are turned into HTTP responses where
they happen. Everything else is raised to the supervising control flow.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigurationReadError(GatewayError):
    """The configuration artifact could not be checked (treated as unconfigured)."""


class TokenPersistenceError(GatewayError):
    """A freshly generated gateway token could not be written to disk."""


class ProcessSpawnError(GatewayError):
    """The backend process could not be launched, or died before it was ready."""


class DoubleStartError(GatewayError):
    """start() was called while a backend process is already supervised."""


class BackendUnavailableError(GatewayError):
    """
    The backend is not serving and will not be started again.

    Attributes:
        reason:    Human readable cause (last supervisor error).
        retriable: Whether the client should retry later.
    """

    def __init__(self, reason: str, retriable: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.retriable = retriable


class ProxyUpstreamUnavailable(GatewayError):
    """
    The backend refused, dropped or timed out a proxied connection.

    Attributes:
        status_code: HTTP status to answer the client with (502 or 504).
    """

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class ReadinessTimeoutError(GatewayError):
    """
    No readiness endpoint answered successfully within the timeout.

    Attributes:
        endpoints:  Candidate paths in the order they were polled.
        timeout_ms: The overall timeout that elapsed.
        rounds:     Number of complete polling rounds.
        outcomes:   Last observed outcome per endpoint.
    """

    def __init__(
        self,
        endpoints: list[str],
        timeout_ms: int,
        rounds: int = 0,
        outcomes: dict[str, str] | None = None,
    ):
        self.endpoints = list(endpoints)
        self.timeout_ms = timeout_ms
        self.rounds = rounds
        self.outcomes = dict(outcomes or {})
        super().__init__(self._describe())

    def _describe(self) -> str:
        tried = ", ".join(
            f"{ep} ({self.outcomes.get(ep, 'not reached')})" for ep in self.endpoints
        )
        return (
            f"Backend did not become ready within {self.timeout_ms} ms "
            f"after {self.rounds} polling rounds. Tried: {tried}"
        )
