"""
Clawgate - Readiness Probe
==========================
Polls the backend's candidate health endpoints until one answers.

Different backend builds expose health under different routes, so a
priority-ordered list is polled instead of a single path. The first
endpoint answering with a status below 400 wins and polling stops at
once; lower-priority endpoints are not queried in that round.

The polling loop runs under asyncio.wait_for, so it cannot outlive
success or the overall timeout.

Usage:
    probe = ReadinessProbe(settings.target, endpoints=["/health", "/"])
    endpoint = await probe.wait_ready(timeout_ms=20000)
"""

import asyncio
from typing import Iterable

import httpx

from clawgate.config import ProxyTarget
from clawgate.errors import ReadinessTimeoutError


DEFAULT_ENDPOINTS = ("/openclaw", "/", "/health")

# Upper bound for a single health request; never more than the time left.
REQUEST_TIMEOUT = 2.0


class ReadinessProbe:
    """
    Health poller for the backend target.

    Attributes:
        target:      Backend loopback address.
        endpoints:   Default candidate paths, highest priority first.
        timeout_ms:  Default overall timeout.
        interval_ms: Default delay between polling rounds.
    """

    def __init__(
        self,
        target: ProxyTarget,
        endpoints: Iterable[str] = DEFAULT_ENDPOINTS,
        timeout_ms: int = 20000,
        interval_ms: int = 250,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            target:      Backend address to probe.
            endpoints:   Candidate health paths in priority order.
            timeout_ms:  Overall timeout used when wait_ready() gets none.
            interval_ms: Pause between rounds used when wait_ready() gets none.
            transport:   Optional httpx transport (tests use MockTransport).
        """
        self.target = target
        self.endpoints = list(endpoints)
        self.timeout_ms = timeout_ms
        self.interval_ms = interval_ms
        self._transport = transport

    async def wait_ready(
        self,
        endpoints: Iterable[str] | None = None,
        timeout_ms: int | None = None,
        interval_ms: int | None = None,
    ) -> str:
        """
        Block until a candidate endpoint responds successfully.

        Args:
            endpoints:   Candidate paths, highest priority first.
            timeout_ms:  Overall deadline in milliseconds.
            interval_ms: Pause between polling rounds in milliseconds.

        Returns:
            The first endpoint that answered with a status below 400.

        Raises:
            ReadinessTimeoutError: If nothing answered before the deadline.
        """
        endpoints = list(endpoints) if endpoints is not None else list(self.endpoints)
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        interval_ms = self.interval_ms if interval_ms is None else interval_ms
        if not endpoints:
            raise ValueError("At least one readiness endpoint is required")

        progress = {"rounds": 0, "outcomes": {}}
        timeout_s = timeout_ms / 1000
        deadline = asyncio.get_running_loop().time() + timeout_s

        async with httpx.AsyncClient(
            base_url=self.target.http_url,
            transport=self._transport,
            timeout=REQUEST_TIMEOUT,
            follow_redirects=False,
        ) as client:
            try:
                endpoint = await asyncio.wait_for(
                    self._poll(client, endpoints, interval_ms / 1000, deadline, progress),
                    timeout=timeout_s,
                )
            except asyncio.TimeoutError:
                print(
                    f"[READY] Backend not ready after {timeout_ms} ms "
                    f"({progress['rounds']} rounds)",
                    flush=True,
                )
                raise ReadinessTimeoutError(
                    endpoints, timeout_ms, progress["rounds"], progress["outcomes"]
                ) from None

        print(f"[READY] Backend answered on {endpoint}", flush=True)
        return endpoint

    async def _poll(
        self,
        client: httpx.AsyncClient,
        endpoints: list[str],
        interval_s: float,
        deadline: float,
        progress: dict,
    ) -> str:
        """Poll rounds until an endpoint succeeds; cancelled by wait_for."""
        loop = asyncio.get_running_loop()
        outcomes = progress["outcomes"]
        while True:
            for endpoint in endpoints:
                remaining = max(deadline - loop.time(), 0.01)
                try:
                    response = await client.get(endpoint, timeout=min(REQUEST_TIMEOUT, remaining))
                except httpx.HTTPError as e:
                    outcomes[endpoint] = _describe_error(e)
                    continue
                if response.status_code < 400:
                    return endpoint
                outcomes[endpoint] = f"HTTP {response.status_code}"
            progress["rounds"] += 1
            await asyncio.sleep(interval_s)


def _describe_error(error: httpx.HTTPError) -> str:
    if isinstance(error, httpx.ConnectError):
        return "connection refused"
    if isinstance(error, httpx.TimeoutException):
        return "timed out"
    return type(error).__name__
