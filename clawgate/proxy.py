"""
Clawgate - Authenticating Proxy
===============================
Forwards client traffic to the backend and injects the gateway token.

Both transport paths go through inject_credentials():
    - forward_http()      : ordinary requests, streamed with httpx
    - forward_websocket() : upgrade handshakes, bridged with websockets

Whatever Authorization header the client sends is dropped and replaced
on the backend-facing leg only. The client never needs to know the token.

Error responses:
    - 502 + Retry-After : backend refused or reset the connection
    - 504 + Retry-After : backend did not answer in time
    - close 1013        : WebSocket upstream could not be opened
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from clawgate.auth import bearer
from clawgate.config import ProxyTarget
from clawgate.errors import ProxyUpstreamUnavailable


# Headers that only make sense for a single connection and are never forwarded.
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Handshake headers the websockets client generates itself.
WS_HANDSHAKE = frozenset({
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
})

# Rewritten by forwarded_headers(); client copies are never passed through.
FORWARDED = frozenset({"x-forwarded-for", "x-forwarded-proto", "x-forwarded-host"})

# Close codes that may not be sent in a close frame.
RESERVED_CLOSE_CODES = {1005: 1000, 1006: 1011, 1015: 1011}


def inject_credentials(
    headers: Iterable[tuple[str, str]],
    token: str,
    drop: Iterable[str] = (),
) -> list[tuple[str, str]]:
    """
    Build backend-facing headers from client headers.

    Hop-by-hop headers (including those named in Connection), Host,
    X-Forwarded-* and any client Authorization are removed, then the
    authoritative bearer token is appended. Used by both the
    HTTP and the WebSocket path.

    Args:
        headers: Client header pairs (duplicates allowed).
        token:   Gateway token from the TokenStore.
        drop:    Extra lowercase header names to remove.

    Returns:
        Header pairs to send to the backend.
    """
    headers = list(headers)
    excluded = (
        HOP_BY_HOP
        | FORWARDED
        | connection_tokens(headers)
        | {"host", "authorization"}
        | {d.lower() for d in drop}
    )
    out = [(k, v) for k, v in headers if k.lower() not in excluded]
    out.append(("authorization", bearer(token)))
    return out


def connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    """Header names listed in Connection, which are hop-by-hop for this message."""
    names = set()
    for key, value in headers:
        if key.lower() == "connection":
            names.update(t.strip().lower() for t in value.split(",") if t.strip())
    return names


def forwarded_headers(conn: Request | WebSocket) -> list[tuple[str, str]]:
    """
    X-Forwarded-* headers describing the client connection. An incoming
    X-Forwarded-For chain is extended with the client address.
    """
    client_ip = conn.client.host if conn.client else ""
    prior = conn.headers.get("x-forwarded-for")
    chain = f"{prior}, {client_ip}" if prior and client_ip else (prior or client_ip)
    proto = conn.url.scheme
    if proto in ("ws", "wss"):
        proto = "https" if proto == "wss" else "http"
    out = [
        ("x-forwarded-proto", conn.headers.get("x-forwarded-proto") or proto),
        ("x-forwarded-host", conn.headers.get("x-forwarded-host") or conn.headers.get("host", "")),
    ]
    if chain:
        out.insert(0, ("x-forwarded-for", chain))
    return out


class AuthenticatingProxy:
    """
    Reverse proxy to a single backend target.

    The token and target are fixed at construction; nothing on the
    request path is mutated, so handlers share one instance freely.

    Attributes:
        target:          Backend loopback address.
        retry_after:     Seconds suggested to clients on upstream failure.
        connect_timeout: Upstream connect/open timeout in seconds.
    """

    def __init__(
        self,
        target: ProxyTarget,
        token: str,
        retry_after: int = 2,
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        ws_connector: Callable[..., Awaitable[Any]] | None = None,
    ):
        """
        Args:
            target:          Backend address.
            token:           Gateway token injected into every request.
            retry_after:     Retry-After value for 502/504 answers.
            connect_timeout: Connect timeout for both transports.
            transport:       Optional httpx transport (tests).
            ws_connector:    Optional replacement for websockets' connect (tests).
        """
        self.target = target
        self.retry_after = retry_after
        self.connect_timeout = connect_timeout
        self._token = token
        self._ws_connect = ws_connector or ws_connect
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=connect_timeout),
            follow_redirects=False,
            trust_env=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- HTTP ------------------------------------------------------------------

    async def forward_http(self, request: Request) -> Response:
        """
        Forward one HTTP request and stream the backend response back.

        Args:
            request: Incoming request.

        Returns:
            The backend's response, or a JSON error if it is unreachable.
        """
        try:
            upstream = await self._send(request)
        except ProxyUpstreamUnavailable as e:
            print(f"[PROXY] {request.method} {request.url.path}: {e}", flush=True)
            return JSONResponse(
                {"error": "gateway_unavailable", "detail": str(e)},
                status_code=e.status_code,
                headers={"Retry-After": str(self.retry_after)},
            )

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        dropped = HOP_BY_HOP | connection_tokens(upstream.headers.multi_items())
        response.raw_headers = [
            (key, value)
            for key, value in upstream.headers.raw
            if key.decode("latin-1").lower() not in dropped
        ]
        return response

    async def _send(self, request: Request) -> httpx.Response:
        headers = inject_credentials(request.headers.items(), self._token)
        headers += forwarded_headers(request)
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers

        upstream_request = self._client.build_request(
            request.method,
            self.target.http_url + _path_and_query(request),
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            return await self._client.send(upstream_request, stream=True)
        except httpx.TimeoutException as e:
            raise ProxyUpstreamUnavailable(f"Backend timed out: {e!r}", status_code=504) from e
        except httpx.HTTPError as e:
            raise ProxyUpstreamUnavailable(f"Backend unreachable: {e!r}") from e

    # -- WebSocket -------------------------------------------------------------

    async def forward_websocket(self, websocket: WebSocket) -> None:
        """
        Bridge a client WebSocket to the backend.

        The upstream connection is opened first, with the same credential
        injection as HTTP, so the client is only accepted once the backend
        has accepted the handshake. Frames are then relayed both ways until
        either side closes.
        """
        url = self.target.ws_url + _path_and_query(websocket)
        headers = inject_credentials(websocket.headers.items(), self._token, drop=WS_HANDSHAKE)
        headers += forwarded_headers(websocket)
        subprotocols = list(websocket.scope.get("subprotocols") or [])

        try:
            upstream = await self._ws_connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                user_agent_header=None,
                open_timeout=self.connect_timeout,
                ping_interval=None,
                max_size=None,
                proxy=None,
            )
        except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
            print(f"[PROXY] WebSocket {websocket.url.path}: backend unreachable: {e!r}", flush=True)
            await websocket.close(code=1013)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await _relay(websocket, upstream)
        finally:
            await upstream.close()


async def _relay(websocket: WebSocket, upstream: Any) -> None:
    """Pump frames in both directions until one side closes."""
    tasks = {
        asyncio.create_task(_client_to_upstream(websocket, upstream)),
        asyncio.create_task(_upstream_to_client(websocket, upstream)),
    }
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)

    for result in results:
        if isinstance(result, Exception) and not isinstance(result, ConnectionClosed):
            print(f"[PROXY] WebSocket relay error: {result!r}", flush=True)


async def _client_to_upstream(websocket: WebSocket, upstream: Any) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            await upstream.close(code=_sendable(message.get("code")))
            return
        if message.get("text") is not None:
            await upstream.send(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send(message["bytes"])


async def _upstream_to_client(websocket: WebSocket, upstream: Any) -> None:
    try:
        async for data in upstream:
            if isinstance(data, str):
                await websocket.send_text(data)
            else:
                await websocket.send_bytes(data)
    except ConnectionClosed:
        pass
    if (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    ):
        await websocket.close(code=_sendable(upstream.close_code))


def _sendable(code: int | None) -> int:
    if code is None:
        return 1000
    return RESERVED_CLOSE_CODES.get(code, code)


def _path_and_query(conn: Request | WebSocket) -> str:
    """Original path (still percent-encoded) plus query string."""
    raw_path = conn.scope.get("raw_path")
    path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else conn.url.path
    query = conn.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path
