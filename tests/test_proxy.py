"""
Tests for clawgate/proxy.py

The backend is simulated: httpx.MockTransport for plain requests and a
fake connector for WebSocket upgrades. Both record what the backend
would have received.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from clawgate.main import create_app
from clawgate.proxy import inject_credentials

from conftest import streamed, write_config


class FakeUpstream:
    """Echoing stand-in for a websockets client connection."""

    def __init__(self, subprotocol: str | None = None):
        self.subprotocol = subprotocol
        self.close_code: int | None = None
        self.sent: list = []
        self._queue: asyncio.Queue = asyncio.Queue()

    async def send(self, data) -> None:
        self.sent.append(data)
        await self._queue.put(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            await self._queue.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class Backend:
    """Records every request the proxy sends, on both transports."""

    def __init__(self):
        self.http_requests: list[httpx.Request] = []
        self.http_bodies: list[bytes] = []
        self.ws_calls: list[dict] = []
        self.fail_ws = False

    async def handle_http(self, request: httpx.Request) -> httpx.Response:
        self.http_requests.append(request)
        self.http_bodies.append(await request.aread())
        return httpx.Response(
            201,
            headers=[
                ("content-type", "application/json"),
                ("set-cookie", "a=1"),
                ("set-cookie", "b=2"),
                ("connection", "close, x-upstream-hop"),
                ("x-upstream-hop", "1"),
            ],
            content=streamed(b'{"ok": ', b"true}"),
        )

    async def connect_ws(self, url: str, **kwargs):
        if self.fail_ws:
            raise ConnectionRefusedError("refused")
        self.ws_calls.append({"url": url, **kwargs})
        requested = kwargs.get("subprotocols") or [None]
        return FakeUpstream(subprotocol=requested[0])


@pytest.fixture
def backend():
    return Backend()


@pytest.fixture
def gateway(make_settings, backend):
    """A configured gateway whose backend is already marked ready."""
    settings = make_settings(OPENCLAW_GATEWAY_TOKEN="the-real-token")
    write_config(settings)
    app = create_app(
        settings,
        proxy_transport=httpx.MockTransport(backend.handle_http),
        ws_connector=backend.connect_ws,
    )
    app.state.supervisor.state = "running"
    with TestClient(app) as client:
        yield client


def _authorization_values(headers) -> list[str]:
    return [v for k, v in headers if k.lower() == "authorization"]


class TestInjectCredentials:

    def test_client_authorization_is_replaced(self):
        out = inject_credentials([("Authorization", "Bearer stale"), ("accept", "*/*")], "tok")
        assert _authorization_values(out) == ["Bearer tok"]
        assert ("accept", "*/*") in out

    def test_absent_authorization_is_added(self):
        out = inject_credentials([("accept", "*/*")], "tok")
        assert _authorization_values(out) == ["Bearer tok"]

    def test_hop_by_hop_and_host_are_dropped(self):
        headers = [
            ("host", "public.example"),
            ("connection", "keep-alive"),
            ("keep-alive", "timeout=5"),
            ("transfer-encoding", "chunked"),
            ("upgrade", "websocket"),
            ("x-custom", "1"),
        ]
        out = inject_credentials(headers, "tok")
        names = {k.lower() for k, _ in out}
        assert names == {"x-custom", "authorization"}

    def test_headers_named_in_connection_are_dropped(self):
        headers = [("Connection", "keep-alive, X-Private-Hop"), ("X-Private-Hop", "1"), ("x-a", "1")]
        out = inject_credentials(headers, "tok")
        assert [k for k, _ in out] == ["x-a", "authorization"]

    def test_client_forwarded_headers_are_dropped(self):
        headers = [("X-Forwarded-For", "6.6.6.6"), ("X-Forwarded-Proto", "https"), ("x-a", "1")]
        out = inject_credentials(headers, "tok")
        assert [k for k, _ in out] == ["x-a", "authorization"]

    def test_extra_drops(self):
        out = inject_credentials([("Sec-WebSocket-Key", "abc"), ("x-a", "1")], "tok", drop=["sec-websocket-key"])
        assert [k for k, _ in out] == ["x-a", "authorization"]


class TestCredentialOnBothPaths:
    """The backend sees the stored token on plain and upgrade requests alike."""

    @pytest.mark.parametrize("client_auth", [None, "Bearer stale", "Basic dXNlcjpwYXNz"])
    def test_http_path(self, gateway, backend, client_auth):
        headers = {"Authorization": client_auth} if client_auth else {}

        response = gateway.get("/api/session", headers=headers)

        assert response.status_code == 201
        sent = backend.http_requests[-1]
        assert sent.headers.get_list("authorization") == ["Bearer the-real-token"]

    @pytest.mark.parametrize("client_auth", [None, "Bearer stale", "Basic dXNlcjpwYXNz"])
    def test_websocket_path(self, gateway, backend, client_auth):
        headers = {"Authorization": client_auth} if client_auth else {}

        with gateway.websocket_connect("/ws/stream", headers=headers) as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "ping"

        call = backend.ws_calls[-1]
        assert _authorization_values(call["additional_headers"]) == ["Bearer the-real-token"]


class TestHttpForwarding:

    def test_method_path_query_and_body(self, gateway, backend):
        response = gateway.post("/api/items?limit=5&q=a%20b", json={"name": "x"})

        assert response.status_code == 201
        sent = backend.http_requests[-1]
        assert sent.method == "POST"
        assert sent.url.raw_path == b"/api/items?limit=5&q=a%20b"
        assert json.loads(backend.http_bodies[-1]) == {"name": "x"}
        assert sent.headers["content-type"] == "application/json"

    def test_forwarded_headers(self, gateway, backend):
        gateway.get("/anything")

        sent = backend.http_requests[-1]
        assert sent.headers["x-forwarded-proto"] == "http"
        assert sent.headers["x-forwarded-host"] == "testserver"
        assert "x-forwarded-for" in sent.headers

    def test_client_forwarded_headers_are_not_duplicated(self, gateway, backend):
        # Given: a client that sends its own X-Forwarded-* values
        headers = {"X-Forwarded-For": "6.6.6.6", "X-Forwarded-Proto": "https"}

        # When: the request is proxied
        gateway.get("/anything", headers=headers)

        # Then: the backend sees one of each, the chain extended with the peer
        sent = backend.http_requests[-1]
        assert sent.headers.get_list("x-forwarded-for") == ["6.6.6.6, testclient"]
        assert sent.headers.get_list("x-forwarded-proto") == ["https"]
        assert len(sent.headers.get_list("x-forwarded-host")) == 1

    def test_connection_listed_request_headers_are_dropped(self, gateway, backend):
        gateway.get("/anything", headers={"Connection": "x-private-hop", "X-Private-Hop": "1"})

        assert "x-private-hop" not in backend.http_requests[-1].headers

    def test_response_is_relayed(self, gateway):
        response = gateway.get("/api/session")

        assert response.status_code == 201
        assert response.json() == {"ok": True}
        assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]
        assert "close" not in response.headers.get("connection", "")
        assert "x-upstream-hop" not in response.headers

    def test_upstream_refused_is_502(self, make_settings):
        settings = make_settings()
        write_config(settings)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        app = create_app(settings, proxy_transport=httpx.MockTransport(refuse))
        app.state.supervisor.state = "running"
        with TestClient(app) as client:
            response = client.get("/api/session")

        assert response.status_code == 502
        assert response.headers["retry-after"] == str(settings.retry_after)
        assert response.json()["error"] == "gateway_unavailable"

    def test_upstream_timeout_is_504(self, make_settings):
        settings = make_settings()
        write_config(settings)

        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        app = create_app(settings, proxy_transport=httpx.MockTransport(slow))
        app.state.supervisor.state = "running"
        with TestClient(app) as client:
            response = client.get("/api/session")

        assert response.status_code == 504


class TestWebSocketForwarding:

    def test_url_and_subprotocol(self, gateway, backend):
        with gateway.websocket_connect("/ws/chat?room=1", subprotocols=["openclaw.v1"]) as ws:
            assert ws.accepted_subprotocol == "openclaw.v1"
            ws.send_bytes(b"\x00\x01")
            assert ws.receive_bytes() == b"\x00\x01"

        call = backend.ws_calls[-1]
        assert call["url"].endswith("/ws/chat?room=1")
        assert call["url"].startswith("ws://127.0.0.1:")
        assert call["subprotocols"] == ["openclaw.v1"]
        names = {k.lower() for k, _ in call["additional_headers"]}
        assert "sec-websocket-key" not in names
        assert "upgrade" not in names

    def test_client_forwarded_headers_are_not_duplicated(self, gateway, backend):
        with gateway.websocket_connect("/ws/chat", headers={"X-Forwarded-For": "6.6.6.6"}) as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "ping"

        sent = backend.ws_calls[-1]["additional_headers"]
        assert [v for k, v in sent if k.lower() == "x-forwarded-for"] == ["6.6.6.6, testclient"]

    def test_upstream_failure_closes_handshake(self, gateway, backend):
        backend.fail_ws = True

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with gateway.websocket_connect("/ws/chat"):
                pass

        assert exc_info.value.code == 1013
