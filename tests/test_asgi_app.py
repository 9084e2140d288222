"""
Tests for the proxy application: access control, power-on and forwarding.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ppb import proxy
from ppb.asgi_app import create_app
from ppb.errors import ControlPlaneRejected
from ppb.machine import InstanceState, InstanceStatus, PowerController
from ppb.proxy import ForwardingGateway
from tests.fakes import IDENTITY, FakeClock, FakeComputeClient, make_config, running, status

ALLOWED = {"X-Forwarded-For": "10.0.0.1"}


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as a stream, like a real transport does"""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


class Upstream:
    """Records what reached the backend and answers with a canned response"""

    def __init__(self, status_code=200, text="hello from backend", headers=None, error=None):
        self.requests = []
        self.status_code = status_code
        self.text = text
        self.headers = headers or {}
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        return httpx.Response(self.status_code, headers=self.headers, stream=ChunkStream(self.text.encode()))


class BackendSocket:
    """Backend WebSocket that echoes text upper-cased and bytes reversed"""

    def __init__(self, subprotocol=None):
        self.subprotocol = subprotocol
        self.url = None
        self.options = {}
        self.sent = []
        self.closed = False
        self._outbox = None

    async def connect(self, url, **options):
        self.url = url
        self.options = options
        self._outbox = asyncio.Queue()
        return self

    async def send(self, message):
        self.sent.append(message)
        await self._outbox.put(message.upper() if isinstance(message, str) else message[::-1])

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._outbox.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        self.closed = True
        await self._outbox.put(None)


def build(compute_client, upstream=None, clock=None, poll_timeout=1.0):
    config = make_config()
    controller = PowerController(
        IDENTITY,
        compute_client,
        cooldown=config.power_on_cooldown,
        clock=clock or FakeClock(),
        poll_interval=0.01,
        poll_timeout=poll_timeout,
    )
    gateway = ForwardingGateway(config, controller, transport=httpx.MockTransport(upstream or Upstream()))
    return create_app(config, controller=controller, gateway=gateway, start_pinger=False)


def test_healthcheck_never_wakes_backend():
    compute = FakeComputeClient([running()])
    with TestClient(build(compute)) as client:
        response = client.get("/healthcheck", headers={"X-Forwarded-For": "8.8.8.8"})

    assert response.status_code == 200
    assert response.text == "OK"
    assert compute.get_calls == 0


def test_disallowed_client_gets_403():
    compute = FakeComputeClient([running()])
    upstream = Upstream()
    with TestClient(build(compute, upstream)) as client:
        response = client.get("/anything", headers={"X-Forwarded-For": "8.8.8.8"})

    assert response.status_code == 403
    assert response.text == "Forbidden"
    assert compute.get_calls == 0
    assert upstream.requests == []


def test_request_without_forwarded_header_uses_peer():
    compute = FakeComputeClient([running()])
    with TestClient(build(compute)) as client:
        response = client.get("/")

    # TestClient's peer address is not an IP, so the request fails closed
    assert response.status_code == 403


def test_forwards_to_running_backend():
    upstream = Upstream(201, text="created", headers={"X-Backend": "yes"})
    compute = FakeComputeClient([running("203.0.113.5")])
    with TestClient(build(compute, upstream)) as client:
        response = client.get(
            "/api/items?page=2",
            headers={**ALLOWED, "X-Cloud-Trace-Context": "abc/1;o=1", "Host": "app.example.com"},
        )

    assert response.status_code == 201
    assert response.text == "created"
    assert response.headers["x-backend"] == "yes"

    forwarded = upstream.requests[0]
    assert str(forwarded.url) == "http://203.0.113.5:8080/api/items?page=2"
    assert forwarded.headers["x-forwarded-for"] == "10.0.0.1, testclient"
    assert forwarded.headers["x-forwarded-host"] == "app.example.com"
    assert forwarded.headers["x-cloud-trace-context"] == "abc/1;o=1"
    assert forwarded.headers["host"] == "203.0.113.5:8080"


def test_request_body_is_relayed():
    upstream = Upstream()
    compute = FakeComputeClient([running()])
    with TestClient(build(compute, upstream)) as client:
        response = client.post("/submit", headers=ALLOWED, content=b'{"key": "value"}')

    assert response.status_code == 200
    assert upstream.requests[0].method == "POST"
    assert upstream.requests[0].content == b'{"key": "value"}'


def test_terminated_backend_is_started_then_forwarded():
    upstream = Upstream()
    compute = FakeComputeClient([
        status(InstanceState.TERMINATED),
        status(InstanceState.STAGING),
        status(InstanceState.STAGING),
        running("203.0.113.5"),
    ])
    with TestClient(build(compute, upstream)) as client:
        response = client.get("/", headers=ALLOWED)

    assert response.status_code == 200
    assert compute.start_calls == 1
    assert str(upstream.requests[0].url) == "http://203.0.113.5:8080/"


def test_power_on_failure_gets_503():
    compute = FakeComputeClient([status(InstanceState.TERMINATED)], start_error=ControlPlaneRejected("start instance", "denied"))
    upstream = Upstream()
    with TestClient(build(compute, upstream)) as client:
        first = client.get("/", headers=ALLOWED)
        second = client.get("/", headers=ALLOWED)

    assert first.status_code == 503
    assert first.text == "Backend not available"
    # Still cooling down and no address known
    assert second.status_code == 503
    assert compute.get_calls == 1
    assert upstream.requests == []


def test_transitioning_backend_gets_503():
    compute = FakeComputeClient([status(InstanceState.STAGING)])
    upstream = Upstream()
    with TestClient(build(compute, upstream)) as client:
        response = client.get("/", headers=ALLOWED)

    assert response.status_code == 503
    assert response.text == "Backend not available"
    assert compute.start_calls == 0
    assert upstream.requests == []


def test_transition_timeout_gets_503_then_retries_after_cooldown():
    clock = FakeClock()
    compute = FakeComputeClient([status(InstanceState.TERMINATED), status(InstanceState.STAGING)])
    upstream = Upstream()
    with TestClient(build(compute, upstream, clock=clock, poll_timeout=0.1)) as client:
        first = client.get("/", headers=ALLOWED)
        assert first.status_code == 503
        assert compute.start_calls == 1
        assert upstream.requests == []

        clock.advance(31)
        compute.statuses = [running("203.0.113.5")]
        second = client.get("/", headers=ALLOWED)

    assert second.status_code == 200
    assert compute.start_calls == 1
    assert str(upstream.requests[0].url) == "http://203.0.113.5:8080/"


def test_unresolvable_address_gets_503():
    compute = FakeComputeClient([InstanceStatus(status=InstanceState.RUNNING, private_ip="10.0.0.5")])
    with TestClient(build(compute)) as client:
        response = client.get("/", headers=ALLOWED)

    assert response.status_code == 503


def test_unreachable_upstream_gets_502():
    upstream = Upstream(error=httpx.ConnectError("connection refused"))
    compute = FakeComputeClient([running()])
    with TestClient(build(compute, upstream)) as client:
        response = client.get("/", headers=ALLOWED)

    assert response.status_code == 502


def test_known_address_skips_control_plane_within_cooldown():
    compute = FakeComputeClient([running()])
    upstream = Upstream()
    with TestClient(build(compute, upstream)) as client:
        for _ in range(3):
            assert client.get("/", headers=ALLOWED).status_code == 200

    assert compute.get_calls == 1
    assert len(upstream.requests) == 3


@pytest.mark.parametrize("compute,headers,code", [
    (FakeComputeClient([running()]), {"X-Forwarded-For": "8.8.8.8"}, 1008),
    (FakeComputeClient([InstanceStatus(status=InstanceState.RUNNING)]), ALLOWED, 1011),
    (FakeComputeClient([status(InstanceState.STAGING)]), ALLOWED, 1011),
])
def test_websocket_rejections(compute, headers, code):
    with TestClient(build(compute)) as client:
        with client.websocket_connect("/ws", headers=headers) as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()

    assert exc_info.value.code == code


def test_websocket_is_relayed_both_ways(monkeypatch):
    backend = BackendSocket(subprotocol="chat")
    monkeypatch.setattr(proxy.websockets, "connect", backend.connect)
    compute = FakeComputeClient([running("203.0.113.5")])

    with TestClient(build(compute)) as client:
        with client.websocket_connect(
            "/ws?room=1",
            headers={**ALLOWED, "Cookie": "session=abc"},
            subprotocols=["chat"],
        ) as ws:
            assert ws.accepted_subprotocol == "chat"
            ws.send_text("hello")
            assert ws.receive_text() == "HELLO"
            ws.send_bytes(b"\x01\x02\x03")
            assert ws.receive_bytes() == b"\x03\x02\x01"

    assert backend.url == "ws://203.0.113.5:8080/ws?room=1"
    assert backend.options["subprotocols"] == ["chat"]
    headers = backend.options["additional_headers"]
    assert headers["X-Forwarded-For"] == "10.0.0.1, testclient"
    assert headers["X-Forwarded-Host"] == "testserver"
    assert headers["cookie"] == "session=abc"
    assert backend.sent == ["hello", b"\x01\x02\x03"]
    # Client disconnect tears down the backend side
    assert backend.closed


def test_websocket_backend_unreachable_closes_with_1011(monkeypatch):
    async def refuse(url, **options):
        raise OSError("connection refused")

    monkeypatch.setattr(proxy.websockets, "connect", refuse)
    compute = FakeComputeClient([running()])

    with TestClient(build(compute)) as client:
        with client.websocket_connect("/ws", headers=ALLOWED) as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()

    assert exc_info.value.code == 1011
    assert exc_info.value.reason == "Bad Gateway"
