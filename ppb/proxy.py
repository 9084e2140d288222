import asyncio
import logging
import socket
from typing import List, Optional, Tuple

import httpx
import websockets
from fastapi import Request, Response, WebSocket
from starlette.background import BackgroundTask
from starlette.responses import PlainTextResponse, StreamingResponse

from ppb.config import Config, ProxyTimeouts

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
    'transfer-encoding',
    'upgrade',
})

# Headers passed to a WebSocket backend, as the handshake is rebuilt by the client library
WEBSOCKET_FORWARD_HEADERS = ('cookie', 'authorization', 'origin', 'user-agent')


def keepalive_socket_options(interval: int) -> List[Tuple[int, int, int]]:
    options = [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    if hasattr(socket, 'TCP_KEEPIDLE'):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval))
    if hasattr(socket, 'TCP_KEEPINTVL'):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval))
    return options


def build_transport(scheme: str, timeouts: ProxyTimeouts) -> httpx.AsyncHTTPTransport:
    """Long-lived pooled transport to the backend"""
    limits = httpx.Limits(
        max_connections=None,
        max_keepalive_connections=timeouts.max_idle_conns,
        keepalive_expiry=timeouts.idle_conn_timeout,
    )
    return httpx.AsyncHTTPTransport(
        http2=(scheme == "https"),
        limits=limits,
        socket_options=keepalive_socket_options(timeouts.keep_alive),
    )


def build_timeout(timeouts: ProxyTimeouts) -> httpx.Timeout:
    # httpx applies the connect timeout to the TCP connect and the TLS handshake separately
    return httpx.Timeout(None, connect=max(timeouts.dial_timeout, timeouts.tls_handshake_timeout))


def join_host_port(host: str, port: int) -> str:
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class ForwardingGateway:
    """Relays requests to whatever address the power controller last published"""

    def __init__(self, config: Config, controller, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.scheme = config.scheme
        self.port = config.port
        self.controller = controller
        self.client = httpx.AsyncClient(
            transport=transport or build_transport(config.scheme, config.proxy_timeouts),
            timeout=build_timeout(config.proxy_timeouts),
        )
        logger.debug(
            f"Expect-continue timeout {config.proxy_timeouts.expect_continue_timeout}s is not used, "
            f"httpx never sends 'Expect: 100-continue'"
        )

    def bind_current_address(self) -> str:
        """Upstream base URL for the current backend address.

        Call after ``ensure_running`` succeeded and before every forward, the
        address changes when the backend is power-cycled.
        """
        host = self.controller.host
        if not host:
            raise ValueError("backend address is not known")
        target = f"{self.scheme}://{join_host_port(host, self.port)}"
        logger.debug(f"Set machine host {target}")
        return target

    def upstream_headers(self, request: Request) -> List[Tuple[str, str]]:
        headers = [
            (k, v) for k, v in request.headers.items()
            if k not in HOP_BY_HOP_HEADERS and k not in ('host', 'x-forwarded-for', 'x-forwarded-host', 'x-forwarded-proto')
        ]

        peer = request.client.host if request.client else ""
        prior = request.headers.get('x-forwarded-for')
        if prior and peer:
            forwarded_for = f"{prior}, {peer}"
        else:
            forwarded_for = prior or peer
        if forwarded_for:
            headers.append(('x-forwarded-for', forwarded_for))

        original_host = request.headers.get('host')
        if original_host:
            headers.append(('x-forwarded-host', original_host))
        headers.append(('x-forwarded-proto', request.url.scheme))
        return headers

    async def forward(self, request: Request, target: str) -> Response:
        """Relay one HTTP request to ``target`` and stream the answer back"""
        query = request.url.query
        url = target + request.url.path + (f"?{query}" if query else "")

        has_body = 'content-length' in request.headers or 'transfer-encoding' in request.headers
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self.upstream_headers(request),
            content=request.stream() if has_body else None,
        )

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            logger.error(f"Upstream {target} unreachable: {type(e).__name__} {e}")
            return PlainTextResponse("Bad Gateway", status_code=502)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (k.encode('latin-1'), v.encode('latin-1'))
            for k, v in upstream.headers.multi_items()
            if k not in HOP_BY_HOP_HEADERS
        ]
        return response

    async def forward_websocket(self, websocket: WebSocket, target: str) -> None:
        """Relay a WebSocket session, both directions, until either side closes"""
        query_string = websocket.scope.get('query_string', b'').decode()
        path = websocket.url.path + (f"?{query_string}" if query_string else "")
        ws_url = target.replace('http://', 'ws://').replace('https://', 'wss://') + path

        extra_headers = {
            name: websocket.headers[name]
            for name in WEBSOCKET_FORWARD_HEADERS
            if name in websocket.headers
        }
        if websocket.client:
            prior = websocket.headers.get('x-forwarded-for')
            extra_headers['X-Forwarded-For'] = f"{prior}, {websocket.client.host}" if prior else websocket.client.host
        if 'host' in websocket.headers:
            extra_headers['X-Forwarded-Host'] = websocket.headers['host']

        subprotocols = websocket.scope.get('subprotocols') or None
        try:
            backend_ws = await websockets.connect(
                ws_url,
                additional_headers=extra_headers,
                subprotocols=subprotocols,
            )
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"WebSocket backend {ws_url} unreachable: {e}")
            await websocket.accept()
            await websocket.close(code=1011, reason="Bad Gateway")
            return

        await websocket.accept(subprotocol=backend_ws.subprotocol)
        client_closed = False
        backend_closed = False

        async def to_backend():
            nonlocal client_closed
            while True:
                msg = await websocket.receive()
                if msg['type'] == 'websocket.disconnect':
                    client_closed = True
                    logger.debug(f"WebSocket client disconnect: code {msg.get('code', 1000)}")
                    return
                if msg.get('text') is not None:
                    await backend_ws.send(msg['text'])
                elif msg.get('bytes') is not None:
                    await backend_ws.send(msg['bytes'])

        async def to_client():
            nonlocal backend_closed
            try:
                async for msg in backend_ws:
                    if isinstance(msg, bytes):
                        await websocket.send_bytes(msg)
                    else:
                        await websocket.send_text(msg)
            except websockets.ConnectionClosed:
                pass
            backend_closed = True

        tasks = [asyncio.create_task(to_backend()), asyncio.create_task(to_client())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await backend_ws.close()
            if not client_closed:
                try:
                    await websocket.close()
                except RuntimeError as e:
                    logger.debug(f"WebSocket client already gone: {e}")
            logger.debug(f"WebSocket relay finished (client closed: {client_closed}, backend closed: {backend_closed})")

    async def aclose(self) -> None:
        await self.client.aclose()
