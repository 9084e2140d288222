import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional

from fastapi import FastAPI, Request, Response, WebSocket
from starlette.responses import PlainTextResponse

from ppb.config import Config, load_config
from ppb.errors import BackendTransitioning, PowerOnError, PpbError
from ppb.gce import GceClient
from ppb.ip_auth import IpAuthorizer
from ppb.machine import PowerController
from ppb.pinger import ping_backend
from ppb.proxy import ForwardingGateway

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
DEBUG_MODE = (LOG_LEVEL == 'DEBUG')

log_level_map = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}

NOISY_LOGGERS = ['httpx', 'httpcore', 'hpack', 'websockets', 'google.auth', 'google.api_core', 'urllib3']

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD", "TRACE"]

logger = logging.getLogger(__name__)

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def configure_logging():
    """Configure root and uvicorn logging from LOG_LEVEL"""
    logging.basicConfig(
        level=log_level_map.get(LOG_LEVEL, logging.INFO),
        format='%(levelname)-8s %(message)s',
    )

    for logger_name in ['uvicorn', 'uvicorn.access', 'uvicorn.error']:
        for handler in logging.getLogger(logger_name).handlers:
            handler.setFormatter(logging.Formatter('%(levelname)-8s %(message)s'))

    # httpx and the google clients log every call at INFO/DEBUG
    if not DEBUG_MODE:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger.info(f"Log level set to {LOG_LEVEL}")


def generate_request_id() -> str:
    """Generate a short unique request ID"""
    return str(uuid.uuid4())[:8]


def log_request(request_id: str, message: str):
    """Log with request ID prefix, only in DEBUG mode"""
    if DEBUG_MODE:
        logger.debug(f"[REQ-{request_id}] {message}")


def peer_address(connection) -> str:
    return connection.client.host if connection.client else ""


def create_app(
    config: Optional[Config] = None,
    controller: Optional[PowerController] = None,
    gateway: Optional[ForwardingGateway] = None,
    start_pinger: bool = True,
) -> FastAPI:
    """Build the proxy application; with no arguments everything comes from the environment"""
    if config is None:
        configure_logging()
        config = load_config()

    if controller is None:
        controller = PowerController(
            config.machine,
            GceClient(config.machine),
            cooldown=config.power_on_cooldown,
        )
    if gateway is None:
        gateway = ForwardingGateway(config, controller)

    authorizer = IpAuthorizer(config.allowed_ips, config.address_policy)
    forwarded_header = config.ip_forwarded_header

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background_tasks = []
        if start_pinger:
            background_tasks.append(asyncio.create_task(ping_backend(controller)))
        logger.info("✓ Application started - ping routine active" if start_pinger else "✓ Application started")
        try:
            yield
        finally:
            logger.info("Shutting down background tasks...")
            for task in background_tasks:
                task.cancel()
            await asyncio.gather(*background_tasks, return_exceptions=True)
            await controller.aclose()
            await gateway.aclose()
            logger.info("Shutdown complete")

    app = FastAPI(
        title="ppb",
        description="Power-on proxy for a sleeping compute instance",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.controller = controller
    app.state.gateway = gateway
    app.state.authorizer = authorizer

    logger.info(f"🚀 Proxy for instance {config.machine.name} ({config.machine.project_id}/{config.machine.zone})")
    logger.info(f"✓ Allowed networks: {len(config.allowed_ips)}")
    logger.info(f"✓ Power-on cooldown: {config.power_on_cooldown}s")

    @app.exception_handler(PpbError)
    async def ppb_error_handler(request: Request, exc: PpbError):
        if isinstance(exc, PowerOnError):
            logger.error(f"Power-on attempt failed [{exc.code}]: {exc.message}")
        else:
            logger.info(f"Rejected {request.method} {request.url.path} [{exc.code}]: {exc.message}")
        return PlainTextResponse(exc.public_message, status_code=exc.status_code)

    async def wait_for_backend() -> None:
        # Shielded so a client disconnect does not cancel a power-on other requests wait on
        await asyncio.shield(controller.ensure_running_task())
        # STAGING, STOPPING and friends succeed without publishing an address
        if not controller.host:
            raise BackendTransitioning()

    @app.get("/healthcheck")
    async def healthcheck():
        """Liveness of the proxy itself, never wakes the backend"""
        return PlainTextResponse("OK")

    @app.websocket("/{full_path:path}")
    async def proxy_ws(websocket: WebSocket, full_path: str):
        """WebSocket relay with the same access and power-on checks as HTTP"""
        peer = peer_address(websocket)
        forwarded = websocket.headers.get(forwarded_header) if forwarded_header else None

        if not authorizer.is_allowed(peer, forwarded):
            logger.info(f"WebSocket from {peer} rejected by allow-list")
            await websocket.accept()
            await websocket.close(code=1008, reason="Forbidden")
            return

        try:
            await wait_for_backend()
        except PowerOnError as e:
            logger.error(f"Power-on attempt failed [{e.code}]: {e.message}")
            await websocket.accept()
            await websocket.close(code=1011, reason="Backend not available")
            return

        target = gateway.bind_current_address()
        logger.info(f"WebSocket path={websocket.url.path} target={target}")
        await gateway.forward_websocket(websocket, target)

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS)
    async def proxy_http(full_path: str, request: Request) -> Response:
        """Authorize, wake the backend if needed, then forward"""
        request_id = generate_request_id()
        request_id_var.set(request_id)
        start_time = time.time()

        peer = peer_address(request)
        forwarded = request.headers.get(forwarded_header) if forwarded_header else None
        log_request(request_id, f"RECEIVED: {request.method} /{full_path} from {peer} (forwarded: {forwarded})")

        authorizer.ensure_allowed(peer, forwarded)

        await wait_for_backend()
        log_request(request_id, f"READY: backend at {controller.host} after {time.time() - start_time:.2f}s")

        target = gateway.bind_current_address()
        logger.info(f"{request.method} path={request.url.path} host={request.headers.get('host')}")
        response = await gateway.forward(request, target)

        log_request(request_id, f"COMPLETED: upstream answered {response.status_code} in {time.time() - start_time:.2f}s")
        return response

    return app
