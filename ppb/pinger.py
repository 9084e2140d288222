"""
Background liveness pings to the backend.

Only keeps connections and the backend warm; nothing depends on the result.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

PING_INTERVAL_SECONDS = 30
PING_PORT = 8808
PING_TIMEOUT_SECONDS = 5.0


async def ping_once(controller, client: httpx.AsyncClient, port: int = PING_PORT) -> Optional[int]:
    """Ping the backend if its address is known, returning the HTTP status"""
    host = controller.host
    if not host:
        logger.debug("No backend host IP available for ping")
        return None

    ping_url = f"http://{host}:{port}/ping"
    logger.debug(f"Pinging backend instance at {ping_url}")
    try:
        resp = await client.get(ping_url)
    except httpx.HTTPError as e:
        logger.debug(f"Ping failed for {ping_url}: {e}")
        return None

    logger.debug(f"Ping successful for {ping_url}: {resp.status_code}")
    return resp.status_code


async def ping_backend(
    controller,
    interval: float = PING_INTERVAL_SECONDS,
    port: int = PING_PORT,
    client: Optional[httpx.AsyncClient] = None,
):
    """Ping the backend every ``interval`` seconds until cancelled"""
    logger.info("Starting ping routine to backend instance")
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=PING_TIMEOUT_SECONDS)

    try:
        while True:
            await asyncio.sleep(interval)
            await ping_once(controller, client, port)
    except asyncio.CancelledError:
        logger.info("Ping routine shutting down")
        raise
    finally:
        if owns_client:
            await client.aclose()
