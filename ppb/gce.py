"""
Google Compute Engine control plane client.

The google-cloud-compute client is synchronous, so every call runs in a worker
thread to keep the event loop free for request traffic.
"""

import asyncio
import logging
from typing import Optional

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1

from ppb.errors import ControlPlaneRejected, ControlPlaneUnavailable
from ppb.machine import BackendIdentity, InstanceState, InstanceStatus

logger = logging.getLogger(__name__)

# Failures that say nothing about the request itself
TRANSIENT_ERRORS = (
    google_exceptions.RetryError,
    google_exceptions.ServerError,
    google_exceptions.TooManyRequests,
    auth_exceptions.GoogleAuthError,
    OSError,
)


def instance_status(instance) -> InstanceStatus:
    """Reduce a compute_v1.Instance to the fields the proxy cares about"""
    interfaces = list(instance.network_interfaces or [])
    private_ip = interfaces[0].network_i_p if interfaces else ""
    public_ips = []
    for nic in interfaces:
        if nic.access_configs and nic.access_configs[0].nat_i_p:
            public_ips.append(nic.access_configs[0].nat_i_p)

    return InstanceStatus(
        status=instance.status or InstanceState.UNKNOWN,
        private_ip=private_ip or "",
        public_ips=tuple(public_ips),
        has_network_interfaces=bool(interfaces),
    )


class GceClient:
    """get/start/resume for the one instance named by ``identity``"""

    def __init__(self, identity: BackendIdentity, instances_client: Optional[compute_v1.InstancesClient] = None):
        self.identity = identity
        self._instances_client = instances_client

    async def _client(self) -> compute_v1.InstancesClient:
        if self._instances_client is None:
            try:
                self._instances_client = await asyncio.to_thread(compute_v1.InstancesClient)
            except Exception as e:
                raise ControlPlaneUnavailable("create compute client", e) from e
            logger.info(f"✓ Compute client initialized (project: {self.identity.project_id}, zone: {self.identity.zone})")
        return self._instances_client

    async def _call(self, operation: str, method: str):
        client = await self._client()
        try:
            return await asyncio.to_thread(
                getattr(client, method),
                project=self.identity.project_id,
                zone=self.identity.zone,
                instance=self.identity.name,
            )
        except TRANSIENT_ERRORS as e:
            raise ControlPlaneUnavailable(operation, e) from e
        except google_exceptions.GoogleAPICallError as e:
            raise ControlPlaneRejected(operation, e) from e

    async def get_status(self) -> InstanceStatus:
        instance = await self._call("get instance", "get")
        return instance_status(instance)

    async def start(self) -> None:
        await self._call("start instance", "start")

    async def resume(self) -> None:
        await self._call("resume instance", "resume")
