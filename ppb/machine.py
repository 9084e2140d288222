import asyncio
import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Set, Tuple

from ppb.errors import AddressUnresolvable, ControlPlaneError, StillCoolingDown, TransitionTimeout

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 30
POLL_INTERVAL_SECONDS = 2.0
POLL_TIMEOUT_SECONDS = 300.0


class InstanceState:
    """Instance status strings reported by the control plane"""
    RUNNING = "RUNNING"
    TERMINATED = "TERMINATED"
    SUSPENDED = "SUSPENDED"
    PROVISIONING = "PROVISIONING"
    STAGING = "STAGING"
    STOPPING = "STOPPING"
    SUSPENDING = "SUSPENDING"
    REPAIRING = "REPAIRING"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class BackendIdentity:
    """Which instance to wake, and which of its addresses to proxy to"""
    project_id: str
    zone: str
    name: str
    use_private_ip: bool = False


@dataclass(frozen=True)
class InstanceStatus:
    """Snapshot of an instance as returned by the control plane"""
    status: str
    private_ip: str = ""
    public_ips: Tuple[str, ...] = ()
    has_network_interfaces: bool = True


class BackendRuntimeState:
    """Resolved backend address, shared by every forwarding task.

    The lock is only ever held for a single read or assignment, so readers
    never wait behind a power-on sequence.
    """

    def __init__(self):
        self._host = ""
        self._lock = threading.Lock()

    @property
    def host(self) -> str:
        with self._lock:
            return self._host

    def publish(self, host: str) -> None:
        if host:
            ipaddress.ip_address(host)
        with self._lock:
            self._host = host


class CooldownGate:
    """Serializes power-on sequences and spaces them ``cooldown`` seconds apart"""

    def __init__(self, cooldown: float = DEFAULT_COOLDOWN_SECONDS, clock: Callable[[], float] = time.monotonic):
        if cooldown <= 0:
            cooldown = DEFAULT_COOLDOWN_SECONDS
        self.cooldown = cooldown
        self.last_attempt: Optional[float] = None
        self.lock = asyncio.Lock()
        self._clock = clock

    def in_cooldown(self, cooldown: Optional[float] = None) -> bool:
        if self.last_attempt is None:
            return False
        if cooldown is None:
            cooldown = self.cooldown
        return self._clock() - self.last_attempt < cooldown

    def record_attempt(self) -> None:
        self.last_attempt = self._clock()


class PowerController:
    """Makes sure the backend instance is running and its address is known.

    ``ensure_running`` is the only entry point. It holds the cooldown gate
    lock for the whole status/power-on/poll sequence, which collapses a burst
    of concurrent requests into a single control plane interaction.
    """

    def __init__(
        self,
        identity: BackendIdentity,
        client,
        cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
    ):
        self.identity = identity
        self.client = client
        self.state = BackendRuntimeState()
        self.gate = CooldownGate(cooldown, clock)
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._tasks: Set[asyncio.Task] = set()

    @property
    def host(self) -> str:
        return self.state.host

    def set_host(self, host: str) -> None:
        self.state.publish(host)

    @property
    def last_attempt(self) -> Optional[float]:
        return self.gate.last_attempt

    async def ensure_running(self, cooldown_seconds: Optional[float] = None) -> None:
        """Power on the backend if needed, rate limited by the cooldown gate"""
        async with self.gate.lock:
            if self.gate.in_cooldown(cooldown_seconds):
                logger.debug(f"Power-on attempt skipped due to cooldown for instance {self.identity.name}")
                if not self.host:
                    raise StillCoolingDown()
                return

            # Before any remote call: a slow or failing sequence still starts a window
            self.gate.record_attempt()

            logger.debug(f"Attempting power-on check for instance {self.identity.name}")
            await self._power_on()

    def ensure_running_task(self, cooldown_seconds: Optional[float] = None) -> asyncio.Task:
        """Run ``ensure_running`` as a task owned by the controller.

        Callers await it through ``asyncio.shield`` so a client disconnect
        does not cancel a power-on sequence other requests are waiting on.
        """
        task = asyncio.create_task(self.ensure_running(cooldown_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Power-on task finished with {type(task.exception()).__name__}")

    async def aclose(self) -> None:
        """Cancel in-flight power-on tasks"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _power_on(self) -> None:
        vm = await self.client.get_status()

        if vm.status == InstanceState.RUNNING:
            logger.debug(f"Instance {self.identity.name} is running")
            self._publish_address(vm)
            return

        logger.debug(f"Instance {self.identity.name} status: {vm.status}")
        if vm.status == InstanceState.TERMINATED:
            await self.client.start()
        elif vm.status == InstanceState.SUSPENDED:
            await self.client.resume()
        else:
            return

        logger.info(f"Power button pressed for instance {self.identity.name} (was {vm.status})")
        await self._wait_for_running()

    async def _wait_for_running(self) -> None:
        try:
            await asyncio.wait_for(self._poll_until_running(), timeout=self.poll_timeout)
        except asyncio.TimeoutError:
            raise TransitionTimeout() from None

    async def _poll_until_running(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)

            try:
                vm = await self.client.get_status()
            except ControlPlaneError as e:
                logger.warning(f"Failed to fetch instance status, retrying: {e}")
                continue

            logger.debug(f"Polling instance {self.identity.name} status: {vm.status}")
            if vm.status == InstanceState.RUNNING:
                self._publish_address(vm)
                return

    def _publish_address(self, vm: InstanceStatus) -> None:
        name = self.identity.name
        if not vm.has_network_interfaces:
            raise AddressUnresolvable(f"no network interfaces found for instance {name}")

        if self.identity.use_private_ip:
            if not vm.private_ip:
                raise AddressUnresolvable(f"no private IP found for instance {name}")
            self._publish(vm.private_ip)
            logger.debug(f"Found private IP {vm.private_ip}")
            return

        for ip in vm.public_ips:
            if ip:
                self._publish(ip)
                logger.debug(f"Found public IP {ip}")
                return

        raise AddressUnresolvable(f"no public IP found for instance {name}")

    def _publish(self, host: str) -> None:
        try:
            self.state.publish(host)
        except ValueError:
            raise AddressUnresolvable(f"invalid address {host!r} for instance {self.identity.name}") from None
