import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from ppb.errors import AccessDenied

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class ClientAddressPolicy:
    """Which forwarded-address header to trust, and how far from the right"""
    header: str = ""
    depth: int = 0


def select_forwarded(value: str, depth: int) -> str:
    """Pick the entry ``depth`` places from the right of a comma-separated chain"""
    components = [c.strip() for c in value.split(',')]
    index = len(components) - 1 - depth
    if depth < 0 or index < 0:
        return ""
    return components[index]


def strip_port(addr: str) -> str:
    """Drop a ``:port`` suffix from ``host:port`` or ``[host]:port``"""
    if addr.startswith('['):
        end = addr.find(']')
        return addr[1:end] if end != -1 else addr
    if addr.count(':') == 1:
        return addr.split(':', 1)[0]
    # Bare IPv6 literal, or no port at all
    return addr


def parse_ip(addr: str) -> Optional[IPAddress]:
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return None
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class IpAuthorizer:
    """Matches the client IP of a request against a CIDR allow-list"""

    def __init__(self, allowed_ips: Sequence[IPNetwork], policy: Optional[ClientAddressPolicy] = None):
        self.allowed_ips: Tuple[IPNetwork, ...] = tuple(allowed_ips)
        self.policy = policy or ClientAddressPolicy()

    def client_ip(self, remote_addr: str, forwarded: Optional[str] = None) -> Optional[IPAddress]:
        ip = ""
        if self.policy.header and forwarded:
            ip = select_forwarded(forwarded, self.policy.depth)

        if not ip:
            if self.policy.header:
                logger.debug(
                    f"No IP in {self.policy.header} at depth {self.policy.depth}, "
                    f"using peer address {remote_addr}"
                )
            ip = remote_addr or ""

        ip = strip_port(ip)
        logger.debug(f"Got client IP {ip}")
        return parse_ip(ip)

    def contains(self, ip: Optional[IPAddress]) -> bool:
        if ip is None:
            return False
        return any(ip in block for block in self.allowed_ips)

    def is_allowed(self, remote_addr: str, forwarded: Optional[str] = None) -> bool:
        return self.contains(self.client_ip(remote_addr, forwarded))

    def ensure_allowed(self, remote_addr: str, forwarded: Optional[str] = None) -> None:
        ip = self.client_ip(remote_addr, forwarded)
        if not self.contains(ip):
            raise AccessDenied(str(ip) if ip is not None else None)
