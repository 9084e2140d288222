import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from ppb.errors import ConfigError
from ppb.ip_auth import ClientAddressPolicy, IPNetwork
from ppb.machine import DEFAULT_COOLDOWN_SECONDS, BackendIdentity

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "ppb.yaml"
SUPPORTED_MACHINE_TYPES = ("google_compute_engine",)
SUPPORTED_SCHEMES = ("http", "https")

ENV_REFERENCE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)')


@dataclass(frozen=True)
class ProxyTimeouts:
    """Upstream transport settings, in seconds (max_idle_conns is a count)"""
    dial_timeout: int = 120
    keep_alive: int = 120
    idle_conn_timeout: int = 90
    tls_handshake_timeout: int = 10
    expect_continue_timeout: int = 1
    max_idle_conns: int = 100

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProxyTimeouts":
        """Build from the ``proxyTimeouts`` section; missing or non-positive values keep the default"""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("'proxyTimeouts' must be a mapping")

        keys = {
            'dialTimeout': 'dial_timeout',
            'keepAlive': 'keep_alive',
            'idleConnTimeout': 'idle_conn_timeout',
            'tlsHandshakeTimeout': 'tls_handshake_timeout',
            'expectContinueTimeout': 'expect_continue_timeout',
            'maxIdleConns': 'max_idle_conns',
        }
        values = {}
        for yaml_key, attr in keys.items():
            value = _int(data.get(yaml_key) or 0, f"proxyTimeouts.{yaml_key}")
            if value > 0:
                values[attr] = value
        return cls(**values)


@dataclass(frozen=True)
class Config:
    machine: BackendIdentity
    port: int
    scheme: str = "http"
    machine_type: str = "google_compute_engine"
    allowed_ips: Tuple[IPNetwork, ...] = ()
    ip_forwarded_header: str = ""
    ip_depth: int = 0
    power_on_cooldown: int = DEFAULT_COOLDOWN_SECONDS
    proxy_timeouts: ProxyTimeouts = field(default_factory=ProxyTimeouts)

    @property
    def address_policy(self) -> ClientAddressPolicy:
        return ClientAddressPolicy(header=self.ip_forwarded_header, depth=self.ip_depth)


def _int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{name}' must be an integer, got {value!r}") from None


def parse_cidr(value: Any) -> IPNetwork:
    """Parse one ``allowedIps`` entry; host bits may be set, a prefix length is required"""
    if not isinstance(value, str) or '/' not in value:
        raise ConfigError(f"invalid CIDR: {value!r}")
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except ValueError as e:
        raise ConfigError(f"invalid CIDR: {e}") from None


def expand_env(text: str) -> str:
    """Replace ``$VAR`` and ``${VAR}`` with their environment values (unset means empty)"""
    return ENV_REFERENCE.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), text)


def read_config_source() -> str:
    """PPB_YAML wins over the file named by PPB_CONFIG_PATH"""
    yaml_content = os.getenv('PPB_YAML')
    if yaml_content:
        logger.debug("Loading config from PPB_YAML environment variable")
        return yaml_content

    filename = os.getenv('PPB_CONFIG_PATH') or DEFAULT_CONFIG_PATH
    logger.debug(f"Loading config from {filename}")
    try:
        with open(filename, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {filename}") from None
    except OSError as e:
        raise ConfigError(f"Unable to read configuration file {filename}: {e}") from None


def validate_config(data: Any) -> None:
    """Validate configuration structure and required fields"""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    machine_type = data.get('type')
    if machine_type not in SUPPORTED_MACHINE_TYPES:
        raise ConfigError(f"unknown machine type: {machine_type}")

    scheme = data.get('scheme') or "http"
    if scheme not in SUPPORTED_SCHEMES:
        raise ConfigError(f"unsupported scheme: {scheme}")

    if 'port' not in data:
        raise ConfigError("missing 'port'")
    port = _int(data['port'], 'port')
    if not 0 < port < 65536:
        raise ConfigError(f"'port' out of range: {port}")

    if not isinstance(data.get('allowedIps') or [], list):
        raise ConfigError("'allowedIps' must be a list")

    if _int(data.get('ipDepth') or 0, 'ipDepth') < 0:
        raise ConfigError("'ipDepth' must not be negative")

    metadata = data.get('machineMetadata')
    if not isinstance(metadata, dict):
        raise ConfigError("missing 'machineMetadata'")
    for key in ('project_id', 'zone', 'name'):
        if not metadata.get(key):
            raise ConfigError(f"machineMetadata missing '{key}'")


def parse_config(text: str) -> Config:
    try:
        data = yaml.safe_load(expand_env(text))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration: {e}") from None

    validate_config(data)

    metadata = data['machineMetadata']
    machine = BackendIdentity(
        project_id=str(metadata['project_id']),
        zone=str(metadata['zone']),
        name=str(metadata['name']),
        use_private_ip=bool(metadata.get('usePrivateIp', False)),
    )

    cooldown = _int(data.get('powerOnCooldown') or 0, 'powerOnCooldown')
    if cooldown <= 0:
        cooldown = DEFAULT_COOLDOWN_SECONDS

    return Config(
        machine=machine,
        port=_int(data['port'], 'port'),
        scheme=data.get('scheme') or "http",
        machine_type=data['type'],
        allowed_ips=tuple(parse_cidr(cidr) for cidr in data.get('allowedIps') or []),
        ip_forwarded_header=data.get('ipForwardedHeader') or "",
        ip_depth=_int(data.get('ipDepth') or 0, 'ipDepth'),
        power_on_cooldown=cooldown,
        proxy_timeouts=ProxyTimeouts.from_dict(data.get('proxyTimeouts')),
    )


def load_config() -> Config:
    config = parse_config(read_config_source())
    logger.debug(f"Loaded config: {config}")
    return config
