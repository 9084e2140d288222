"""
Error taxonomy for the power-on proxy.

Every error carries a stable ``code`` for logs. HTTP callers only ever see
``public_message`` and ``status_code``.
"""

from typing import Optional


class PpbError(Exception):
    """Base exception for the proxy."""

    code = "PPB_ERROR"
    status_code = 500
    public_message = "Internal Server Error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigError(PpbError):
    """Invalid or missing configuration."""

    code = "CONFIG_ERROR"


class AccessDenied(PpbError):
    """Client IP is not in the allow-list."""

    code = "ACCESS_DENIED"
    status_code = 403
    public_message = "Forbidden"

    def __init__(self, client_ip: Optional[str] = None):
        self.client_ip = client_ip
        super().__init__(f"client {client_ip or 'unknown'} is not allowed")


class PowerOnError(PpbError):
    """The backend could not be made available."""

    code = "BACKEND_UNAVAILABLE"
    status_code = 503
    public_message = "Backend not available"


class StillCoolingDown(PowerOnError):
    code = "STILL_COOLING_DOWN"

    def __init__(self, message: str = "backend not available and still in cooldown period"):
        super().__init__(message)


class ControlPlaneError(PowerOnError):
    """A call to the compute control plane failed."""

    code = "CONTROL_PLANE_ERROR"

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class ControlPlaneUnavailable(ControlPlaneError):
    """Client construction, credentials or transport failure."""

    code = "CONTROL_PLANE_UNAVAILABLE"


class ControlPlaneRejected(ControlPlaneError):
    """The control plane answered with an explicit API error."""

    code = "CONTROL_PLANE_REJECTED"


class AddressUnresolvable(PowerOnError):
    code = "ADDRESS_UNRESOLVABLE"


class TransitionTimeout(PowerOnError):
    code = "TRANSITION_TIMEOUT"

    def __init__(self, message: str = "timeout waiting for instance to start"):
        super().__init__(message)


class BackendTransitioning(PowerOnError):
    """The instance is between states and has no address yet."""

    code = "BACKEND_TRANSITIONING"

    def __init__(self, message: str = "backend is transitioning and its address is not known yet"):
        super().__init__(message)
