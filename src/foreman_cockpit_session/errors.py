"""
Error taxonomy for the session bridge.

Session problems (authentication failures, denied access) can be reported to
the peer with a terminal ``init`` frame. Everything else means the control
channel or a backend connection is unusable and the process just exits.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class ProtocolError(BridgeError):
    """Malformed control frame or unexpected control message."""


class TransportFault(BridgeError):
    """Unexpected HTTP status or connection failure talking to a backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(BridgeError):
    """Settings file could not be read or parsed."""


class SessionProblem(BridgeError):
    """A classified failure that ends the session with a terminal frame."""

    problem = "internal-error"

    def __init__(self, message: str, auth_method_results: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.auth_method_results = auth_method_results

    def to_frame(self):
        """Build the terminal frame reporting this problem to the peer."""
        from .control import InitFailureFrame

        return InitFailureFrame(
            problem=self.problem,
            message=self.message,
            auth_method_results=self.auth_method_results,
        )


class AuthenticationFailed(SessionProblem):
    """The directory service rejected the session token."""

    problem = "authentication-failed"


class AccessDenied(SessionProblem):
    """Unknown host, no usable proxy, or the proxy refused the upgrade."""

    problem = "access-denied"
