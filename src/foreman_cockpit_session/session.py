"""
Session pipeline: authorize, resolve, upgrade, relay.

Failures are handled here, at the single place that knows whether the peer
can still be told about them: session problems end with a terminal ``init``
frame, transport and protocol faults just end the process.
"""

import asyncio
import dataclasses
import logging
from typing import Callable, Optional

from .auth import authorize
from .config import Settings
from .control import ControlChannel
from .errors import AccessDenied, ProtocolError, SessionProblem, TransportFault
from .relay import PipeEndpoint, endpoint_for, relay
from .resolver import (
    PROXY_DIRECT,
    PROXY_NOT_AVAILABLE,
    PROXY_NOT_DEFINED,
    BackendResolver,
    SessionParams,
)
from .upgrade import UpgradedConnection, open_upgraded_connection

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

# Directory proxy values that cannot carry a session
PROXY_PROBLEMS = {
    PROXY_NOT_AVAILABLE: "{host} has no remote execution proxy available",
    PROXY_NOT_DEFINED: "{host} is not assigned to a remote execution proxy",
    PROXY_DIRECT: "direct web console connections to {host} are not supported",
}

Connector = Callable[[str, SessionParams, Settings], UpgradedConnection]


def proxy_url_for(params: SessionParams) -> str:
    """Return the proxy URL to upgrade through, or raise AccessDenied."""
    proxy = params.proxy if isinstance(params.proxy, str) and params.proxy else PROXY_NOT_DEFINED
    template = PROXY_PROBLEMS.get(proxy)
    if template is not None:
        raise AccessDenied(template.format(host=params.host))
    return proxy


class Session:
    """One web console session, from the first control frame to the last byte."""

    def __init__(
        self,
        settings: Settings,
        host: str,
        channel: ControlChannel,
        resolver: Optional[BackendResolver] = None,
        connect: Connector = open_upgraded_connection,
    ):
        self.settings = settings
        self.host = host
        self.channel = channel
        self.resolver = resolver or BackendResolver(settings)
        self.connect = connect

    def resolve(self, token: str) -> SessionParams:
        params = asyncio.run(self.resolver.resolve(self.host, token))
        if params is None:
            raise AccessDenied(f"host {self.host} not found")
        if not params.host:
            params = dataclasses.replace(params, host=self.host)
        return params

    def establish(self) -> UpgradedConnection:
        """Run every step before the relay; raises on any failure."""
        token = authorize(self.channel)
        params = self.resolve(token)
        return self.connect(proxy_url_for(params), params, self.settings)

    def run(self) -> int:
        """Run the session and return the process exit code."""
        try:
            upgraded = self.establish()
        except SessionProblem as e:
            logger.warning(f"Session for {self.host} ended: {e.problem}: {e.message}")
            try:
                self.channel.send(e.to_frame())
            except OSError as send_error:
                logger.error(f"Cannot report problem to the front end: {send_error}")
            return EXIT_FAILURE
        except ProtocolError as e:
            logger.error(f"Control protocol error: {e}")
            return EXIT_FAILURE
        except TransportFault as e:
            logger.error(f"Session for {self.host} failed: {e}")
            return EXIT_FAILURE
        except OSError as e:
            logger.error(f"Session for {self.host} failed: {type(e).__name__}: {e}")
            return EXIT_FAILURE

        local = PipeEndpoint(self.channel.in_fd, self.channel.out_fd)
        remote = endpoint_for(upgraded.sock)
        try:
            relay(
                local,
                remote,
                inbound=self.channel.take_buffered(),
                outbound=upgraded.leftover,
            )
        except OSError as e:
            logger.error(f"Relay for {self.host} failed: {type(e).__name__}: {e}")
            return EXIT_FAILURE
        return EXIT_OK
