"""
Backend Resolver

Asks the Foreman directory service how to reach a host's web console:
which remote execution proxy to use and the SSH parameters to hand it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote, urlparse

import aiohttp

from .config import Settings
from .connection import (
    build_session_headers,
    create_directory_connector,
    create_directory_timeout,
)
from .errors import AuthenticationFailed, TransportFault

logger = logging.getLogger(__name__)

HOST_PARAMS_PATH = "/cockpit/host_ssh_params/"

# Proxy values that name no usable proxy
PROXY_NOT_AVAILABLE = "not_available"
PROXY_NOT_DEFINED = "not_defined"
PROXY_DIRECT = "direct"

# Reported when the directory rejects the session token
TOKEN_DENIED_RESULTS = {"password": "not-tried", "token": "denied"}


@dataclass(frozen=True)
class SessionParams:
    """Connection parameters for one host, as returned by the directory."""
    host: str
    proxy: Optional[str] = None
    command: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionParams":
        """Create params from the directory's JSON. Unknown keys go to ``extra``."""
        extra = {k: v for k, v in data.items() if k not in ("host", "proxy", "command")}
        return cls(
            host=str(data.get("host") or ""),
            proxy=data.get("proxy"),
            command=data.get("command"),
            extra=extra,
        )

    def with_command(self, command: str) -> "SessionParams":
        return SessionParams(host=self.host, proxy=self.proxy, command=command, extra=dict(self.extra))

    def to_body(self) -> dict:
        """JSON body for the upgrade request: every field, verbatim."""
        body = dict(self.extra)
        body["host"] = self.host
        if self.proxy is not None:
            body["proxy"] = self.proxy
        if self.command is not None:
            body["command"] = self.command
        return body


class BackendResolver:
    """Looks up a host's session parameters in the directory service."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def params_url(self, host: str) -> str:
        base = self.settings.foreman_url.rstrip("/")
        return f"{base}{HOST_PARAMS_PATH}{quote(host, safe='')}"

    def _create_connector(self) -> aiohttp.TCPConnector:
        if urlparse(self.settings.foreman_url).scheme == "https":
            return create_directory_connector(ca_file=self.settings.ssl_ca_file)
        return aiohttp.TCPConnector()

    async def resolve(self, host: str, token: str) -> Optional[SessionParams]:
        """
        Fetch the session parameters for ``host``.

        Returns:
            SessionParams, or None if the directory does not know the host

        Raises:
            AuthenticationFailed: the directory rejected the token (401)
            TransportFault: any other status, bad JSON or a connection error
        """
        url = self.params_url(host)
        logger.debug(f"Resolving {host} via {url}")

        try:
            connector = self._create_connector()
            async with aiohttp.ClientSession(
                connector=connector,
                timeout=create_directory_timeout(),
            ) as session:
                async with session.get(url, headers=build_session_headers(token)) as resp:
                    if resp.status == 200:
                        data = await resp.json(content_type=None)
                    elif resp.status == 401:
                        raise AuthenticationFailed(
                            "Token was not valid",
                            auth_method_results=dict(TOKEN_DENIED_RESULTS),
                        )
                    elif resp.status == 404:
                        logger.info(f"Directory has no host named {host}")
                        return None
                    else:
                        raise TransportFault(
                            f"Directory returned {resp.status} for {host}",
                            status_code=resp.status,
                        )
        except aiohttp.ClientError as e:
            raise TransportFault(f"Cannot reach directory at {url}: {e}") from e
        except ValueError as e:
            # json.JSONDecodeError
            raise TransportFault(f"Directory returned invalid JSON for {host}: {e}") from e
        except OSError as e:
            raise TransportFault(f"Cannot set up directory connection: {e}") from e

        if not isinstance(data, dict):
            raise TransportFault(f"Directory returned unexpected data for {host}")
        return SessionParams.from_dict(data)
