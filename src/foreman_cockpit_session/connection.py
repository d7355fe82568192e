"""
Connection utilities for the session bridge.

SSL context, timeout and connector factories for the two backends: the
Foreman directory service (server verification against the configured CA)
and the remote execution proxy (mutual TLS with the Foreman client identity).
"""

import logging
import ssl
from typing import Optional

import aiohttp

from .config import Settings
from .errors import TransportFault

logger = logging.getLogger(__name__)


def create_directory_ssl_context(ca_file: Optional[str] = None) -> ssl.SSLContext:
    """
    Create an SSL context for directory service requests.

    Args:
        ca_file: Path to the trust anchor for the Foreman server. If None,
                 the system trust store is used.

    Returns:
        ssl.SSLContext with certificate and hostname verification enabled.
        There is no way to turn verification off.
    """
    ssl_ctx = ssl.create_default_context()
    if ca_file:
        ssl_ctx.load_verify_locations(cafile=ca_file)
    return ssl_ctx


def create_proxy_ssl_context(settings: Settings) -> ssl.SSLContext:
    """
    Create an SSL context for the upgrade connection to a proxy.

    The proxy only accepts clients presenting a certificate it trusts, so
    the configured certificate and private key are mandatory.

    Raises:
        TransportFault: if the client identity is not configured or cannot
                        be loaded
    """
    if not settings.ssl_certificate or not settings.ssl_private_key:
        raise TransportFault(
            "ssl_certificate and ssl_private_key are required for proxy connections"
        )

    ssl_ctx = create_directory_ssl_context(settings.ssl_ca_file)
    try:
        ssl_ctx.load_cert_chain(
            certfile=settings.ssl_certificate,
            keyfile=settings.ssl_private_key,
        )
    except (OSError, ssl.SSLError) as e:
        raise TransportFault(f"Cannot load client certificate: {e}") from e
    return ssl_ctx


def create_directory_timeout() -> aiohttp.ClientTimeout:
    """
    Create a ClientTimeout for the directory request.

    No limits are imposed: the request relies on the transport's own
    behaviour, like the rest of the handshake phase.
    """
    return aiohttp.ClientTimeout(total=None)


def create_directory_connector(
    ssl_context: Optional[ssl.SSLContext] = None,
    ca_file: Optional[str] = None,
) -> aiohttp.TCPConnector:
    """
    Create a TCPConnector for directory service requests.

    Args:
        ssl_context: Optional SSL context. If None, creates one.
        ca_file: Trust anchor passed to create_directory_ssl_context if
                 ssl_context is None.
    """
    if ssl_context is None:
        ssl_context = create_directory_ssl_context(ca_file)
    return aiohttp.TCPConnector(ssl=ssl_context)


def build_session_headers(token: str) -> dict[str, str]:
    """Build HTTP headers authenticating a directory request."""
    return {
        "Cookie": f"_session_id={token}",
        "Accept": "application/json",
    }
