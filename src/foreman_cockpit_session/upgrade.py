"""
HTTP upgrade handshake against a remote execution proxy.

The proxy turns a ``POST /ssh/session`` with ``Upgrade: raw`` into an SSH
session running the bridge command on the target host:

1. Open TCP (and, for https, mutual TLS) to the proxy
2. Send: POST /ssh/session HTTP/1.1 with the JSON session parameters
3. Read: HTTP/1.1 101 Switching Protocols
4. Return the socket for raw relaying
"""

import json
import logging
import socket
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlparse

from .config import Settings
from .connection import create_proxy_ssl_context
from .control import ByteReader
from .errors import AccessDenied, BridgeError, TransportFault
from .resolver import SessionParams
from .tls import TlsConnection

logger = logging.getLogger(__name__)

BRIDGE_COMMAND = "cockpit-bridge"
UPGRADE_PATH = "/ssh/session"

# Printed by the target's shell when the bridge is not installed
COMMAND_NOT_FOUND = "cockpit-bridge: command not found"

MAX_HEAD_LINES = 100


@dataclass
class UpgradedConnection:
    """A connection switched to raw mode, plus bytes read past the response head."""
    sock: Union[socket.socket, TlsConnection]
    leftover: bytes = b""


@dataclass(frozen=True)
class ResponseHead:
    status_line: str
    status: str
    headers: dict[str, str]

    def content_length(self) -> Optional[int]:
        value = self.headers.get("content-length")
        if value is None:
            return None
        try:
            return max(int(value), 0)
        except ValueError:
            return None


def parse_proxy_url(proxy_url: str) -> tuple[str, int, bool]:
    """
    Parse a proxy URL into host, port and whether TLS is required.

    Returns:
        Tuple of (host, port, use_tls)
    """
    parsed = urlparse(proxy_url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise TransportFault(f"Invalid proxy URL: {proxy_url}")
    use_tls = parsed.scheme == "https"
    try:
        port = parsed.port or (443 if use_tls else 80)
    except ValueError:
        raise TransportFault(f"Invalid proxy URL: {proxy_url}") from None
    return parsed.hostname, port, use_tls


def format_host_header(host: str, port: int) -> str:
    # urlparse() strips the brackets from IPv6 literals
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"


def build_upgrade_request(host: str, port: int, params: SessionParams) -> bytes:
    body = json.dumps(params.to_body()).encode("utf-8")
    head = (
        f"POST {UPGRADE_PATH} HTTP/1.1\r\n"
        f"Host: {format_host_header(host, port)}\r\n"
        "Connection: upgrade\r\n"
        "Upgrade: raw\r\n"
        f"Content-Length: {len(body)}\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + body


def read_response_head(reader: ByteReader) -> ResponseHead:
    """Read the status line and headers, up to and including the blank line."""
    lines: list[str] = []
    while True:
        line = reader.readline()
        if not line.endswith(b"\n"):
            raise TransportFault("Proxy closed the connection during the handshake")
        if line in (b"\r\n", b"\n"):
            break
        if len(lines) >= MAX_HEAD_LINES:
            raise TransportFault(f"Too many header lines (>{MAX_HEAD_LINES})")
        lines.append(line.decode("latin-1").rstrip("\r\n"))

    if not lines:
        raise TransportFault("Proxy sent an empty response head")

    status_line = lines[0]
    parts = status_line.split(" ", 2)
    status = parts[1] if len(parts) > 1 else ""

    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return ResponseHead(status_line=status_line, status=status, headers=headers)


def read_error_body(reader: ByteReader, head: ResponseHead) -> str:
    """Drain the error body; a short body at end of stream is accepted."""
    length = head.content_length()
    if length is None:
        data = reader.read_until_eof()
    else:
        data = reader.read(length)
    return data.decode("utf-8", errors="replace")


def classify_failure(head: ResponseHead, body: str, host: str) -> BridgeError:
    """Map a non-101 response to the error that ends the session."""
    if head.status == "404":
        return AccessDenied("the proxy does not support web console sessions")
    if head.status.startswith("4"):
        if COMMAND_NOT_FOUND in body:
            return AccessDenied(f"{host} has no web console")
        return AccessDenied(body)

    status_code = int(head.status) if head.status.isdigit() else None
    return TransportFault(f"Proxy returned: {head.status_line}", status_code=status_code)


def _connect(host: str, port: int, use_tls: bool, settings: Settings) -> Union[socket.socket, TlsConnection]:
    ssl_ctx = create_proxy_ssl_context(settings) if use_tls else None
    sock = socket.create_connection((host, port))
    if ssl_ctx is None:
        return sock
    try:
        conn = TlsConnection(sock, ssl_ctx, server_hostname=host)
        conn.do_handshake()
        return conn
    except BaseException:
        sock.close()
        raise


def open_upgraded_connection(
    proxy_url: str,
    params: SessionParams,
    settings: Settings,
) -> UpgradedConnection:
    """
    Connect to the proxy and switch the connection to raw mode.

    Args:
        proxy_url: http(s) URL of the remote execution proxy
        params: session parameters from the directory
        settings: TLS material for the proxy connection

    Returns:
        UpgradedConnection; its connection is still in blocking mode

    Raises:
        AccessDenied: the proxy refused the session with a 4xx status
        TransportFault: connection failure or any other status
    """
    host, port, use_tls = parse_proxy_url(proxy_url)
    params = params.with_command(BRIDGE_COMMAND)

    try:
        sock = _connect(host, port, use_tls, settings)
    except OSError as e:
        raise TransportFault(f"Cannot connect to proxy {host}:{port}: {e}") from e

    try:
        logger.info(f"Opening web console session for {params.host} via {host}:{port}")
        sock.sendall(build_upgrade_request(host, port, params))

        reader = ByteReader(sock.recv)
        head = read_response_head(reader)
        if head.status == "101":
            logger.debug("Proxy switched protocols")
            return UpgradedConnection(sock=sock, leftover=reader.take_buffered())

        body = read_error_body(reader, head)
        logger.warning(f"Proxy refused session: {head.status_line}")
        raise classify_failure(head, body, params.host)
    except OSError as e:
        sock.close()
        raise TransportFault(f"Handshake with proxy {host}:{port} failed: {e}") from e
    except BaseException:
        sock.close()
        raise
