"""Shared test configuration and helpers."""

import datetime
import ipaddress
import os
import socket
import ssl
import threading
from dataclasses import dataclass

import pytest

from foreman_cockpit_session.config import Settings
from foreman_cockpit_session.connection import create_proxy_ssl_context
from foreman_cockpit_session.control import ByteReader, ControlChannel, decode_message, encode_message
from foreman_cockpit_session.tls import TlsConnection


def close_quietly(fd: int) -> None:
    """Close a descriptor that the code under test may already have closed."""
    try:
        os.close(fd)
    except OSError:
        pass


def read_until_eof(fd: int) -> bytes:
    chunks = []
    while True:
        chunk = os.read(fd, 65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def recv_until_eof(sock: socket.socket) -> bytes:
    chunks = []
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


@dataclass
class ControlPipes:
    """A ControlChannel wired to pipes, plus the front end's ends of them."""
    channel: ControlChannel
    peer_in: int    # read what the bridge sent
    peer_out: int   # write what the bridge will read

    def send(self, msg: dict, extra: bytes = b"") -> None:
        os.write(self.peer_out, encode_message(msg) + extra)

    def send_raw(self, data: bytes) -> None:
        os.write(self.peer_out, data)

    def finish_input(self) -> None:
        close_quietly(self.peer_out)

    def reader(self) -> ByteReader:
        return ByteReader(lambda size: os.read(self.peer_in, size))

    def receive(self, reader: ByteReader) -> dict:
        return decode_message(reader)


@pytest.fixture
def control_pipes():
    to_bridge_r, to_bridge_w = os.pipe()
    from_bridge_r, from_bridge_w = os.pipe()
    pipes = ControlPipes(
        channel=ControlChannel(to_bridge_r, from_bridge_w),
        peer_in=from_bridge_r,
        peer_out=to_bridge_w,
    )
    yield pipes
    for fd in (to_bridge_r, to_bridge_w, from_bridge_r, from_bridge_w):
        close_quietly(fd)


class FakeProxy:
    """One-shot HTTP server on loopback that answers a single request.

    ``handler(conn, request)`` runs in a background thread once the request
    head and body have been read.
    """

    def __init__(self, handler, ssl_context=None):
        self.handler = handler
        self.ssl_context = ssl_context
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.port = self.listener.getsockname()[1]
        self.request = b""
        self.error = None
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        try:
            conn, _ = self.listener.accept()
            if self.ssl_context is not None:
                conn = self.ssl_context.wrap_socket(conn, server_side=True)
            with conn:
                self.request = self._read_request(conn)
                self.handler(conn, self.request)
        except Exception as e:
            self.error = e
        finally:
            self.listener.close()

    @staticmethod
    def _read_request(conn: socket.socket) -> bytes:
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = conn.recv(4096)
            if not chunk:
                return data
            data += chunk
        head, _, body = data.partition(b"\r\n\r\n")
        length = 0
        for line in head.split(b"\r\n")[1:]:
            name, _, value = line.partition(b":")
            if name.strip().lower() == b"content-length":
                length = int(value.strip())
        while len(body) < length:
            body += conn.recv(4096)
        return head + b"\r\n\r\n" + body

    def join(self, timeout: float = 5.0) -> None:
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "fake proxy did not finish"
        if self.error is not None:
            raise self.error


def respond(response: bytes):
    """Handler that sends ``response`` and closes the connection."""
    def handler(conn, request):
        conn.sendall(response)
    return handler


# ---------------------------------------------------------------------------
# TLS material
# ---------------------------------------------------------------------------


@dataclass
class TlsMaterial:
    ca_file: str
    server_cert: str
    server_key: str
    client_cert: str
    client_key: str


def _write_key(key, path) -> str:
    from cryptography.hazmat.primitives import serialization

    path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return str(path)


def _write_cert(cert, path) -> str:
    from cryptography.hazmat.primitives import serialization

    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return str(path)


@pytest.fixture
def tls_material(tmp_path) -> TlsMaterial:
    """A throwaway CA with a server certificate for 127.0.0.1 and a client certificate."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID

    now = datetime.datetime.now(datetime.timezone.utc)

    def build(subject_cn, issuer_name, issuer_key, public_key, is_ca=False, san=None):
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)]))
            .issuer_name(issuer_name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(minutes=5))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
                critical=False,
            )
            .add_extension(x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=is_ca,
                crl_sign=is_ca,
                encipher_only=False,
                decipher_only=False,
            ), critical=True)
        )
        if san is not None:
            builder = builder.add_extension(x509.SubjectAlternativeName(san), critical=False)
        return builder.sign(issuer_key, hashes.SHA256())

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test-ca")])
    ca_cert = build("test-ca", ca_name, ca_key, ca_key.public_key(), is_ca=True)

    server_key = ec.generate_private_key(ec.SECP256R1())
    server_cert = build(
        "127.0.0.1", ca_name, ca_key, server_key.public_key(),
        san=[x509.IPAddress(ipaddress.ip_address("127.0.0.1"))],
    )

    client_key = ec.generate_private_key(ec.SECP256R1())
    client_cert = build("foreman.example.com", ca_name, ca_key, client_key.public_key())

    return TlsMaterial(
        ca_file=_write_cert(ca_cert, tmp_path / "ca.pem"),
        server_cert=_write_cert(server_cert, tmp_path / "server.pem"),
        server_key=_write_key(server_key, tmp_path / "server.key"),
        client_cert=_write_cert(client_cert, tmp_path / "client.pem"),
        client_key=_write_key(client_key, tmp_path / "client.key"),
    )


def proxy_server_context(material: TlsMaterial) -> ssl.SSLContext:
    """Server side of the proxy connection: requires a client certificate."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(material.server_cert, material.server_key)
    ctx.load_verify_locations(cafile=material.ca_file)
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def client_settings(material: TlsMaterial) -> Settings:
    return Settings(
        ssl_ca_file=material.ca_file,
        ssl_certificate=material.client_cert,
        ssl_private_key=material.client_key,
    )


@dataclass
class TlsPair:
    client: TlsConnection
    server: ssl.SSLSocket


@pytest.fixture
def tls_pair(tls_material) -> TlsPair:
    """Both ends of a completed mutual-TLS handshake over a socketpair.

    The server end raises on a TCP close without close_notify.
    """
    client_sock, server_sock = socket.socketpair()
    server_ctx = proxy_server_context(tls_material)
    accepted = {}

    def accept():
        accepted["sock"] = server_ctx.wrap_socket(server_sock, server_side=True, suppress_ragged_eofs=False)

    thread = threading.Thread(target=accept, daemon=True)
    thread.start()
    client = TlsConnection(
        client_sock,
        create_proxy_ssl_context(client_settings(tls_material)),
        server_hostname="127.0.0.1",
    )
    try:
        client.do_handshake()
    finally:
        thread.join(5)
    pair = TlsPair(client=client, server=accepted["sock"])
    yield pair
    pair.client.close()
    pair.server.close()
