"""
Relay Loop

Copies bytes both ways between the local control transport (stdin/stdout)
and the upgraded proxy connection until both sides are done.

Single-threaded and readiness-driven: every iteration registers interest in
the descriptors that can make progress, blocks in the selector, then performs
one non-blocking read or write per ready descriptor. Each direction has its
own buffer:

    inbound:  local  -> remote
    outbound: remote -> local
"""

import enum
import logging
import os
import selectors
import socket
import ssl
from dataclasses import dataclass
from typing import Callable, Union

from .config import get_int_env
from .tls import TlsConnection

logger = logging.getLogger(__name__)

# Read size per ready descriptor
CHUNK_SIZE = 4096
# Largest single write; retries after a TLS want-read/want-write must resend
# the same bytes, which a fixed cap on a FIFO prefix guarantees
MAX_WRITE_SIZE = 16384
# Stop reading a source while its buffer holds at least this many bytes;
# never below one read
RELAY_HIGH_WATER = get_int_env("FOREMAN_COCKPIT_RELAY_HIGH_WATER", 1024 * 1024)


def clamp_high_water(value: int) -> int:
    return max(value, CHUNK_SIZE)


class IOStatus(enum.Enum):
    COMPLETE = "complete"
    WOULD_BLOCK = "would-block"
    # TLS renegotiation: a read needs the socket writable or vice versa
    NEEDS_READABLE = "needs-readable"
    NEEDS_WRITABLE = "needs-writable"


@dataclass(frozen=True)
class IOResult:
    """Outcome of one non-blocking operation."""
    status: IOStatus
    data: bytes = b""
    count: int = 0
    eof: bool = False

    @classmethod
    def read(cls, data: bytes) -> "IOResult":
        return cls(IOStatus.COMPLETE, data=data, count=len(data), eof=not data)

    @classmethod
    def written(cls, count: int) -> "IOResult":
        return cls(IOStatus.COMPLETE, count=count)


WOULD_BLOCK = IOResult(IOStatus.WOULD_BLOCK)
NEEDS_READABLE = IOResult(IOStatus.NEEDS_READABLE)
NEEDS_WRITABLE = IOResult(IOStatus.NEEDS_WRITABLE)


class RelayBuffer:
    """FIFO byte queue: append at the tail, consume from the head."""

    def __init__(self, initial: bytes = b""):
        self._data = bytearray(initial)

    def __len__(self) -> int:
        return len(self._data)

    def append(self, data: bytes) -> None:
        self._data.extend(data)

    def peek(self, size: int) -> bytes:
        return bytes(self._data[:size])

    def consume(self, size: int) -> None:
        del self._data[:size]


class Endpoint:
    """One side of the relay: a duplex byte stream on one or two descriptors."""

    def read_fileno(self) -> int:
        raise NotImplementedError

    def write_fileno(self) -> int:
        raise NotImplementedError

    def set_nonblocking(self) -> None:
        raise NotImplementedError

    def read(self, size: int) -> IOResult:
        raise NotImplementedError

    def write(self, data: bytes) -> IOResult:
        raise NotImplementedError

    def pending(self) -> int:
        """Bytes already received but invisible to the selector."""
        return 0

    def has_unsent(self) -> bool:
        """Whether transport-level output (not relayed bytes) waits to be sent."""
        return False

    def flush(self) -> IOResult:
        return IOResult.written(0)

    def shutdown_write(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class PipeEndpoint(Endpoint):
    """The local transport: separate read and write descriptors."""

    def __init__(self, in_fd: int, out_fd: int):
        self.in_fd = in_fd
        self.out_fd = out_fd
        self._out_open = True
        self._in_open = True

    def read_fileno(self) -> int:
        return self.in_fd

    def write_fileno(self) -> int:
        return self.out_fd

    def set_nonblocking(self) -> None:
        os.set_blocking(self.in_fd, False)
        os.set_blocking(self.out_fd, False)

    def read(self, size: int) -> IOResult:
        try:
            return IOResult.read(os.read(self.in_fd, size))
        except BlockingIOError:
            return WOULD_BLOCK

    def write(self, data: bytes) -> IOResult:
        try:
            return IOResult.written(os.write(self.out_fd, data))
        except BlockingIOError:
            return WOULD_BLOCK

    def shutdown_write(self) -> None:
        if self._out_open and self.out_fd != self.in_fd:
            self._out_open = False
            os.close(self.out_fd)

    def close(self) -> None:
        if self._in_open:
            self._in_open = False
            os.close(self.in_fd)
        if self._out_open:
            self._out_open = False
            if self.out_fd != self.in_fd:
                os.close(self.out_fd)


class SocketEndpoint(Endpoint):
    """The upgraded proxy connection over plain TCP.

    ``TlsEndpoint`` reuses the read/write mapping for the TLS session,
    whose wrapper raises the same exceptions a socket does.
    """

    def __init__(self, sock: Union[socket.socket, TlsConnection]):
        self.sock = sock

    def read_fileno(self) -> int:
        return self.sock.fileno()

    def write_fileno(self) -> int:
        return self.sock.fileno()

    def set_nonblocking(self) -> None:
        self.sock.setblocking(False)

    def read(self, size: int) -> IOResult:
        try:
            return IOResult.read(self.sock.recv(size))
        except ssl.SSLWantReadError:
            return WOULD_BLOCK
        except ssl.SSLWantWriteError:
            return NEEDS_WRITABLE
        except BlockingIOError:
            return WOULD_BLOCK
        except ConnectionResetError:
            logger.debug("Proxy connection reset")
            return IOResult.read(b"")

    def write(self, data: bytes) -> IOResult:
        try:
            return IOResult.written(self.sock.send(data))
        except ssl.SSLWantWriteError:
            return WOULD_BLOCK
        except ssl.SSLWantReadError:
            return NEEDS_READABLE
        except BlockingIOError:
            return WOULD_BLOCK

    def shutdown_write(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"Half-close of proxy connection failed: {e}")

    def close(self) -> None:
        self.sock.close()


class TlsEndpoint(SocketEndpoint):
    """The upgraded proxy connection over TLS.

    Half-close sends close_notify instead of a TCP FIN, so the peer can
    keep sending; the close_notify itself may have to wait for the socket
    to become writable.
    """

    sock: TlsConnection

    def pending(self) -> int:
        return self.sock.pending()

    def has_unsent(self) -> bool:
        return self.sock.has_unsent()

    def flush(self) -> IOResult:
        try:
            self.sock.flush()
        except BlockingIOError:
            return WOULD_BLOCK
        return IOResult.written(0)

    def shutdown_write(self) -> None:
        self.sock.shutdown_write()


def endpoint_for(sock: Union[socket.socket, TlsConnection]) -> SocketEndpoint:
    """Wrap an upgraded proxy connection in the matching endpoint."""
    if isinstance(sock, TlsConnection):
        return TlsEndpoint(sock)
    return SocketEndpoint(sock)


def _wait_for(fd: int, event: int) -> None:
    """Block until a single descriptor has the given readiness."""
    with selectors.DefaultSelector() as selector:
        selector.register(fd, event)
        selector.select()


class Relay:
    """Bidirectional byte pump between the local and remote endpoints."""

    def __init__(
        self,
        local: Endpoint,
        remote: Endpoint,
        inbound: bytes = b"",
        outbound: bytes = b"",
        high_water: int = RELAY_HIGH_WATER,
    ):
        self.local = local
        self.remote = remote
        self.inbound = RelayBuffer(inbound)
        self.outbound = RelayBuffer(outbound)
        self.high_water = clamp_high_water(high_water)
        self.local_eof = False
        self.remote_eof = False
        self.remote_write_closed = False
        # Bytes read from each side (seeded bytes count as already read)
        self.bytes_in = len(inbound)
        self.bytes_out = len(outbound)
        self._registered: dict[int, int] = {}
        self._done = False

    def run(self) -> None:
        """Relay until both sides are done, then close both endpoints."""
        try:
            self.local.set_nonblocking()
            self.remote.set_nonblocking()
            with selectors.DefaultSelector() as selector:
                while not self._done and self._step(selector):
                    pass
        finally:
            self.local.close()
            self.remote.close()
        logger.info(
            f"Relay finished: {self.bytes_in} bytes to proxy, "
            f"{self.bytes_out} bytes from proxy"
        )

    def _interest(self) -> dict[int, int]:
        wanted: dict[int, int] = {}

        def want(fd: int, event: int) -> None:
            wanted[fd] = wanted.get(fd, 0) | event

        if not self.local_eof and len(self.inbound) < self.high_water:
            want(self.local.read_fileno(), selectors.EVENT_READ)
        if self._can_read_remote():
            want(self.remote.read_fileno(), selectors.EVENT_READ)
        if len(self.inbound) or self.remote.has_unsent():
            want(self.remote.write_fileno(), selectors.EVENT_WRITE)
        if len(self.outbound):
            want(self.local.write_fileno(), selectors.EVENT_WRITE)
        return wanted

    def _sync_registrations(self, selector: selectors.BaseSelector, wanted: dict[int, int]) -> None:
        for fd in list(self._registered):
            if fd not in wanted:
                selector.unregister(fd)
                del self._registered[fd]
        for fd, events in wanted.items():
            current = self._registered.get(fd)
            if current is None:
                selector.register(fd, events)
            elif current != events:
                selector.modify(fd, events)
            self._registered[fd] = events

    def _can_read_remote(self) -> bool:
        return not self.remote_eof and len(self.outbound) < self.high_water

    def _step(self, selector: selectors.BaseSelector) -> bool:
        """One loop iteration. Returns False when the relay is finished."""
        if self._can_read_remote() and self.remote.pending():
            # Left behind while the outbound buffer was over the high-water mark
            self._read_remote()
            return not self._done

        wanted = self._interest()
        if not wanted:
            return False
        self._sync_registrations(selector, wanted)

        readable: set[int] = set()
        writable: set[int] = set()
        for key, events in selector.select():
            if events & selectors.EVENT_READ:
                readable.add(key.fd)
            if events & selectors.EVENT_WRITE:
                writable.add(key.fd)

        local_in = self.local.read_fileno()
        remote_in = self.remote.read_fileno()
        if local_in in readable and wanted.get(local_in, 0) & selectors.EVENT_READ:
            self._read_local()
        if remote_in in readable and wanted.get(remote_in, 0) & selectors.EVENT_READ:
            self._read_remote()
            if self._done:
                return False
        if self.remote.write_fileno() in writable:
            if len(self.inbound):
                self._write_remote()
            elif self.remote.has_unsent():
                self.remote.flush()
        if self.local.write_fileno() in writable and len(self.outbound):
            self._write_local()
        return not self._done

    def _retry(self, endpoint: Endpoint, op: Callable, arg) -> IOResult:
        """Run ``op(arg)``, waiting out any opposite-readiness requests."""
        while True:
            result = op(arg)
            if result.status is IOStatus.NEEDS_READABLE:
                _wait_for(endpoint.read_fileno(), selectors.EVENT_READ)
            elif result.status is IOStatus.NEEDS_WRITABLE:
                _wait_for(endpoint.write_fileno(), selectors.EVENT_WRITE)
            else:
                return result

    def _read_local(self) -> None:
        result = self._retry(self.local, self.local.read, CHUNK_SIZE)
        if result.status is IOStatus.WOULD_BLOCK:
            return
        if result.eof:
            logger.debug("Local side reached end of stream")
            self.local_eof = True
            if not len(self.inbound):
                self._close_remote_write()
            return
        self.inbound.append(result.data)
        self.bytes_in += result.count

    def _read_remote(self) -> None:
        while True:
            result = self._retry(self.remote, self.remote.read, CHUNK_SIZE)
            if result.status is IOStatus.WOULD_BLOCK:
                return
            if result.eof:
                logger.debug("Proxy side reached end of stream")
                self.remote_eof = True
                if not len(self.outbound):
                    self._done = True
                return
            self.outbound.append(result.data)
            self.bytes_out += result.count
            # Decrypted TLS data left in the SSL object never wakes the selector
            if not self.remote.pending():
                return

    def _write_remote(self) -> None:
        result = self._retry(self.remote, self.remote.write, self.inbound.peek(MAX_WRITE_SIZE))
        if result.status is not IOStatus.COMPLETE:
            return
        self.inbound.consume(result.count)
        if self.local_eof and not len(self.inbound):
            self._close_remote_write()

    def _write_local(self) -> None:
        result = self._retry(self.local, self.local.write, self.outbound.peek(MAX_WRITE_SIZE))
        if result.status is not IOStatus.COMPLETE:
            return
        self.outbound.consume(result.count)
        if self.remote_eof and not len(self.outbound):
            self._done = True

    def _close_remote_write(self) -> None:
        if self.remote_write_closed:
            return
        self.remote_write_closed = True
        logger.debug("Half-closing proxy connection")
        self.remote.shutdown_write()


def relay(local: Endpoint, remote: Endpoint, inbound: bytes = b"", outbound: bytes = b"") -> Relay:
    """Run a relay session to completion and return it for its counters."""
    session = Relay(local, remote, inbound=inbound, outbound=outbound)
    session.run()
    return session
