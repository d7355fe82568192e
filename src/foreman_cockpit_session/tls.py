"""
TLS session over a plain socket, driven through memory BIOs.

``ssl.SSLSocket`` cannot half-close: its ``unwrap()`` calls ``SSL_shutdown``
twice, and the second call consumes (and rejects) any application data that
is already in the socket. Driving ``ssl.SSLObject`` through memory BIOs
means this module decides which records OpenSSL gets to see, so a
close_notify can be sent while the peer's remaining data is still read.

Records are handed to OpenSSL one complete record at a time. Ciphertext that
has not been fed yet stays in ``_cipher``, where ``pending()`` can see it.

The object mimics the parts of the socket API the upgrade handshake and the
relay use: ``recv``, ``send``, ``sendall``, ``fileno``, ``setblocking`` and
``close``. In non-blocking mode ``recv``/``send`` raise ``BlockingIOError``
like a plain socket.
"""

import logging
import socket
import ssl

logger = logging.getLogger(__name__)

RECV_SIZE = 65536
# Plaintext bytes per SSL_write call in sendall()
MAX_PLAINTEXT = 16384
# type(1) + version(2) + length(2)
RECORD_HEADER_SIZE = 5


class TlsConnection:
    """Client side of a TLS session on a connected socket."""

    def __init__(self, sock: socket.socket, context: ssl.SSLContext, server_hostname: str):
        self.sock = sock
        self.incoming = ssl.MemoryBIO()
        self.outgoing = ssl.MemoryBIO()
        self.sslobj = context.wrap_bio(self.incoming, self.outgoing, server_hostname=server_hostname)
        self.write_closed = False
        self._cipher = bytearray()    # received, not yet fed to OpenSSL
        self._unsent = bytearray()    # produced by OpenSSL, not yet sent
        self._stash = bytearray()     # decrypted ahead of the half-close
        self._stash_eof = False
        self._eof_seen = False

    # --- socket-like surface ---

    def fileno(self) -> int:
        return self.sock.fileno()

    def setblocking(self, flag: bool) -> None:
        self.sock.setblocking(flag)

    def close(self) -> None:
        self.sock.close()

    def getpeercert(self):
        return self.sslobj.getpeercert()

    def do_handshake(self) -> None:
        """Complete the handshake; the socket must be in blocking mode."""
        while True:
            try:
                self.sslobj.do_handshake()
            except ssl.SSLWantReadError:
                self._flush()
                self._feed()
                continue
            self._flush()
            return

    def recv(self, size: int) -> bytes:
        """Read up to ``size`` bytes of plaintext; ``b""`` at end of stream."""
        if self._stash:
            data = bytes(self._stash[:size])
            del self._stash[:size]
            return data
        if self._stash_eof:
            return b""

        while True:
            try:
                return self.sslobj.read(size)
            except ssl.SSLWantReadError:
                # Post-handshake messages may need an answer
                self._flush_some()
                self._feed()
            except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
                # Ragged EOF is end of stream, as with SSLSocket's suppress_ragged_eofs
                return b""
            except ssl.SSLError as e:
                if not self.write_closed:
                    raise
                # Once half-closed, any failure from the peer ends the stream
                logger.debug(f"TLS error after half-close treated as end of stream: {e}")
                return b""

    def send(self, data: bytes) -> int:
        """Encrypt ``data`` and send what the socket takes.

        Raises BlockingIOError, accepting nothing, while ciphertext from an
        earlier call is still queued.
        """
        if self.write_closed:
            raise BrokenPipeError("TLS write side already closed")
        self._flush()
        try:
            count = self.sslobj.write(data)
        except ssl.SSLWantReadError:
            # Renegotiation: make progress on the read side before the retry
            try:
                self._feed()
            except BlockingIOError:
                pass
            raise
        self._flush_some()
        return count

    def sendall(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            sent = self.send(view[:MAX_PLAINTEXT])
            view = view[sent:]
        self._flush()

    def pending(self) -> int:
        """Plaintext (or end of stream) available without reading the socket."""
        count = len(self._stash) + self.sslobj.pending()
        if self._stash_eof or self._has_record():
            count += 1
        return count

    def has_unsent(self) -> bool:
        return bool(self._unsent) or self.outgoing.pending > 0

    def flush(self) -> None:
        """Send queued ciphertext; raises BlockingIOError if the socket is full."""
        self._flush()

    def shutdown_write(self) -> None:
        """Send close_notify and keep reading. Only the first call has an effect."""
        if self.write_closed:
            return
        self.write_closed = True
        self._drain()
        try:
            self.sslobj.unwrap()
        except ssl.SSLWantReadError:
            # close_notify is queued; the peer's has not arrived yet
            pass
        except ssl.SSLError as e:
            logger.debug(f"TLS shutdown failed: {e}")
        self._flush_some()

    # --- internals ---

    def _record_size(self) -> int:
        return RECORD_HEADER_SIZE + int.from_bytes(self._cipher[3:5], "big")

    def _has_record(self) -> bool:
        return (
            len(self._cipher) >= RECORD_HEADER_SIZE
            and len(self._cipher) >= self._record_size()
        )

    def _feed(self) -> None:
        """Give OpenSSL the next complete record, reading the socket if needed."""
        while not self._has_record():
            data = self.sock.recv(RECV_SIZE)
            if not data:
                if not self._eof_seen:
                    self._eof_seen = True
                    self.incoming.write_eof()
                return
            self._cipher += data
        size = self._record_size()
        self.incoming.write(bytes(self._cipher[:size]))
        del self._cipher[:size]

    def _drain(self) -> None:
        """Decrypt every complete record already received into the stash."""
        while True:
            try:
                data = self.sslobj.read(RECV_SIZE)
            except ssl.SSLWantReadError:
                if not self._has_record():
                    return
                self._feed()
                continue
            except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
                self._stash_eof = True
                return
            except ssl.SSLError as e:
                logger.debug(f"TLS error while closing the write side: {e}")
                self._stash_eof = True
                return
            if not data:
                self._stash_eof = True
                return
            self._stash += data

    def _flush(self) -> None:
        self._unsent += self.outgoing.read()
        while self._unsent:
            sent = self.sock.send(self._unsent)
            del self._unsent[:sent]

    def _flush_some(self) -> None:
        try:
            self._flush()
        except BlockingIOError:
            pass
