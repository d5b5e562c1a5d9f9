"""
Connection Management

Owns the socket (or asyncio stream pair) behind one client: timeout-bounded
connect, optional TLS with certificate pinning, liveness checks, and moving
bytes between the wire and a RespParser.

Any failure while connecting, writing or reading closes the connection; the
client notices on its next call and builds a fresh one. Nothing is retried
here.
"""

import asyncio
import errno
import hashlib
import os
import selectors
import socket
import ssl
import time
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from .config import Endpoint, HostConfig
from .exceptions import (
    CertificatePinError,
    ConnectTimeout,
    ConnectionLost,
    ProtocolViolation,
    ReadTimeout,
    RespConnectionError,
    ServerError,
)
from .protocol import NEED_MORE, RespParser, WireValue

logger = structlog.get_logger()

READ_CHUNK = 64 * 1024

# Quiet period that ends an asyncio drain of stale reply bytes
DRAIN_QUIET = 0.01

_CONNECT_PENDING = {0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN,
                    getattr(errno, 'WSAEWOULDBLOCK', errno.EWOULDBLOCK)}

SocketFactory = Callable[[Endpoint, Optional[float]], socket.socket]
StreamFactory = Callable[[Endpoint, Optional[ssl.SSLContext]],
                         Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

def build_tls_context() -> ssl.SSLContext:
    """
    Client context that accepts any server certificate.

    Trust is decided after the handshake by verify_pinned(): with no pinned
    certificate every server is accepted, otherwise the chain must contain it.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def presented_chain(ssl_object) -> List[bytes]:
    """DER certificates the server presented, leaf first"""
    get_chain = getattr(ssl_object, 'get_unverified_chain', None)
    if get_chain is not None:
        chain = get_chain()
        if chain:
            return list(chain)
    # Interpreters before 3.13 only expose the leaf
    leaf = ssl_object.getpeercert(binary_form=True)
    return [leaf] if leaf else []


def verify_pinned(ssl_object, fingerprint: Optional[bytes], endpoint: Endpoint) -> None:
    """
    Accept the handshake only if the pinned certificate is in the chain.

    Every element of the presented chain is compared, not just the leaf, so
    pinning an intermediate or root certificate works.

    Raises:
        CertificatePinError: Pinned fingerprint not found
    """
    if fingerprint is None:
        return

    chain = presented_chain(ssl_object)
    if any(hashlib.sha256(der).digest() == fingerprint for der in chain):
        return

    logger.error("Pinned certificate not presented by server",
                 endpoint=str(endpoint),
                 chain_length=len(chain))
    raise CertificatePinError(f"Server [{endpoint}] did not present the pinned certificate")


# ---------------------------------------------------------------------------
# Blocking transport
# ---------------------------------------------------------------------------

def open_socket(endpoint: Endpoint, timeout: Optional[float]) -> socket.socket:
    """
    Connect a TCP socket with an explicit bounded wait.

    The connect is started non-blocking and the socket is polled for
    writability until the deadline, independent of the platform's own connect
    timeout. The returned socket uses `timeout` for sends and receives.

    Raises:
        ConnectTimeout: No connection within `timeout` seconds
        RespConnectionError: Name resolution failed or every address refused
    """
    deadline = time.monotonic() + timeout if timeout else None
    try:
        addresses = socket.getaddrinfo(endpoint.host, endpoint.port, type=socket.SOCK_STREAM)
    except OSError as e:
        raise RespConnectionError(f"Cannot resolve [{endpoint}]: {e}") from e

    last_error: Optional[OSError] = None
    for family, sock_type, proto, _, address in addresses:
        sock = socket.socket(family, sock_type, proto)
        try:
            sock.setblocking(False)
            err = sock.connect_ex(address)
            if err not in _CONNECT_PENDING:
                raise OSError(err, os.strerror(err))

            remaining = None if deadline is None else deadline - time.monotonic()
            with selectors.DefaultSelector() as selector:
                selector.register(sock, selectors.EVENT_WRITE)
                if (remaining is not None and remaining <= 0) or not selector.select(remaining):
                    raise ConnectTimeout(f"Connecting to [{endpoint}] timed out after {timeout}s")

            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if err:
                raise OSError(err, os.strerror(err))

            sock.settimeout(timeout)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            return sock
        except ConnectTimeout:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            last_error = e

    raise RespConnectionError(f"Cannot connect to [{endpoint}]: {last_error}") from last_error


class Connection:
    """
    Blocking connection to one endpoint.

    Not thread-safe: exactly one request may be in flight, which the owning
    client guarantees by being single-owner itself.
    """

    def __init__(self, endpoint: Endpoint, config: HostConfig, timeout: Optional[float],
                 socket_factory: Optional[SocketFactory] = None):
        self.endpoint = endpoint
        self.config = config
        self.timeout = timeout or None
        self._socket_factory = socket_factory or open_socket
        self._sock = None
        self._parser = RespParser()
        self._closed = False

    @property
    def tls(self) -> bool:
        return self.config.tls if self.endpoint.tls is None else self.endpoint.tls

    def open(self) -> None:
        """Connect (and TLS handshake); on failure nothing is left open"""
        try:
            sock = self._socket_factory(self.endpoint, self.timeout)
        except RespConnectionError:
            raise
        except OSError as e:
            raise RespConnectionError(f"Cannot connect to [{self.endpoint}]: {e}") from e

        try:
            if self.tls:
                sock = build_tls_context().wrap_socket(sock, server_hostname=self.endpoint.tls_name)
                verify_pinned(sock, self.config.pinned_fingerprint(), self.endpoint)
                logger.debug("TLS established", endpoint=str(self.endpoint), cipher=sock.cipher())
        except RespConnectionError:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            raise RespConnectionError(f"TLS handshake with [{self.endpoint}] failed: {e}") from e

        self._sock = sock
        self._closed = False
        logger.debug("Connected", endpoint=str(self.endpoint), tls=self.tls, timeout=self.timeout)

    def is_usable(self) -> bool:
        """Socket still connected and not closed by us"""
        sock = self._sock
        if sock is None or self._closed:
            return False
        try:
            if sock.fileno() < 0:
                return False
            sock.getpeername()
        except OSError:
            return False
        return True

    def send(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as e:
            self.close()
            raise ConnectionLost(f"Write to [{self.endpoint}] failed: {e}") from e

    def read_replies(self, count: int) -> List[WireValue]:
        """
        Read exactly `count` replies in arrival order.

        A ServerError abandons the remaining replies; when replies are still
        owed by the stream the connection is closed, since it can no longer
        be matched to requests.
        """
        replies: List[WireValue] = []
        try:
            while len(replies) < count:
                reply = self._parser.gets()
                if reply is NEED_MORE:
                    self._fill()
                    continue
                replies.append(reply)
        except ServerError as e:
            if e.nested or len(replies) < count - 1:
                self.close()
            raise
        except ProtocolViolation:
            self.close()
            raise
        return replies

    def _fill(self) -> None:
        try:
            data = self._sock.recv(READ_CHUNK)
        except socket.timeout as e:
            self.close()
            raise ReadTimeout(f"No reply from [{self.endpoint}] within {self.timeout}s") from e
        except OSError as e:
            self.close()
            raise ConnectionLost(f"Read from [{self.endpoint}] failed: {e}") from e
        if not data:
            self.close()
            raise ConnectionLost(f"Connection to [{self.endpoint}] closed by server")
        self._parser.feed(data)

    def discard_pending(self) -> int:
        """Drop bytes already received or waiting in the socket; returns how many"""
        dropped = len(self._parser.pending())
        self._parser.clear()

        self._sock.setblocking(False)
        try:
            while True:
                data = self._sock.recv(READ_CHUNK)
                if not data:
                    self._closed = True
                    break
                dropped += len(data)
        except (BlockingIOError, ssl.SSLWantReadError):
            pass
        except OSError:
            self._closed = True
        finally:
            if self._sock is not None and not self._closed:
                self._sock.settimeout(self.timeout)
        return dropped

    def close(self) -> None:
        self._closed = True
        self._parser.clear()
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug("Socket close failed", endpoint=str(self.endpoint), error=str(e))


# ---------------------------------------------------------------------------
# asyncio transport
# ---------------------------------------------------------------------------

async def open_streams(endpoint: Endpoint, ssl_context: Optional[ssl.SSLContext]
                       ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(
        endpoint.host, endpoint.port,
        ssl=ssl_context,
        server_hostname=endpoint.tls_name if ssl_context else None,
    )


class AsyncConnection:
    """
    asyncio counterpart of Connection with the same observable behavior.

    Suspends on connect, on write drain and on reads. A read deadline only
    bounds the wait for the first bytes of a reply batch; once the server has
    started answering the rest is awaited without a deadline.
    """

    def __init__(self, endpoint: Endpoint, config: HostConfig, timeout: Optional[float],
                 stream_factory: Optional[StreamFactory] = None):
        self.endpoint = endpoint
        self.config = config
        self.timeout = timeout or None
        self._stream_factory = stream_factory or open_streams
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._parser = RespParser()
        self._closed = False

    @property
    def tls(self) -> bool:
        return self.config.tls if self.endpoint.tls is None else self.endpoint.tls

    async def open(self) -> None:
        ssl_context = build_tls_context() if self.tls else None
        try:
            reader, writer = await asyncio.wait_for(
                self._stream_factory(self.endpoint, ssl_context), self.timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(f"Connecting to [{self.endpoint}] timed out after {self.timeout}s") from e
        except ssl.SSLError as e:
            raise RespConnectionError(f"TLS handshake with [{self.endpoint}] failed: {e}") from e
        except OSError as e:
            raise RespConnectionError(f"Cannot connect to [{self.endpoint}]: {e}") from e

        if ssl_context is not None:
            try:
                verify_pinned(writer.get_extra_info('ssl_object'),
                              self.config.pinned_fingerprint(), self.endpoint)
            except Exception:
                writer.close()
                raise

        self.reader, self.writer = reader, writer
        self._closed = False
        logger.debug("Connected", endpoint=str(self.endpoint), tls=self.tls, timeout=self.timeout)

    def is_usable(self) -> bool:
        if self._closed or self.reader is None or self.writer is None:
            return False
        return not self.writer.is_closing() and not self.reader.at_eof()

    async def send(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as e:
            self.close()
            raise ConnectionLost(f"Write to [{self.endpoint}] failed: {e}") from e
        except asyncio.CancelledError:
            # A partial write leaves the stream out of step with the replies
            self.close()
            raise

    async def read_replies(self, count: int, timeout: Optional[float] = None) -> List[WireValue]:
        """Read exactly `count` replies; `timeout` bounds the wait for the first bytes"""
        replies: List[WireValue] = []
        deadline = timeout
        try:
            while len(replies) < count:
                reply = self._parser.gets()
                if reply is NEED_MORE:
                    await self._fill(deadline)
                    deadline = None
                    continue
                deadline = None
                replies.append(reply)
        except ServerError as e:
            if e.nested or len(replies) < count - 1:
                self.close()
            raise
        except ProtocolViolation:
            self.close()
            raise
        except asyncio.CancelledError:
            # Rest of the reply is still on the wire; it would answer the next command
            self.close()
            raise
        return replies

    async def discard_pending(self) -> int:
        """Drop bytes already received or arriving within DRAIN_QUIET seconds; returns how many"""
        dropped = len(self._parser.pending())
        self._parser.clear()

        while True:
            try:
                data = await asyncio.wait_for(self.reader.read(READ_CHUNK), DRAIN_QUIET)
            except asyncio.TimeoutError:
                break
            except OSError:
                self.close()
                break
            if not data:
                self.close()
                break
            dropped += len(data)
        return dropped

    async def _fill(self, timeout: Optional[float]) -> None:
        try:
            if timeout:
                data = await asyncio.wait_for(self.reader.read(READ_CHUNK), timeout)
            else:
                data = await self.reader.read(READ_CHUNK)
        except asyncio.TimeoutError as e:
            self.close()
            raise ReadTimeout(f"No reply from [{self.endpoint}] within {timeout}s") from e
        except OSError as e:
            self.close()
            raise ConnectionLost(f"Read from [{self.endpoint}] failed: {e}") from e
        if not data:
            self.close()
            raise ConnectionLost(f"Connection to [{self.endpoint}] closed by server")
        self._parser.feed(data)

    def close(self) -> None:
        self._closed = True
        self._parser.clear()
        writer, self.writer = self.writer, None
        self.reader = None
        if writer is None:
            return
        try:
            writer.close()
        except (OSError, RuntimeError) as e:
            logger.debug("Stream close failed", endpoint=str(self.endpoint), error=str(e))

    async def aclose(self) -> None:
        """close() and wait for the transport to finish closing"""
        writer = self.writer
        self.close()
        if writer is None:
            return
        try:
            await writer.wait_closed()
        except (OSError, RuntimeError) as e:
            logger.debug("Stream close failed", endpoint=str(self.endpoint), error=str(e))
