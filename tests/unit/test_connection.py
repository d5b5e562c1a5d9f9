"""
Unit Tests: Connection Management

TLS pinning checks, bounded TCP connect, and the blocking read loop.
"""

import hashlib
import socket
import ssl
from unittest.mock import MagicMock

import pytest

from resp_wire.config import Endpoint, HostConfig
from resp_wire.connection import (
    Connection,
    build_tls_context,
    open_socket,
    presented_chain,
    verify_pinned,
)
from resp_wire.exceptions import CertificatePinError, ConnectionLost, RespConnectionError
from resp_wire.protocol import BulkString, SimpleString

LEAF = b'leaf-certificate-der'
INTERMEDIATE = b'intermediate-certificate-der'
ENDPOINT = Endpoint("cache.local", 6380)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


@pytest.mark.unit
class TestCertificatePinning:
    """Pinned certificate must appear somewhere in the presented chain"""

    def setup_method(self):
        self.ssl_object = MagicMock()
        self.ssl_object.get_unverified_chain.return_value = [LEAF, INTERMEDIATE]

    def test_context_accepts_any_certificate(self):
        context = build_tls_context()
        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False

    def test_not_pinned_accepts_everything(self):
        verify_pinned(self.ssl_object, None, ENDPOINT)
        self.ssl_object.get_unverified_chain.assert_not_called()

    def test_leaf_pinned(self):
        verify_pinned(self.ssl_object, sha256(LEAF), ENDPOINT)

    def test_intermediate_pinned(self):
        verify_pinned(self.ssl_object, sha256(INTERMEDIATE), ENDPOINT)

    def test_unknown_certificate_rejected(self):
        with pytest.raises(CertificatePinError, match="cache.local:6380"):
            verify_pinned(self.ssl_object, sha256(b'other'), ENDPOINT)

    def test_leaf_only_when_chain_unavailable(self):
        ssl_object = MagicMock(spec=["getpeercert"])
        ssl_object.getpeercert.return_value = LEAF

        assert presented_chain(ssl_object) == [LEAF]
        ssl_object.getpeercert.assert_called_once_with(binary_form=True)
        with pytest.raises(CertificatePinError):
            verify_pinned(ssl_object, sha256(INTERMEDIATE), ENDPOINT)


@pytest.mark.unit
class TestOpenSocket:
    """Bounded connect against a local listener"""

    def test_connects_to_listener(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        try:
            sock = open_socket(Endpoint("127.0.0.1", listener.getsockname()[1]), 2.0)
            try:
                assert sock.gettimeout() == 2.0
                assert sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY)
            finally:
                sock.close()
        finally:
            listener.close()

    def test_refused_port(self):
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()

        with pytest.raises(RespConnectionError):
            open_socket(Endpoint("127.0.0.1", port), 2.0)


@pytest.mark.unit
class TestConnectionReads:
    """Reply reassembly and connection bookkeeping"""

    def make_connection(self, socket_factory, **settings):
        conn = Connection(Endpoint("localhost"), HostConfig(**settings), 1.0, socket_factory)
        conn.open()
        return conn

    def test_reply_split_into_single_bytes(self, socket_factory):
        payload = b'x' * 300
        socket_factory.add(b'$300\r\n' + payload + b'\r\n+OK\r\n', chunk_size=1)
        conn = self.make_connection(socket_factory)

        assert conn.read_replies(2) == [BulkString(payload), SimpleString("OK")]

    def test_timeout_is_passed_to_factory(self, socket_factory):
        socket_factory.add(b'')
        self.make_connection(socket_factory)
        assert socket_factory.connects == [(Endpoint("localhost"), 1.0)]

    def test_tls_flag_follows_endpoint_override(self, socket_factory):
        conn = Connection(Endpoint("localhost", tls=False), HostConfig(tls=True), 1.0, socket_factory)
        assert conn.tls is False
        conn = Connection(Endpoint("localhost"), HostConfig(tls=True), 1.0, socket_factory)
        assert conn.tls is True

    def test_discard_pending_counts_buffered_and_queued_bytes(self, socket_factory):
        socket_factory.add(b'+OK\r\n$10\r\nabc', chunk_size=8)
        conn = self.make_connection(socket_factory)

        assert conn.read_replies(1) == [SimpleString("OK")]
        assert conn.discard_pending() == 8
        assert conn.is_usable()

    def test_eof_closes(self, socket_factory):
        sock = socket_factory.add(b'$3\r\nab', eof=True)
        conn = self.make_connection(socket_factory)

        with pytest.raises(ConnectionLost):
            conn.read_replies(1)
        assert sock.closed
        assert not conn.is_usable()

    def test_close_is_idempotent(self, socket_factory):
        socket_factory.add(b'')
        conn = self.make_connection(socket_factory)
        conn.close()
        conn.close()
        assert not conn.is_usable()
