"""
Contract Tests: Tracing Hook

A tracer's new_span(name, tag) returns a context manager span; the client
opens exactly one span per command or pipeline flush and reports failures
through span.set_error() before the exception propagates.
"""

import pytest

from resp_wire.client import RedisClient
from resp_wire.config import HostConfig
from resp_wire.exceptions import OperationFailed, ServerError
from resp_wire.tracing import NullSpan, NullTracer, span_name


class RecordingSpan:
    def __init__(self, name, tag):
        self.name = name
        self.tags = [tag]
        self.errors = []
        self.exited = False

    def set_tag(self, tag):
        self.tags.append(tag)

    def set_error(self, error, tag=None):
        self.errors.append(error)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exited = True


class RecordingTracer:
    def __init__(self):
        self.spans = []

    def new_span(self, name, tag=None):
        span = RecordingSpan(name, tag)
        self.spans.append(span)
        return span


def make_client(socket_factory, tracer, **settings):
    return RedisClient(HostConfig(name="sessions", tracer=tracer, **settings), "localhost",
                       socket_factory=socket_factory)


@pytest.mark.contract
class TestSpanNames:

    @pytest.mark.parametrize("command,args,expected", [
        ("GET", ("k",), "redis:c:GET"),
        ("CLUSTER", ("NODES",), "redis:c:CLUSTER-NODES"),
        ("XINFO", ("STREAM", "s"), "redis:c:XINFO-STREAM"),
        ("XGROUP", ("CREATE", "s", "g"), "redis:c:XGROUP-CREATE"),
        ("XREADGROUP", ("GROUP", "g"), "redis:c:XREADGROUP-GROUP"),
        ("CLUSTER", (), "redis:c:CLUSTER"),
    ])
    def test_span_name(self, command, args, expected):
        assert span_name("c", command, args) == expected

    def test_null_tracer_is_inert(self):
        span = NullTracer().new_span("x", 1)
        assert isinstance(span, NullSpan)
        with span as entered:
            entered.set_tag("t")
            entered.set_error(RuntimeError("ignored"))


@pytest.mark.contract
class TestTracerContract:

    def test_one_span_per_command_including_handshake(self, socket_factory):
        socket_factory.add(b'+OK\r\n+OK\r\n+PONG\r\n')
        tracer = RecordingTracer()
        client = make_client(socket_factory, tracer, password="pw", db=1)

        client.ping()

        names = [span.name for span in tracer.spans]
        assert names == ["redis:sessions:PING", "redis:sessions:AUTH", "redis:sessions:SELECT"]
        assert all(span.exited for span in tracer.spans)

    def test_error_reported_before_propagation(self, socket_factory):
        socket_factory.add(b'-ERR boom\r\n')
        tracer = RecordingTracer()
        client = make_client(socket_factory, tracer)

        with pytest.raises(ServerError):
            client.execute("GET", "k")
        assert len(tracer.spans[0].errors) == 1

    def test_empty_command_opens_no_span(self, socket_factory):
        socket_factory.add(b'+PONG\r\n:1\r\n')
        tracer = RecordingTracer()
        client = make_client(socket_factory, tracer)

        client.ping()
        client.execute("")
        assert len(tracer.spans) == 1

    def test_failed_set_all_span(self, socket_factory):
        socket_factory.add(b'+NO\r\n')
        tracer = RecordingTracer()
        client = make_client(socket_factory, tracer)

        with pytest.raises(OperationFailed):
            client.set_all({"a": 1})
        assert [span.name for span in tracer.spans] == ["redis:sessions:MSET", "redis:sessions:ErrorSetAll"]
        assert tracer.spans[1].tags == [{"a": 1}]
