"""
RESP Client (blocking)

One client owns one connection to one server endpoint: lazy connect,
reconnect after failure, transparent AUTH/SELECT handshake, pipelining and
typed results.

A client is single-owner: there are no locks inside, and issuing
commands on one instance from several threads at once is a caller error.
Use one instance per thread (or a pool of instances) for concurrency.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from .coercion import coerce, try_coerce
from .config import Endpoint, HostConfig
from .connection import Connection, SocketFactory
from .exceptions import AuthenticationFailure, OperationFailed, ServerError
from .protocol import (
    Array,
    BulkString,
    WireValue,
    describe_reply,
    describe_request,
    encode_request,
)
from .session import SessionState
from .tracing import span_name

logger = structlog.get_logger()


@dataclass
class QueuedCommand:
    """A command recorded while pipelining, sent on stop_pipeline()"""
    command: str
    args: Tuple[Any, ...]
    result_type: Any = None


class BaseClient:
    """State and helpers shared by the blocking and asyncio clients"""

    def __init__(self, config: HostConfig, endpoint: Union[Endpoint, str], timeout: float = 0,
                 name: Optional[str] = None):
        self.config = config
        self.endpoint = Endpoint.parse(endpoint) if isinstance(endpoint, str) else endpoint
        self.name = name or config.name
        self.timeout = timeout
        self.session = SessionState()
        self._pipeline: Optional[List[QueuedCommand]] = None

    @property
    def effective_timeout(self) -> float:
        """Own timeout, or the host default when unset"""
        return self.timeout or self.config.timeout

    @property
    def logged_in(self) -> bool:
        return self.session.logged_in

    @property
    def login_time(self):
        return self.session.login_time

    # Pipeline bookkeeping

    @property
    def pipeline_commands(self) -> int:
        return len(self._pipeline) if self._pipeline is not None else 0

    @property
    def pipelining(self) -> bool:
        return self._pipeline is not None

    def start_pipeline(self) -> None:
        """Queue commands instead of sending them until stop_pipeline()"""
        if self._pipeline is None:
            self._pipeline = []

    def _take_pipeline(self) -> Optional[List[QueuedCommand]]:
        queued, self._pipeline = self._pipeline, None
        return queued

    def _coerce_pipeline(self, queued: Sequence[QueuedCommand], replies: Sequence[WireValue]) -> List[Any]:
        results = []
        for item, reply in zip(queued, replies):
            if item.result_type is None:
                results.append(reply)
                continue
            found, value = try_coerce(reply, item.result_type, self.config.encoder)
            results.append(value if found and value is not None else reply)
        return results

    # Request building

    def _encode_args(self, args: Sequence[Any]) -> List[bytes]:
        encoder = self.config.encoder
        return [encoder.encode(arg) for arg in args]

    def _build_request(self, command: str, args: Sequence[Any]) -> bytes:
        payloads = self._encode_args(args)
        request = encode_request(command, payloads, self.config.max_message_size)
        if self.config.log is not None:
            self.config.log.info(f"=> {describe_request(command, payloads, args)}", client=self.name)
        return request

    def _log_replies(self, replies: Sequence[WireValue]) -> None:
        if self.config.log is not None:
            text = ' '.join(describe_reply(r) for r in replies)
            self.config.log.info(f"<= {text}", client=self.name)

    def _span(self, command: str, args: Sequence[Any]):
        return self.config.tracer.new_span(span_name(self.name, command, tuple(args)), args)

    def _pipeline_span(self):
        return self.config.tracer.new_span(f"redis:{self.name}:Pipeline", None)

    def _convert(self, reply: Optional[WireValue], result_type: Any) -> Any:
        if result_type is None:
            return reply
        return coerce(reply, result_type, self.config.encoder)

    def _convert_found(self, reply: Optional[WireValue], result_type: Any) -> Tuple[bool, Any]:
        if reply is None or getattr(reply, 'is_null', False):
            return False, None
        if result_type is None:
            return True, reply
        return True, try_coerce(reply, result_type, self.config.encoder)[1]

    # Batch helper plumbing

    @staticmethod
    def _flatten_pairs(values: Mapping[str, Any]) -> List[Any]:
        if not values:
            raise ValueError("values must not be empty")
        args: List[Any] = []
        for key, value in values.items():
            if value is None:
                raise ValueError(f"value for key [{key}] is None")
            args.extend((key, value))
        return args

    def _set_all_failed(self, values: Mapping[str, Any], reply: Any) -> None:
        with self.config.tracer.new_span(f"redis:{self.name}:ErrorSetAll", values):
            logger.warning("MSET did not succeed", client=self.name, keys=len(values), reply=reply)
            if self.config.throw_on_failure:
                raise OperationFailed(f"SetAll of {len(values)} keys failed: {reply}")

    def _collect_all(self, keys: Sequence[str], reply: Any, result_type: Any) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        if not isinstance(reply, Array):
            return found
        for key, item in zip(keys, reply):
            if isinstance(item, BulkString) and item.data is not None:
                found[key] = coerce(item, result_type, self.config.encoder)
        return found

    def __str__(self) -> str:
        return str(self.endpoint)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self.endpoint}>"


class RedisClient(BaseClient):
    """
    Blocking client for one server endpoint.

    Example:
        config = HostConfig(password="secret", db=2)
        with RedisClient(config, "127.0.0.1:6379") as client:
            client.execute("SET", "k", "v")
            value = client.execute("GET", "k", result_type=str)
    """

    def __init__(self, config: HostConfig, endpoint: Union[Endpoint, str], timeout: float = 0,
                 name: Optional[str] = None, socket_factory: Optional[SocketFactory] = None):
        super().__init__(config, endpoint, timeout, name)
        self._socket_factory = socket_factory
        self._connection: Optional[Connection] = None

    # Connection lifecycle

    def _acquire(self, create: bool) -> Optional[Connection]:
        """
        Return a usable connection, replacing a dead one.

        Args:
            create: Open a new connection when there is none; when False a
                dead or missing connection yields None

        Returns:
            Connection, or None if `create` is False and none is usable
        """
        conn = self._connection
        if conn is not None and conn.is_usable():
            return conn

        self.session.reset()
        self._connection = None
        if conn is not None:
            logger.info("Discarding unusable connection", client=self.name, endpoint=str(self.endpoint))
            conn.close()
        if not create:
            return None

        conn = Connection(self.endpoint, self.config, self.effective_timeout, self._socket_factory)
        try:
            conn.open()
        except Exception as e:
            logger.warning("Connect failed", client=self.name, endpoint=str(self.endpoint), error=str(e))
            conn.close()
            raise

        self._connection = conn
        return conn

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.is_usable()

    def close(self) -> None:
        """Send QUIT if logged in (best effort), then close the socket"""
        self._pipeline = None
        conn = self._connection
        if self.session.logged_in and conn is not None and conn.is_usable():
            try:
                self.quit()
            except Exception as e:
                logger.debug("QUIT on close failed", client=self.name, error=str(e))

        self._connection = None
        self.session.reset()
        if conn is not None:
            conn.close()

    def __enter__(self) -> "RedisClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def reset(self) -> int:
        """Drop stale bytes left on the live connection; never connects"""
        conn = self._acquire(False)
        if conn is None:
            return 0
        dropped = conn.discard_pending()
        if dropped:
            logger.info("Discarded stale reply bytes", client=self.name, bytes=dropped)
        return dropped

    # Handshake

    def _check_login(self, command: Optional[str]) -> None:
        if not self.session.needs_login(command):
            return
        if self.config.password:
            try:
                ok = self.auth(self.config.username, self.config.password)
            except ServerError as e:
                raise AuthenticationFailure(f"Login to [{self.endpoint}] failed: {e.message}") from e
            if not ok:
                raise AuthenticationFailure(f"Login to [{self.endpoint}] failed")
        self.session.mark_logged_in()

    def _check_select(self, command: Optional[str]) -> None:
        db = self.config.db
        if not self.session.needs_select(command, db):
            return
        if db > 0 and not self.config.is_multi_node:
            self.select(db)
        self.session.mark_selected(db)

    # Core execution

    def _execute_command(self, command: str, args: Sequence[Any]) -> Optional[WireValue]:
        is_quit = command.upper() == "QUIT"
        # Built before connecting: an oversized request sends nothing
        request = self._build_request(command, args) if command else b''

        conn = self._acquire(not is_quit)
        if conn is None:
            return None

        if command:
            self._check_login(command)
            self._check_select(command)
            conn.send(request)

        replies = conn.read_replies(1)
        self._log_replies(replies)

        if is_quit:
            self.session.mark_logged_out()
        return replies[0]

    def _execute(self, command: str, args: Sequence[Any]) -> Optional[WireValue]:
        if not command:
            return self._execute_command(command, args)
        with self._span(command, args) as span:
            try:
                return self._execute_command(command, args)
            except Exception as e:
                span.set_error(e)
                raise

    def execute(self, command: str, *args: Any, result_type: Any = None) -> Any:
        """
        Run one command and return its reply.

        An empty command name sends nothing and reads the next reply, for
        subscription-style streams. While pipelining the command is queued and
        None is returned.

        Args:
            command: Command name, e.g. "GET"
            *args: Arguments, encoded with the configured Encoder
            result_type: Requested result type (int, str, list[str], ...);
                None returns the wire value itself

        Returns:
            Coerced reply, the raw WireValue, or None for no value
        """
        if self._pipeline is not None:
            self._pipeline.append(QueuedCommand(command, args, result_type))
            return None
        return self._convert(self._execute(command, args), result_type)

    def try_execute(self, command: str, *args: Any, result_type: Any = None) -> Tuple[bool, Any]:
        """Like execute(), returning (found, value); found is False for null replies"""
        return self._convert_found(self._execute(command, args), result_type)

    def read_more(self, result_type: Any = None) -> Any:
        """Read one more reply without sending anything (pub/sub streams)"""
        conn = self._acquire(False)
        if conn is None:
            return None
        replies = conn.read_replies(1)
        self._log_replies(replies)
        return self._convert(replies[0], result_type)

    # Pipelining

    def stop_pipeline(self, require_result: bool = True) -> Optional[List[Any]]:
        """
        Send every queued command in one write.

        Args:
            require_result: Read and coerce one reply per command; when False
                nothing is read and a list of None placeholders is returned.
                The unread replies stay on the connection, so follow up with
                reset() or close() before reusing the client.

        Returns:
            Results in issue order, or None if no pipeline was started
        """
        queued = self._take_pipeline()
        if queued is None:
            return None

        conn = self._acquire(True)
        with self._pipeline_span() as span:
            try:
                self._check_login(None)
                self._check_select(None)

                span.set_tag([item.command for item in queued])
                buffer = b''.join(self._build_request(item.command, item.args) for item in queued)
                if buffer:
                    conn.send(buffer)

                if not require_result:
                    return [None] * len(queued)

                replies = conn.read_replies(len(queued))
                self._log_replies(replies)
                return self._coerce_pipeline(queued, replies)
            except Exception as e:
                span.set_error(e)
                raise

    # Basic commands

    def ping(self) -> bool:
        return self.execute("PING", result_type=str) == "PONG"

    def select(self, db: int) -> bool:
        return self.execute("SELECT", str(db), result_type=str) == "OK"

    def auth(self, username: Optional[str], password: str) -> bool:
        if username:
            reply = self.execute("AUTH", username, password, result_type=str)
        else:
            reply = self.execute("AUTH", password, result_type=str)
        return reply == "OK"

    def quit(self) -> bool:
        return self.execute("QUIT", result_type=str) == "OK"

    # Batch helpers

    def set_all(self, values: Mapping[str, Any]) -> bool:
        """MSET every key/value pair; None values are rejected"""
        reply = self.execute("MSET", *self._flatten_pairs(values), result_type=str)
        if reply != "OK":
            self._set_all_failed(values, reply)
        return reply == "OK"

    def get_all(self, keys: Iterable[str], result_type: Any = bytes) -> Dict[str, Any]:
        """MGET the keys; missing keys are left out of the result"""
        keys = list(keys)
        if not keys:
            raise ValueError("keys must not be empty")
        return self._collect_all(keys, self.execute("MGET", *keys), result_type)
