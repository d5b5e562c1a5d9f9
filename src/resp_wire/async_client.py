"""
RESP Client (asyncio)

Same contract as RedisClient with suspension points at connect, request
write/drain and reply read. Every awaited command accepts a `timeout` that
bounds the wait for the first bytes of its reply; once the server starts
answering, the rest of that reply is read to completion. Cancelling a
command mid-flight discards its connection; the next command reconnects.

Like the blocking client, an instance is single-owner: do not run two
commands on one instance concurrently (e.g. via asyncio.gather).
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from .client import BaseClient, QueuedCommand
from .config import Endpoint, HostConfig
from .connection import AsyncConnection, StreamFactory
from .exceptions import AuthenticationFailure, ServerError
from .protocol import WireValue

logger = structlog.get_logger()


class AsyncRedisClient(BaseClient):
    """
    asyncio client for one server endpoint.

    Example:
        async with AsyncRedisClient(HostConfig(), "127.0.0.1:6379") as client:
            await client.execute("SET", "k", "v")
            value = await client.execute("GET", "k", result_type=str, timeout=1.0)
    """

    def __init__(self, config: HostConfig, endpoint: Union[Endpoint, str], timeout: float = 0,
                 name: Optional[str] = None, stream_factory: Optional[StreamFactory] = None):
        super().__init__(config, endpoint, timeout, name)
        self._stream_factory = stream_factory
        self._connection: Optional[AsyncConnection] = None

    async def _acquire(self, create: bool) -> Optional[AsyncConnection]:
        conn = self._connection
        if conn is not None and conn.is_usable():
            return conn

        self.session.reset()
        self._connection = None
        if conn is not None:
            logger.info("Discarding unusable connection", client=self.name, endpoint=str(self.endpoint))
            await conn.aclose()
        if not create:
            return None

        conn = AsyncConnection(self.endpoint, self.config, self.effective_timeout, self._stream_factory)
        try:
            await conn.open()
        except Exception as e:
            logger.warning("Connect failed", client=self.name, endpoint=str(self.endpoint), error=str(e))
            conn.close()
            raise

        self._connection = conn
        return conn

    @property
    def connected(self) -> bool:
        return self._connection is not None and self._connection.is_usable()

    async def close(self) -> None:
        """Send QUIT if logged in (best effort), then close the stream"""
        self._pipeline = None
        conn = self._connection
        if self.session.logged_in and conn is not None and conn.is_usable():
            try:
                await self.quit()
            except Exception as e:
                logger.debug("QUIT on close failed", client=self.name, error=str(e))

        self._connection = None
        self.session.reset()
        if conn is not None:
            await conn.aclose()

    async def __aenter__(self) -> "AsyncRedisClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def reset(self) -> int:
        """Drop stale bytes left on the live stream (e.g. unread pipeline replies); never connects"""
        conn = await self._acquire(False)
        if conn is None:
            return 0
        dropped = await conn.discard_pending()
        if dropped:
            logger.info("Discarded stale reply bytes", client=self.name, bytes=dropped)
        return dropped

    async def _check_login(self, command: Optional[str]) -> None:
        if not self.session.needs_login(command):
            return
        if self.config.password:
            try:
                ok = await self.auth(self.config.username, self.config.password)
            except ServerError as e:
                raise AuthenticationFailure(f"Login to [{self.endpoint}] failed: {e.message}") from e
            if not ok:
                raise AuthenticationFailure(f"Login to [{self.endpoint}] failed")
        self.session.mark_logged_in()

    async def _check_select(self, command: Optional[str]) -> None:
        db = self.config.db
        if not self.session.needs_select(command, db):
            return
        if db > 0 and not self.config.is_multi_node:
            await self.select(db)
        self.session.mark_selected(db)

    def _read_timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.effective_timeout if timeout is None else timeout

    async def _execute_command(self, command: str, args: Sequence[Any],
                               timeout: Optional[float]) -> Optional[WireValue]:
        is_quit = command.upper() == "QUIT"
        request = self._build_request(command, args) if command else b''

        conn = await self._acquire(not is_quit)
        if conn is None:
            return None

        if command:
            await self._check_login(command)
            await self._check_select(command)
            await conn.send(request)

        replies = await conn.read_replies(1, self._read_timeout(timeout))
        self._log_replies(replies)

        if is_quit:
            self.session.mark_logged_out()
        return replies[0]

    async def _execute(self, command: str, args: Sequence[Any], timeout: Optional[float]) -> Optional[WireValue]:
        if not command:
            return await self._execute_command(command, args, timeout)
        with self._span(command, args) as span:
            try:
                return await self._execute_command(command, args, timeout)
            except Exception as e:
                span.set_error(e)
                raise

    async def execute(self, command: str, *args: Any, result_type: Any = None,
                      timeout: Optional[float] = None) -> Any:
        """
        Run one command and return its reply.

        Args:
            command: Command name; empty reads the next reply without sending
            *args: Arguments, encoded with the configured Encoder
            result_type: Requested result type; None returns the wire value
            timeout: Deadline in seconds for the first reply bytes
                (defaults to the client timeout)
        """
        if self._pipeline is not None:
            self._pipeline.append(QueuedCommand(command, args, result_type))
            return None
        return self._convert(await self._execute(command, args, timeout), result_type)

    async def try_execute(self, command: str, *args: Any, result_type: Any = None,
                          timeout: Optional[float] = None) -> Tuple[bool, Any]:
        return self._convert_found(await self._execute(command, args, timeout), result_type)

    async def read_more(self, result_type: Any = None, timeout: Optional[float] = None) -> Any:
        """Read one more reply without sending anything (pub/sub streams)"""
        conn = await self._acquire(False)
        if conn is None:
            return None
        replies = await conn.read_replies(1, self._read_timeout(timeout))
        self._log_replies(replies)
        return self._convert(replies[0], result_type)

    async def stop_pipeline(self, require_result: bool = True,
                            timeout: Optional[float] = None) -> Optional[List[Any]]:
        """
        Send every queued command in one write; see RedisClient.stop_pipeline().

        With require_result=False the replies stay unread: await reset() or
        close() before issuing further commands.
        """
        queued = self._take_pipeline()
        if queued is None:
            return None

        conn = await self._acquire(True)
        with self._pipeline_span() as span:
            try:
                await self._check_login(None)
                await self._check_select(None)

                span.set_tag([item.command for item in queued])
                buffer = b''.join(self._build_request(item.command, item.args) for item in queued)
                if buffer:
                    await conn.send(buffer)

                if not require_result:
                    return [None] * len(queued)

                replies = await conn.read_replies(len(queued), self._read_timeout(timeout))
                self._log_replies(replies)
                return self._coerce_pipeline(queued, replies)
            except Exception as e:
                span.set_error(e)
                raise

    async def ping(self) -> bool:
        return await self.execute("PING", result_type=str) == "PONG"

    async def select(self, db: int) -> bool:
        return await self.execute("SELECT", str(db), result_type=str) == "OK"

    async def auth(self, username: Optional[str], password: str) -> bool:
        if username:
            reply = await self.execute("AUTH", username, password, result_type=str)
        else:
            reply = await self.execute("AUTH", password, result_type=str)
        return reply == "OK"

    async def quit(self) -> bool:
        return await self.execute("QUIT", result_type=str) == "OK"

    async def set_all(self, values: Mapping[str, Any]) -> bool:
        reply = await self.execute("MSET", *self._flatten_pairs(values), result_type=str)
        if reply != "OK":
            self._set_all_failed(values, reply)
        return reply == "OK"

    async def get_all(self, keys: Iterable[str], result_type: Any = bytes) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            raise ValueError("keys must not be empty")
        return self._collect_all(keys, await self.execute("MGET", *keys), result_type)
