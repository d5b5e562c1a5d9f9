"""
RESP Client Error Taxonomy

Every failure raised by the client derives from RespError. Connection-level
failures also derive from the builtin ConnectionError (and TimeoutError for
the timeout cases) so callers and pools can catch them generically.
"""

from typing import Any, Optional


class RespError(Exception):
    """Base class for all client failures"""


class RespConnectionError(RespError, ConnectionError):
    """The connection is unusable and has been discarded"""


class ConnectTimeout(RespConnectionError, TimeoutError):
    """Connecting to the endpoint did not complete within the timeout"""


class ReadTimeout(RespConnectionError, TimeoutError):
    """No reply arrived within the read deadline"""


class ConnectionLost(RespConnectionError):
    """Socket or stream closed or failed while writing or reading"""


class CertificatePinError(RespConnectionError):
    """TLS handshake rejected: pinned certificate not in the presented chain"""


class ProtocolViolation(RespError):
    """
    Reply started with a byte that is not part of the grammar.

    The stream cannot be resynchronised, so the connection is discarded.
    """

    def __init__(self, prefix: bytes, pending: bytes = b''):
        self.prefix = prefix
        self.pending = pending
        super().__init__(f"Unrecognized reply prefix {prefix!r} "
                         f"(pending: {hex_dump(pending) or '<empty>'})")


class ServerError(RespError):
    """Server answered with an error reply (`-ERR ...`)"""

    def __init__(self, message: str, consumed: int = 0, nested: bool = False):
        self.message = message
        # Parser bookkeeping: bytes of the reply up to the error line, and
        # whether the error sat inside an array whose rest is still unread
        self.consumed = consumed
        self.nested = nested
        super().__init__(message)


class SizeLimitExceeded(RespError):
    """Request larger than the configured maximum; nothing was sent"""

    def __init__(self, command: str, size: int, limit: int):
        self.command = command
        self.size = size
        self.limit = limit
        super().__init__(
            f"Request [{command}] is {size} bytes, over the {limit} byte limit. "
            f"Large values slow down the whole server; raise max_message_size to allow it."
        )


class AuthenticationFailure(RespError):
    """AUTH during the session handshake did not succeed"""


class ConversionError(RespError, ValueError):
    """A reply could not be converted to the requested result type"""

    def __init__(self, value: Any, target: Any, reason: Optional[str] = None):
        self.value = value
        self.target = target
        message = f"Cannot convert [{value!r}] to {getattr(target, '__name__', target)}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class OperationFailed(RespError):
    """A helper operation got a non-success reply"""


def hex_dump(data: bytes, limit: int = 256) -> str:
    """Dash separated upper-case hex, truncated to `limit` bytes"""
    text = '-'.join(f'{b:02X}' for b in data[:limit])
    if len(data) > limit:
        text += '...'
    return text
