"""
RESP Wire Client

A Redis serialization protocol (RESP2) client core: request framing, an
incremental reply parser, result coercion, and blocking plus asyncio clients
that manage login, database selection, pipelining and reconnection for one
server endpoint.
"""

__version__ = "0.1.0"
__author__ = "RESP Wire Team"

from .async_client import AsyncRedisClient
from .client import RedisClient
from .config import Endpoint, HostConfig
from .encoder import DefaultEncoder, Encoder
from .exceptions import (
    AuthenticationFailure,
    CertificatePinError,
    ConnectionLost,
    ConnectTimeout,
    ConversionError,
    OperationFailed,
    ProtocolViolation,
    ReadTimeout,
    RespConnectionError,
    RespError,
    ServerError,
    SizeLimitExceeded,
)
from .protocol import Array, BulkString, Integer, SimpleString
from .tracing import NullTracer

__all__ = [
    "__version__",
    "__author__",
    "AsyncRedisClient",
    "RedisClient",
    "Endpoint",
    "HostConfig",
    "DefaultEncoder",
    "Encoder",
    "NullTracer",
    "SimpleString",
    "Integer",
    "BulkString",
    "Array",
    "RespError",
    "RespConnectionError",
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectionLost",
    "CertificatePinError",
    "ProtocolViolation",
    "ServerError",
    "SizeLimitExceeded",
    "AuthenticationFailure",
    "ConversionError",
    "OperationFailed",
]
