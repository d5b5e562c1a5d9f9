"""
Host Configuration and Server Endpoints

HostConfig carries the settings shared by every client created for one
logical server (or one cluster/sentinel deployment). Endpoint identifies a
single server; one HostConfig may drive clients for many endpoints.
"""

import hashlib
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import parse_qs, unquote, urlparse

from .encoder import DefaultEncoder, Encoder
from .tracing import NullTracer, Tracer

DEFAULT_PORT = 6379
DEFAULT_TIMEOUT = 3.0
DEFAULT_MAX_MESSAGE_SIZE = 1024 * 1024

# Deployment modes in which SELECT of a non-zero database is invalid
MULTI_NODE_MODES = ("cluster", "sentinel")


@dataclass(frozen=True)
class Endpoint:
    """One server address; immutable for the lifetime of a client"""
    host: str
    port: int = DEFAULT_PORT
    tls: Optional[bool] = None  # None: follow HostConfig.tls
    server_hostname: Optional[str] = None  # name used for TLS SNI

    @classmethod
    def parse(cls, address: str, tls: Optional[bool] = None) -> "Endpoint":
        """Parse `host`, `host:port` or `[v6addr]:port`"""
        address = address.strip()
        if address.startswith('['):
            host, _, rest = address[1:].partition(']')
            port = rest.lstrip(':')
        elif address.count(':') == 1:
            host, port = address.split(':')
        else:
            host, port = address, ''
        if not host:
            raise ValueError(f"Invalid endpoint address: {address!r}")
        return cls(host=host, port=int(port) if port else DEFAULT_PORT, tls=tls)

    @property
    def tls_name(self) -> str:
        return self.server_hostname or self.host

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class HostConfig:
    """Settings shared by all clients of one logical server"""
    name: str = "redis"
    timeout: float = DEFAULT_TIMEOUT
    username: Optional[str] = None
    password: Optional[str] = None
    db: int = 0
    mode: str = "standalone"
    tls: bool = False
    certificate: Optional[Union[str, Path, bytes]] = None
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    throw_on_failure: bool = True
    tracer: Tracer = field(default_factory=NullTracer)
    encoder: Encoder = field(default_factory=DefaultEncoder)
    log: Optional[Any] = None  # structlog-compatible sink for command traces

    def __post_init__(self):
        if self.timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {self.timeout}")
        if self.db < 0:
            raise ValueError(f"db must be >= 0, got {self.db}")
        self.mode = (self.mode or "standalone").lower()

    @property
    def is_multi_node(self) -> bool:
        """Cluster and sentinel deployments reject SELECT of db > 0"""
        return self.mode in MULTI_NODE_MODES

    def pinned_fingerprint(self) -> Optional[bytes]:
        """SHA-256 digest of the pinned certificate (DER), None when not pinned"""
        if self.certificate is None:
            return None

        raw = self.certificate
        if isinstance(raw, (str, Path)):
            raw = Path(raw).read_bytes()
        if raw.lstrip().startswith(b'-----BEGIN'):
            raw = ssl.PEM_cert_to_DER_cert(raw.decode('ascii'))
        return hashlib.sha256(raw).digest()

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> "HostConfig":
        """Build from a plain settings mapping, ignoring unknown keys"""
        known = set(cls.__dataclass_fields__)
        values = {k: v for k, v in settings.items() if k in known}
        if 'timeout' in values:
            values['timeout'] = float(values['timeout'])
        for key in ('db', 'max_message_size'):
            if key in values:
                values[key] = int(values[key])
        for key in ('tls', 'throw_on_failure'):
            if isinstance(values.get(key), str):
                values[key] = values[key].lower() in ('1', 'true', 'yes', 'on')
        return cls(**values)

    @classmethod
    def from_url(cls, url: str, **overrides) -> Tuple["HostConfig", Endpoint]:
        """
        Parse a `redis://` or `rediss://` URL.

        Format: redis[s]://[[username]:password@]host[:port][/db][?timeout=..&mode=..]

        Returns:
            (HostConfig, Endpoint) tuple
        """
        parsed = urlparse(url)
        if parsed.scheme not in ('redis', 'rediss'):
            raise ValueError(f"Unsupported URL scheme: {parsed.scheme!r}")

        settings: Dict[str, Any] = {'tls': parsed.scheme == 'rediss'}
        if parsed.username:
            settings['username'] = unquote(parsed.username)
        if parsed.password:
            settings['password'] = unquote(parsed.password)

        path = parsed.path.strip('/')
        if path:
            settings['db'] = int(path)

        for key, values in parse_qs(parsed.query).items():
            settings[key] = values[-1]
        settings.update(overrides)

        config = cls.from_dict(settings)
        endpoint = Endpoint(host=parsed.hostname or 'localhost',
                            port=parsed.port or DEFAULT_PORT)
        return config, endpoint
