"""
Connection string parsing and serialization.

Supported format::

    [protocol://]user:password@[transport(]host:port[)][/database][?k1=v1&k2=v2]

User, password, host and port are required; protocol, transport, database and
options are optional. A bare ``host:port`` without credentials is accepted.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import FormatError

PASSWORD_MASK = "*****"


@dataclass
class ConnectionURL:
    """A decomposed connection string."""

    protocol: str = ""
    transport: str = ""
    user: str = ""
    password: str = ""
    host: str = ""
    port: int = 0
    database: str = ""
    options: Dict[str, str] = field(default_factory=dict)

    def to_string(self, hide_password: bool = False) -> str:
        """
        Serialize back to the connection string format.

        Options are written with their keys in ascending order so the output
        does not depend on insertion order.

        Args:
            hide_password: Replace the password with a fixed mask. Use this
                for logs, never for connecting.

        """
        parts = []
        if self.protocol:
            parts.append(f"{self.protocol}://")

        if self.user:
            password = PASSWORD_MASK if hide_password else self.password
            parts.append(f"{self.user}:{password}@")

        if self.transport:
            parts.append(f"{self.transport}(")
        parts.append(self.host)
        if self.port != 0:
            parts.append(f":{self.port}")
        if self.transport:
            parts.append(")")

        if self.database:
            parts.append(f"/{self.database}")

        if self.options:
            query = "&".join(f"{key}={self.options[key]}" for key in sorted(self.options))
            parts.append(f"?{query}")

        return "".join(parts)

    def clone(self) -> "ConnectionURL":
        """Return a deep copy; the options mapping is not shared."""
        return ConnectionURL(
            protocol=self.protocol,
            transport=self.transport,
            user=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
            options=dict(self.options),
        )

    def replace_database(self, name: str) -> "ConnectionURL":
        """Return a copy pointing at another database."""
        copy = self.clone()
        copy.database = name
        return copy

    def __str__(self) -> str:
        return self.to_string(hide_password=True)


def url_to_string(url: Optional[ConnectionURL], hide_password: bool = False) -> str:
    """Serialize ``url``; ``None`` becomes an empty string."""
    if url is None:
        return ""
    return url.to_string(hide_password)


def clone_url(url: Optional[ConnectionURL]) -> Optional[ConnectionURL]:
    """Deep-copy ``url``; ``None`` stays ``None``."""
    if url is None:
        return None
    return url.clone()


def _parse_options(query: str) -> Dict[str, str]:
    options: Dict[str, str] = {}
    for param in query.split("&"):
        key, sep, value = param.partition("=")
        if sep:
            options[key] = value
    return options


def parse_url(conn_str: str) -> ConnectionURL:
    """
    Parse a connection string.

    The last ``@`` separates credentials from the host so passwords may
    contain ``@``. Hosts may not contain ``:``; IPv6 literals are unsupported.

    Raises:
        FormatError: If the string violates the grammar. The message names
            the violated rule.

    """
    if not conn_str:
        raise FormatError("connection string cannot be empty")

    url = ConnectionURL()

    protocol, sep, rest = conn_str.partition("://")
    if sep:
        if not protocol:
            raise FormatError("invalid connection string format: '://' exists, but no protocol")
        url.protocol = protocol
    else:
        rest = conn_str

    credentials, sep, host_part = rest.rpartition("@")
    if sep:
        rest = host_part
        user, sep, password = credentials.partition(":")
        if not sep:
            raise FormatError("invalid connection string format: missing password")
        if not user:
            raise FormatError("user is required")
        if not password:
            raise FormatError("password is required")
        url.user = user
        url.password = password

    rest, sep, query = rest.partition("?")
    if sep:
        url.options = _parse_options(query)

    rest, sep, database = rest.partition("/")
    if sep:
        url.database = database

    if "(" in rest and rest.endswith(")"):
        transport, sep, inner = rest.partition("(")
        if not sep:
            raise FormatError("invalid connection string format: malformed transport")
        url.transport = transport
        rest = inner[:-1]

    if not rest:
        raise FormatError("host is required")

    host, sep, port = rest.partition(":")
    if not sep:
        raise FormatError("invalid connection string format: missing port")
    if not host:
        raise FormatError("host is required")
    if not port:
        raise FormatError("port is required")
    digits = port[1:] if port[0] in "+-" else port
    if not (digits.isascii() and digits.isdigit()):
        raise FormatError(f"parse port: invalid syntax {port!r}")
    url.port = int(port)
    if url.port <= 0:
        raise FormatError("port must be positive")
    url.host = host

    return url
