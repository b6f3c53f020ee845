"""Generic DB-API driver for SQL databases without a dedicated driver."""
from typing import Any, Callable, Dict, Optional

from ..dsn import ConnectionURL
from .base import RelationalDriver

ConnectFunc = Callable[[ConnectionURL], Any]


class SQLDriver(RelationalDriver):
    """
    Relational driver built from a caller-supplied connect function.

    ``connect_func`` receives the parsed URL and must return a PEP 249
    connection in autocommit mode, e.g. for MySQL::

        SQLDriver(
            "mysql",
            lambda u: pymysql.connect(host=u.host, port=u.port, user=u.user,
                                      password=u.password, database=u.database or None,
                                      autocommit=True),
            docker_repository="mysql",
        )

    Args:
        name: Driver name, used for the ``TESTDOCK_DSN_<NAME>`` override.
        connect_func: Opens a connection.
        ping_query: Statement run to check the connection.
        **defaults: Option defaults, e.g. ``docker_repository``.

    """

    def __init__(self, name: str, connect_func: ConnectFunc, ping_query: Optional[str] = "SELECT 1",
                 **defaults: Any):
        self.name = name
        self._connect_func = connect_func
        self._ping_query = ping_query
        self._defaults = defaults

    def default_options(self, url: ConnectionURL) -> Dict[str, Any]:
        return dict(self._defaults)

    def open(self, url: ConnectionURL) -> Any:
        conn = self._connect_func(url)
        if self._ping_query:
            try:
                self._execute(conn, self._ping_query)
            except Exception:
                conn.close()
                raise
        return conn
