"""MySQL driver."""
from typing import Any, Dict

import pymysql

from ..dsn import ConnectionURL
from .base import RelationalDriver


def quote_identifier(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySQLDriver(RelationalDriver):
    """
    MySQL through PyMySQL.

    Connect as ``root`` when the database runs in Docker; only the root
    password is set up in the container.
    """

    name = "mysql"

    def default_options(self, url: ConnectionURL) -> Dict[str, Any]:
        return {
            "docker_repository": "mysql",
            "docker_image": "9.1.0",
            # MySQL initializes its data directory before it accepts connections.
            "total_retry_duration": 60.0,
            "docker_env": {
                "MYSQL_ROOT_PASSWORD": url.password,
                "MYSQL_DATABASE": url.database,
            },
        }

    def open(self, url: ConnectionURL) -> pymysql.connections.Connection:
        kwargs: Dict[str, Any] = {}
        if "charset" in url.options:
            kwargs["charset"] = url.options["charset"]
        conn = pymysql.connect(
            host=url.host,
            port=url.port,
            user=url.user,
            password=url.password,
            database=url.database or None,
            autocommit=True,
            **kwargs,
        )
        try:
            self._execute(conn, "SELECT 1")
        except Exception:
            conn.close()
            raise
        return conn

    def create_statement(self, name: str) -> str:
        return f"CREATE DATABASE {quote_identifier(name)}"

    def drop_statement(self, name: str) -> str:
        return f"DROP DATABASE IF EXISTS {quote_identifier(name)}"
