"""PostgreSQL driver."""
from typing import Any, Dict

import psycopg
from psycopg import sql

from ..dsn import ConnectionURL
from .base import RelationalDriver


def connect_kwargs(url: ConnectionURL) -> Dict[str, Any]:
    """
    Return libpq connection parameters for ``url``.

    The parts are passed separately instead of as a URI so passwords may
    contain ``@`` and ``/``. DSN options become libpq parameters; empty
    parts are left to libpq defaults.
    """
    params = {
        "host": url.host,
        "port": url.port,
        "user": url.user,
        "password": url.password,
        "dbname": url.database,
    }
    return {**url.options, **{key: value for key, value in params.items() if value}}


def disconnect_users(conn: psycopg.Connection, database_name: str) -> None:
    """Terminate other sessions on ``database_name`` so it can be dropped."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT pg_terminate_backend(pg_stat_activity.pid)
            FROM pg_stat_activity
            WHERE datname = %s AND pid <> pg_backend_pid()
            """,
            (database_name,),
        )


class PostgresDriver(RelationalDriver):
    """PostgreSQL through psycopg 3."""

    name = "psycopg"

    def default_options(self, url: ConnectionURL) -> Dict[str, Any]:
        return {
            "docker_repository": "postgres",
            "prepare_cleanup": [disconnect_users],
            "docker_env": {
                "POSTGRES_USER": url.user,
                "POSTGRES_PASSWORD": url.password,
                "POSTGRES_DB": url.database,
            },
        }

    def open(self, url: ConnectionURL) -> psycopg.Connection:
        conn = psycopg.connect(**connect_kwargs(url), autocommit=True)
        try:
            conn.execute("SELECT 1")
        except Exception:
            conn.close()
            raise
        return conn

    def create_statement(self, name: str) -> sql.Composed:
        return sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name))

    def drop_statement(self, name: str) -> sql.Composed:
        return sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name))
