from unittest.mock import MagicMock, call

import psycopg
import pytest
from psycopg import sql

from testdock.config import DEFAULT_POSTGRES_DSN, RunMode
from testdock.drivers.postgresql import PostgresDriver, connect_kwargs, disconnect_users
from testdock.dsn import parse_url
from testdock.errors import ConnectError
from testdock.lifecycle import TestDatabase


@pytest.fixture
def mock_connect(mocker):
    """Fixture to replace psycopg.connect with a mock connection."""
    conn = MagicMock()
    return mocker.patch("testdock.drivers.postgresql.psycopg.connect", return_value=conn)


def test_default_options():
    """Test that the container is configured from the DSN credentials."""
    options = PostgresDriver().default_options(parse_url(DEFAULT_POSTGRES_DSN))
    assert options["docker_repository"] == "postgres"
    assert options["docker_env"] == {
        "POSTGRES_USER": "postgres",
        "POSTGRES_PASSWORD": "secret",
        "POSTGRES_DB": "postgres",
    }
    assert options["prepare_cleanup"] == [disconnect_users]


def test_open_pings(mock_connect):
    """Test that open connects in autocommit mode and checks the connection."""
    conn = PostgresDriver().open(parse_url(DEFAULT_POSTGRES_DSN))
    mock_connect.assert_called_once_with(
        host="127.0.0.1",
        port=5432,
        user="postgres",
        password="secret",
        dbname="postgres",
        sslmode="disable",
        autocommit=True,
    )
    conn.execute.assert_called_once_with("SELECT 1")


def test_open_closes_on_failed_ping(mock_connect):
    conn = mock_connect.return_value
    conn.execute.side_effect = psycopg.OperationalError("server closed the connection")
    with pytest.raises(psycopg.OperationalError):
        PostgresDriver().open(parse_url(DEFAULT_POSTGRES_DSN))
    conn.close.assert_called_once()


def test_statements_quote_identifiers():
    driver = PostgresDriver()
    assert driver.create_statement("t_x") == sql.SQL("CREATE DATABASE {}").format(sql.Identifier("t_x"))
    assert driver.drop_statement("t_x") == sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier("t_x"))


def test_disconnect_users():
    """Test that other sessions on the database are terminated."""
    conn = MagicMock()
    disconnect_users(conn, "t_x")
    cur = conn.cursor.return_value.__enter__.return_value
    query, params = cur.execute.call_args.args
    assert "pg_terminate_backend" in query
    assert params == ("t_x",)


def test_external_lifecycle(mock_connect, settings):
    """Test create, connect and drop against an external server."""
    conn = mock_connect.return_value
    db = TestDatabase.create(PostgresDriver(), DEFAULT_POSTGRES_DSN, settings=settings, mode=RunMode.EXTERNAL)

    # The administrative connection goes to the DSN's own database.
    assert mock_connect.call_args_list[0].kwargs["dbname"] == "postgres"
    executed = conn.cursor.return_value.execute.call_args_list
    assert executed[0] == call(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db.database_name)))
    assert conn.close.call_count == 1

    db.connect()
    assert mock_connect.call_args_list[1].kwargs["dbname"] == db.database_name
    assert db.database_name in db.dsn

    db.close()
    executed = conn.cursor.return_value.execute.call_args_list
    assert executed[-1] == call(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(db.database_name)))
    terminate = conn.cursor.return_value.__enter__.return_value.execute.call_args
    assert terminate.args[1] == (db.database_name,)


def test_connect_failure_after_retries(mock_connect, settings):
    """Test that a server that never answers raises ConnectError."""
    mock_connect.side_effect = psycopg.OperationalError("connection refused")
    with pytest.raises(ConnectError, match="connect url"):
        TestDatabase.create(PostgresDriver(), DEFAULT_POSTGRES_DSN, settings=settings, mode=RunMode.EXTERNAL)
    assert mock_connect.call_count > 1


def test_connect_kwargs_special_password():
    """Test that a password with '@' and '/' is passed to libpq unchanged."""
    kwargs = connect_kwargs(parse_url("postgres://user:p@ss/w0rd@localhost:5432/mydb"))
    assert kwargs == {
        "host": "localhost",
        "port": 5432,
        "user": "user",
        "password": "p@ss/w0rd",
        "dbname": "mydb",
    }


def test_connect_kwargs_omits_empty_parts():
    kwargs = connect_kwargs(parse_url("localhost:5432?connect_timeout=5"))
    assert kwargs == {"host": "localhost", "port": 5432, "connect_timeout": "5"}


def test_open_special_password(mock_connect):
    PostgresDriver().open(parse_url("postgres://user:p@ss/w0rd@localhost:5432/mydb"))
    assert mock_connect.call_args.kwargs["password"] == "p@ss/w0rd"
