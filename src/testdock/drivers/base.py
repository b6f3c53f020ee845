"""Abstract base classes for database drivers."""
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict

from ..dsn import ConnectionURL
from ..errors import ConnectError, RetryExhaustedError

if TYPE_CHECKING:
    from ..lifecycle import TestDatabase


class Driver(ABC):
    """
    A database family the lifecycle controller can provision.

    The controller only talks to drivers through this interface. `name` is
    the key for the ``TESTDOCK_DSN_<NAME>`` override.
    """

    name: str = ""

    def default_options(self, url: ConnectionURL) -> Dict[str, Any]:
        """
        Return option defaults for this database family.

        Explicit caller options override these.
        """
        return {}

    @abstractmethod
    def create_logical_database(self, db: "TestDatabase") -> None:
        """Create ``db.database_name`` on the server."""
        raise NotImplementedError

    @abstractmethod
    def drop_logical_database(self, db: "TestDatabase") -> None:
        """Drop ``db.database_name``. Only used outside of DOCKER mode."""
        raise NotImplementedError

    @abstractmethod
    def connect(self, db: "TestDatabase") -> Any:
        """Return a live connection to the logical database."""
        raise NotImplementedError

    @abstractmethod
    def close(self, connection: Any) -> None:
        """Close a connection returned by `connect`."""
        raise NotImplementedError


class RelationalDriver(Driver):
    """
    SQL databases where a test database is created with ``CREATE DATABASE``.

    Subclasses provide `open`, which returns a pinged DB-API connection in
    autocommit mode, and may override the statement builders.
    """

    @abstractmethod
    def open(self, url: ConnectionURL) -> Any:
        """Open and ping a connection to ``url``."""
        raise NotImplementedError

    def create_statement(self, name: str) -> Any:
        return f"CREATE DATABASE {name}"

    def drop_statement(self, name: str) -> Any:
        return f"DROP DATABASE {name}"

    def close(self, connection: Any) -> None:
        connection.close()

    def connect_url(self, db: "TestDatabase", url: ConnectionURL) -> Any:
        """Open a connection to ``url`` with the database's retry budget."""
        masked = url.to_string(hide_password=True)
        db.logger.info("Connecting to database.", extra={"dsn": masked})
        try:
            return db.retry(lambda: self.open(url), masked)
        except RetryExhaustedError as e:
            raise ConnectError(f"connect url ({masked}): {e}") from e

    def create_logical_database(self, db: "TestDatabase") -> None:
        db.logger.info(
            "Creating test database.", extra={"dsn": db.dsn_no_pass, "database": db.database_name}
        )
        conn = self.connect_url(db, db.url.replace_database(db.connect_database))
        try:
            self._execute(conn, self.create_statement(db.database_name))
        finally:
            self.close(conn)
        db.logger.info(
            "Test database created.", extra={"dsn": db.dsn_no_pass, "database": db.database_name}
        )

    def drop_logical_database(self, db: "TestDatabase") -> None:
        db.logger.info("Dropping test database.", extra={"database": db.database_name})
        conn = self.connect_url(db, db.url.replace_database(db.connect_database))
        try:
            for hook in db.options.prepare_cleanup:
                try:
                    hook(conn, db.database_name)
                except Exception as e:
                    db.logger.warning(
                        "Prepare cleanup hook failed.",
                        extra={"database": db.database_name, "hook": getattr(hook, "__name__", repr(hook)), "error": str(e)},
                    )
            self._execute(conn, self.drop_statement(db.database_name))
        finally:
            self.close(conn)
        db.logger.info("Test database dropped.", extra={"database": db.database_name})

    def connect(self, db: "TestDatabase") -> Any:
        return self.connect_url(db, db.url.replace_database(db.database_name))

    def _execute(self, conn: Any, statement: Any) -> None:
        cur = conn.cursor()
        try:
            cur.execute(statement)
        finally:
            cur.close()


class DocumentDriver(Driver):
    """
    Document stores that create databases lazily on first write.

    Nothing is created up front; dropping goes through the store's client.
    """

    def create_logical_database(self, db: "TestDatabase") -> None:
        db.logger.info(
            "Document store creates databases on first write, skipping creation.",
            extra={"database": db.database_name},
        )
