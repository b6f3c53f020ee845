"""MongoDB driver."""
from typing import TYPE_CHECKING, Any, Dict
from urllib.parse import quote_plus

from pymongo import MongoClient
from pymongo.database import Database

from ..config import RunMode
from ..dsn import ConnectionURL
from ..errors import ConnectError, RetryExhaustedError
from .base import DocumentDriver

if TYPE_CHECKING:
    from ..lifecycle import TestDatabase


def mongo_uri(url: ConnectionURL) -> str:
    """Return a MongoDB URI for ``url`` with percent-quoted credentials."""
    uri = url.clone()
    uri.protocol = uri.protocol or "mongodb"
    uri.user = quote_plus(url.user)
    uri.password = quote_plus(url.password)
    return uri.to_string()


class MongoDriver(DocumentDriver):
    """MongoDB through pymongo."""

    name = "mongodb"

    def __init__(self, server_selection_timeout_ms: int = 3000):
        self.server_selection_timeout_ms = server_selection_timeout_ms

    def default_options(self, url: ConnectionURL) -> Dict[str, Any]:
        return {
            "docker_repository": "mongo",
            "docker_image": "latest",
            "docker_env": {
                "MONGO_INITDB_ROOT_USERNAME": url.user,
                "MONGO_INITDB_ROOT_PASSWORD": url.password,
            },
        }

    def open(self, url: ConnectionURL) -> MongoClient:
        client: MongoClient = MongoClient(
            mongo_uri(url), serverSelectionTimeoutMS=self.server_selection_timeout_ms
        )
        try:
            client.admin.command("ping")
        except Exception:
            client.close()
            raise
        return client

    def connect_client(self, db: "TestDatabase") -> MongoClient:
        masked = db.url.to_string(hide_password=True)
        db.logger.info("Connecting to database.", extra={"dsn": masked})
        try:
            return db.retry(lambda: self.open(db.url), masked)
        except RetryExhaustedError as e:
            raise ConnectError(f"connect mongo url ({masked}): {e}") from e

    def connect(self, db: "TestDatabase") -> Database:
        return self.connect_client(db)[db.database_name]

    def close(self, connection: Any) -> None:
        if isinstance(connection, Database):
            connection = connection.client
        connection.close()

    def drop_logical_database(self, db: "TestDatabase") -> None:
        if db.mode == RunMode.DOCKER:
            return
        db.logger.info("Dropping test database.", extra={"database": db.database_name})
        client = self.connect_client(db)
        try:
            client.drop_database(db.database_name)
        finally:
            client.close()
        db.logger.info("Test database dropped.", extra={"database": db.database_name})
