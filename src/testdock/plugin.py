"""pytest plugin exposing the ``testdock`` fixture."""
from typing import Any, Tuple

import pytest

from .config import DEFAULT_MONGO_DSN, DEFAULT_MYSQL_DSN, DEFAULT_POSTGRES_DSN
from .drivers.base import Driver
from .errors import TestDockError
from .lifecycle import Informer, TestDatabase


class Provisioner:
    """
    Provisions test databases bound to one pytest test.

    Every database is torn down when the test finishes. Setup failures fail
    the test immediately.
    """

    __test__ = False

    def __init__(self, request: pytest.FixtureRequest):
        self._request = request

    def database(self, driver: Any, dsn: str, **overrides: Any) -> TestDatabase:
        """Provision a database without opening a connection."""
        try:
            db = TestDatabase.create(driver, dsn, **overrides)
        except TestDockError as e:
            pytest.fail(f"cannot prepare test database: {e}", pytrace=False)
        self._request.addfinalizer(db.close)
        return db

    def connect(self, driver: Any, dsn: str, **overrides: Any) -> Tuple[Any, Informer]:
        db = self.database(driver, dsn, **overrides)
        try:
            connection = db.connect()
        except TestDockError as e:
            pytest.fail(f"cannot connect to test database: {e}", pytrace=False)
        return connection, db

    def postgres(self, dsn: str = DEFAULT_POSTGRES_DSN, **overrides: Any) -> Tuple[Any, Informer]:
        """Return a psycopg connection to a fresh PostgreSQL database."""
        return self.connect("psycopg", dsn, **overrides)

    def mongodb(self, dsn: str = DEFAULT_MONGO_DSN, **overrides: Any) -> Tuple[Any, Informer]:
        """Return a pymongo ``Database`` for a fresh MongoDB database."""
        return self.connect("mongodb", dsn, **overrides)

    def mysql(self, dsn: str = DEFAULT_MYSQL_DSN, **overrides: Any) -> Tuple[Any, Informer]:
        """Return a PyMySQL connection to a fresh MySQL database."""
        return self.connect("mysql", dsn, **overrides)

    def sql(self, driver: Driver, dsn: str, **overrides: Any) -> Tuple[Any, Informer]:
        """Return a DB-API connection through a custom relational driver."""
        return self.connect(driver, dsn, **overrides)


@pytest.fixture
def testdock(request: pytest.FixtureRequest) -> Provisioner:
    """Provision disposable databases for the requesting test."""
    return Provisioner(request)
