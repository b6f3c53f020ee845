"""
Schema migrations for test databases.

The lifecycle controller only needs something with an ``up()`` method, built
by a factory from the test database DSN, the migrations directory and a
logger. `AlembicMigrator` is such a factory: it points alembic at the
migrations directory and upgrades the test database to ``head``.
"""
import logging
from typing import Callable, Dict, Optional, Protocol

from alembic import command
from alembic.config import Config
from alembic.util import CommandError
from sqlalchemy.engine import URL

from .dsn import ConnectionURL, parse_url
from .errors import MigrationError


class Migrator(Protocol):
    """Applies all pending migrations."""

    def up(self) -> None:
        ...


MigratorFactory = Callable[[str, str, logging.Logger], Migrator]

# SQLAlchemy dialects for the DSN protocols testdock provisions.
DRIVERNAMES: Dict[str, str] = {
    "postgres": "postgresql+psycopg",
    "postgresql": "postgresql+psycopg",
    "mysql": "mysql+pymysql",
}


def sqlalchemy_url(url: ConnectionURL, drivername: Optional[str] = None) -> URL:
    """
    Build a SQLAlchemy URL from a parsed connection string.

    Credentials are passed as separate fields, so passwords containing ``@``
    or ``/`` survive. ``drivername`` defaults to the dialect matching the
    DSN protocol.

    Raises:
        MigrationError: If no dialect is known for the protocol.

    """
    if drivername is None:
        drivername = DRIVERNAMES.get(url.protocol)
        if drivername is None:
            raise MigrationError(f"no SQLAlchemy dialect for protocol {url.protocol!r}; pass drivername")
    return URL.create(
        drivername,
        username=url.user or None,
        password=url.password or None,
        host=url.host or None,
        port=url.port or None,
        database=url.database or None,
        query=url.options,
    )


class AlembicMigrator:
    """
    Upgrade a test database with an alembic migrations directory.

    ``migrations_dir`` is used as ``script_location``; its ``env.py`` reads
    ``sqlalchemy.url`` from the config as usual.

    Use ``functools.partial(AlembicMigrator, drivername=...)`` as the factory
    when the DSN protocol does not name the dialect, e.g. for MySQL DSNs
    without a protocol.
    """

    def __init__(
        self,
        dsn: str,
        migrations_dir: str,
        logger: Optional[logging.Logger] = None,
        drivername: Optional[str] = None,
    ):
        self.dsn = dsn
        self.migrations_dir = migrations_dir
        self.logger = logger or logging.getLogger(__name__)
        self.drivername = drivername

    def config(self) -> Config:
        url = sqlalchemy_url(parse_url(self.dsn), self.drivername)
        cfg = Config()
        cfg.set_main_option("script_location", self.migrations_dir)
        # Config values go through configparser interpolation.
        cfg.set_main_option("sqlalchemy.url", url.render_as_string(hide_password=False).replace("%", "%%"))
        return cfg

    def up(self) -> None:
        cfg = self.config()
        self.logger.info("Upgrading to head.", extra={"migrations_dir": self.migrations_dir})
        try:
            command.upgrade(cfg, "head")
        except CommandError as e:
            raise MigrationError(f"alembic upgrade: {e}") from e


alembic_migrator_factory: MigratorFactory = AlembicMigrator
