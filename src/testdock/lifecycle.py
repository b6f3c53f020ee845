"""
Test database lifecycle.

A `TestDatabase` is created for one test. Setup resolves the run mode,
optionally acquires a shared container, creates a uniquely named logical
database and applies migrations. Every acquired resource pushes its release
on a teardown stack, which `TestDatabase.close` unwinds in reverse order.
Setup errors propagate to the caller after the stack is unwound; teardown
errors are only logged.
"""
import enum
import logging
import time
import uuid
from contextlib import ExitStack, contextmanager
from typing import Any, Callable, Iterator, Optional, Protocol, TypeVar, Union

from .config import DEFAULT_DOCKER_IMAGE, Options, RunMode, Settings, build_options, dsn_override, get_settings
from .containers import ContainerRegistry, ContainerSpec, dsn_lock, registry as default_registry
from .drivers.base import Driver
from .drivers.factory import get_driver
from .dsn import ConnectionURL, parse_url
from .errors import CleanupError, ConfigurationError, FormatError, MigrationError, TestDockError
from .retry import retry_connect

T = TypeVar("T")

logger = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    CREATED = "created"
    MODE_RESOLVED = "mode_resolved"
    CONTAINER_ACQUIRED = "container_acquired"
    DATABASE_CREATED = "database_created"
    MIGRATIONS_APPLIED = "migrations_applied"
    READY = "ready"
    CLOSED = "closed"


class Informer(Protocol):
    """Read-only view of a provisioned test database."""

    @property
    def dsn(self) -> str:
        """Connection string of the logical database, password included."""

    @property
    def host(self) -> str:
        ...

    @property
    def port(self) -> int:
        ...

    @property
    def database_name(self) -> str:
        ...


def generate_database_name() -> str:
    """Return ``t_<timestamp>_<uuid>``, safe to use as an unquoted identifier."""
    name = f"t_{time.strftime('%Y_%m%d_%H%M_%S')}_{uuid.uuid4()}"
    return name.replace("-", "")


class TestDatabase:
    """
    One test's disposable database.

    Use `create` (or `provision`) rather than the constructor; the
    constructor only records its inputs.
    """

    __test__ = False

    def __init__(
        self,
        driver: Union[str, Driver],
        dsn: str,
        overrides: Optional[dict] = None,
        settings: Optional[Settings] = None,
        container_registry: Optional[ContainerRegistry] = None,
    ):
        self.driver_name = driver if isinstance(driver, str) else driver.name
        self._driver_arg = driver
        self.driver: Optional[Driver] = None
        self.raw_dsn = dsn
        self.dsn_no_pass = ""
        self.url = ConnectionURL()
        self.mode = RunMode.UNKNOWN
        self.database_name = ""
        self.connect_database = ""
        self.options = Options()
        self.logger = logger
        self.state = LifecycleState.CREATED

        self._overrides = dict(overrides or {})
        self._settings = settings
        self._registry = container_registry or default_registry
        self._stack = ExitStack()
        self._dsn_from_env = False

    @classmethod
    def create(
        cls,
        driver: Union[str, Driver],
        dsn: str,
        *,
        settings: Optional[Settings] = None,
        container_registry: Optional[ContainerRegistry] = None,
        **overrides: Any,
    ) -> "TestDatabase":
        """
        Provision a test database.

        Args:
            driver: Driver instance or entry-point name (``psycopg``, ``mysql``, ``mongodb``).
            dsn: Connection string of the server (or the container to start).
            settings: Defaults; `get_settings` when omitted.
            container_registry: Registry to share containers through.
            **overrides: `Options` fields.

        Raises:
            TestDockError: If any setup step fails. Anything already acquired
                is released first.

        """
        db = cls(driver, dsn, overrides, settings, container_registry)
        try:
            db.setup()
        except Exception:
            db.close()
            raise
        return db

    # Informer

    @property
    def host(self) -> str:
        return self.url.host

    @property
    def port(self) -> int:
        return self.url.port

    @property
    def test_url(self) -> ConnectionURL:
        return self.url.replace_database(self.database_name)

    @property
    def dsn(self) -> str:
        """Connection string of the logical database, password included."""
        return self.test_url.to_string()

    # Setup

    def setup(self) -> None:
        if not self._driver_arg:
            raise ConfigurationError("driver is empty")
        self.driver = get_driver(self._driver_arg)
        self.driver_name = self.driver.name or self.driver_name

        settings = self._settings or get_settings()
        mode = self._overrides.get("mode", RunMode.AUTO)
        self.mode = self._resolve_mode(mode)
        if not self.raw_dsn:
            raise ConfigurationError("dsn is empty")

        try:
            self.url = parse_url(self.raw_dsn)
        except FormatError as e:
            raise FormatError(f"parse dsn: {e}") from e
        self.dsn_no_pass = self.url.to_string(hide_password=True)

        overrides = dict(self._overrides, mode=self.mode)
        if self._dsn_from_env:
            for key in ("docker_repository", "docker_image", "docker_port", "docker_env"):
                overrides.pop(key, None)
        self.options = build_options(settings, self.driver.default_options(self.url), overrides)
        self.logger = self.options.logger or logger

        if self.options.connect_database is None:
            self.connect_database = self.url.database
        else:
            self.connect_database = self.options.connect_database

        self.state = LifecycleState.MODE_RESOLVED
        self.logger.info(
            "Preparing test database.",
            extra={"driver": self.driver_name, "mode": self.mode.name, "dsn": self.dsn_no_pass},
        )

        self.database_name = generate_database_name()

        with dsn_lock(self.raw_dsn):
            if self.mode == RunMode.DOCKER:
                self._acquire_container()
            self.driver.create_logical_database(self)

        if self.mode != RunMode.DOCKER:
            self._push_cleanup(lambda: self.driver.drop_logical_database(self), "drop test database")
        self.state = LifecycleState.DATABASE_CREATED

        if self.options.migrations_dir:
            self._migrate()
            self.state = LifecycleState.MIGRATIONS_APPLIED

        self.state = LifecycleState.READY
        self.logger.info(
            "Test database ready.", extra={"dsn": self.dsn_no_pass, "database": self.database_name}
        )

    def _resolve_mode(self, mode: RunMode) -> RunMode:
        if mode != RunMode.AUTO:
            return mode
        override = dsn_override(self.driver_name)
        if override:
            self.raw_dsn = override
            self._dsn_from_env = True
            return RunMode.EXTERNAL
        return RunMode.DOCKER

    def _acquire_container(self) -> None:
        options = self.options
        if not options.docker_repository:
            raise ConfigurationError("docker_repository is empty")
        spec = ContainerSpec(
            repository=options.docker_repository,
            tag=options.docker_image or DEFAULT_DOCKER_IMAGE,
            container_port=options.docker_port or self.url.port,
            host_ip=self.url.host,
            env=dict(options.docker_env),
            socket_endpoint=options.docker_socket_endpoint,
            unset_proxy_env=options.unset_proxy_env,
        )
        lease = self._registry.acquire(self.raw_dsn, spec, self.url, self.logger)
        self._push_cleanup(lease.release, "release container")
        self.state = LifecycleState.CONTAINER_ACQUIRED

    def _migrate(self) -> None:
        self.logger.info("Migrations up start.", extra={"migrations_dir": self.options.migrations_dir})
        try:
            migrator = self.options.migrator_factory(self.dsn, self.options.migrations_dir, self.logger)
            migrator.up()
        except MigrationError:
            raise
        except Exception as e:
            raise MigrationError(f"migrations up: {e}") from e
        self.logger.info("Migrations up end.", extra={"migrations_dir": self.options.migrations_dir})

    def retry(self, operation: Callable[[], T], description: str = "") -> T:
        """Run ``operation`` with this database's retry settings."""
        return retry_connect(
            operation,
            interval=self.options.retry_timeout,
            timeout=self.options.total_retry_duration,
            description=description,
            log=self.logger,
        )

    # Connections and teardown

    def connect(self) -> Any:
        """
        Open a connection to the logical database.

        The connection is closed on `close`, before the container is released.
        """
        if self.state != LifecycleState.READY:
            raise TestDockError(f"test database is not ready: {self.state.value}")
        connection = self.driver.connect(self)
        self._push_cleanup(lambda: self.driver.close(connection), "close connection")
        return connection

    def _push_cleanup(self, callback: Callable[[], None], what: str) -> None:
        def run() -> None:
            try:
                callback()
            except Exception as e:
                error = CleanupError(f"{what}: {e}")
                self.logger.error(
                    "Cleanup step failed.",
                    extra={"step": what, "database": self.database_name, "error": str(error)},
                )

        self._stack.callback(run)

    def close(self) -> None:
        """Tear everything down in reverse order. Safe to call repeatedly."""
        if self.state == LifecycleState.CLOSED:
            return
        self.state = LifecycleState.CLOSED
        self._stack.close()
        self.logger.info("Test database closed.", extra={"database": self.database_name})

    def __enter__(self) -> "TestDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


@contextmanager
def provision(driver: Union[str, Driver], dsn: str, **overrides: Any) -> Iterator[TestDatabase]:
    """Provision a test database for the duration of a ``with`` block."""
    db = TestDatabase.create(driver, dsn, **overrides)
    try:
        yield db
    finally:
        db.close()
