import threading
import time
from typing import Any, Dict, List

import pytest

from testdock.config import Settings
from testdock.containers import ContainerRegistry, ContainerSpec, TestcontainersEngine
from testdock.drivers.base import Driver


class FakeContainer:
    def __init__(self, spec: ContainerSpec, host_port: int):
        self.spec = spec
        self.host_port = host_port


class FakeEngine:
    """In-memory container engine that records what it was asked to do."""

    def __init__(self):
        self.runs: List[FakeContainer] = []
        self.purged: List[FakeContainer] = []
        self.taken_ports = set()
        self.run_errors: List[Exception] = []
        self.purge_errors: List[Exception] = []
        self.ping_error = None
        self.run_delay = 0.0
        self.closed = 0
        self.active_starts = 0
        self.max_active_starts = 0
        self._lock = threading.Lock()

    def ping(self) -> None:
        if self.ping_error:
            raise self.ping_error

    def run(self, spec: ContainerSpec, host_port: int) -> FakeContainer:
        with self._lock:
            self.active_starts += 1
            self.max_active_starts = max(self.max_active_starts, self.active_starts)
        try:
            if self.run_delay:
                time.sleep(self.run_delay)
            if host_port in self.taken_ports:
                raise RuntimeError(
                    f"Bind for {spec.host_ip}:{host_port} failed: port is already allocated"
                )
            if self.run_errors:
                raise self.run_errors.pop(0)
            container = FakeContainer(spec, host_port)
            self.runs.append(container)
            return container
        finally:
            with self._lock:
                self.active_starts -= 1

    def purge(self, handle: FakeContainer) -> None:
        if self.purge_errors:
            raise self.purge_errors.pop(0)
        self.purged.append(handle)

    def close(self) -> None:
        self.closed += 1


class FakeDriver(Driver):
    """Driver that records lifecycle calls instead of talking to a database."""

    name = "fake"

    def __init__(self, events: List[str] = None, defaults: Dict[str, Any] = None):
        self.events = events if events is not None else []
        self.defaults = defaults if defaults is not None else {"docker_repository": "fake-db"}
        self.create_error = None
        self.drop_error = None
        self.create_delay = 0.0
        self.created: List[str] = []
        self.dropped: List[str] = []
        self.active_creates = 0
        self.max_active_creates = 0
        self._lock = threading.Lock()

    def default_options(self, url):
        return dict(self.defaults)

    def create_logical_database(self, db) -> None:
        with self._lock:
            self.active_creates += 1
            self.max_active_creates = max(self.max_active_creates, self.active_creates)
        try:
            if self.create_delay:
                time.sleep(self.create_delay)
            if self.create_error:
                raise self.create_error
            self.created.append(db.database_name)
            self.events.append("create")
        finally:
            with self._lock:
                self.active_creates -= 1

    def drop_logical_database(self, db) -> None:
        self.events.append("drop")
        if self.drop_error:
            raise self.drop_error
        self.dropped.append(db.database_name)

    def connect(self, db):
        self.events.append("connect")
        return {"dsn": db.dsn}

    def close(self, connection) -> None:
        self.events.append("close")


class RecordingEngine(FakeEngine):
    """FakeEngine that appends purge events to a shared list."""

    def __init__(self, events: List[str]):
        super().__init__()
        self.events = events

    def purge(self, handle: FakeContainer) -> None:
        super().purge(handle)
        self.events.append("purge")


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def container_registry(engine: FakeEngine) -> ContainerRegistry:
    """A registry isolated from the process-wide one, with short delays."""
    return ContainerRegistry(
        engine_factory=lambda endpoint: engine,
        start_retry_delay=0,
        purge_interval=0.01,
        purge_timeout=0.1,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, retry_timeout=0.01, total_retry_duration=0.05)


@pytest.fixture(autouse=True)
def clean_dsn_env(monkeypatch):
    """Make sure no TESTDOCK_DSN_* override leaks in from the environment."""
    import os

    for name in list(os.environ):
        if name.startswith("TESTDOCK_"):
            monkeypatch.delenv(name)


@pytest.fixture(scope="session")
def docker_available() -> None:
    """Skip integration tests when no Docker daemon is reachable."""
    try:
        engine = TestcontainersEngine()
        engine.ping()
        engine.close()
    except Exception as e:
        pytest.skip(f"Skipping integration tests: Docker not available. Error: {e}")
