"""
Shared database containers.

Every distinct connection string gets at most one running container per
process. Tests asking for the same connection string share it, and the last
one to release it tears it down. The registry uses two lock tiers: a global
lock for the key table and the engine client, and a per-registration lock
around container start and reference counting, so unrelated keys provision
concurrently.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from testcontainers.core.container import DockerContainer
from testcontainers.core.docker_client import DockerClient

from .dsn import ConnectionURL
from .errors import ProvisionError, RetryExhaustedError
from .retry import retry_connect

logger = logging.getLogger(__name__)

PROXY_ENV = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy")
BIND_ERRORS = ("bind: address already in use", "port is already allocated")


@dataclass
class ContainerSpec:
    """What to run and how to publish it."""

    repository: str
    tag: str
    container_port: int
    host_ip: str
    env: Dict[str, str] = field(default_factory=dict)
    socket_endpoint: str = ""
    unset_proxy_env: bool = False

    @property
    def image(self) -> str:
        return f"{self.repository}:{self.tag}"


class ContainerEngine(Protocol):
    """The container runtime operations testdock needs."""

    def ping(self) -> None:
        """Raise if the daemon is unreachable."""

    def run(self, spec: ContainerSpec, host_port: int) -> Any:
        """Start a container publishing ``spec.container_port`` on ``host_port``."""

    def purge(self, handle: Any) -> None:
        """Stop and remove a container started by `run`."""

    def close(self) -> None:
        """Release the client."""


class TestcontainersEngine:
    """`ContainerEngine` backed by testcontainers and the Docker SDK."""

    __test__ = False

    def __init__(self, socket_endpoint: str = ""):
        self._client_kw: Dict[str, Any] = {}
        if socket_endpoint:
            self._client_kw["environment"] = {**os.environ, "DOCKER_HOST": socket_endpoint}
        self._client = DockerClient(**self._client_kw)

    def ping(self) -> None:
        self._client.client.ping()

    def run(self, spec: ContainerSpec, host_port: int) -> DockerContainer:
        container = DockerContainer(
            spec.image,
            docker_client_kw=self._client_kw,
            restart_policy={"Name": "no"},
        ).with_bind_ports(f"{spec.container_port}/tcp", (spec.host_ip, host_port))
        for key, value in spec.env.items():
            container.with_env(key, value)
        container.start()
        return container

    def purge(self, handle: DockerContainer) -> None:
        handle.stop()

    def close(self) -> None:
        self._client.client.close()


def is_port_conflict(error: BaseException) -> bool:
    """Tell whether a start failure means the host port is taken."""
    message = str(error)
    return any(bind_error in message for bind_error in BIND_ERRORS)


def unset_proxy_env(log: logging.Logger) -> None:
    """Remove proxy variables that break talking to the Docker daemon."""
    for name in PROXY_ENV:
        if os.environ.get(name):
            log.info("Unsetting proxy environment variable.", extra={"variable": name})
            del os.environ[name]


class _Registration:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.handle: Any = None
        self.port = 0
        self.count = 0
        self.removed = False


class ContainerLease:
    """One acquirer's reference to a shared container."""

    def __init__(self, registry: "ContainerRegistry", key: str, registration: _Registration,
                 log_dsn: str, log: logging.Logger):
        self._registry = registry
        self._key = key
        self._registration = registration
        self._log_dsn = log_dsn
        self._log = log
        self._released = False
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self._registration.port

    @property
    def handle(self) -> Any:
        return self._registration.handle

    def release(self) -> None:
        """Drop this reference. Calling it again is a no-op."""
        with self._lock:
            if self._released:
                return
            self._released = True
        self._registry._release(self._key, self._registration, self._log_dsn, self._log)


class ContainerRegistry:
    """
    Process-wide table of running containers keyed by connection string.

    Args:
        engine_factory: Builds the engine from a socket endpoint.
        max_start_attempts: Start attempts for errors other than port conflicts.
        start_retry_delay: Seconds between those attempts.
        max_port_bumps: Upper bound on consecutive port increments.
        purge_interval: Seconds between purge attempts.
        purge_timeout: Ceiling on purge retries, in seconds.

    """

    def __init__(
        self,
        engine_factory: Callable[[str], ContainerEngine] = TestcontainersEngine,
        max_start_attempts: int = 10,
        start_retry_delay: float = 5.0,
        max_port_bumps: int = 100,
        purge_interval: float = 1.0,
        purge_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._engine_factory = engine_factory
        self._max_start_attempts = max_start_attempts
        self._start_retry_delay = start_retry_delay
        self._max_port_bumps = max_port_bumps
        self._purge_interval = purge_interval
        self._purge_timeout = purge_timeout
        self._sleep = sleep

        self._lock = threading.Lock()
        self._registrations: Dict[str, _Registration] = {}
        self._engine: Optional[ContainerEngine] = None
        self._pending_purges = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._registrations)

    @property
    def engine(self) -> Optional[ContainerEngine]:
        return self._engine

    def acquire(
        self,
        key: str,
        spec: ContainerSpec,
        url: ConnectionURL,
        log: Optional[logging.Logger] = None,
    ) -> ContainerLease:
        """
        Get a reference to the container for ``key``, starting it if needed.

        ``url.port`` is the requested host port. It is overwritten with the
        port the container is actually bound to, which differs when the
        requested one was taken or an earlier acquirer already resolved it.

        Raises:
            ProvisionError: If the engine is unreachable or the container
                cannot be started.

        """
        log = log or logger
        log_dsn = url.to_string(hide_password=True)

        while True:
            registration, engine = self._lookup(key, spec, log)
            with registration.lock:
                if registration.removed:
                    continue

                if registration.count == 0:
                    try:
                        registration.handle = self._start(engine, spec, url, log_dsn, log)
                    except ProvisionError:
                        self._discard(key, registration)
                        raise
                    registration.port = url.port
                    log.info("Container started.", extra={"dsn": log_dsn, "image": spec.image, "port": url.port})
                else:
                    url.port = registration.port
                    log.info("Reusing running container.", extra={"dsn": log_dsn, "port": url.port})

                registration.count += 1
                return ContainerLease(self, key, registration, log_dsn, log)

    def _lookup(self, key: str, spec: ContainerSpec, log: logging.Logger):
        with self._lock:
            if self._engine is None:
                if spec.unset_proxy_env:
                    unset_proxy_env(log)
                try:
                    engine = self._engine_factory(spec.socket_endpoint)
                    engine.ping()
                except Exception as e:
                    raise ProvisionError(f"container engine is unreachable: {e}") from e
                self._engine = engine
                log.info("Container engine client created.")

            registration = self._registrations.get(key)
            if registration is None:
                registration = _Registration()
                self._registrations[key] = registration
            return registration, self._engine

    def _start(self, engine: ContainerEngine, spec: ContainerSpec, url: ConnectionURL,
               log_dsn: str, log: logging.Logger) -> Any:
        attempt = 0
        port_bumps = 0
        while True:
            try:
                return engine.run(spec, url.port)
            except Exception as e:
                if is_port_conflict(e) and port_bumps < self._max_port_bumps:
                    port_bumps += 1
                    log.info(
                        "Port is already allocated, trying the next one.",
                        extra={"dsn": log_dsn, "port": url.port + 1},
                    )
                    url.port += 1
                    continue

                attempt += 1
                if attempt >= self._max_start_attempts or is_port_conflict(e):
                    raise ProvisionError(f"start container {spec.image}: {e}") from e

                log.warning(
                    "Container start failed, retrying.",
                    extra={"dsn": log_dsn, "attempt": attempt, "error": str(e)},
                )
                self._sleep(self._start_retry_delay)

    def _discard(self, key: str, registration: _Registration) -> None:
        with self._lock:
            if registration.count == 0 and self._registrations.get(key) is registration:
                registration.removed = True
                del self._registrations[key]
            self._close_engine_if_idle()

    def _close_engine_if_idle(self) -> None:
        if self._registrations or self._pending_purges or self._engine is None:
            return
        engine, self._engine = self._engine, None
        try:
            engine.close()
        except Exception as e:
            logger.warning("Closing the container engine client failed.", extra={"error": str(e)})
        logger.info("Container engine client released.")

    def _release(self, key: str, registration: _Registration, log_dsn: str, log: logging.Logger) -> None:
        with registration.lock:
            registration.count -= 1
            if registration.count > 0:
                return

            with self._lock:
                registration.removed = True
                if self._registrations.get(key) is registration:
                    del self._registrations[key]
                engine = self._engine
                self._pending_purges += 1

            try:
                self._purge(engine, registration.handle, log_dsn, log)
            finally:
                registration.handle = None
                with self._lock:
                    self._pending_purges -= 1
                    self._close_engine_if_idle()

    def _purge(self, engine: Optional[ContainerEngine], handle: Any, log_dsn: str, log: logging.Logger) -> None:
        if engine is None or handle is None:
            return
        try:
            retry_connect(
                lambda: engine.purge(handle),
                interval=self._purge_interval,
                timeout=self._purge_timeout,
                description=log_dsn,
                log=log,
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            log.error("Container purge failed.", extra={"dsn": log_dsn, "attempts": e.attempts, "error": str(e)})
        else:
            log.info("Container purged.", extra={"dsn": log_dsn})


registry = ContainerRegistry()

_dsn_locks_guard = threading.Lock()
_dsn_locks: Dict[str, threading.Lock] = {}


def dsn_lock(dsn: str) -> threading.Lock:
    """Return the process-wide lock for an exact connection string."""
    with _dsn_locks_guard:
        lock = _dsn_locks.get(dsn)
        if lock is None:
            lock = _dsn_locks[dsn] = threading.Lock()
        return lock
