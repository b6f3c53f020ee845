"""Exception hierarchy for testdock."""


class TestDockError(Exception):
    """Base class for every error raised by testdock."""

    __test__ = False


class FormatError(TestDockError, ValueError):
    """Raised when a connection string cannot be parsed."""


class ConfigurationError(TestDockError):
    """Raised for invalid or contradictory options."""


class ProvisionError(TestDockError):
    """Raised when a container cannot be started or the engine is unreachable."""


class RetryExhaustedError(TestDockError):
    """
    Raised when a retried operation keeps failing until its deadline.

    Attributes:
        attempts: How many times the operation was tried.
        last_error: The exception raised by the final attempt.

    """

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ConnectError(TestDockError):
    """Raised when a database connection cannot be established."""


class MigrationError(TestDockError):
    """Raised when applying migrations fails."""


class CleanupError(TestDockError):
    """Describes a teardown failure. Logged, never raised to the test."""
