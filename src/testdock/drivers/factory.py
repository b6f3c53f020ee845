"""Factory for database drivers."""
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Union

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from .base import Driver

DRIVER_GROUP = "testdock.drivers"


def get_driver(driver: Union[str, "Driver"]) -> "Driver":
    """
    Resolve a driver by name through the ``testdock.drivers`` entry points.

    Driver instances are returned unchanged.

    Raises:
        ConfigurationError: If the name is empty or no plugin provides it.

    """
    if not isinstance(driver, str):
        return driver
    if not driver:
        raise ConfigurationError("driver is empty")

    discovered_plugins = entry_points(group=DRIVER_GROUP)

    try:
        plugin = discovered_plugins[driver]
    except KeyError:
        raise ConfigurationError(
            f"Database driver '{driver}' not found. "
            f"Available drivers: {[ep.name for ep in discovered_plugins]}"
        ) from None

    driver_class = plugin.load()
    return driver_class()
