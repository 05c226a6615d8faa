"""Source control drivers.

Drivers are registered by name and selected with the ``scm`` option.
"""

from ..exceptions import ConfigurationError
from .base import SourceContext, SourceDriver
from .subversion import Subversion

DRIVERS: dict[str, type[SourceDriver]] = {
    "subversion": Subversion,
    "svn": Subversion,
}


def get_driver(name: str) -> SourceDriver:
    """Instantiate the driver registered under ``name``.

    Raises:
        ConfigurationError: If no driver has that name
    """
    try:
        driver_class = DRIVERS[name.lower()]
    except KeyError:
        valid = ", ".join(sorted(DRIVERS))
        raise ConfigurationError(
            f"Unknown scm {name!r}. Valid drivers: {valid}", option="scm"
        ) from None
    return driver_class()


__all__ = ["DRIVERS", "SourceContext", "SourceDriver", "Subversion", "get_driver"]
