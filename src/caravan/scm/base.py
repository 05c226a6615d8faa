"""Source driver interface.

A source driver knows how to get application code out of one kind of
source control system onto the deployment hosts. Drivers build
system-specific shell commands and hand them to the dispatcher; they never
talk to hosts directly.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..config import DeployConfig
from ..dispatcher import Dispatcher
from ..exceptions import UnsupportedOperationError
from ..types import HostConfig


@dataclass
class SourceContext:
    """Everything a driver operation needs.

    Attributes:
        dispatcher: Dispatcher used to run commands
        hosts: Hosts the operation targets
        config: Deployment configuration (repository, paths, credentials)
    """

    dispatcher: Dispatcher
    hosts: list[HostConfig]
    config: DeployConfig

    @property
    def first_host(self) -> HostConfig:
        """Host used for read-only queries such as reading the SCM log."""
        if not self.hosts:
            raise ValueError("source context has no hosts")
        return min(self.hosts, key=lambda h: h.name)


class SourceDriver(ABC):
    """Capabilities every source control backend provides.

    ``diff`` is optional: drivers that cannot produce one inherit the
    default, which raises ``UnsupportedOperationError``.
    """

    name = "scm"

    @abstractmethod
    async def checkout(self, context: SourceContext) -> None:
        """Check out (or export) the repository into the release path."""

    @abstractmethod
    async def update(self, context: SourceContext) -> None:
        """Update the working copy of the current release in place."""

    @abstractmethod
    async def latest_revision(self, context: SourceContext) -> str:
        """Return the newest revision of the configured repository."""

    async def diff(self, context: SourceContext) -> str:
        """Return the diff between the deployed revision and the repository head."""
        raise UnsupportedOperationError(self.name, "diff")
