"""Exception types for caravan.

Every error carries a human-readable message plus a ``details`` dict with
the structured fields that describe it, so the CLI can report failures
without parsing messages.
"""

from typing import Any


class CaravanError(Exception):
    """Base class for all caravan errors.

    Attributes:
        msg: Human-readable error message
        details: Structured fields describing the error

    Example:
        raise CaravanError("Release not found", release="20240101120000")
        # details: {"msg": "Release not found", "release": "20240101120000"}
    """

    def __init__(self, msg: str, **details: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.details: dict[str, Any] = {"msg": msg, **details}

    def __str__(self) -> str:
        return self.msg


class ConfigurationError(CaravanError):
    """Raised when a required option is missing or has an invalid value."""

    def __init__(self, msg: str, option: str | None = None, **details: Any) -> None:
        super().__init__(msg, option=option, **details)
        self.option = option


class HostCommandError(CaravanError):
    """A command exited non-zero, or the connection failed, on one host.

    Connection errors are reported with an exit status of -1.
    """

    def __init__(self, host: str, exit_status: int, output: str = "") -> None:
        super().__init__(
            f"command failed on {host} (exit status {exit_status})",
            host=host,
            exit_status=exit_status,
            output=output,
        )
        self.host = host
        self.exit_status = exit_status
        self.output = output


class CommandFailedError(CaravanError):
    """One or more hosts failed during a multi-host dispatch."""

    def __init__(self, command: str, failures: list[HostCommandError]) -> None:
        hosts = ", ".join(f.host for f in failures)
        super().__init__(
            f"command failed on {len(failures)} host(s): {hosts}",
            command=command,
            hosts=[f.host for f in failures],
        )
        self.command = command
        self.failures = failures

    @property
    def hosts(self) -> list[str]:
        """Names of the hosts that failed."""
        return [f.host for f in self.failures]


class RevisionNotFoundError(CaravanError):
    """The log search reached the top of the path without a revision."""

    def __init__(self, path: str) -> None:
        super().__init__(f"no revision found for {path}", path=path)
        self.path = path


class UnsupportedOperationError(CaravanError):
    """A source driver does not implement the requested operation."""

    def __init__(self, driver: str, operation: str) -> None:
        super().__init__(
            f"{operation} is not supported by the {driver} driver",
            driver=driver,
            operation=operation,
        )
        self.driver = driver
        self.operation = operation


class NoMatchingHostsError(CaravanError):
    """Role resolution produced no hosts for a task."""

    def __init__(self, task: str, roles: list[str] | None) -> None:
        super().__init__(
            f"`{task}' is only run for servers matching {roles}, but no servers matched",
            task=task,
            roles=roles,
        )
        self.task = task
        self.roles = roles


class DeployError(CaravanError):
    """A recipe precondition does not hold (e.g. no prior release)."""
