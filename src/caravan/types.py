"""Type definitions for caravan.

This module defines the core data types shared by the transport,
dispatcher, source drivers and recipes: the hosts commands run on, the
commands themselves, and the per-host outcome of running one.
"""

import shlex
from dataclasses import dataclass, field
from typing import Any

# Prompt string handed to ``sudo -p`` so the sudo prompt rule can spot it
SUDO_PROMPT = "sudo password: "


@dataclass(frozen=True)
class HostConfig:
    """Configuration for a single host in the deployment inventory.

    Attributes:
        name: Unique identifier for the host (e.g., "app01", "db-primary")
        address: Hostname or IP address to connect to
        port: SSH port number (default: 22)
        user: Username for SSH authentication (None for the current user)
        connection: Connection type - "ssh" for remote, "local" for the
            control node itself
        roles: Names of the roles (inventory groups) the host belongs to
        vars: Additional host-specific options (password, scm_password,
            primary, ...)

    Example:
        >>> host = HostConfig(
        ...     name="app01",
        ...     address="192.168.1.10",
        ...     roles=frozenset({"app", "web"}),
        ... )
        >>> host.has_role("web")
        True
        >>> host.is_local
        False
    """

    name: str
    address: str
    port: int = 22
    user: str | None = None
    connection: str = "ssh"
    roles: frozenset[str] = frozenset()
    vars: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_local(self) -> bool:
        """Check if this host runs commands on the control node."""
        return self.connection == "local"

    @property
    def password(self) -> str | None:
        """Host-specific login/sudo password, if configured."""
        return self.vars.get("password")

    def has_role(self, role: str) -> bool:
        """Check whether the host belongs to a role."""
        return role in self.roles

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get a host variable by key with optional default."""
        return self.vars.get(key, default)

    def with_role(self, role: str) -> "HostConfig":
        """Return a copy of this host that also belongs to ``role``."""
        return HostConfig(
            name=self.name,
            address=self.address,
            port=self.port,
            user=self.user,
            connection=self.connection,
            roles=self.roles | {role},
            vars=self.vars,
        )


@dataclass(frozen=True)
class Command:
    """A shell command plus the options it is executed with.

    Attributes:
        text: Shell command line, treated as opaque
        sudo: Run the command through ``sudo``
        sudo_user: User to run as when ``sudo`` is set (default root)
        pty: Request a pseudo-terminal for the channel

    Example:
        >>> Command("uptime").render()
        'uptime'
        >>> Command("whoami", sudo=True, sudo_user="app").render()
        "sudo -p 'sudo password: ' -u app sh -c whoami"
    """

    text: str
    sudo: bool = False
    sudo_user: str | None = None
    pty: bool = False

    def render(self) -> str:
        """Build the shell string sent to the remote host."""
        if not self.sudo:
            return self.text

        parts = ["sudo", "-p", shlex.quote(SUDO_PROMPT)]
        if self.sudo_user:
            parts.extend(["-u", self.sudo_user])
        parts.extend(["sh", "-c", shlex.quote(self.text)])
        return " ".join(parts)

    def __str__(self) -> str:
        return self.render()


@dataclass
class HostResult:
    """Outcome of running one command on one host.

    Attributes:
        host_name: Name of the host the command ran on
        exit_status: Remote exit status (-1 for a connection error)
        output: All output in arrival order, both streams interleaved
        stdout: Standard output only
        stderr: Diagnostic output only
        error: Connection error message, if the channel failed to run
    """

    host_name: str
    exit_status: int
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        """Check if the command completed with a zero exit status."""
        return self.exit_status == 0 and self.error is None
