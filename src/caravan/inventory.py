"""Inventory management for caravan.

An inventory names the hosts of a deployment and the roles they play.
Each top-level group in the inventory file is a role (``app``, ``web``,
``db``, ...); a host listed under several groups has all of those roles.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .types import HostConfig

# Host keys with a dedicated HostConfig field; everything else becomes a var
STANDARD_FIELDS = {"host", "address", "port", "user", "connection"}

DEFAULT_ROLES = ("app", "web", "db")


@dataclass
class Inventory:
    """Hosts of a deployment, indexed by name and by role.

    Attributes:
        hosts: Mapping of host name to HostConfig (roles included)
        roles: Mapping of role name to member host names, in file order

    Example:
        >>> inventory = Inventory()
        >>> inventory.add_host(HostConfig(name="app01", address="10.0.0.1"), "app")
        >>> inventory.add_host(HostConfig(name="app01", address="10.0.0.1"), "web")
        >>> sorted(inventory.get_host("app01").roles)
        ['app', 'web']
    """

    hosts: dict[str, HostConfig] = field(default_factory=dict)
    roles: dict[str, list[str]] = field(default_factory=dict)

    def add_host(self, host: HostConfig, role: str | None = None) -> None:
        """Add a host, optionally as a member of ``role``.

        Adding a host that is already known only extends its roles; the
        first definition of its connection details is kept.
        """
        existing = self.hosts.get(host.name)
        if existing is None:
            existing = host
        if role is not None:
            existing = existing.with_role(role)
            members = self.roles.setdefault(role, [])
            if host.name not in members:
                members.append(host.name)
        self.hosts[host.name] = existing

    def get_host(self, name: str) -> HostConfig | None:
        return self.hosts.get(name)

    def hosts_in_role(self, role: str) -> list[HostConfig]:
        return [self.hosts[name] for name in self.roles.get(role, [])]

    def list_roles(self) -> list[str]:
        return list(self.roles)

    def get_all_hosts(self) -> dict[str, HostConfig]:
        return dict(self.hosts)


def load_inventory(inventory_file: str | Path, require_hosts: bool = True) -> Inventory:
    """Load an inventory file, auto-detecting JSON or YAML.

    YAML files map each role to a ``hosts`` mapping; JSON files use the
    Ansible ``--list`` layout (role -> host name list, plus
    ``_meta.hostvars``).

    Args:
        inventory_file: Path to the inventory file
        require_hosts: Raise ValueError when the file defines no hosts

    Returns:
        Inventory with every host and its roles

    Raises:
        ValueError: If require_hosts is True and no hosts are loaded

    Example:
        >>> inventory = load_inventory("hosts.yml")
    """
    path = Path(inventory_file)
    content = path.read_text()

    if content.lstrip().startswith("{"):
        inventory = load_inventory_json(json.loads(content))
    else:
        inventory = _load_inventory_yaml(yaml.safe_load(content))

    if require_hosts and not inventory.hosts:
        raise ValueError(f"No hosts loaded from inventory {path}")

    return inventory


def _load_inventory_yaml(data: dict[str, Any] | None) -> Inventory:
    """Load inventory from parsed YAML data.

    Expected structure:

        app:
          hosts:
            app01:
              host: 10.0.0.1
              user: deploy
          vars:
            password: s3cret

        db:
          hosts:
            db01:
              host: 10.0.0.3
              primary: true

    Group ``vars`` are applied to every host of the group; host keys win.
    """
    inventory = Inventory()
    if not data:
        return inventory

    for role, group_data in data.items():
        if not isinstance(group_data, dict):
            continue

        group_vars = group_data.get("vars") or {}
        hosts = group_data.get("hosts") or {}
        if not isinstance(hosts, dict):
            continue

        for host_name, host_data in hosts.items():
            if not isinstance(host_data, dict):
                host_data = {}
            inventory.add_host(_host_from_vars(host_name, {**group_vars, **host_data}), role)

    return inventory


def load_inventory_json(data: dict[str, Any]) -> Inventory:
    """Load inventory from the Ansible JSON ``--list`` format.

    Example:
        >>> data = {
        ...     "app": {"hosts": ["app01"]},
        ...     "_meta": {"hostvars": {"app01": {"host": "10.0.0.1"}}}
        ... }
        >>> inventory = load_inventory_json(data)
    """
    hostvars = data.get("_meta", {}).get("hostvars", {})
    inventory = Inventory()

    for role, group_data in data.items():
        if role == "_meta" or not isinstance(group_data, dict):
            continue

        group_vars = group_data.get("vars") or {}
        hosts_list = group_data.get("hosts", [])
        if not isinstance(hosts_list, list):
            continue

        for host_name in hosts_list:
            host_data = hostvars.get(host_name, {})
            if not isinstance(host_data, dict):
                host_data = {}
            inventory.add_host(_host_from_vars(host_name, {**group_vars, **host_data}), role)

    return inventory


def _host_from_vars(host_name: str, host_data: dict[str, Any]) -> HostConfig:
    """Create a HostConfig from a host's variables."""
    return HostConfig(
        name=host_name,
        address=host_data.get("host") or host_data.get("address") or host_name,
        port=int(host_data.get("port", 22)),
        user=host_data.get("user"),
        connection=host_data.get("connection", "ssh"),
        vars={k: v for k, v in host_data.items() if k not in STANDARD_FIELDS},
    )


def load_localhost(roles: tuple[str, ...] = DEFAULT_ROLES) -> Inventory:
    """Inventory with the control node as the only host, in every role.

    The host is marked ``primary`` so tasks restricted to the primary
    database host run on it too.
    """
    inventory = Inventory()
    localhost = HostConfig(
        name="localhost",
        address="127.0.0.1",
        connection="local",
        vars={"primary": True},
    )
    for role in roles:
        inventory.add_host(localhost, role)
    return inventory
