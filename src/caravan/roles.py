"""Role resolution and host limiting.

Maps a task's declared roles and ``only`` filter to the concrete hosts it
runs on, then applies an optional ``--limit`` pattern:

- Exact hostnames: app01,app02
- Glob patterns: app*
- Exclusion patterns: !db*
- Role names: @web
"""

import fnmatch
from typing import Any, Iterable

from .exceptions import NoMatchingHostsError
from .inventory import Inventory
from .types import HostConfig


def parse_limit_pattern(pattern: str) -> tuple[set[str], set[str], set[str], set[str]]:
    """Parse a limit pattern into include/exclude sets.

    Returns:
        Tuple of (include_exact, include_patterns, exclude_patterns, include_roles)
    """
    include_exact: set[str] = set()
    include_patterns: set[str] = set()
    exclude_patterns: set[str] = set()
    include_roles: set[str] = set()

    for part in (pattern or "").split(","):
        part = part.strip()
        if not part:
            continue

        if part.startswith("!"):
            exclude_patterns.add(part[1:])
        elif part.startswith("@"):
            include_roles.add(part[1:])
        elif "*" in part or "?" in part or "[" in part:
            include_patterns.add(part)
        else:
            include_exact.add(part)

    return include_exact, include_patterns, exclude_patterns, include_roles


def match_host(
    host: HostConfig,
    include_exact: set[str],
    include_patterns: set[str],
    exclude_patterns: set[str],
    include_roles: set[str],
) -> bool:
    """Check if a host passes the limit criteria; exclusions always win."""
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(host.name, pattern):
            return False

    if not include_exact and not include_patterns and not include_roles:
        return True

    if host.name in include_exact:
        return True
    if include_roles & host.roles:
        return True
    return any(fnmatch.fnmatch(host.name, pattern) for pattern in include_patterns)


def limit_hosts(hosts: Iterable[HostConfig], limit: str | None) -> list[HostConfig]:
    """Filter hosts through a ``--limit`` pattern (no pattern keeps all)."""
    if not limit:
        return list(hosts)
    criteria = parse_limit_pattern(limit)
    return [host for host in hosts if match_host(host, *criteria)]


def _matches_only(host: HostConfig, only: dict[str, Any]) -> bool:
    return all(host.get_var(key) == value for key, value in only.items())


def resolve_hosts(
    inventory: Inventory,
    roles: Iterable[str] | None = None,
    only: dict[str, Any] | None = None,
    limit: str | None = None,
    task: str = "task",
) -> list[HostConfig]:
    """Resolve the hosts a task runs on.

    Args:
        inventory: Deployment inventory
        roles: Roles the task is declared for (None for every host)
        only: Host variables every selected host must have, e.g.
            ``{"primary": True}``
        limit: Optional ``--limit`` pattern
        task: Task name, for the error message

    Returns:
        Matching hosts, each once, ordered by name

    Raises:
        NoMatchingHostsError: If no host matches

    Example:
        >>> resolve_hosts(inventory, ["db"], only={"primary": True})
        [HostConfig(name='db01', ...)]
    """
    role_list = list(roles) if roles is not None else None

    if role_list is None:
        candidates = inventory.get_all_hosts().values()
    else:
        candidates = [
            host for host in inventory.get_all_hosts().values()
            if any(host.has_role(role) for role in role_list)
        ]

    if only:
        candidates = [host for host in candidates if _matches_only(host, only)]

    hosts = sorted(limit_hosts(candidates, limit), key=lambda h: h.name)
    if not hosts:
        raise NoMatchingHostsError(task, role_list)
    return hosts
