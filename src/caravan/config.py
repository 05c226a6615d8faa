"""Deployment configuration for caravan.

A ``DeployConfig`` holds every option the tasks and source drivers read.
It is created once per run (from a YAML file plus ``--set`` overrides) and
passed explicitly to everything that needs it. Option names may be written
with hyphens or underscores; names that are not fields land in ``extra``
and stay reachable through ``get``.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .types import HostConfig

logger = logging.getLogger(__name__)

CHECKOUT_MODES = ("checkout", "export")
RUN_METHODS = ("run", "sudo")
MIGRATE_TARGETS = ("current", "latest")
DEFAULT_KEEP_RELEASES = 5

# Older spellings accepted for a few options
ALIASES = {
    "checkout": "checkout_mode",
    "use_sudo": "use_elevated_privilege",
    "scm_executable": "scm_executable_path",
    "svn": "scm_executable_path",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def normalize_option(name: str) -> str:
    """Map an option name to its field spelling (``keep-releases`` -> ``keep_releases``)."""
    key = name.strip().replace("-", "_").lower()
    return ALIASES.get(key, key)


def release_timestamp() -> str:
    """Name for a new release directory; sorts in deployment order."""
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}", option=name)


@dataclass
class DeployConfig:
    """All options for deploying one application.

    Path options left unset are derived from ``deploy_to``:
    ``{deploy_to}/releases``, ``{deploy_to}/shared``, ``{deploy_to}/current``
    and ``{releases_path}/{release_name}``.

    Attributes:
        application: Application name (used for the default deploy_to)
        repository: Source repository URL or path
        deploy_to: Root directory of the deployment on every host
        release_name: Directory name of the release being deployed
        release_path: Directory the new release is checked out into
        releases_path: Directory holding one subdirectory per release
        shared_path: Directory shared between releases (log, system)
        current_path: Symlink pointing at the live release
        scm: Source driver name
        checkout_mode: "checkout" for a working copy, "export" for a clean tree
        scm_executable_path: Path to the SCM client on the hosts
        scm_username: Explicit SCM username
        scm_password: SCM-specific password
        password: System-wide default password (sudo and SCM fallback)
        revision: Revision to deploy (latest when unset)
        use_elevated_privilege: Run privileged tasks through sudo
        run_method: Explicit "run" or "sudo", overriding use_elevated_privilege
        keep_releases: Number of releases cleanup keeps
        migrate_target: Release migrations run in ("current" or "latest")
        migrate_env: Extra environment passed to the migrate task
        rake: Rake executable used by migrate
        rails_env: Environment name passed to migrate
        spinner_user: User the spinner runs as under sudo
        extra: Options without a dedicated field

    Example:
        >>> config = DeployConfig(application="shop", repository="svn://svn/shop/trunk")
        >>> config.current_path
        '/u/apps/shop/current'
        >>> config.get("keep-releases")
        5
    """

    application: str = "app"
    repository: str = ""
    deploy_to: str | None = None
    release_name: str = field(default_factory=release_timestamp)
    release_path: str | None = None
    releases_path: str | None = None
    shared_path: str | None = None
    current_path: str | None = None
    scm: str = "subversion"
    checkout_mode: str = "checkout"
    scm_executable_path: str = "svn"
    scm_username: str | None = None
    scm_password: str | None = None
    password: str | None = None
    revision: str | None = None
    use_elevated_privilege: bool = True
    run_method: str | None = None
    keep_releases: int = DEFAULT_KEEP_RELEASES
    migrate_target: str = "current"
    migrate_env: str = ""
    rake: str = "rake"
    rails_env: str = "production"
    spinner_user: str | None = "app"
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Derive unset paths and validate option values."""
        if self.deploy_to is None:
            self.deploy_to = f"/u/apps/{self.application}"
        self.deploy_to = self.deploy_to.rstrip("/") or "/"

        if self.releases_path is None:
            self.releases_path = f"{self.deploy_to}/releases"
        if self.shared_path is None:
            self.shared_path = f"{self.deploy_to}/shared"
        if self.current_path is None:
            self.current_path = f"{self.deploy_to}/current"
        if self.release_path is None:
            self.release_path = f"{self.releases_path}/{self.release_name}"

        if self.checkout_mode not in CHECKOUT_MODES:
            raise ConfigurationError(
                f"checkout-mode must be one of {', '.join(CHECKOUT_MODES)}, "
                f"got {self.checkout_mode!r}",
                option="checkout-mode",
            )

        if self.run_method is not None and self.run_method not in RUN_METHODS:
            raise ConfigurationError(
                f"run-method must be one of {', '.join(RUN_METHODS)}, got {self.run_method!r}",
                option="run-method",
            )

        self.use_elevated_privilege = _to_bool(
            "use-elevated-privilege", self.use_elevated_privilege
        )

        try:
            self.keep_releases = int(self.keep_releases)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"keep-releases must be an integer, got {self.keep_releases!r}",
                option="keep-releases",
            ) from None
        if self.keep_releases < 1:
            raise ConfigurationError("keep-releases must be at least 1", option="keep-releases")

    @property
    def use_sudo(self) -> bool:
        """Whether privileged tasks run through sudo."""
        if self.run_method is not None:
            return self.run_method == "sudo"
        return self.use_elevated_privilege

    def scm_secret(self, host: HostConfig) -> str | None:
        """Password answering SCM prompts on ``host``.

        A host's own ``scm_password`` wins over the configured
        ``scm_password``, which wins over the system-wide ``password``.
        """
        return host.get_var("scm_password") or self.scm_password or self.password

    def sudo_secret(self, host: HostConfig) -> str | None:
        """Password answering sudo prompts on ``host``."""
        return host.password or self.password

    def get(self, name: str, default: Any = None) -> Any:
        """Look an option up by name, falling back to ``extra``."""
        key = normalize_option(name)
        if key in _FIELD_NAMES:
            return getattr(self, key)
        return self.extra.get(key, default)

    def set(self, name: str, value: Any) -> None:
        """Set an option by name; unknown names are stored in ``extra``."""
        key = normalize_option(name)
        if key in _FIELD_NAMES:
            setattr(self, key, value)
        else:
            self.extra[key] = value

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary with every option, secrets masked."""
        result: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if f.name in ("password", "scm_password") and value:
                value = "********"
            result[f.name] = value
        result.update(self.extra)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeployConfig":
        """Create from a mapping of option names to values."""
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for name, value in data.items():
            key = normalize_option(str(name))
            if key == "extra":
                continue
            if key in _FIELD_NAMES:
                known[key] = value
            else:
                extra[key] = value
        return cls(**known, extra=extra)


_FIELD_NAMES = frozenset(f.name for f in fields(DeployConfig)) - {"extra"}


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> DeployConfig:
    """Load a deployment configuration.

    Args:
        path: YAML file of option names to values (optional)
        overrides: Options applied on top of the file, e.g. from ``--set``

    Returns:
        Validated DeployConfig

    Raises:
        ConfigurationError: If the file is malformed or an option is invalid

    Example:
        >>> config = load_config("deploy.yml", {"keep-releases": "3"})
    """
    data: dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        try:
            loaded = yaml.safe_load(config_path.read_text())
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping of options")
        data.update(loaded)
        logger.debug(f"Loaded {len(loaded)} option(s) from {config_path}")

    if overrides:
        data.update(overrides)

    return DeployConfig.from_dict(data)
