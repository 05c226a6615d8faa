"""Subversion source driver."""

import logging
import re
import shlex

from ..config import DeployConfig
from ..exceptions import (
    ConfigurationError,
    DeployError,
    HostCommandError,
    RevisionNotFoundError,
)
from ..prompts import PromptRule, scm_password_rules
from .base import SourceContext, SourceDriver

logger = logging.getLogger(__name__)

# First line of a log entry: "r1967 | minam | 2005-08-03 06:59:03 -0600 ..."
REVISION_HEADER = re.compile(r"^r(\d+)\s+\|")

# A URL reduced to its scheme ("svn:", "file://") cannot be shortened further
_URL_ROOT = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:/*$")


def parse_revision(log_output: str) -> str | None:
    """Return the revision number of the first log entry header, if any."""
    for line in log_output.splitlines():
        match = REVISION_HEADER.match(line)
        if match:
            return match.group(1)
    return None


def parent_path(path: str) -> str | None:
    """Return the path one directory up, or None at the top.

    Example:
        >>> parent_path("/hello/world")
        '/hello'
        >>> parent_path("/hello")
        '/'
        >>> parent_path("svn://example.com") is None
        True
    """
    trimmed = path.rstrip("/")
    head, sep, _ = trimmed.rpartition("/")
    if not sep:
        return None
    if not head:
        return "/" if trimmed else None
    if _URL_ROOT.match(head):
        return None
    return head


class Subversion(SourceDriver):
    """Deploys from a Subversion repository.

    Commands run with the configured ``scm_executable_path`` and, when set,
    ``--username scm_username``. Password prompts printed by svn are
    answered with the SCM secret for the prompting host.
    """

    name = "subversion"

    def svn(self, config: DeployConfig, subcommand: str, *args: str) -> str:
        """Build an svn command line."""
        parts = [config.scm_executable_path, subcommand]
        if config.scm_username:
            parts.extend(["--username", shlex.quote(config.scm_username)])
        parts.extend(args)
        return " ".join(parts)

    def prompt_rules(self, config: DeployConfig) -> list[PromptRule]:
        return scm_password_rules(config.scm_secret)

    async def checkout(self, context: SourceContext) -> None:
        config = context.config
        revision = config.revision or await self.latest_revision(context)
        subcommand = "export" if config.checkout_mode == "export" else "co"
        release = shlex.quote(config.release_path)
        revision_file = shlex.quote(f"{config.release_path}/REVISION")

        command = self.svn(
            config,
            subcommand,
            "-q",
            f"-r{revision}",
            shlex.quote(config.repository),
            release,
        )
        command += (
            f" && (test -e {revision_file} || echo {shlex.quote(revision)} > {revision_file})"
        )

        logger.info(f"Checking out revision {revision} into {config.release_path}")
        await context.dispatcher.run(context.hosts, command, prompts=self.prompt_rules(config))

    async def update(self, context: SourceContext) -> None:
        config = context.config
        command = self.svn(config, "up", "-q", shlex.quote(config.current_path))
        await context.dispatcher.run(context.hosts, command, prompts=self.prompt_rules(config))

    async def log(self, context: SourceContext, path: str) -> str:
        """Capture the newest log entry for ``path``.

        A non-zero exit (no such path) yields whatever svn printed.

        Raises:
            HostCommandError: If the command could not be run on the host
        """
        config = context.config
        host = context.first_host
        command = self.svn(config, "log", "-q", "--limit", "1", shlex.quote(path))
        results = await context.dispatcher.run(
            [host], command, capture=True, prompts=self.prompt_rules(config)
        )
        result = results[host.name]
        if result.error is not None:
            raise HostCommandError(
                host.name, result.exit_status, f"{result.error}\n{result.output}".rstrip()
            )
        return result.stdout

    async def latest_revision(self, context: SourceContext) -> str:
        """Find the newest revision of the repository.

        Paths without commit history of their own produce no log entry;
        the search then moves one directory up at a time and stops at the
        first ancestor that has one.

        Raises:
            RevisionNotFoundError: If no path up to the root has a log entry
            HostCommandError: If the log query could not be run at all
        """
        repository = context.config.repository
        if not repository:
            raise ConfigurationError("repository is not configured", option="repository")

        path: str | None = repository
        while path is not None:
            revision = parse_revision(await self.log(context, path))
            if revision is not None:
                logger.debug(f"Latest revision of {path} is r{revision}")
                return revision

            logger.debug(f"No log entry for {path}, searching one level up")
            path = parent_path(path)

        raise RevisionNotFoundError(repository)

    async def diff(self, context: SourceContext) -> str:
        """Diff the revision recorded in the current release against head."""
        config = context.config
        revision_file = shlex.quote(f"{config.current_path}/REVISION")
        deployed = (await context.dispatcher.capture(context.first_host, f"cat {revision_file}")).strip()
        if not deployed.isdigit():
            raise DeployError(
                f"cannot determine the deployed revision from {config.current_path}/REVISION",
                output=deployed,
            )

        head = await self.latest_revision(context)
        repository = shlex.quote(config.repository)
        command = self.svn(config, "diff", f"{repository}@{deployed}", f"{repository}@{head}")
        return await context.dispatcher.capture(
            context.first_host, command, prompts=self.prompt_rules(config)
        )
