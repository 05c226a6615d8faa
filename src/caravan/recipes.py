"""Standard deployment tasks.

The recipes assume a conventional layout and role split:

* The ``app`` role holds the application servers.
* The ``web`` role holds the web servers.
* The ``db`` role holds the database servers, exactly one of them marked
  ``primary: true``.
* The application ships ``script/process/reaper`` (restart) and
  ``script/spin`` (spinner) scripts.

Every top-level task runs inside a transaction. ``deploy`` additionally
runs ``update_code`` and ``symlink`` in a transaction of their own, so a
failed symlink removes the freshly checked out release again.
"""

import functools
import inspect
import logging
import os
import shlex
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from jinja2 import Template
from rich.console import Console
from rich.table import Table

from .config import MIGRATE_TARGETS, DeployConfig
from .dispatcher import Dispatcher
from .exceptions import CaravanError, ConfigurationError, DeployError
from .inventory import Inventory
from .logging import log_performance, log_scope
from .prompts import sudo_password_rule
from .roles import resolve_hosts
from .scm import SourceContext, SourceDriver, get_driver
from .transaction import Action, Transaction
from .transport import TransportFactory
from .types import Command, HostConfig, HostResult

logger = logging.getLogger(__name__)

MAINTENANCE_TEMPLATE = Template(
    """<!DOCTYPE html>
<html>
  <head>
    <title>System down for maintenance</title>
  </head>
  <body>
    <h1>We're currently down for maintenance</h1>
    <p>
      The system is down for {{ reason or "maintenance" }}
      as of {{ started }}.
    </p>
    <p>
      It'll be back {{ deadline or "shortly" }}.
    </p>
  </body>
</html>
"""
)

TaskFunction = Callable[["Deployment"], Awaitable[None]]


@dataclass(frozen=True)
class TaskDefinition:
    """A named task and the hosts it applies to.

    Attributes:
        name: Task name, also the CLI subcommand
        func: Coroutine function taking the Deployment
        desc: Description shown by show_tasks
        roles: Roles the task runs on (None for every host)
        only: Host variables selected hosts must have
    """

    name: str
    func: TaskFunction
    desc: str = ""
    roles: tuple[str, ...] | None = None
    only: dict[str, Any] | None = None


TASKS: dict[str, TaskDefinition] = {}


def task(
    roles: tuple[str, ...] | None = None,
    only: dict[str, Any] | None = None,
) -> Callable[[TaskFunction], TaskFunction]:
    """Register a Deployment method as a task; its docstring is the description."""

    def decorator(func: TaskFunction) -> TaskFunction:
        TASKS[func.__name__] = TaskDefinition(
            name=func.__name__,
            func=func,
            desc=inspect.cleandoc(func.__doc__ or ""),
            roles=roles,
            only=only,
        )
        return func

    return decorator


ALL_ROLES = ("app", "db", "web")


class Deployment:
    """Runs deployment tasks against an inventory.

    Attributes:
        config: Deployment configuration
        inventory: Hosts and their roles
        dispatcher: Dispatcher running commands on hosts
        source: Source driver selected by ``config.scm``
        limit: Optional host limit pattern applied to every task
        console: Rich console for task output (task list, diffs)
        history: Every transaction run so far, outermost first

    Example:
        >>> deployment = Deployment(load_config("deploy.yml"), load_inventory("hosts.yml"))
        >>> await deployment.execute("deploy")
        >>> await deployment.close()
    """

    def __init__(
        self,
        config: DeployConfig,
        inventory: Inventory,
        transports: TransportFactory | None = None,
        dispatcher: Dispatcher | None = None,
        source: SourceDriver | None = None,
        limit: str | None = None,
        console: Console | None = None,
    ) -> None:
        self.config = config
        self.inventory = inventory
        self.transports = transports or TransportFactory()
        self.dispatcher = dispatcher or Dispatcher(self.transports)
        self.source = source or get_driver(config.scm)
        self.limit = limit
        self.console = console or Console()
        self.history: list[Transaction] = []
        self._transactions: list[Transaction] = []
        self._task_stack: list[TaskDefinition] = []

    @property
    def tasks(self) -> dict[str, TaskDefinition]:
        return TASKS

    # -- task execution ---------------------------------------------------

    async def execute(self, name: str) -> Transaction:
        """Run a task as a top-level transaction.

        Returns the committed transaction; on failure the transaction has
        been rolled back and the original error propagates.
        """
        self._definition(name)
        tx = Transaction(name)
        tx.add_step(name, functools.partial(self.invoke, name))
        await self._run_transaction(tx)
        return tx

    async def invoke(self, name: str) -> None:
        """Run a task inside whatever transaction is active."""
        definition = self._definition(name)
        self._task_stack.append(definition)
        try:
            with log_scope(logger, "executing task", task=name), log_performance(logger, name):
                await definition.func(self)
        finally:
            self._task_stack.pop()

    async def transaction(self, *names: str) -> Transaction:
        """Run tasks as the steps of a nested transaction."""
        tx = Transaction(",".join(names))
        for name in names:
            tx.add_step(name, functools.partial(self.invoke, name))
        await self._run_transaction(tx)
        return tx

    def on_rollback(self, action: Action) -> None:
        """Register an undo action for the running task.

        Outside a transaction there is nothing to roll back, so the
        action is dropped.
        """
        if not self._transactions:
            logger.debug("on_rollback outside a transaction ignored")
            return
        self._transactions[-1].on_rollback(action)

    async def _run_transaction(self, tx: Transaction) -> None:
        self.history.append(tx)
        self._transactions.append(tx)
        try:
            await tx.run()
        finally:
            self._transactions.pop()

    def _definition(self, name: str) -> TaskDefinition:
        try:
            return self.tasks[name]
        except KeyError:
            raise CaravanError(f"no such task: {name}", task=name) from None

    # -- helpers used by task bodies -------------------------------------

    @property
    def current_task(self) -> TaskDefinition:
        if not self._task_stack:
            raise RuntimeError("no task is running")
        return self._task_stack[-1]

    @property
    def current_hosts(self) -> list[HostConfig]:
        """Hosts the running task applies to."""
        definition = self.current_task
        return resolve_hosts(
            self.inventory,
            definition.roles,
            only=definition.only,
            limit=self.limit,
            task=definition.name,
        )

    async def run(
        self,
        command: str,
        hosts: list[HostConfig] | None = None,
    ) -> dict[str, HostResult]:
        """Run a command on the task's hosts as the login user."""
        return await self.dispatcher.run(hosts or self.current_hosts, Command(command))

    async def sudo(
        self,
        command: str,
        user: str | None = None,
        hosts: list[HostConfig] | None = None,
    ) -> dict[str, HostResult]:
        """Run a command on the task's hosts through sudo."""
        return await self.dispatcher.run(
            hosts or self.current_hosts,
            Command(command, sudo=True, sudo_user=user, pty=True),
            prompts=[sudo_password_rule(self.config.sudo_secret)],
        )

    async def run_privileged(
        self,
        command: str,
        user: str | None = None,
        hosts: list[HostConfig] | None = None,
    ) -> dict[str, HostResult]:
        """Run with sudo or as the login user, depending on configuration."""
        if self.config.use_sudo:
            return await self.sudo(command, user=user, hosts=hosts)
        return await self.run(command, hosts=hosts)

    async def releases(self) -> list[str]:
        """Names of the deployed releases, oldest first."""
        host = self.current_hosts[0]
        results = await self.dispatcher.run(
            [host], Command(f"ls -x {shlex.quote(self.config.releases_path)}")
        )
        return sorted(results[host.name].stdout.split())

    def release_dir(self, release: str) -> str:
        return f"{self.config.releases_path}/{release}"

    def source_context(self) -> SourceContext:
        return SourceContext(self.dispatcher, self.current_hosts, self.config)

    async def close(self) -> None:
        """Close every connection opened by this deployment."""
        await self.transports.close()

    # -- tasks --------------------------------------------------------------

    @task()
    async def show_tasks(self) -> None:
        """Enumerate and describe every available task."""
        table = Table(title="Available tasks", show_lines=False)
        table.add_column("Task", style="bold")
        table.add_column("Description")
        for name in sorted(self.tasks):
            table.add_row(name, " ".join(self.tasks[name].desc.split()))
        self.console.print(table)

    @task(roles=ALL_ROLES)
    async def setup(self) -> None:
        """Set up the expected application directory structure on all boxes."""
        releases = shlex.quote(self.config.releases_path)
        shared = self.config.shared_path
        await self.run(
            f"mkdir -p -m 775 {releases} {shlex.quote(shared + '/system')} && "
            f"mkdir -p -m 777 {shlex.quote(shared + '/log')}"
        )

    @task(roles=("web",))
    async def disable_web(self) -> None:
        """Disable the web server by writing a "maintenance.html" file to the web
        servers. The servers must be configured to detect the presence of this
        file, and if it is present, always display it instead of performing the
        request. Set REASON and UNTIL to explain the downtime."""
        hosts = self.current_hosts
        path = f"{self.config.shared_path}/system/maintenance.html"
        self.on_rollback(lambda: self.run(f"rm -f {shlex.quote(path)}", hosts=hosts))

        page = MAINTENANCE_TEMPLATE.render(
            reason=self.config.get("reason") or os.environ.get("REASON"),
            deadline=self.config.get("deadline") or os.environ.get("UNTIL"),
            started=time.strftime("%Y-%m-%d %H:%M:%S %Z"),
        )
        await self.dispatcher.put(hosts, page, path, mode=0o644)

    @task(roles=("web",))
    async def enable_web(self) -> None:
        """Re-enable the web server by deleting any "maintenance.html" file."""
        path = f"{self.config.shared_path}/system/maintenance.html"
        await self.run(f"rm -f {shlex.quote(path)}")

    @task(roles=ALL_ROLES)
    async def update_code(self) -> None:
        """Update all servers with the latest release of the source code.
        All this does is a checkout, as defined by the selected scm driver."""
        hosts = self.current_hosts
        release = shlex.quote(self.config.release_path)
        self.on_rollback(lambda: self.run(f"rm -rf {release}", hosts=hosts))

        await self.source.checkout(self.source_context())

        shared = self.config.shared_path
        release_path = self.config.release_path
        await self.run(
            f"rm -rf {shlex.quote(release_path + '/log')} "
            f"{shlex.quote(release_path + '/public/system')} && "
            f"ln -nfs {shlex.quote(shared + '/log')} {shlex.quote(release_path + '/log')} && "
            f"ln -nfs {shlex.quote(shared + '/system')} "
            f"{shlex.quote(release_path + '/public/system')}"
        )

    @task(roles=ALL_ROLES)
    async def rollback_code(self) -> None:
        """Rollback the latest checked-out version to the previous one by fixing
        the symlinks and deleting the current release from all servers."""
        releases = await self.releases()
        if len(releases) < 2:
            raise DeployError("could not rollback the code because there is no prior release")

        previous = shlex.quote(self.release_dir(releases[-2]))
        latest = shlex.quote(self.release_dir(releases[-1]))
        current = shlex.quote(self.config.current_path)
        # Repoint first so "current" never dangles while the release is removed
        await self.run(f"ln -nfs {previous} {current} && rm -rf {latest}")

    @task(roles=ALL_ROLES)
    async def symlink(self) -> None:
        """Update the 'current' symlink to point to the latest version of the
        application's code."""
        hosts = self.current_hosts
        releases = await self.releases()
        if not releases:
            raise DeployError(f"no releases found in {self.config.releases_path}")

        current = shlex.quote(self.config.current_path)
        if len(releases) > 1:
            previous = shlex.quote(self.release_dir(releases[-2]))
            self.on_rollback(lambda: self.run(f"ln -nfs {previous} {current}", hosts=hosts))

        await self.run(f"ln -nfs {shlex.quote(self.release_dir(releases[-1]))} {current}")

    @task(roles=("app",))
    async def restart(self) -> None:
        """Restart the application processes on the app servers, through sudo
        unless use-elevated-privilege is false."""
        await self.run_privileged(f"{shlex.quote(self.config.current_path)}/script/process/reaper")

    @task(roles=("db",), only={"primary": True})
    async def migrate(self) -> None:
        """Run the migrate rake task on the primary database server. By default
        it runs in the release 'current' points to; set migrate-target to
        "latest" to run it in the most recently checked out release instead.
        migrate-env adds environment variables, rake sets the executable."""
        target = str(self.config.migrate_target)
        if target not in MIGRATE_TARGETS:
            raise ConfigurationError(
                "you must specify one of current or latest for migrate-target",
                option="migrate-target",
            )

        if target == "current":
            directory = self.config.current_path
        else:
            releases = await self.releases()
            if not releases:
                raise DeployError(f"no releases found in {self.config.releases_path}")
            directory = self.release_dir(releases[-1])

        parts = [self.config.rake, f"RAILS_ENV={self.config.rails_env}"]
        if self.config.migrate_env:
            parts.append(self.config.migrate_env)
        parts.append("migrate")
        await self.run(f"cd {shlex.quote(directory)} && {' '.join(parts)}")

    @task()
    async def deploy(self) -> None:
        """A macro-task that updates the code, fixes the symlink, and restarts the
        application servers."""
        await self.transaction("update_code", "symlink")
        await self.invoke("restart")

    @task()
    async def deploy_with_migrations(self) -> None:
        """Similar to deploy, but runs the migrate task on the new release before
        updating the symlink. The update is not transactional because migrations
        are not guaranteed to be reversible."""
        await self.invoke("update_code")

        old_target = self.config.migrate_target
        self.config.set("migrate_target", "latest")
        try:
            await self.invoke("migrate")
        finally:
            self.config.set("migrate_target", old_target)

        await self.invoke("symlink")
        await self.invoke("restart")

    @task()
    async def rollback(self) -> None:
        """A macro-task that rolls back the code and restarts the application
        servers."""
        await self.invoke("rollback_code")
        await self.invoke("restart")

    @task()
    async def diff_from_last_deploy(self) -> None:
        """Display the diff between HEAD and what was last deployed. (Not
        available with all source drivers.)"""
        diff = await self.source.diff(self.source_context())
        self.console.print()
        self.console.print(diff, markup=False, highlight=False)
        self.console.print()

    @task()
    async def update_current(self) -> None:
        """Update the currently released version of the software directly via
        an SCM update operation."""
        await self.source.update(self.source_context())

    @task()
    async def cleanup(self) -> None:
        """Remove unused releases from the releases directory. The last 5
        releases are kept unless keep-releases says otherwise. Runs through
        sudo unless use-elevated-privilege is false."""
        count = self.config.keep_releases
        releases = await self.releases()
        if count >= len(releases):
            logger.warning("no old releases to clean up")
            return

        logger.info(f"keeping {count} of {len(releases)} deployed releases")
        directories = " ".join(
            shlex.quote(self.release_dir(release)) for release in releases[:-count]
        )
        await self.run_privileged(f"rm -rf {directories}")

    @task(roles=("app",))
    async def spinner(self) -> None:
        """Start the spinner daemon for the application (requires script/spin),
        through sudo as spinner-user unless use-elevated-privilege is false."""
        user = self.config.spinner_user if self.config.use_sudo else None
        await self.run_privileged(f"{shlex.quote(self.config.current_path)}/script/spin", user=user)

    @task()
    async def cold_deploy(self) -> None:
        """Used only for deploying when the spinner isn't running. It invokes
        deploy, and when it finishes it then invokes the spinner task."""
        await self.invoke("deploy")
        await self.invoke("spinner")
