"""Tests for the Subversion source driver."""

import pytest

from caravan.config import DeployConfig
from caravan.exceptions import (
    ConfigurationError,
    DeployError,
    HostCommandError,
    RevisionNotFoundError,
    UnsupportedOperationError,
)
from caravan.scm import DRIVERS, SourceContext, SourceDriver, Subversion, get_driver
from caravan.scm.subversion import parent_path, parse_revision
from caravan.transport import STDOUT

from conftest import WAIT_INPUT

LOG_OUTPUT = """\
------------------------------------------------------------------------
r1967 | minam | 2005-08-03 06:59:03 -0600 (Wed, 03 Aug 2005) | 2 lines
------------------------------------------------------------------------
"""


class ScriptedLog(Subversion):
    """Subversion driver answering log queries from a mapping."""

    def __init__(self, logs):
        self.logs = logs
        self.paths = []

    async def log(self, context, path):
        self.paths.append(path)
        return self.logs.get(path, "")


@pytest.fixture
def svn_config():
    return DeployConfig(
        application="shop",
        repository="svn://svn.example.com/shop/trunk",
        release_name="20240102000000",
        scm_executable_path="/path/to/svn",
        password="chocolatebrownies",
    )


@pytest.fixture
def context(dispatcher, hosts, svn_config):
    return SourceContext(dispatcher, hosts, svn_config)


class TestRevisionParsing:
    """Tests for reading revisions out of svn log output."""

    def test_parse_revision(self):
        """Test the revision number comes from the first entry header."""
        assert parse_revision(LOG_OUTPUT) == "1967"

    def test_parse_revision_without_entries(self):
        """Test log output without an entry yields None."""
        assert parse_revision("-" * 72 + "\n") is None
        assert parse_revision("") is None

    def test_parent_path(self):
        """Test paths shorten one directory at a time."""
        assert parent_path("/hello/world") == "/hello"
        assert parent_path("/hello") == "/"
        assert parent_path("svn://svn.example.com/shop/trunk") == "svn://svn.example.com/shop"
        assert parent_path("svn://svn.example.com") is None


class TestLatestRevision:
    """Tests for finding the newest revision."""

    @pytest.mark.asyncio
    async def test_revision_from_log(self, context):
        """Test the revision is read from the repository's own log."""
        driver = ScriptedLog({context.config.repository: LOG_OUTPUT})

        assert await driver.latest_revision(context) == "1967"
        assert driver.paths == [context.config.repository]

    @pytest.mark.asyncio
    async def test_searches_upward(self, context):
        """Test a path without history falls back to its parent."""
        context.config.repository = "/hello/world"
        driver = ScriptedLog({"/hello": LOG_OUTPUT})

        assert await driver.latest_revision(context) == "1967"
        assert driver.paths == ["/hello/world", "/hello"]

    @pytest.mark.asyncio
    async def test_no_revision_anywhere(self, context):
        """Test the search stops at the top and raises."""
        context.config.repository = "/hello/world"
        driver = ScriptedLog({})

        with pytest.raises(RevisionNotFoundError):
            await driver.latest_revision(context)
        assert driver.paths == ["/hello/world", "/hello", "/"]

    @pytest.mark.asyncio
    async def test_repository_required(self, context):
        """Test an unset repository is a configuration error."""
        context.config.repository = ""

        with pytest.raises(ConfigurationError):
            await Subversion().latest_revision(context)

    @pytest.mark.asyncio
    async def test_log_runs_on_first_host(self, context, transport):
        """Test the log query runs once, on the first host by name."""
        transport.on(r"svn log", output=LOG_OUTPUT)

        assert await Subversion().latest_revision(context) == "1967"
        assert transport.commands() == [
            "/path/to/svn log -q --limit 1 svn://svn.example.com/shop/trunk"
        ]
        assert transport.channels[0].host.name == "app01"

    @pytest.mark.asyncio
    async def test_unreachable_host_raises(self, context, transport, hosts):
        """Test a log query that cannot run fails instead of walking upward."""
        transport.unreachable.update(host.name for host in hosts)

        with pytest.raises(HostCommandError) as exc_info:
            await Subversion().latest_revision(context)

        assert exc_info.value.host == "app01"
        assert "Connection refused" in exc_info.value.output
        assert transport.attempts == ["app01"]

    @pytest.mark.asyncio
    async def test_missing_path_walks_upward(self, context, transport):
        """Test svn log exiting non-zero for a missing path tries the parent."""
        context.config.repository = "svn://svn.example.com/shop/trunk"
        transport.on(r"svn log", output="svn: E160013: path not found\n", exit_status=1)
        transport.on(r"svn log .* svn://svn.example.com/shop$", output=LOG_OUTPUT)

        assert await Subversion().latest_revision(context) == "1967"
        assert transport.commands() == [
            "/path/to/svn log -q --limit 1 svn://svn.example.com/shop/trunk",
            "/path/to/svn log -q --limit 1 svn://svn.example.com/shop",
        ]


class TestCheckout:
    """Tests for checkout, export and update commands."""

    @pytest.mark.asyncio
    async def test_checkout(self, context, transport):
        """Test checkout runs svn co quietly at the latest revision on every host."""
        transport.on(r"svn log", output=LOG_OUTPUT)

        await Subversion().checkout(context)

        checkouts = [c for c in transport.commands() if " co " in c]
        assert len(checkouts) == 3
        assert checkouts[0].startswith(
            "/path/to/svn co -q -r1967 svn://svn.example.com/shop/trunk "
            "/u/apps/shop/releases/20240102000000"
        )
        assert "REVISION" in checkouts[0]

    @pytest.mark.asyncio
    async def test_checkout_configured_revision(self, context, transport):
        """Test an explicit revision skips the log query."""
        context.config.revision = "1900"

        await Subversion().checkout(context)

        assert not any("svn log" in c for c in transport.commands())
        assert all("-r1900" in c for c in transport.commands())

    @pytest.mark.asyncio
    async def test_export(self, context, transport):
        """Test export mode uses svn export."""
        context.config.checkout_mode = "export"
        context.config.revision = "1967"

        await Subversion().checkout(context)

        assert transport.commands()[0].startswith("/path/to/svn export -q -r1967 ")

    @pytest.mark.asyncio
    async def test_username(self, context, transport):
        """Test scm_username adds --username to every svn command."""
        context.config.scm_username = "turtledove"
        context.config.revision = "1967"

        await Subversion().checkout(context)

        assert transport.commands()[0].startswith("/path/to/svn co --username turtledove -q")

    @pytest.mark.asyncio
    async def test_update(self, context, transport):
        """Test update runs svn up on the current release."""
        await Subversion().update(context)

        assert transport.commands() == ["/path/to/svn up -q /u/apps/shop/current"] * 3

    @pytest.mark.asyncio
    async def test_password_prompt_answered(self, context, transport):
        """Test a password prompt during checkout gets the default password."""
        context.config.revision = "1967"
        transport.on(
            r" co ",
            host="app02",
            script=[(STDOUT, "Password: "), WAIT_INPUT, (STDOUT, "Checked out revision 1967.\n")],
        )

        await Subversion().checkout(context)

        assert transport.channel_for("app02", " co ").sent == ["chocolatebrownies\n"]
        assert transport.channel_for("app01", " co ").sent == []

    @pytest.mark.asyncio
    async def test_scm_password_preferred(self, context, transport):
        """Test scm_password answers SCM prompts instead of password."""
        context.config.revision = "1967"
        context.config.password = "the-wrong-one"
        context.config.scm_password = "chocolatebrownies"
        transport.on(r" co ", script=[(STDOUT, "Password for 'jamis': "), WAIT_INPUT])

        await Subversion().checkout(context)

        assert all(channel.sent == ["chocolatebrownies\n"] for channel in transport.channels)


class TestDiff:
    """Tests for diffing the deployed revision against head."""

    @pytest.mark.asyncio
    async def test_diff(self, context, transport):
        """Test the diff spans the recorded and latest revisions."""
        transport.on(r"cat .*REVISION", output="1900\n")
        transport.on(r"svn log", output=LOG_OUTPUT)
        transport.on(r"svn diff", output="Index: app/models/order.rb\n")

        diff = await Subversion().diff(context)

        assert diff == "Index: app/models/order.rb\n"
        assert transport.commands()[-1] == (
            "/path/to/svn diff svn://svn.example.com/shop/trunk@1900 "
            "svn://svn.example.com/shop/trunk@1967"
        )

    @pytest.mark.asyncio
    async def test_diff_without_revision_file(self, context, transport):
        """Test a missing REVISION file is reported."""
        transport.on(r"cat .*REVISION", output="cat: REVISION: No such file\n", exit_status=1)

        with pytest.raises(DeployError):
            await Subversion().diff(context)

    @pytest.mark.asyncio
    async def test_diff_unsupported_by_default(self, context):
        """Test drivers without a diff raise UnsupportedOperationError."""

        class Minimal(SourceDriver):
            name = "minimal"

            async def checkout(self, context):
                pass

            async def update(self, context):
                pass

            async def latest_revision(self, context):
                return "1"

        with pytest.raises(UnsupportedOperationError, match="minimal"):
            await Minimal().diff(context)


class TestDriverRegistry:
    """Tests for selecting a driver by name."""

    def test_get_driver(self):
        assert isinstance(get_driver("subversion"), Subversion)
        assert isinstance(get_driver("SVN"), Subversion)
        assert set(DRIVERS) == {"subversion", "svn"}

    def test_unknown_driver(self):
        with pytest.raises(ConfigurationError, match="Unknown scm"):
            get_driver("darcs")
