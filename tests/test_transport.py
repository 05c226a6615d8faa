"""Tests for SSH connection pooling and channel decoding."""

import asyncio
import sys
import time

import pytest

from caravan import transport as transport_module
from caravan.dispatcher import Dispatcher
from caravan.inventory import load_localhost
from caravan.transport import SSHChannel, SSHTransport, TransportFactory
from caravan.types import Command, HostConfig

CONNECT_DELAY = 0.2


class FakeConnection:
    """Stands in for an asyncssh client connection."""

    def __init__(self, options):
        self.options = options
        self.processes = []
        self.closed = False

    def is_closed(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    async def create_process(self, command, **kwargs):
        self.processes.append((command, kwargs))
        return object()


@pytest.fixture
def connections(monkeypatch):
    """Patch asyncssh.connect with a slow fake and collect its connections."""
    made = []

    async def connect(**options):
        await asyncio.sleep(CONNECT_DELAY)
        conn = FakeConnection(options)
        made.append(conn)
        return conn

    monkeypatch.setattr(transport_module.asyncssh, "connect", connect)
    return made


def web_hosts(count):
    return [
        HostConfig(name=f"web{i:02d}", address=f"10.0.1.{i}", user="deploy")
        for i in range(1, count + 1)
    ]


class TestSSHTransport:
    """Tests for the pooled SSH transport."""

    @pytest.mark.asyncio
    async def test_hosts_connect_concurrently(self, connections):
        """Test a slow connection does not hold up connections to other hosts."""
        transport = SSHTransport()
        hosts = web_hosts(4)

        start = time.perf_counter()
        await asyncio.gather(*(transport.connect(host) for host in hosts))
        elapsed = time.perf_counter() - start

        assert len(connections) == 4
        assert elapsed < CONNECT_DELAY * 3

    @pytest.mark.asyncio
    async def test_one_connection_per_host(self, connections):
        """Test concurrent commands to one host share a single connection."""
        transport = SSHTransport()
        host = web_hosts(1)[0]

        conns = await asyncio.gather(*(transport.connect(host) for _ in range(3)))

        assert len(connections) == 1
        assert all(conn is connections[0] for conn in conns)
        assert connections[0].options["host"] == "10.0.1.1"
        assert connections[0].options["username"] == "deploy"

    @pytest.mark.asyncio
    async def test_closed_connection_replaced(self, connections):
        """Test a dropped connection is reopened on next use."""
        transport = SSHTransport()
        host = web_hosts(1)[0]

        first = await transport.connect(host)
        first.close()
        second = await transport.connect(host)

        assert second is not first
        assert len(connections) == 2

    @pytest.mark.asyncio
    async def test_open_replaces_undecodable_output(self, connections):
        """Test processes decode output leniently and get a terminal only for pty commands."""
        transport = SSHTransport()
        host = web_hosts(1)[0]

        channel = await transport.open(host, Command("uptime"))
        await transport.open(host, Command("reaper", sudo=True, pty=True))

        assert isinstance(channel, SSHChannel)
        (_, plain), (_, with_pty) = connections[0].processes
        assert plain["errors"] == "replace"
        assert plain["term_type"] is None
        assert with_pty["errors"] == "replace"
        assert with_pty["term_type"] == "xterm"

    @pytest.mark.asyncio
    async def test_close_closes_every_connection(self, connections):
        """Test closing the transport closes each pooled connection."""
        transport = SSHTransport()
        for host in web_hosts(2):
            await transport.connect(host)

        await transport.close()

        assert all(conn.closed for conn in connections)


@pytest.mark.skipif(sys.platform == "win32", reason="requires /bin/sh")
class TestLocalDecoding:
    """Tests for output that is not valid UTF-8."""

    @pytest.mark.asyncio
    async def test_invalid_utf8_replaced(self):
        """Test undecodable bytes become replacement characters instead of failing the host."""
        dispatcher = Dispatcher(TransportFactory())
        localhost = load_localhost().get_host("localhost")

        try:
            results = await dispatcher.run([localhost], "printf 'caf\\377\\n'", capture=True)
        finally:
            await dispatcher.transports.close()

        result = results["localhost"]
        assert result.success
        assert result.error is None
        assert result.stdout == "caf\ufffd\n"
