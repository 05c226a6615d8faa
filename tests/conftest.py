"""Shared fixtures: a scripted in-memory transport and a small fleet."""

import asyncio
import re

import pytest

from caravan.config import DeployConfig
from caravan.dispatcher import Dispatcher
from caravan.inventory import Inventory
from caravan.transport import STDERR, STDOUT, Channel, Transport, TransportFactory
from caravan.types import Command, HostConfig

# Script step that blocks until the dispatcher sends input on the channel
WAIT_INPUT = ("input", "")


class FakeChannel(Channel):
    """Channel replaying a script of (stream, text) steps."""

    def __init__(self, host, command, script, exit_status):
        super().__init__(host)
        self.command = command
        self.sent: list[str] = []
        self.eof = False
        self.closed = False
        self._exit_status = exit_status
        self._queues = {STDOUT: asyncio.Queue(), STDERR: asyncio.Queue()}
        self._input = asyncio.Event()
        self._player = asyncio.create_task(self._play(script))

    async def _play(self, script):
        for stream, text in script:
            if stream == "input":
                await self._input.wait()
                self._input.clear()
                continue
            await self._queues[stream].put(text)
            await asyncio.sleep(0)
        for queue in self._queues.values():
            await queue.put("")

    async def _read(self, stream):
        return await self._queues[stream].get()

    async def send(self, data):
        self.sent.append(data)
        self._input.set()

    async def send_eof(self):
        self.eof = True

    async def wait(self):
        await self._player
        return self._exit_status

    async def close(self):
        self.closed = True
        self.alive = False
        if not self._player.done():
            self._player.cancel()


class FakeTransport(Transport):
    """Transport answering commands from registered rules.

    Rules are regexes searched in the rendered command; the most recently
    registered matching rule wins. Commands without a rule succeed with no
    output.
    """

    def __init__(self):
        self.rules: list[tuple[re.Pattern, str | None, list, int]] = []
        self.channels: list[FakeChannel] = []
        self.unreachable: set[str] = set()
        self.attempts: list[str] = []
        self.closed = False

    def on(self, pattern, output="", exit_status=0, host=None, script=None):
        if script is None:
            script = [(STDOUT, output)] if output else []
        self.rules.append((re.compile(pattern), host, script, exit_status))

    async def open(self, host: HostConfig, command: Command) -> Channel:
        self.attempts.append(host.name)
        if host.name in self.unreachable:
            raise OSError(f"Connection refused: {host.address}")

        rendered = command.render()
        script, exit_status = [], 0
        for pattern, rule_host, rule_script, rule_status in reversed(self.rules):
            if rule_host not in (None, host.name):
                continue
            if pattern.search(rendered):
                script, exit_status = rule_script, rule_status
                break

        channel = FakeChannel(host, command, script, exit_status)
        self.channels.append(channel)
        return channel

    async def close(self):
        self.closed = True

    def commands(self, host=None) -> list[str]:
        """Rendered commands in the order they were opened."""
        return [
            channel.command.render()
            for channel in self.channels
            if host is None or channel.host.name == host
        ]

    def channel_for(self, host, pattern) -> FakeChannel:
        for channel in self.channels:
            if channel.host.name == host and re.search(pattern, channel.command.render()):
                return channel
        raise AssertionError(f"no command matching {pattern!r} ran on {host}")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def factory(transport):
    return TransportFactory(ssh=transport, local=transport)


@pytest.fixture
def dispatcher(factory):
    return Dispatcher(factory)


@pytest.fixture
def inventory():
    """app01 and app02 serve app and web; db01 is the primary database."""
    inventory = Inventory()
    for name, address in (("app01", "10.0.0.1"), ("app02", "10.0.0.2")):
        host = HostConfig(name=name, address=address, user="deploy")
        inventory.add_host(host, "app")
        inventory.add_host(host, "web")
    inventory.add_host(
        HostConfig(name="db01", address="10.0.0.3", user="deploy", vars={"primary": True}),
        "db",
    )
    return inventory


@pytest.fixture
def hosts(inventory):
    return [inventory.get_host(name) for name in ("app01", "app02", "db01")]


@pytest.fixture
def config():
    return DeployConfig(
        application="shop",
        repository="svn://svn.example.com/shop/trunk",
        release_name="20240102000000",
        password="chocolatebrownies",
    )
