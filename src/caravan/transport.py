"""Channels and transports for caravan.

A ``Channel`` is one command executing on one host. It exposes a single
ordered stream of ``(stream, text)`` events, where stream is ``"out"`` or
``"err"``, lets the caller send input back, and reports the exit status
once the command finishes.

Transports open channels. ``SSHTransport`` runs commands on remote hosts
through pooled asyncssh connections; ``LocalTransport`` runs them on the
control node with asyncio subprocesses. ``TransportFactory`` picks one per
host based on its connection type.
"""

import asyncio
import codecs
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

import asyncssh

from .types import Command, HostConfig

logger = logging.getLogger(__name__)

STDOUT = "out"
STDERR = "err"

# Upper bound for a single read; reads return as soon as any data arrives
READ_SIZE = 65536


class Channel(ABC):
    """One command executing on one host.

    Subclasses provide the raw reads, writes and exit status; the base
    class merges the two output streams into a single event stream that
    preserves the order of each stream.
    """

    def __init__(self, host: HostConfig) -> None:
        self.host = host
        self.alive = True

    @abstractmethod
    async def _read(self, stream: str) -> str:
        """Read the next available chunk from a stream ('' at EOF)."""

    @abstractmethod
    async def send(self, data: str) -> None:
        """Write data to the command's standard input."""

    @abstractmethod
    async def send_eof(self) -> None:
        """Close the command's standard input."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the command to exit and return its exit status."""

    @abstractmethod
    async def close(self) -> None:
        """Release the channel."""

    async def stream(self) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(stream, text)`` chunks as they arrive on either stream."""
        queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()

        async def pump(stream: str) -> None:
            try:
                while True:
                    data = await self._read(stream)
                    if not data:
                        break
                    await queue.put((stream, data))
            finally:
                await queue.put(None)

        readers = [asyncio.create_task(pump(STDOUT)), asyncio.create_task(pump(STDERR))]
        remaining = len(readers)
        try:
            while remaining:
                item = await queue.get()
                if item is None:
                    remaining -= 1
                    continue
                yield item
            # Surface a reader failure (e.g. connection lost mid-command)
            await asyncio.gather(*readers)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            self.alive = False


class SSHChannel(Channel):
    """Channel backed by an asyncssh client process."""

    def __init__(self, host: HostConfig, process: "asyncssh.SSHClientProcess[str]") -> None:
        super().__init__(host)
        self._process = process

    async def _read(self, stream: str) -> str:
        reader = self._process.stdout if stream == STDOUT else self._process.stderr
        return await reader.read(READ_SIZE)

    async def send(self, data: str) -> None:
        self._process.stdin.write(data)
        await self._process.stdin.drain()

    async def send_eof(self) -> None:
        self._process.stdin.write_eof()

    async def wait(self) -> int:
        completed = await self._process.wait()
        if completed.exit_status is None:
            # Killed by a signal; report it the way a shell would
            return -1
        return completed.exit_status

    async def close(self) -> None:
        self.alive = False
        self._process.close()


class LocalChannel(Channel):
    """Channel backed by a local asyncio subprocess."""

    def __init__(self, host: HostConfig, process: asyncio.subprocess.Process) -> None:
        super().__init__(host)
        self._process = process
        self._decoders = {
            STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    async def _read(self, stream: str) -> str:
        reader = self._process.stdout if stream == STDOUT else self._process.stderr
        decoder = self._decoders[stream]
        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                return decoder.decode(b"", final=True)
            text = decoder.decode(data)
            # A read may end mid-character; keep reading until text is complete
            if text:
                return text

    async def send(self, data: str) -> None:
        self._process.stdin.write(data.encode())
        await self._process.stdin.drain()

    async def send_eof(self) -> None:
        self._process.stdin.close()

    async def wait(self) -> int:
        return await self._process.wait()

    async def close(self) -> None:
        self.alive = False
        if self._process.returncode is None:
            self._process.kill()
            await self._process.wait()


class Transport(ABC):
    """Opens channels to hosts."""

    @abstractmethod
    async def open(self, host: HostConfig, command: Command) -> Channel:
        """Start ``command`` on ``host`` and return its channel."""

    @abstractmethod
    async def close(self) -> None:
        """Close any connections held by this transport."""


@dataclass
class SSHOptions:
    """SSH connection options derived from a host entry.

    Attributes:
        address: Remote hostname or IP
        port: SSH port
        username: SSH username (default current user)
        password: Password for authentication (optional)
        client_keys: Private key paths (optional)
        known_hosts: Path to known_hosts file (None to disable checking)
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    address: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: Any = ()  # Empty tuple = use default known_hosts
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    @classmethod
    def from_host(cls, host: HostConfig) -> "SSHOptions":
        key_file = host.get_var("ssh_private_key_file")
        return cls(
            address=host.address,
            port=host.port,
            username=host.user,
            password=host.password,
            client_keys=[key_file] if key_file else None,
            known_hosts=host.get_var("known_hosts", ()),
        )

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.address,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }

        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts

        return options


class SSHTransport(Transport):
    """Runs commands over SSH, reusing one connection per host.

    Connections are keyed by (address, port, user) and created on first
    use. Each key has its own lock, so a slow or unreachable host only
    delays commands bound for that host.

    Example:
        transport = SSHTransport()
        channel = await transport.open(host, Command("uptime"))
        async for stream, text in channel.stream():
            print(stream, text)
        status = await channel.wait()
        await transport.close()
    """

    def __init__(self) -> None:
        self._connections: dict[tuple[str, int, str | None], asyncssh.SSHClientConnection] = {}
        self._locks: dict[tuple[str, int, str | None], asyncio.Lock] = {}

    async def connect(self, host: HostConfig) -> asyncssh.SSHClientConnection:
        """Return a live connection to ``host``, connecting if needed."""
        key = (host.address, host.port, host.user)
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            conn = self._connections.get(key)
            if conn is None or conn.is_closed():
                logger.debug(f"Connecting to {host.address}:{host.port}")
                conn = await asyncssh.connect(**SSHOptions.from_host(host).to_asyncssh_options())
                self._connections[key] = conn
                logger.info(f"Connected to {host.name}")
            return conn

    async def open(self, host: HostConfig, command: Command) -> Channel:
        conn = await self.connect(host)
        rendered = command.render()
        logger.debug(f"Executing on {host.name}: {rendered}")
        process = await conn.create_process(
            rendered,
            term_type="xterm" if command.pty else None,
            errors="replace",
        )
        return SSHChannel(host, process)

    async def close(self) -> None:
        for key, conn in list(self._connections.items()):
            async with self._locks[key]:
                if not conn.is_closed():
                    conn.close()
                    await conn.wait_closed()
        self._connections.clear()
        logger.debug("Closed all SSH connections")


class LocalTransport(Transport):
    """Runs commands on the control node through ``/bin/sh``."""

    async def open(self, host: HostConfig, command: Command) -> Channel:
        rendered = command.render()
        logger.debug(f"Executing locally for {host.name}: {rendered}")
        process = await asyncio.create_subprocess_shell(
            rendered,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return LocalChannel(host, process)

    async def close(self) -> None:
        pass


class TransportFactory:
    """Selects the transport for a host and owns the transports it creates.

    Hosts with ``connection: local`` use ``LocalTransport``; everything
    else goes over SSH.
    """

    def __init__(
        self,
        ssh: Transport | None = None,
        local: Transport | None = None,
    ) -> None:
        self._ssh = ssh
        self._local = local

    def for_host(self, host: HostConfig) -> Transport:
        if host.is_local:
            if self._local is None:
                self._local = LocalTransport()
            return self._local

        if self._ssh is None:
            self._ssh = SSHTransport()
        return self._ssh

    async def close(self) -> None:
        """Close every transport handed out by this factory."""
        for transport in (self._ssh, self._local):
            if transport is not None:
                await transport.close()
