"""Concurrent command dispatch across hosts.

The dispatcher opens one channel per host, pumps every channel's output
as it arrives, answers interactive prompts through the prompt matcher and
aggregates the outcome. A failing host never cancels the others: all
channels run to completion and the failures are reported together.

There is no command timeout. A command's input is closed right away when
no prompt rules apply; with rules it stays open for the responses, so a
command that reads input without printing a known prompt waits until
it exits on its own.
"""

import asyncio
import logging
import shlex
from typing import Callable, Iterable

from .exceptions import CommandFailedError, HostCommandError
from .logging import TRACE
from .prompts import ChannelBuffer, PromptMatcher, PromptRule
from .transport import STDERR, STDOUT, Channel, TransportFactory
from .types import Command, HostConfig, HostResult

logger = logging.getLogger(__name__)

# Called with (host name, stream, line) for every complete output line
OutputCallback = Callable[[str, str, str], None]


class _LineSplitter:
    """Splits one stream's chunks into complete lines."""

    def __init__(self) -> None:
        self.leftover = ""

    def feed(self, data: str) -> list[str]:
        text = self.leftover + data
        lines = text.split("\n")
        self.leftover = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        if not self.leftover:
            return []
        line, self.leftover = self.leftover.rstrip("\r"), ""
        return [line]


class Dispatcher:
    """Runs a command on many hosts at once.

    Attributes:
        transports: Factory selecting the transport for each host
        matcher: Prompt rules consulted for every command
        on_output: Optional callback receiving each complete output line

    Example:
        >>> dispatcher = Dispatcher(TransportFactory())
        >>> results = await dispatcher.run(hosts, Command("uptime"))
        >>> for name, result in results.items():
        ...     print(name, result.stdout.strip())
    """

    def __init__(
        self,
        transports: TransportFactory,
        matcher: PromptMatcher | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.transports = transports
        self.matcher = matcher or PromptMatcher()
        self.on_output = on_output

    async def run(
        self,
        hosts: Iterable[HostConfig],
        command: Command | str,
        capture: bool = False,
        prompts: Iterable[PromptRule] = (),
        stdin: str | None = None,
    ) -> dict[str, HostResult]:
        """Execute ``command`` on every host concurrently.

        Args:
            hosts: Hosts to run on
            command: Command (or plain shell string) to execute
            capture: Return results even when hosts failed instead of raising
            prompts: Extra prompt rules for this command, tried after the
                dispatcher's own rules
            stdin: Text written to each channel before its input is closed.
                Without stdin, input is closed at once unless prompt rules
                apply; with rules it stays open until the command exits.

        Returns:
            Mapping of host name to HostResult, for every host

        Raises:
            CommandFailedError: If any host failed and ``capture`` is False
        """
        if isinstance(command, str):
            command = Command(command)
        matcher = self.matcher.extend(prompts)
        targets = list(hosts)

        logger.debug(f"Dispatching to {len(targets)} host(s): {command.render()}")

        tasks = [
            asyncio.create_task(self._execute(host, command, matcher, stdin))
            for host in targets
        ]
        results_list = await asyncio.gather(*tasks)
        results = {result.host_name: result for result in results_list}

        failures = [
            HostCommandError(result.host_name, result.exit_status, _failure_output(result))
            for result in results_list
            if not result.success
        ]
        for failure in failures:
            logger.error(f"{failure.msg}: {command.render()}")

        if failures and not capture:
            raise CommandFailedError(command.render(), failures)
        return results

    async def capture(
        self,
        host: HostConfig,
        command: Command | str,
        prompts: Iterable[PromptRule] = (),
    ) -> str:
        """Run a command on one host and return its raw output.

        A non-zero exit is logged but not raised; the caller inspects the
        output itself.
        """
        results = await self.run([host], command, capture=True, prompts=prompts)
        result = results[host.name]
        if not result.success:
            logger.warning(
                f"capture on {host.name} exited with status {result.exit_status}"
            )
        return result.stdout if result.success else result.output

    async def put(
        self,
        hosts: Iterable[HostConfig],
        content: str,
        path: str,
        mode: int | None = None,
    ) -> dict[str, HostResult]:
        """Write ``content`` to ``path`` on every host."""
        quoted = shlex.quote(path)
        text = f"cat > {quoted}"
        if mode is not None:
            text += f" && chmod {mode:o} {quoted}"
        return await self.run(hosts, Command(text), stdin=content)

    async def _execute(
        self,
        host: HostConfig,
        command: Command,
        matcher: PromptMatcher,
        stdin: str | None,
    ) -> HostResult:
        """Run the command on one host; never raises."""
        buffer = ChannelBuffer()
        stdout: list[str] = []
        stderr: list[str] = []
        channel: Channel | None = None

        try:
            channel = await self.transports.for_host(host).open(host, command)
            if stdin is not None:
                await channel.send(stdin)
            # Input stays open only while a prompt could still be answered
            if stdin is not None or not matcher.rules:
                await channel.send_eof()

            splitters = {STDOUT: _LineSplitter(), STDERR: _LineSplitter()}
            async for stream, data in channel.stream():
                buffer.append(data)
                response = matcher.match(buffer, host)
                if response is not None:
                    logger.log(TRACE, f"[{host.name}] sending prompt response")
                    await channel.send(response)

                logger.log(TRACE, f"[{stream} :: {host.name}] {data!r}")
                (stderr if stream == STDERR else stdout).append(data)
                for line in splitters[stream].feed(data):
                    self._emit(host.name, stream, line)

            for stream, splitter in splitters.items():
                for line in splitter.flush():
                    self._emit(host.name, stream, line)

            exit_status = await channel.wait()
        except Exception as e:
            logger.error(f"Channel to {host.name} failed: {e}")
            return HostResult(
                host_name=host.name,
                exit_status=-1,
                output=buffer.text,
                stdout="".join(stdout),
                stderr="".join(stderr),
                error=str(e) or e.__class__.__name__,
            )
        finally:
            if channel is not None:
                await channel.close()

        return HostResult(
            host_name=host.name,
            exit_status=exit_status,
            output=buffer.text,
            stdout="".join(stdout),
            stderr="".join(stderr),
        )

    def _emit(self, host_name: str, stream: str, line: str) -> None:
        logger.debug(f"[{stream} :: {host_name}] {line}")
        if self.on_output is not None:
            self.on_output(host_name, stream, line)


def _failure_output(result: HostResult) -> str:
    if result.error is None:
        return result.output
    return f"{result.error}\n{result.output}".rstrip()
