"""Interactive prompt detection for remote command output.

Remote commands sometimes stop and wait for input: ``svn`` asking for a
repository password, ``sudo`` asking for the login password. The
dispatcher feeds every chunk of channel output into a ``ChannelBuffer``
and asks a ``PromptMatcher`` whether the last unconsumed line of that
buffer (its final ``PROMPT_WINDOW`` characters) now ends in a recognized
prompt. When it does, the matcher returns the text to send back on that
channel and marks the prompt as consumed so it never triggers twice.

Matching state lives entirely in the per-channel buffer; the matcher and
its rules are immutable and shared by all channels.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

from .types import SUDO_PROMPT, HostConfig

logger = logging.getLogger(__name__)

# Returns the secret for a host, or None when nothing is configured
Responder = Callable[[HostConfig], str | None]

# Prompts are searched for in at most this many trailing characters of a line
PROMPT_WINDOW = 256


@dataclass(frozen=True)
class PromptRule:
    """A recognized interactive prompt and where its answer comes from.

    Attributes:
        name: Short label used in log messages
        pattern: Regex searched against the last unconsumed line; should
            be anchored to the end of the text with ``\\Z``
        respond: Callable producing the secret for the prompting host
    """

    name: str
    pattern: re.Pattern[str]
    respond: Responder


class ChannelBuffer:
    """Append-only output buffer for one channel.

    ``consumed`` is the offset up to which output has already been matched
    against a prompt. Text before that offset is never matched again.
    """

    def __init__(self) -> None:
        self._text = ""
        self.consumed = 0

    def append(self, data: str) -> None:
        self._text += data

    @property
    def text(self) -> str:
        return self._text

    def tail(self) -> str:
        """Return the output that has not been consumed by a prompt match."""
        return self._text[self.consumed:]

    def last_line(self, limit: int = PROMPT_WINDOW) -> str:
        """Return the unconsumed part of the last line, at most ``limit`` characters."""
        start = max(self.consumed, len(self._text) - limit)
        newline = self._text.rfind("\n", start)
        if newline != -1:
            start = newline + 1
        return self._text[start:]

    def consume(self) -> None:
        """Mark everything received so far as matched."""
        self.consumed = len(self._text)


class PromptMatcher:
    """Checks channel buffers against an ordered set of prompt rules.

    Rules are tried in registration order and the first match wins.

    Example:
        >>> matcher = PromptMatcher(scm_password_rules(lambda host: "s3cret"))
        >>> buffer = ChannelBuffer()
        >>> buffer.append("Password: ")
        >>> matcher.match(buffer, host)
        's3cret\\n'
        >>> matcher.match(buffer, host) is None
        True
    """

    def __init__(self, rules: Iterable[PromptRule] = ()) -> None:
        self._rules: tuple[PromptRule, ...] = tuple(rules)

    @property
    def rules(self) -> tuple[PromptRule, ...]:
        return self._rules

    def extend(self, rules: Iterable[PromptRule]) -> "PromptMatcher":
        """Return a new matcher with ``rules`` registered after these."""
        return PromptMatcher(self._rules + tuple(rules))

    def match(self, buffer: ChannelBuffer, host: HostConfig) -> str | None:
        """Check the last buffered line for a prompt and produce the response.

        Args:
            buffer: The prompting channel's output buffer
            host: Host the channel belongs to, passed to the responder

        Returns:
            The secret followed by a newline, or None when no rule matched
            or the matching rule has no secret configured.
        """
        tail = buffer.last_line()
        if not tail:
            return None

        for rule in self._rules:
            if not rule.pattern.search(tail):
                continue

            buffer.consume()
            secret = rule.respond(host)
            if secret is None:
                logger.warning(
                    f"{host.name}: {rule.name} prompt detected but no secret is configured"
                )
                return None

            logger.debug(f"{host.name}: answering {rule.name} prompt")
            return f"{secret}\n"

        return None


# Prompt shapes printed by svn and ssh when a repository needs a password
SSH_PASSWORD = re.compile(r"(?:^|\s)Password:\s*\Z", re.MULTILINE)
HTTP_PASSWORD = re.compile(r"(?:^|\s)Password for .*?:\s*\Z", re.MULTILINE)
USER_PASSWORD = re.compile(r"(?:^|\s)[^\s']+'s password:\s*\Z", re.MULTILINE)
SUDO_PASSWORD = re.compile(re.escape(SUDO_PROMPT.rstrip()) + r"\s*\Z")


def scm_password_rules(respond: Responder) -> list[PromptRule]:
    """Build the password prompt rules recognized by source drivers."""
    return [
        PromptRule("ssh password", SSH_PASSWORD, respond),
        PromptRule("http password", HTTP_PASSWORD, respond),
        PromptRule("user password", USER_PASSWORD, respond),
    ]


def sudo_password_rule(respond: Responder) -> PromptRule:
    """Build the rule answering the prompt issued by ``sudo -p``."""
    return PromptRule("sudo password", SUDO_PASSWORD, respond)
