"""
SMTP side of the reference pipeline.

Only the handful of commands a submission client needs are understood. The
conversation is recorded in a Transcript which is attached to the recipient's
listener as soon as RCPT TO names a registered one.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

import anyio
from anyio.abc import ByteStream, SocketAttribute, TaskStatus
from anyio.streams.buffered import BufferedByteReceiveStream

from emailpipe_harness.listen import ListenerRegistry
from emailpipe_harness.transcript import Transcript

logger = logging.getLogger(__name__)

MAX_LINE = 64 * 1024


class Verb(enum.Enum):
    HELO = "helo"
    MAIL_FROM = "mail from"
    RCPT_TO = "rcpt to"
    DATA_START = "data"
    DATA_PART = "data part"
    DATA_END = "data end"
    QUIT = "quit"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Command:
    verb: Verb
    raw: bytes
    value: Optional[str] = None


@dataclass(frozen=True)
class Address:
    user: str
    domain: str


def parse_address(value: str) -> Address:
    """Parse ``<user@domain>`` (angle brackets optional).

    Raises:
        ValueError: if the user or domain part is missing
    """
    value = value.strip()
    if value.startswith("<"):
        value = value[1:]
    user, _, rest = value.partition("@")
    domain = rest.split(">", 1)[0]
    if not user or not domain:
        raise ValueError(f"unable to parse user or domain from {value!r}")
    return Address(user, domain)


class CommandParser:
    """Turns client lines into commands; remembers whether DATA is being captured."""

    _WITH_VALUE = (
        (b"helo", Verb.HELO),
        (b"rcpt to", Verb.RCPT_TO),
        (b"mail from", Verb.MAIL_FROM),
    )

    def __init__(self) -> None:
        self.capturing_data = False

    def parse(self, line: bytes) -> Command:
        if self.capturing_data:
            if line.rstrip(b"\r\n") == b".":
                self.capturing_data = False
                return Command(Verb.DATA_END, line)
            return Command(Verb.DATA_PART, line, line.decode("utf-8", errors="replace"))

        lowered = line.lower()
        for prefix, verb in self._WITH_VALUE:
            if lowered.startswith(prefix):
                # skip the separator following the verb (space or colon)
                value = line[len(prefix) + 1 :].rstrip(b"\r\n")
                return Command(verb, line, value.decode("utf-8", errors="replace"))
        if lowered.rstrip(b"\r\n") == b"data":
            self.capturing_data = True
            return Command(Verb.DATA_START, line)
        if lowered.startswith(b"quit"):
            return Command(Verb.QUIT, line)
        return Command(Verb.UNKNOWN, line, line.decode("utf-8", errors="replace"))


class MailSession:
    """One SMTP conversation with a submission client."""

    def __init__(self, registry: ListenerRegistry, stream: ByteStream) -> None:
        self.registry = registry
        self.stream = stream
        self.transcript = Transcript()
        self.parser = CommandParser()

    @property
    def domain(self) -> str:
        return self.registry.domain

    async def _reply(self, text: str) -> None:
        raw = f"{text}\r\n".encode("utf-8")
        self.transcript.reply(raw)
        await self.stream.send(raw)

    async def handle(self) -> None:
        await self.stream.send(f"220 {self.domain} SMTP emailpipe\r\n".encode("utf-8"))
        reader = BufferedByteReceiveStream(self.stream)
        while True:
            try:
                line = await reader.receive_until(b"\n", MAX_LINE) + b"\n"
            except (anyio.EndOfStream, anyio.IncompleteRead, anyio.DelimiterNotFound):
                break
            command = self.parser.parse(line)
            self.transcript.command(command.raw)
            if not await self.dispatch(command):
                break

    async def dispatch(self, command: Command) -> bool:
        """Answer one command; False once the conversation is over."""
        verb = command.verb
        if verb is Verb.HELO:
            await self._reply(f"250 {self.domain}, welcome")
        elif verb is Verb.MAIL_FROM:
            try:
                parse_address(command.value)
            except ValueError:
                await self._reply("501 bad syntax")
            else:
                await self._reply("250 ok")
        elif verb is Verb.RCPT_TO:
            await self._recipient(command.value)
        elif verb is Verb.DATA_START:
            await self._reply("354 End data with <CR><LF>.<CR><LF>")
        elif verb is Verb.DATA_PART:
            pass
        elif verb is Verb.DATA_END:
            await self._reply("250 Ok: queued message")
        elif verb is Verb.QUIT:
            await self._reply("221 bye")
            return False
        else:
            await self._reply("500 what?")
        return True

    async def _recipient(self, value: str) -> None:
        try:
            address = parse_address(value)
        except ValueError:
            await self._reply("501 bad syntax")
            return

        sink = self.registry.lookup(address.user)
        if sink is None:
            await self._reply("550 no such user")
            return

        logger.debug(f"relaying conversation to {address.user}")
        self.transcript.attach(sink)
        await self._reply("250 ok")


async def handle_mail_client(registry: ListenerRegistry, stream: ByteStream) -> None:
    async with stream:
        try:
            await MailSession(registry, stream).handle()
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, OSError) as e:
            logger.error(f"problem handling smtp connection: {e}")


async def serve_smtp(
    registry: ListenerRegistry,
    host: str,
    port: int,
    *,
    task_status: TaskStatus = anyio.TASK_STATUS_IGNORED,
) -> None:
    """Accept SMTP connections until cancelled.

    Reports the bound port through ``task_status`` so ``port=0`` can be used.
    """
    listener = await anyio.create_tcp_listener(local_host=host, local_port=port)
    async with listener:
        bound = listener.extra(SocketAttribute.local_port)
        logger.info(f"listening for SMTP on {host}:{bound}")
        task_status.started(bound)

        async def handler(stream: ByteStream) -> None:
            await handle_mail_client(registry, stream)

        await listener.serve(handler)
