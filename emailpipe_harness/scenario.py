"""
Probe rounds against one or two listener sessions.

A round sends a message carrying a random token to a session's address, drains
what the session's stream relayed, and checks the token came back. With two
sessions it also checks neither token leaked into the other session.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from emailpipe_harness.helper import random_sender, random_token
from emailpipe_harness.linestream import LineStream

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATE = "Hello this is my message {token}"


@dataclass(frozen=True)
class Probe:
    token: str
    sender: str

    @classmethod
    def generate(cls) -> "Probe":
        return cls(token=random_token(), sender=random_sender())

    @property
    def body(self) -> str:
        return MESSAGE_TEMPLATE.format(token=self.token)


@dataclass(frozen=True)
class RoundResult:
    label: str
    ok: bool

    def __str__(self) -> str:
        return f"{self.label}: {'OK' if self.ok else 'ERR'}"


@dataclass
class Session:
    """An address assigned by the pipeline plus the stream it relays to."""

    address: str
    stream: LineStream = field(repr=False)

    @classmethod
    def from_greeting(cls, line: str, stream: LineStream) -> "Session":
        """The greeting is free text ending in the address."""
        words = line.split()
        if not words:
            raise ValueError("empty greeting, no address announced")
        return cls(address=words[-1], stream=stream)


def drain(
    stream: LineStream,
    wait: float = LineStream.DEFAULT_WAIT,
    until_eof: bool = False,
    timeout: float = 30.0,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Concatenate everything the stream yields for the message just sent.

    Stops at end-of-stream. Unless ``until_eof`` is set, a quiet period of ``wait``
    seconds also ends the drain; with ``until_eof`` quiet periods are sat out until
    ``timeout`` expires.
    """
    deadline = clock() + timeout
    buf = []
    while True:
        line = stream.next_line(wait)
        if line is not None:
            buf.append(line)
            continue
        if stream.exhausted or not until_eof:
            break
        if clock() >= deadline:
            logger.warning(f"stream not closed after {timeout}s, evaluating what arrived")
            break
    return "".join(buf)


class Submitter(ABC):
    """
    Abstract mail submission client the runners drive.
    """

    @abstractmethod
    def submit(self, probe: Probe, address: str) -> None:
        pass

    @abstractmethod
    def submit_many(self, deliveries: Iterable[Tuple[Probe, str]]) -> None:
        """Deliver several probes with every submission in flight at once."""
        pass


class _Runner:
    def __init__(
        self,
        submitter: Submitter,
        wait: float = LineStream.DEFAULT_WAIT,
        until_eof: bool = False,
        drain_timeout: float = 30.0,
        report: Callable[[str], None] = print,
        probe_factory: Callable[[], Probe] = Probe.generate,
    ) -> None:
        self.submitter = submitter
        self.wait = wait
        self.until_eof = until_eof
        self.drain_timeout = drain_timeout
        self.report = report
        self.probe_factory = probe_factory

    def _drain(self, session: Session) -> str:
        return drain(
            session.stream,
            wait=self.wait,
            until_eof=self.until_eof,
            timeout=self.drain_timeout,
        )

    def _record(self, result: RoundResult) -> RoundResult:
        logger.info(str(result))
        self.report(str(result))
        return result


class ScenarioRunner(_Runner):
    """Round-trip check on a single session."""

    def __init__(self, session: Session, submitter: Submitter, **kwargs) -> None:
        super().__init__(submitter, **kwargs)
        self.session = session
        self.results: List[RoundResult] = []

    def run_round(self, n: int) -> RoundResult:
        probe = self.probe_factory()
        self.submitter.submit(probe, self.session.address)
        buf = self._drain(self.session)
        return self._record(RoundResult(f"#{n}", probe.token in buf))

    def run(self, count: int = 1) -> bool:
        """Run ``count`` rounds; True iff every round passed."""
        if count < 1:
            raise ValueError("count must be a positive integer")
        self.results = [self.run_round(n) for n in range(1, count + 1)]
        return all(result.ok for result in self.results)


class DualScenarioRunner(_Runner):
    """Round-trip plus isolation check on two concurrently open sessions."""

    def __init__(
        self, first: Session, second: Session, submitter: Submitter, **kwargs
    ) -> None:
        super().__init__(submitter, **kwargs)
        self.sessions = (first, second)
        self.results: List[RoundResult] = []

    def run_round(self, n: int) -> List[RoundResult]:
        probes = (self.probe_factory(), self.probe_factory())
        self.submitter.submit_many(
            (probe, session.address) for probe, session in zip(probes, self.sessions)
        )

        results = []
        for idx, session in enumerate(self.sessions):
            own, other = probes[idx], probes[1 - idx]
            buf = self._drain(session)
            ok = own.token in buf and other.token not in buf
            if other.token in buf:
                logger.error(f"token for the other session leaked into {session.address}")
            results.append(self._record(RoundResult(f"#{n}-{idx + 1}", ok)))
        return results

    def run(self, count: int = 1) -> List[RoundResult]:
        """Run ``count`` rounds and return every per-session verdict."""
        if count < 1:
            raise ValueError("count must be a positive integer")
        self.results = []
        for n in range(1, count + 1):
            self.results.extend(self.run_round(n))
        return self.results


def failed(results: Optional[Iterable[RoundResult]]) -> List[RoundResult]:
    return [result for result in results or () if not result.ok]
