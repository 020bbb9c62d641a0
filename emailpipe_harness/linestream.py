import errno
import logging
import os
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Optional

from emailpipe_harness.helper import WouldBlock

logger = logging.getLogger(__name__)


class ByteSource(ABC):
    """
    Abstract readable handle that never blocks.
    """

    @abstractmethod
    def read_nonblocking(self, size: int) -> bytes:
        """Read up to ``size`` bytes.

        Returns the data read, or ``b""`` once the source reached end-of-stream.

        Raises:
            WouldBlock: if no data is ready yet
        """
        pass


class FdByteSource(ByteSource):
    """
    Byte source over an OS file descriptor, e.g. the stdout pipe of a child process.
    """

    def __init__(self, fd: int) -> None:
        self.fd = fd
        os.set_blocking(fd, False)

    def read_nonblocking(self, size: int) -> bytes:
        try:
            return os.read(self.fd, size)
        except BlockingIOError:
            raise WouldBlock()
        except OSError as e:
            # a pty master reports EIO once the other side is closed
            if e.errno == errno.EIO:
                return b""
            raise


class LineStream:
    """
    Turns a possibly stalling byte source into discrete ``\\n`` terminated lines.

    ``next_line`` never waits longer than the ceiling it is given: while the source
    has nothing to say it sleeps ``poll_interval`` between read attempts, and gives up
    with ``None`` once the attempts derived from ``max_wait`` are spent.
    """

    DEFAULT_WAIT = 2.0
    DEFAULT_POLL_INTERVAL = 0.25
    DEFAULT_READ_SIZE = 1024
    LINE_SEP = b"\n"

    def __init__(
        self,
        source: ByteSource,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        read_size: int = DEFAULT_READ_SIZE,
        encoding: str = "utf-8",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll interval must be greater than 0")
        self.source = source
        self.poll_interval = poll_interval
        self.read_size = read_size
        self.encoding = encoding
        self._sleep = sleep
        self._buf = bytearray()
        self._lines: Deque[str] = deque()
        self._eof = False

    @property
    def exhausted(self) -> bool:
        """True once end-of-stream was seen and every buffered line was handed out."""
        return self._eof and not self._lines

    def next_line(self, max_wait: Optional[float] = None) -> Optional[str]:
        """Return the next complete line, or None if none became available in time.

        A line already decoded is returned without touching the source. After
        end-of-stream the unterminated remainder (if any) is returned once, and every
        later call returns None without reading.
        """
        if self._lines:
            return self._lines.popleft()

        if self._eof:
            return None

        self._fill(self.DEFAULT_WAIT if max_wait is None else max_wait)

        if self._lines:
            return self._lines.popleft()
        return None

    def _fill(self, max_wait: float) -> None:
        attempts = int(max_wait / self.poll_interval)
        while True:
            try:
                data = self.source.read_nonblocking(self.read_size)
            except WouldBlock:
                data = None

            if data == b"":
                self._flush_remainder()
                return

            if data is not None:
                self._buf += data
                self._split_lines()
                if self._lines:
                    return

            if attempts <= 0:
                return
            attempts -= 1
            if data is None:
                self._sleep(self.poll_interval)

    def _split_lines(self) -> None:
        while True:
            idx = self._buf.find(self.LINE_SEP)
            if idx < 0:
                break
            line = bytes(self._buf[: idx + 1])
            del self._buf[: idx + 1]
            self._lines.append(line.decode(self.encoding, errors="replace"))
            logger.debug("line: %r", line)

    def _flush_remainder(self) -> None:
        if self._buf:
            self._lines.append(bytes(self._buf).decode(self.encoding, errors="replace"))
            self._buf.clear()
        self._eof = True
        logger.debug("end of stream, %d line(s) pending", len(self._lines))
