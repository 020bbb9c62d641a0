import io
import logging
from typing import Optional

import anyio
from anyio.streams.memory import MemoryObjectSendStream

logger = logging.getLogger(__name__)


class Transcript:
    """
    Record of one SMTP conversation.

    Client lines are recorded with ``PREFIX``, replies verbatim. Until the
    conversation is attached to a listener everything is buffered; attaching
    flushes the buffer to the listener and later entries are forwarded as they
    come.
    """

    PREFIX = b">> "

    def __init__(self, prefix: Optional[bytes] = None) -> None:
        self.prefix = self.PREFIX if prefix is None else prefix
        self._buffer: Optional[io.BytesIO] = io.BytesIO()
        self._sink: Optional[MemoryObjectSendStream] = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    def command(self, raw: bytes) -> None:
        self._write(self.prefix + raw)

    def reply(self, raw: bytes) -> None:
        self._write(raw)

    def attach(self, sink: MemoryObjectSendStream) -> None:
        """Forward to ``sink`` from now on, starting with what was buffered."""
        pending = self._buffer.getvalue() if self._buffer is not None else b""
        self._buffer = None
        self._sink = sink
        if pending:
            self._forward(pending)

    def _write(self, chunk: bytes) -> None:
        if self._buffer is not None:
            self._buffer.write(chunk)
        elif self._sink is not None:
            self._forward(chunk)

    def _forward(self, chunk: bytes) -> None:
        try:
            self._sink.send_nowait(chunk)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.WouldBlock):
            logger.debug("listener went away, transcript detached")
            self._sink = None
