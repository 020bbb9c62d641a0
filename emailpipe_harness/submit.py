import logging
import smtplib
from contextlib import ExitStack
from typing import Iterable, Tuple

from emailpipe_harness.scenario import Probe, Submitter

logger = logging.getLogger(__name__)


class SubmissionError(RuntimeError):
    """The mail submission handshake failed."""
    pass


class MailSubmitter(Submitter):
    """
    Sends probe messages through the pipeline's SMTP interface.
    """

    def __init__(self, host: str, port: int, timeout: float = 10.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        try:
            return smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        except (smtplib.SMTPException, OSError) as e:
            raise SubmissionError(
                f"could not connect to {self.host}:{self.port}: {e}"
            ) from e

    def submit(self, probe: Probe, address: str) -> None:
        """Deliver one probe to ``address``."""
        self.submit_many([(probe, address)])

    def submit_many(self, deliveries: Iterable[Tuple[Probe, str]]) -> None:
        """Open one connection per delivery before sending any of them.

        Every conversation is in flight at the same time, so the pipeline sees the
        submissions interleaved rather than one after the other.
        """
        deliveries = list(deliveries)
        with ExitStack() as stack:
            connections = []
            for _ in deliveries:
                conn = self._connect()
                stack.callback(self._finish, conn)
                connections.append(conn)

            for conn, (probe, address) in zip(connections, deliveries):
                logger.debug(f"submitting {probe.token} from {probe.sender} to {address}")
                try:
                    conn.sendmail(probe.sender, [address], probe.body)
                except (smtplib.SMTPException, OSError) as e:
                    raise SubmissionError(f"submission to {address} failed: {e}") from e

    @staticmethod
    def _finish(conn: smtplib.SMTP) -> None:
        try:
            conn.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.debug(f"closing submission connection: {e}")
            conn.close()
