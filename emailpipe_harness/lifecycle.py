import logging
import signal
import socket
import subprocess
import time
from typing import Callable, List, Optional

import httpx
import psutil

from emailpipe_harness.config import HarnessConfig
from emailpipe_harness.linestream import FdByteSource, LineStream
from emailpipe_harness.scenario import Session

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """A listener never announced the address assigned to it."""
    pass


class PipelineStartError(TimeoutError):
    pass


def _wait_for_health(base_url: str, timeout: float = 10.0) -> bool:
    """Wait for the pipeline's HTTP side to answer; False on timeout."""
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        try:
            resp = httpx.get(f"{base_url}/", timeout=2.0)
            if resp.status_code == 200:
                return True
        except httpx.HTTPError:
            pass
        time.sleep(0.2)
    return False


def _wait_for_port(host: str, port: int, timeout: float = 10.0) -> bool:
    """Wait for a TCP port to accept connections; False on timeout."""
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=2.0):
                return True
        except OSError:
            time.sleep(0.2)
    return False


class ProcessLifecycle:
    """
    Owns the child processes of one run: the pipeline under test and its listeners.

    Use it as a context manager. Every process spawned through it receives SIGINT
    exactly once when the block is left, whether it finished, failed a check or
    raised.
    """

    STOP_SIGNAL = signal.SIGINT

    def __init__(
        self,
        config: HarnessConfig,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.config = config
        self._popen = popen
        self._procs: List[subprocess.Popen] = []

    def __enter__(self) -> "ProcessLifecycle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def processes(self) -> List[subprocess.Popen]:
        return list(self._procs)

    def spawn(self, args: List[str], **kwargs) -> subprocess.Popen:
        proc = self._popen(args, **kwargs)
        self._procs.append(proc)
        logger.info(f"started {args[0]} (pid {proc.pid})")
        return proc

    def start_pipeline(self) -> Optional[subprocess.Popen]:
        """Spawn the pipeline and wait until both of its interfaces answer.

        With an empty ``pipeline_cmd`` the pipeline is expected to be running already
        and only the readiness check is done.
        """
        proc = None
        if self.config.pipeline_cmd:
            proc = self.spawn(self.config.pipeline_cmd, env=self.config.pipeline_env())
        else:
            logger.info("pipeline not managed, expecting it at %s", self.config.base_url)

        self._wait_until_ready(proc)
        return proc

    def _wait_until_ready(self, proc: Optional[subprocess.Popen]) -> None:
        timeout = self.config.startup_timeout
        if not _wait_for_health(self.config.base_url, timeout=timeout):
            if proc is not None and proc.poll() is not None:
                raise PipelineStartError(
                    f"pipeline exited with code {proc.returncode} before it was ready"
                )
            raise PipelineStartError(
                f"pipeline at {self.config.base_url} not ready after {timeout}s"
            )

        host, port = self.config.smtp_address
        if not _wait_for_port(host, port, timeout=timeout):
            raise PipelineStartError(f"SMTP port {host}:{port} not ready after {timeout}s")
        logger.info("pipeline ready")

    def open_session(self) -> Session:
        """Start a listener and read the address the pipeline assigned to it."""
        proc = self.spawn(
            [*self.config.listener_cmd, self.config.listen_url],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
        )
        stream = LineStream(
            FdByteSource(proc.stdout.fileno()),
            poll_interval=self.config.poll_interval,
        )
        line = stream.next_line(self.config.line_wait)
        if line is None:
            raise SessionError(
                f"listener {proc.pid} announced no address within {self.config.line_wait}s"
            )
        try:
            session = Session.from_greeting(line, stream)
        except ValueError as e:
            raise SessionError(f"listener {proc.pid}: {e}") from e
        logger.info(f"session {session.address} (pid {proc.pid})")
        return session

    def close(self) -> None:
        """Stop every process spawned so far; each one is released once.

        A failure stopping one process does not keep the others running. The first
        such error is raised once every process was dealt with.
        """
        first_error: Optional[BaseException] = None
        while self._procs:
            proc = self._procs.pop(0)
            try:
                self._terminate(proc)
            except BaseException as e:
                logger.error(f"failed to stop pid {proc.pid}: {e!r}")
                if first_error is None:
                    first_error = e
            finally:
                if proc.stdout is not None:
                    proc.stdout.close()
        if first_error is not None:
            raise first_error

    def _terminate(self, proc: subprocess.Popen) -> None:
        try:
            parent = psutil.Process(proc.pid)
            targets = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            logger.debug(f"process {proc.pid} already gone")
            proc.wait()
            return

        for target in targets:
            try:
                target.send_signal(self.STOP_SIGNAL)
            except psutil.NoSuchProcess:
                logger.debug(f"process {target.pid} already gone")

        _, alive = psutil.wait_procs(targets, timeout=self.config.shutdown_grace)
        for target in alive:
            logger.warning(f"process {target.pid} ignored SIGINT, killing it")
            try:
                target.kill()
            except psutil.NoSuchProcess:
                pass

        proc.wait()
        logger.info(f"stopped pid {proc.pid}")
