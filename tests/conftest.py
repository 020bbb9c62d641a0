import logging
import os
from typing import Optional

import pytest

from emailpipe_harness.appstatus import AppStatus
from emailpipe_harness.linestream import LineStream
from tests.fakes import FakeSleep, ScriptedSource

_log = logging.getLogger(__name__)
log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"
logging.basicConfig(format=log_fmt, level=logging.DEBUG, datefmt=datefmt)

logging.getLogger("httpx").setLevel(logging.INFO)
logging.getLogger("httpcore").setLevel(logging.INFO)


@pytest.fixture
def anyio_backend():
    """Exclude trio from tests"""
    return "asyncio"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the caller's HTTP_LISTEN/SMTP_LISTEN/EMAILPIPE_* out of HarnessConfig."""
    for name in list(os.environ):
        if name in ("HTTP_LISTEN", "SMTP_LISTEN") or name.startswith("EMAILPIPE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def make_stream(fake_sleep):
    def _make(*reads: Optional[bytes], poll_interval: float = 0.25) -> LineStream:
        return LineStream(ScriptedSource(reads), poll_interval=poll_interval, sleep=fake_sleep)

    return _make


@pytest.fixture
def reset_appstatus():
    AppStatus.reset()
    yield
    AppStatus.reset()
