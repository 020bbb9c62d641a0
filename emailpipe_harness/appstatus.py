# emailpipe_harness/appstatus.py
import logging
from typing import Callable, Optional

import anyio

logger = logging.getLogger(__name__)


class AppStatus:
    """Captures uvicorn's shutdown signal so open listener streams and the SMTP side can stop."""

    should_exit = False
    original_handler: Optional[Callable] = None
    _installed = False

    @staticmethod
    def handle_exit(*args, **kwargs):
        logger.debug("AppStatus.handle_exit called")
        AppStatus.should_exit = True
        if AppStatus.original_handler is not None:
            AppStatus.original_handler(*args, **kwargs)

    @classmethod
    def install(cls) -> None:
        """Route uvicorn's exit handler through ``handle_exit``."""
        if cls._installed:
            return
        from uvicorn.main import Server

        cls.original_handler = Server.handle_exit
        Server.handle_exit = cls.handle_exit  # type: ignore
        cls._installed = True

    @classmethod
    def reset(cls) -> None:
        """Reset state (useful for testing)."""
        cls.should_exit = False

    @staticmethod
    async def wait_for_exit(poll_interval: float = 0.5) -> None:
        """Return once a shutdown was requested."""
        while not AppStatus.should_exit:
            await anyio.sleep(poll_interval)
