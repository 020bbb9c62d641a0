"""
Reference pipeline: relays mail received over SMTP to per-listener HTTP streams.

Run with: python -m emailpipe_harness.pipeline
Listens on HTTP_LISTEN (default 127.0.0.1:9001) and SMTP_LISTEN (default 127.0.0.1:9002).
Stops on SIGINT/SIGTERM.
"""
import logging
import os
import sys

import anyio
import uvicorn

from emailpipe_harness.appstatus import AppStatus
from emailpipe_harness.config import HarnessConfig
from emailpipe_harness.listen import ListenerRegistry, create_app
from emailpipe_harness.smtp import serve_smtp

logger = logging.getLogger(__name__)

log_fmt = r"%(asctime)-15s %(levelname)s %(name)s %(funcName)s:%(lineno)d %(message)s"
datefmt = "%Y-%m-%d %H:%M:%S"


async def serve(config: HarnessConfig, log_level: str = "info") -> None:
    """Serve both interfaces until uvicorn is told to exit."""
    AppStatus.install()
    registry = ListenerRegistry(config.domain)
    http_host, http_port = config.http_address
    smtp_host, smtp_port = config.smtp_address

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(registry),
            host=http_host,
            port=http_port,
            log_level=log_level,
            log_config=None,
        )
    )

    async with anyio.create_task_group() as tg:
        await tg.start(serve_smtp, registry, smtp_host, smtp_port)
        logger.info(f"listening for HTTP on {http_host}:{http_port}")
        await server.serve()
        tg.cancel_scope.cancel()
    logger.info("pipeline stopped")


def main() -> int:
    logging.basicConfig(
        format=log_fmt,
        level=os.environ.get("EMAILPIPE_LOG_LEVEL", "INFO").upper(),
        datefmt=datefmt,
    )
    config = HarnessConfig()
    try:
        anyio.run(serve, config)
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
