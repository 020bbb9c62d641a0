"""
HTTP side of the reference pipeline.

``GET /listen`` opens a long-lived plain text stream for a freshly named
listener; mail the SMTP side accepts for that name is relayed into it.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from emailpipe_harness.appstatus import AppStatus
from emailpipe_harness.helper import random_user

logger = logging.getLogger(__name__)

GREETING = "Listening for mail at {address}\n"
REPLACED_NOTICE = b"closed by another connection"


@dataclass
class Listener:
    user: str
    domain: str
    send_stream: MemoryObjectSendStream = field(repr=False)
    receive_stream: MemoryObjectReceiveStream = field(repr=False)

    @property
    def address(self) -> str:
        return f"{self.user}@{self.domain}"


class ListenerRegistry:
    """Maps listener names to the streams mail for them is relayed into.

    Only touched from the event loop, so no locking.
    """

    def __init__(
        self, domain: str, name_factory: Callable[[], str] = random_user
    ) -> None:
        self.domain = domain
        self.name_factory = name_factory
        self._listeners: Dict[str, Listener] = {}

    def __len__(self) -> int:
        return len(self._listeners)

    def register(self) -> Listener:
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)
        listener = Listener(self.name_factory(), self.domain, send_stream, receive_stream)
        previous = self._listeners.get(listener.user)
        self._listeners[listener.user] = listener

        if previous is not None:
            logger.info(f"{listener.address} taken over by a new connection")
            try:
                previous.send_stream.send_nowait(REPLACED_NOTICE)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                pass
            previous.send_stream.close()

        logger.info(f"registered {listener.address}")
        return listener

    def lookup(self, user: str) -> Optional[MemoryObjectSendStream]:
        listener = self._listeners.get(user)
        return None if listener is None else listener.send_stream

    def unregister(self, listener: Listener) -> None:
        if self._listeners.get(listener.user) is listener:
            del self._listeners[listener.user]
        listener.send_stream.close()
        logger.info(f"unregistered {listener.address}")


class ListenerResponse(Response):
    """
    Streaming response relaying a listener's mail as it arrives.
    """

    def __init__(
        self,
        listener: Listener,
        status_code: int = 200,
        media_type: str = "text/plain",
        background: Optional[BackgroundTask] = None,
        exit_poll_interval: float = 0.5,
    ) -> None:
        self.listener = listener
        self.status_code = status_code
        self.media_type = media_type
        self.background = background
        self.exit_poll_interval = exit_poll_interval

        _headers = MutableHeaders()
        _headers.setdefault("Cache-Control", "no-store")
        _headers["X-Accel-Buffering"] = "no"
        self.init_headers(_headers)

        self.active = True

    async def _stream_response(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        greeting = GREETING.format(address=self.listener.address).encode("utf-8")
        await send({"type": "http.response.body", "body": greeting, "more_body": True})

        async with self.listener.receive_stream:
            async for chunk in self.listener.receive_stream:
                logger.debug("chunk: %s", chunk)
                await send({"type": "http.response.body", "body": chunk, "more_body": True})

        self.active = False
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while self.active:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.active = False
                logger.debug(f"{self.listener.address} disconnected")
                break

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async with anyio.create_task_group() as task_group:

            async def cancel_on_finish(coro: Callable[[], Awaitable[None]]):
                await coro()
                task_group.cancel_scope.cancel()

            task_group.start_soon(cancel_on_finish, lambda: self._stream_response(send))
            task_group.start_soon(
                cancel_on_finish, lambda: AppStatus.wait_for_exit(self.exit_poll_interval)
            )
            task_group.start_soon(
                cancel_on_finish, lambda: self._listen_for_disconnect(receive)
            )

        if self.background is not None:
            await self.background()


def create_app(registry: ListenerRegistry) -> Starlette:
    async def usage(request: Request) -> Response:
        return PlainTextResponse(f"USAGE\n\ncurl {registry.domain}/listen\r\n")

    # must run on the event loop; the registry is not thread-safe
    async def release(listener: Listener) -> None:
        registry.unregister(listener)

    async def listen(request: Request) -> Response:
        listener = registry.register()
        return ListenerResponse(listener, background=BackgroundTask(release, listener))

    return Starlette(routes=[Route("/", usage), Route("/listen", listen)])
