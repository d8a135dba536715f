"""Secure duplex channel carrying the daemon's JSON protocol."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Protocol, runtime_checkable

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from .config import DaemonServer
from .models import ConnectionBackendError
from .tls import build_ssl_context, describe_tls_failure

LOG = logging.getLogger(__name__)

DAEMON_PATH = "/db/"

ChannelEventKind = Literal["message", "error", "close"]


@dataclass(frozen=True, slots=True)
class ChannelEvent:
    """Something that happened on a channel: a frame, a fault, or the end of it."""

    kind: ChannelEventKind
    data: str | None = None
    error: BaseException | None = None


ChannelListener = Callable[[ChannelEvent], None]


@runtime_checkable
class Channel(Protocol):
    """Protocol implemented by duplex channels to the daemon."""

    @property
    def is_open(self) -> bool:
        """True until the channel has been closed by either side."""

    async def send(self, text: str) -> None:
        """Write one whole JSON document."""

    def close(self) -> None:
        """Start closing the channel; safe to call repeatedly."""

    async def wait_closed(self) -> None:
        """Wait until the close started by ``close()`` has completed."""

    def subscribe(self, listener: ChannelListener) -> Callable[[], None]:
        """Subscribe to channel events; returns an unsubscribe handle."""


ChannelFactory = Callable[[DaemonServer], Awaitable[Channel]]


def daemon_url(server: DaemonServer) -> str:
    return f"wss://{server.host}:{server.port}{DAEMON_PATH}"


def basic_auth_header(server: DaemonServer) -> str:
    token = base64.b64encode(f"{server.user}:{server.password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class WebSocketChannel:
    """Channel backed by a secure WebSocket connection."""

    def __init__(self, connection: ClientConnection, *, url: str) -> None:
        self._connection = connection
        self._url = url
        self._listeners: set[ChannelListener] = set()
        self._closed = False
        self._close_task: asyncio.Task[None] | None = None
        self._reader = asyncio.get_running_loop().create_task(self._read_frames())

    @classmethod
    async def open(cls, server: DaemonServer, *, timeout: float = 5.0) -> WebSocketChannel:
        """Connect and authenticate, raising ConnectionBackendError on failure."""

        url = daemon_url(server)
        try:
            connection = await connect(
                url,
                additional_headers={"Authorization": basic_auth_header(server)},
                ssl=build_ssl_context(server),
                open_timeout=timeout,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            LOG.warning("Failed to open daemon channel", extra={"url": url, "error": str(exc)})
            raise ConnectionBackendError(describe_tls_failure(exc)) from exc
        LOG.debug("Opened daemon channel", extra={"url": url})
        return cls(connection, url=url)

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, text: str) -> None:
        if self._closed:
            raise ConnectionBackendError(f"Channel to {self._url} is closed")
        try:
            await self._connection.send(text)
        except ConnectionClosed as exc:
            raise ConnectionBackendError(f"Channel to {self._url} closed while sending") from exc

    def close(self) -> None:
        if self._close_task is not None:
            return
        self._closed = True
        self._close_task = asyncio.get_running_loop().create_task(self._connection.close())

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await self._close_task
        await asyncio.gather(self._reader, return_exceptions=True)

    def subscribe(self, listener: ChannelListener) -> Callable[[], None]:
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _emit(self, event: ChannelEvent) -> None:
        for listener in tuple(self._listeners):
            listener(event)

    async def _read_frames(self) -> None:
        try:
            async for frame in self._connection:
                text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
                self._emit(ChannelEvent("message", data=text))
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            LOG.warning("Daemon channel closed abnormally", extra={"url": self._url, "error": str(exc)})
            self._emit(ChannelEvent("error", error=exc))
        except Exception as exc:
            LOG.exception("Daemon channel reader failed", extra={"url": self._url})
            self._emit(ChannelEvent("error", error=exc))
        finally:
            self._closed = True
            self._emit(ChannelEvent("close"))


async def open_websocket_channel(server: DaemonServer) -> Channel:
    """Default ChannelFactory."""

    return await WebSocketChannel.open(server)


__all__ = [
    "Channel",
    "ChannelEvent",
    "ChannelFactory",
    "ChannelListener",
    "DAEMON_PATH",
    "WebSocketChannel",
    "basic_auth_header",
    "daemon_url",
    "open_websocket_channel",
]
