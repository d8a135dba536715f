"""Correlation-id request multiplexer over a single channel."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Mapping

from .connections import Channel
from .models import RequestTimeoutError, UsageError

LOG = logging.getLogger(__name__)

_id_counter = itertools.count(1)


def new_unique_id(prefix: str = "id") -> str:
    """Process-wide monotonic id such as ``query12``; not unique across restarts."""

    return f"{prefix}{next(_id_counter)}"


class RequestMultiplexer:
    """Routes each inbound frame to the request that carries the same ``id``.

    Requests may be issued concurrently; responses are matched by id alone, never
    by arrival order. Every waiter is a one-shot future removed as soon as it is
    fulfilled, so a response id is delivered at most once.
    """

    def __init__(self, channel: Channel, *, timeout: float | None = None) -> None:
        self._channel = channel
        self._timeout = timeout
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def running_count(self) -> int:
        """Number of requests still waiting for their response."""

        return len(self._pending)

    def pending_ids(self) -> tuple[str, ...]:
        return tuple(self._pending)

    async def send(
        self,
        request: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send ``request`` and wait for the response with the same id."""

        request_id = request.get("id")
        if not isinstance(request_id, str) or not request_id:
            raise UsageError("Request must carry a non-empty string id")
        if request_id in self._pending:
            raise UsageError(f"Request id '{request_id}' is already in flight")

        payload = json.dumps({key: value for key, value in request.items() if value is not None})
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._channel.send(payload)
        except BaseException:
            self._pending.pop(request_id, None)
            raise

        wait_for = timeout if timeout is not None else self._timeout
        try:
            if wait_for is None:
                return await future
            return await asyncio.wait_for(asyncio.shield(future), timeout=wait_for)
        except TimeoutError as exc:
            raise RequestTimeoutError(
                f"No response to request '{request_id}' within {wait_for} seconds"
            ) from exc
        finally:
            if self._pending.get(request_id) is future:
                del self._pending[request_id]

    def dispatch(self, text: str) -> None:
        """Resolve the waiter matching an inbound frame; malformed frames are dropped."""

        try:
            response = json.loads(text)
        except json.JSONDecodeError:
            LOG.warning("Dropping malformed frame", extra={"frame": text[:200]})
            return
        if not isinstance(response, dict):
            LOG.warning("Dropping non-object frame", extra={"frame": text[:200]})
            return
        response_id = response.get("id")
        future = self._pending.pop(response_id, None) if isinstance(response_id, str) else None
        if future is None:
            LOG.warning("Dropping frame with unknown id", extra={"request_id": response_id})
            return
        if not future.done():
            future.set_result(response)

    def fail_pending(self, exc: BaseException) -> None:
        """Fail every outstanding waiter with ``exc``."""

        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)


__all__ = ["RequestMultiplexer", "new_unique_id"]
