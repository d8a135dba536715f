"""Tests for correlation-id request multiplexing."""

from __future__ import annotations

import asyncio
import json
from typing import Callable

import pytest

from fakes import settle
from wsdb.connections import ChannelListener
from wsdb.models import ConnectionBackendError, RequestTimeoutError, UsageError
from wsdb.multiplexer import RequestMultiplexer, new_unique_id


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _RecordingChannel:
    """Channel that only records outbound frames; tests answer by hand."""

    def __init__(self, *, fail_send: bool = False) -> None:
        self.frames: list[dict[str, object]] = []
        self._fail_send = fail_send

    @property
    def is_open(self) -> bool:
        return True

    async def send(self, text: str) -> None:
        if self._fail_send:
            raise ConnectionBackendError("broken pipe")
        self.frames.append(json.loads(text))

    def close(self) -> None:  # pragma: no cover - unused
        return None

    async def wait_closed(self) -> None:  # pragma: no cover - unused
        return None

    def subscribe(self, listener: ChannelListener) -> Callable[[], None]:  # pragma: no cover - unused
        return lambda: None


def test_unique_ids_are_prefixed_and_increase() -> None:
    first = new_unique_id("query")
    second = new_unique_id("query")

    assert first.startswith("query")
    assert int(second.removeprefix("query")) > int(first.removeprefix("query"))
    assert new_unique_id().startswith("id")


@pytest.mark.anyio
async def test_responses_are_matched_by_id_not_order() -> None:
    channel = _RecordingChannel()
    mux = RequestMultiplexer(channel)

    first = asyncio.create_task(mux.send({"id": "a1", "type": "sql"}))
    second = asyncio.create_task(mux.send({"id": "b2", "type": "sql"}))
    await settle()
    assert mux.running_count == 2
    assert set(mux.pending_ids()) == {"a1", "b2"}

    mux.dispatch(json.dumps({"id": "b2", "success": True, "marker": "second"}))
    mux.dispatch(json.dumps({"id": "a1", "success": True, "marker": "first"}))

    assert (await first)["marker"] == "first"
    assert (await second)["marker"] == "second"
    assert mux.running_count == 0


@pytest.mark.anyio
async def test_none_values_are_not_sent() -> None:
    channel = _RecordingChannel()
    mux = RequestMultiplexer(channel)

    task = asyncio.create_task(mux.send({"id": "c1", "type": "connect", "props": None}))
    await settle()
    mux.dispatch(json.dumps({"id": "c1", "success": True}))
    await task

    assert channel.frames == [{"id": "c1", "type": "connect"}]


@pytest.mark.anyio
async def test_unknown_and_malformed_frames_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    mux = RequestMultiplexer(_RecordingChannel())
    task = asyncio.create_task(mux.send({"id": "x1"}))
    await settle()

    mux.dispatch("{not json")
    mux.dispatch("[1, 2, 3]")
    mux.dispatch(json.dumps({"id": "nobody", "success": True}))
    assert not task.done()
    assert mux.running_count == 1

    mux.dispatch(json.dumps({"id": "x1", "success": True}))
    # A repeated response for an id already answered is ignored.
    mux.dispatch(json.dumps({"id": "x1", "success": False}))

    assert (await task)["success"] is True
    assert "unknown id" in caplog.text


@pytest.mark.anyio
async def test_requests_without_unique_id_are_rejected() -> None:
    mux = RequestMultiplexer(_RecordingChannel())

    with pytest.raises(UsageError):
        await mux.send({"type": "sql"})

    task = asyncio.create_task(mux.send({"id": "dup"}))
    await settle()
    with pytest.raises(UsageError, match="already in flight"):
        await mux.send({"id": "dup"})

    mux.dispatch(json.dumps({"id": "dup"}))
    await task


@pytest.mark.anyio
async def test_send_failure_does_not_leave_a_waiter() -> None:
    mux = RequestMultiplexer(_RecordingChannel(fail_send=True))

    with pytest.raises(ConnectionBackendError):
        await mux.send({"id": "lost"})

    assert mux.running_count == 0


@pytest.mark.anyio
async def test_timeout_raises_and_forgets_the_request() -> None:
    mux = RequestMultiplexer(_RecordingChannel(), timeout=0.01)

    with pytest.raises(RequestTimeoutError):
        await mux.send({"id": "slow"})

    assert mux.running_count == 0
    mux.dispatch(json.dumps({"id": "slow", "success": True}))


@pytest.mark.anyio
async def test_fail_pending_rejects_every_waiter() -> None:
    mux = RequestMultiplexer(_RecordingChannel())
    tasks = [asyncio.create_task(mux.send({"id": f"p{index}"})) for index in range(3)]
    await settle()

    mux.fail_pending(ConnectionBackendError("gone"))

    for task in tasks:
        with pytest.raises(ConnectionBackendError, match="gone"):
            await task
    assert mux.running_count == 0
