"""SQL job: one authenticated daemon connection and the requests running on it."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, TypeVar

from .config import DaemonServer, JDBCOptions, QueryOptions, serialize_jdbc_options
from .connections import Channel, ChannelEvent, ChannelFactory, ChannelListener, open_websocket_channel
from .models import (
    ConnectionBackendError,
    ConnectionResult,
    ExplainResults,
    ExplainType,
    GetTraceDataResult,
    JobStatus,
    QueryResult,
    ServerError,
    ServerResponse,
    ServerTraceDest,
    ServerTraceLevel,
    SetConfigResult,
    TransactionEndType,
    UsageError,
    VersionCheckResult,
    parse_response,
)
from .multiplexer import RequestMultiplexer, new_unique_id
from .query import Query, QueryRegistry

LOG = logging.getLogger(__name__)

APPLICATION_NAME = "Python client"

TRANSACTION_COUNT_QUERY = "\n".join(
    [
        "select count(*) as thecount",
        "  from qsys2.db_transaction_info",
        "  where JOB_NAME = qsys2.job_name and",
        "    (local_record_changes_pending = 'YES' or local_object_changes_pending = 'YES')",
    ]
)

ResponseModel = TypeVar("ResponseModel", bound=ServerResponse)


class SQLJob:
    """A job on the daemon, able to run many sequential or interleaved statements.

    Status is derived on every read: BUSY whenever requests are in flight on an
    open channel, otherwise the stored lifecycle status.
    """

    def __init__(
        self,
        options: JDBCOptions | None = None,
        *,
        channel_factory: ChannelFactory | None = None,
        registry: QueryRegistry | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.options: dict[str, Any] = dict(options or {})
        self.id: str | None = None
        self._unique_id = new_unique_id("sqljob")
        self._channel_factory = channel_factory or open_websocket_channel
        self._registry = registry
        self._request_timeout = request_timeout
        self._status = JobStatus.NOT_STARTED
        self._channel: Channel | None = None
        self._mux: RequestMultiplexer | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._trace_file: str | None = None
        self._is_tracing_channel_data = False

    def get_unique_id(self) -> str:
        return self._unique_id

    def get_status(self) -> JobStatus:
        channel_open = self._channel is not None and self._channel.is_open
        if channel_open and self.get_running_count() > 0:
            return JobStatus.BUSY
        return self._status

    @property
    def connected(self) -> bool:
        """True once the daemon accepted the job and until it ends."""

        return self._status is JobStatus.READY

    def get_running_count(self) -> int:
        return self._mux.running_count if self._mux is not None else 0

    def get_trace_file_path(self) -> str | None:
        return self._trace_file

    def enable_local_trace(self) -> None:
        """Log every raw frame sent and received from now on."""

        self._is_tracing_channel_data = True

    def under_commit_control(self) -> bool:
        isolation = self.options.get("transaction isolation")
        return bool(isolation) and isolation != "none"

    async def connect(self, server: DaemonServer) -> ConnectionResult:
        """Open a channel and start a job, replacing any previous connection."""

        if self._status is JobStatus.ENDED:
            raise UsageError(f"Job {self._unique_id} has ended; create a new SQLJob to reconnect")
        self._status = JobStatus.CONNECTING
        try:
            channel = await self._channel_factory(server)
        except BaseException:
            self._status = JobStatus.NOT_STARTED
            raise
        self._attach(channel)

        props = serialize_jdbc_options(self.options)
        request = {
            "id": new_unique_id(),
            "type": "connect",
            "technique": "tcp",
            "application": APPLICATION_NAME,
            "props": props or None,
        }
        try:
            response = await self.send(request)
            result = parse_response(ConnectionResult, response)
        except BaseException:
            # Also reached when a caller-side timeout cancels the handshake.
            self.dispose()
            self._status = JobStatus.NOT_STARTED
            raise

        if result.success is not True:
            self.dispose()
            self._status = JobStatus.NOT_STARTED
            raise ConnectionBackendError(result.error or "Failed to connect to server.")

        self._status = JobStatus.READY
        self.id = result.job
        self._is_tracing_channel_data = False
        LOG.info("Connected job", extra={"job": self.id, "unique_id": self._unique_id})
        return result

    async def send(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Send one request and wait for its correlated response."""

        if self._mux is None or self._channel is None or not self._channel.is_open:
            raise ConnectionBackendError(f"Job {self._unique_id} is not connected")
        if self._is_tracing_channel_data:
            LOG.info("Sending frame", extra={"job": self.id, "frame": dict(request)})
        return await self._mux.send(request, timeout=self._request_timeout)

    def query(self, sql: str, opts: QueryOptions | Mapping[str, Any] | None = None) -> Query[Any]:
        """Create a statement bound to this job; nothing is sent yet."""

        return Query(self, sql, opts, registry=self._registry)

    def clcommand(self, cmd: str) -> Query[Any]:
        return Query(self, cmd, QueryOptions(is_cl_command=True), registry=self._registry)

    async def execute(
        self,
        sql: str,
        opts: QueryOptions | Mapping[str, Any] | None = None,
    ) -> QueryResult[Any]:
        """Run a statement once, close it and return its result."""

        query = self.query(sql, opts)
        result = await query.execute()
        await query.close()
        if result.error:
            raise ServerError(result.error, result)
        return result

    async def get_version(self) -> VersionCheckResult:
        return await self._request(
            {"id": new_unique_id(), "type": "getversion"},
            VersionCheckResult,
            "Failed to get version from backend",
        )

    async def explain(self, statement: str, explain_type: ExplainType = ExplainType.RUN) -> ExplainResults:
        return await self._request(
            {
                "id": new_unique_id(),
                "type": "dove",
                "sql": statement,
                "run": explain_type is ExplainType.RUN,
            },
            ExplainResults,
            "Failed to explain.",
        )

    async def get_trace_data(self) -> GetTraceDataResult:
        return await self._request(
            {"id": new_unique_id(), "type": "gettracedata"},
            GetTraceDataResult,
            "Failed to get trace data from backend",
        )

    async def set_trace_config(self, dest: ServerTraceDest, level: ServerTraceLevel) -> SetConfigResult:
        """Configure server-side tracing; also starts logging every raw frame locally."""

        self._is_tracing_channel_data = True
        result = await self._request(
            {
                "id": new_unique_id(),
                "type": "setconfig",
                "tracedest": ServerTraceDest(dest).value,
                "tracelevel": ServerTraceLevel(level).value,
            },
            SetConfigResult,
            "Failed to set trace options on backend",
        )
        self._trace_file = result.tracedest if result.tracedest and result.tracedest.startswith("/") else None
        return result

    async def get_pending_transactions(self) -> int:
        """Number of uncommitted record or object changes in this job."""

        result = await self.query(TRANSACTION_COUNT_QUERY).execute(1)
        if result.success and len(result.data) == 1:
            row = result.data[0]
            count = row.get("THECOUNT") if isinstance(row, dict) else None
            if count:
                return int(count)
        return 0

    async def end_transaction(self, end_type: TransactionEndType) -> QueryResult[Any]:
        """Commit or roll back the current unit of work."""

        if end_type == TransactionEndType.COMMIT:
            statement = "COMMIT"
        elif end_type == TransactionEndType.ROLLBACK:
            statement = "ROLLBACK"
        else:
            raise UsageError(f"TransactionEndType {end_type} not valid")
        return await self.query(statement).execute()

    async def close(self) -> None:
        channel = self._channel
        self.dispose()
        if channel is not None:
            await channel.wait_closed()

    def dispose(self) -> None:
        """Close the channel and mark the job ended. Safe to call repeatedly."""

        channel, mux = self._detach()
        if mux is not None:
            mux.fail_pending(ConnectionBackendError(f"Job {self._unique_id} was closed"))
        if channel is not None:
            channel.close()
        if self._status is not JobStatus.ENDED:
            LOG.debug("Job ended", extra={"job": self.id, "unique_id": self._unique_id})
        self._status = JobStatus.ENDED

    async def __aenter__(self) -> SQLJob:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(self, request: dict[str, Any], model: type[ResponseModel], fallback: str) -> ResponseModel:
        response = await self.send(request)
        result = parse_response(model, response)
        if result.success is not True:
            raise ServerError(result.error or fallback, result)
        return result

    def _attach(self, channel: Channel) -> None:
        previous, previous_mux = self._detach()
        if previous_mux is not None:
            previous_mux.fail_pending(ConnectionBackendError(f"Job {self._unique_id} reconnected"))
        if previous is not None:
            previous.close()
        self._channel = channel
        self._mux = RequestMultiplexer(channel)
        self._unsubscribe = channel.subscribe(self._make_listener(channel))

    def _detach(self) -> tuple[Channel | None, RequestMultiplexer | None]:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        channel, mux = self._channel, self._mux
        self._channel = None
        self._mux = None
        return channel, mux

    def _make_listener(self, channel: Channel) -> ChannelListener:
        def _listener(event: ChannelEvent) -> None:
            if channel is not self._channel:
                return
            self._handle_channel_event(event)

        return _listener

    def _handle_channel_event(self, event: ChannelEvent) -> None:
        if event.kind == "message":
            if self._is_tracing_channel_data:
                LOG.info("Received frame", extra={"job": self.id, "frame": event.data})
            if self._mux is not None and event.data is not None:
                self._mux.dispatch(event.data)
        elif event.kind == "error":
            LOG.warning("Channel error, ending job", extra={"job": self.id, "error": str(event.error)})
            self.dispose()
        elif event.kind == "close":
            self.dispose()

    def __repr__(self) -> str:
        return f"SQLJob(unique_id={self._unique_id!r}, id={self.id!r}, status={self.get_status().value})"


__all__ = ["APPLICATION_NAME", "SQLJob", "TRANSACTION_COUNT_QUERY"]
