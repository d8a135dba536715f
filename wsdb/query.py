"""Statement execution lifecycle bound to a SQL job."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Generic, Iterator, Mapping, TypeVar

from pydantic import ValidationError

from .config import QueryOptions
from .models import (
    CLCommandResult,
    QueryResult,
    QueryState,
    QueryTypeError,
    ServerError,
    ServerResponse,
    UsageError,
    parse_response,
)
from .multiplexer import new_unique_id

if TYPE_CHECKING:
    from .session import SQLJob

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ROWS_TO_FETCH = 100

UNKNOWN_QUERY_ERROR = "Failed to run query (unknown error)"


class QueryExecutionError(ServerError):
    """Raised when the daemon rejects a statement."""


class QueryRegistry:
    """Every Query created against it, in creation order.

    Supports lookup by correlation id and bulk cleanup. Entries are only removed by
    ``cleanup()``; closing a query does not unregister it.
    """

    def __init__(self) -> None:
        self._queries: list[Query[Any]] = []

    def register(self, query: Query[Any]) -> None:
        self._queries.append(query)

    def by_id(self, correlation_id: str | None) -> Query[Any] | None:
        """First query carrying ``correlation_id``, or None for an empty id."""

        if not correlation_id:
            return None
        for query in self._queries:
            if query.get_id() == correlation_id:
                return query
        return None

    def get_open_ids(self, for_job: SQLJob | None = None) -> list[str]:
        """Correlation ids of queries that are not finished, optionally for one job."""

        open_states = (QueryState.NOT_YET_RUN, QueryState.RUN_MORE_DATA_AVAILABLE)
        return [
            query.get_id()
            for query in self._queries
            if (for_job is None or query.get_host_job() is for_job)
            and query.get_state() in open_states
            and query.get_id() is not None
        ]

    async def cleanup(self) -> None:
        """Close finished or failed queries, then drop every query that is done.

        Closing a failed query marks it done, so it is dropped in the same pass.
        """

        finished = [
            query
            for query in self._queries
            if query.get_state() in (QueryState.RUN_DONE, QueryState.ERROR)
        ]
        outcomes = await asyncio.gather(*(query.close() for query in finished), return_exceptions=True)
        for query, outcome in zip(finished, outcomes):
            if isinstance(outcome, Exception):
                LOG.warning("Failed to close statement", extra={"query_id": query.get_id(), "error": str(outcome)})
        self._queries = [
            query for query in self._queries if query.get_state() is not QueryState.RUN_DONE
        ]

    def clear(self) -> None:
        self._queries.clear()

    def __len__(self) -> int:
        return len(self._queries)

    def __iter__(self) -> Iterator[Query[Any]]:
        return iter(tuple(self._queries))

    def __contains__(self, query: object) -> bool:
        return query in self._queries


default_registry = QueryRegistry()


class Query(Generic[T]):
    """One SQL statement or CL command and its execution state on a job."""

    def __init__(
        self,
        job: SQLJob,
        sql: str,
        opts: QueryOptions | Mapping[str, Any] | None = None,
        *,
        registry: QueryRegistry | None = None,
    ) -> None:
        if not isinstance(sql, str):
            raise QueryTypeError("Query must be of type string")
        options = _coerce_options(opts)
        self._job = job
        self._sql = sql
        self._parameters = options.parameters
        self._is_prepared = options.parameters is not None
        self._is_cl_command = options.is_cl_command
        self._is_terse_results = options.is_terse_results
        self._rows_to_fetch = DEFAULT_ROWS_TO_FETCH
        self._state = QueryState.NOT_YET_RUN
        self._correlation_id: str | None = None
        self._close_task: asyncio.Future[ServerResponse | None] | None = None
        self._registry = registry if registry is not None else default_registry
        self._registry.register(self)

    @property
    def sql(self) -> str:
        return self._sql

    @property
    def parameters(self) -> list[Any] | None:
        return self._parameters

    @property
    def is_prepared(self) -> bool:
        return self._is_prepared

    @property
    def is_cl_command(self) -> bool:
        return self._is_cl_command

    @property
    def registry(self) -> QueryRegistry:
        return self._registry

    def get_host_job(self) -> SQLJob:
        return self._job

    def get_id(self) -> str | None:
        return self._correlation_id

    def get_state(self) -> QueryState:
        return self._state

    async def execute(self, rows_to_fetch: int | None = None) -> QueryResult[T]:
        """Run the statement and return the first block of rows.

        A failed SQL statement raises QueryExecutionError. A failed CL command is
        returned as-is: inspect ``result.success``.
        """

        rows = self._validate_rows(rows_to_fetch)
        if self._state is QueryState.RUN_MORE_DATA_AVAILABLE:
            raise UsageError("Statement has already been run")
        if self._state is QueryState.RUN_DONE:
            raise UsageError("Statement has already been fully run")
        if self._state is QueryState.ERROR:
            raise UsageError("Statement has already failed")

        if self._is_cl_command:
            request: dict[str, Any] = {
                "id": new_unique_id("clcommand"),
                "type": "cl",
                "terse": self._is_terse_results,
                "cmd": self._sql,
            }
        else:
            request = {
                "id": new_unique_id("query"),
                "type": "prepare_sql_execute" if self._is_prepared else "sql",
                "sql": self._sql,
                "terse": self._is_terse_results,
                "rows": rows,
                "parameters": self._parameters,
            }
        self._rows_to_fetch = rows

        response = await self._job.send(request)
        model = CLCommandResult if self._is_cl_command else QueryResult
        try:
            result = parse_response(model, response)
        except ServerError:
            self._state = QueryState.ERROR
            raise
        self._state = QueryState.RUN_DONE if result.is_done else QueryState.RUN_MORE_DATA_AVAILABLE

        if result.success is not True and not self._is_cl_command:
            self._state = QueryState.ERROR
            LOG.debug("Statement failed", extra={"request_id": request["id"], "job": self._job.id})
            raise QueryExecutionError(_error_message(result), result)

        self._correlation_id = result.id
        return result

    async def fetch_more(self, rows_to_fetch: int | None = None) -> QueryResult[T]:
        """Fetch the next block of rows of a statement that has more data."""

        rows = self._validate_rows(rows_to_fetch)
        if self._state is QueryState.NOT_YET_RUN:
            raise UsageError("Statement has not yet been run")
        if self._state is QueryState.RUN_DONE:
            raise UsageError("Statement has already been fully run")
        if self._state is QueryState.ERROR:
            raise UsageError("Statement has already failed")

        request = {
            "id": new_unique_id("fetchMore"),
            "cont_id": self._correlation_id,
            "type": "sqlmore",
            "sql": self._sql,
            "rows": rows,
        }
        self._rows_to_fetch = rows

        response = await self._job.send(request)
        try:
            result = parse_response(QueryResult, response)
        except ServerError:
            self._state = QueryState.ERROR
            raise
        self._state = QueryState.RUN_DONE if result.is_done else QueryState.RUN_MORE_DATA_AVAILABLE

        if result.success is not True:
            self._state = QueryState.ERROR
            raise QueryExecutionError(result.error or UNKNOWN_QUERY_ERROR, result)
        return result

    def close(self) -> asyncio.Future[ServerResponse | None]:
        """Mark the statement done and release its server-side cursor.

        The local state changes immediately; the returned future completes when the
        daemon acknowledges the close and may be awaited or ignored.
        """

        loop = asyncio.get_running_loop()
        cursor_open = (
            self._correlation_id is not None
            and self._close_task is None
            and self._state is not QueryState.RUN_DONE
        )
        self._state = QueryState.RUN_DONE
        if cursor_open:
            self._close_task = loop.create_task(self._send_close(self._correlation_id))
            self._close_task.add_done_callback(_log_close_failure)
            return self._close_task

        done: asyncio.Future[ServerResponse | None] = loop.create_future()
        done.set_result(None)
        return done

    async def _send_close(self, correlation_id: str) -> ServerResponse:
        response = await self._job.send(
            {
                "id": new_unique_id("sqlclose"),
                "cont_id": correlation_id,
                "type": "sqlclose",
            }
        )
        return parse_response(ServerResponse, response)

    def _validate_rows(self, rows_to_fetch: int | None) -> int:
        rows = self._rows_to_fetch if rows_to_fetch is None else rows_to_fetch
        if isinstance(rows, bool) or not isinstance(rows, (int, float)):
            raise UsageError("rows_to_fetch must be a number")
        if rows <= 0:
            raise UsageError("rows_to_fetch must be greater than 0")
        if rows != int(rows):
            raise UsageError("rows_to_fetch must be a whole number")
        return int(rows)

    def __repr__(self) -> str:
        return f"Query(id={self._correlation_id!r}, state={self._state.name}, sql={self._sql[:40]!r})"


def _coerce_options(opts: QueryOptions | Mapping[str, Any] | None) -> QueryOptions:
    if opts is None:
        return QueryOptions()
    if isinstance(opts, QueryOptions):
        return opts
    try:
        return QueryOptions.model_validate(dict(opts))
    except ValidationError as exc:
        raise UsageError(f"Invalid query options: {exc}") from exc


def _error_message(result: ServerResponse) -> str:
    parts = [str(part) for part in (result.error, result.sql_state, result.sql_rc) if part is not None]
    return ", ".join(parts) if parts else UNKNOWN_QUERY_ERROR


def _log_close_failure(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOG.debug("Statement close was not acknowledged", extra={"error": str(exc)})


__all__ = [
    "DEFAULT_ROWS_TO_FETCH",
    "Query",
    "QueryExecutionError",
    "QueryRegistry",
    "default_registry",
]
