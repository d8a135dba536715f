"""Elastic pool of SQL jobs with idle-first, least-loaded job selection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence

from .config import PoolOptions, QueryOptions
from .connections import ChannelFactory
from .models import ConnectionBackendError, JobStatus, QueryResult, UsageError, WsdbError
from .query import Query, QueryRegistry
from .session import SQLJob

LOG = logging.getLogger(__name__)

INVALID_STATES = (JobStatus.ENDED, JobStatus.NOT_STARTED)

# A busy job with more requests than this queued triggers background growth.
GROWTH_THRESHOLD = 2


class Pool:
    """Bounded set of jobs shared by concurrent callers.

    ``get_job`` prefers a ready job, then the busy job with the fewest requests in
    flight. When even that job is loaded past the threshold and the pool has room,
    one extra job is connected in the background. At most one background growth runs
    at a time and it counts against the capacity while connecting, so the pool never
    holds more than ``max_size`` live jobs.
    """

    def __init__(
        self,
        options: PoolOptions | Mapping[str, Any],
        *,
        channel_factory: ChannelFactory | None = None,
        registry: QueryRegistry | None = None,
    ) -> None:
        self.options = options if isinstance(options, PoolOptions) else PoolOptions.model_validate(dict(options))
        self._channel_factory = channel_factory
        self._registry = registry
        self._jobs: list[SQLJob] = []
        self._growing: set[SQLJob] = set()
        self._growth_task: asyncio.Task[None] | None = None

    @property
    def jobs(self) -> tuple[SQLJob, ...]:
        return tuple(self._jobs)

    @property
    def growth_in_flight(self) -> bool:
        return self._growth_task is not None and not self._growth_task.done()

    async def init(self) -> list[SQLJob]:
        """Connect ``starting_size`` jobs concurrently."""

        if self.options.max_size <= 0:
            raise UsageError("Max size must be greater than 0")
        if self.options.starting_size <= 0:
            raise UsageError("Starting size must be greater than 0")
        if self.options.starting_size > self.options.max_size:
            raise UsageError("Max size must be greater than or equal to starting size")

        jobs = await asyncio.gather(*(self.add_job() for _ in range(self.options.starting_size)))
        LOG.info("Pool initialised", extra={"jobs": len(jobs), "max_size": self.options.max_size})
        return list(jobs)

    def has_space(self) -> bool:
        live = [
            job
            for job in self._jobs
            if job.get_status() not in INVALID_STATES or job in self._growing
        ]
        return len(live) < self.options.max_size

    def get_active_job_count(self) -> int:
        return len(
            [job for job in self._jobs if job.get_status() in (JobStatus.BUSY, JobStatus.READY)]
        )

    def cleanup(self) -> None:
        """Forget jobs that ended or never started."""

        self._jobs = [
            job
            for job in self._jobs
            if job.get_status() not in INVALID_STATES or job in self._growing
        ]

    async def add_job(self, existing_job: SQLJob | None = None, *, pool_ignore: bool = False) -> SQLJob:
        """Connect a new (or adopt an existing) job, adding it to the pool unless ``pool_ignore``."""

        if existing_job is not None:
            self.cleanup()
        job = existing_job or self._new_job()
        if not pool_ignore:
            self._jobs.append(job)
        if job.get_status() is JobStatus.NOT_STARTED:
            await job.connect(self.options.creds)
        return job

    def get_job(self) -> SQLJob:
        """Pick a job without waiting: a ready one, else the least loaded busy one."""

        ready = self._ready_job()
        if ready is not None:
            return ready

        busy = [job for job in self._jobs if job.get_status() is JobStatus.BUSY and job.connected]
        if not busy:
            raise ConnectionBackendError("No connected job available in the pool")
        freeist = min(busy, key=lambda job: job.get_running_count())
        if freeist.get_running_count() > GROWTH_THRESHOLD and self.has_space():
            self._start_growth()
        return freeist

    async def wait_for_job(self, use_new_job: bool = False) -> SQLJob:
        """A ready job, else a newly connected one when there is room, else ``get_job()``."""

        ready = self._ready_job()
        if ready is not None:
            return ready
        if self.has_space() or use_new_job:
            return await self.add_job()
        return self.get_job()

    async def pop_job(self) -> SQLJob:
        """Take a job out of the pool; the caller must close it.

        A ready job is removed from the pool. Without one, a new job is connected
        outside the pool.
        """

        index = self._ready_job_index()
        if index is not None:
            return self._jobs.pop(index)
        return await self.add_job(pool_ignore=True)

    def query(self, sql: str, opts: QueryOptions | Mapping[str, Any] | None = None) -> Query[Any]:
        return self.get_job().query(sql, opts)

    async def execute(
        self,
        sql: str,
        opts: QueryOptions | Mapping[str, Any] | None = None,
    ) -> QueryResult[Any]:
        return await self.get_job().execute(sql, opts)

    async def sql(self, strings: Sequence[str] | str, *values: Any) -> QueryResult[Any]:
        """Run literal SQL fragments joined by ``?`` markers bound to ``values``.

        ``pool.sql(["select * from emp where salary > ", ""], 1000)``
        """

        fragments = (strings,) if isinstance(strings, str) else tuple(strings)
        if len(fragments) != len(values) + 1:
            raise UsageError(
                f"Expected {len(fragments) - 1} value(s) for {len(fragments)} SQL fragment(s), got {len(values)}"
            )
        statement = "?".join(fragments)
        opts = QueryOptions(parameters=list(values)) if values else None
        return await self.execute(statement, opts)

    async def end(self) -> None:
        """Close every job held by the pool; popped jobs are left alone."""

        if self._growth_task is not None and not self._growth_task.done():
            self._growth_task.cancel()
        jobs = list(self._jobs)
        outcomes = await asyncio.gather(*(job.close() for job in jobs), return_exceptions=True)
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                LOG.warning("Failed to close pooled job", extra={"job": job.id, "error": str(outcome)})

    async def __aenter__(self) -> Pool:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.end()

    def _new_job(self) -> SQLJob:
        return SQLJob(self.options.opts, channel_factory=self._channel_factory, registry=self._registry)

    def _ready_job_index(self) -> int | None:
        for index, job in enumerate(self._jobs):
            if job.get_status() is JobStatus.READY:
                return index
        return None

    def _ready_job(self) -> SQLJob | None:
        index = self._ready_job_index()
        return self._jobs[index] if index is not None else None

    def _start_growth(self) -> None:
        if self.growth_in_flight:
            return
        job = self._new_job()
        self._jobs.append(job)
        self._growing.add(job)
        self._growth_task = asyncio.get_running_loop().create_task(self._grow(job))

    async def _grow(self, job: SQLJob) -> None:
        try:
            await job.connect(self.options.creds)
            LOG.info("Pool grew", extra={"job": job.id, "size": len(self._jobs)})
        except WsdbError as exc:
            LOG.warning("Background job failed to connect", extra={"error": str(exc)})
        finally:
            self._growing.discard(job)


__all__ = ["GROWTH_THRESHOLD", "INVALID_STATES", "Pool"]
