"""
Job persistence backends for JobQueue.

MemoryJobStore keeps a delayed heap (ordered by run time) and a ready heap
(ordered by priority then insertion) per queue. PostgresJobStore keeps jobs
in the ``crawl_jobs`` table and claims them with FOR UPDATE SKIP LOCKED so
several processes can share a queue. A claimed job holds a lease
(``locked_until``) that its worker renews; only jobs whose lease ran out are
returned to the waiting state.
"""

import asyncio
import heapq
import itertools
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json, RealDictCursor

from opportunity_crawler.core.db import get_db_conn

logger = logging.getLogger(__name__)

KEEP_COMPLETED = 5
KEEP_FAILED = 5
DEFAULT_LEASE_SECONDS = 300.0


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOptions:
    """
    Per-job scheduling options.

    Lower ``priority`` values run first. ``delay`` and ``backoff`` are in
    seconds; a failed attempt is re-run after ``backoff * 2 ** (attempt - 1)``.
    """

    def __init__(self, priority: int = 0, delay: float = 0.0, attempts: int = 3, backoff: float = 2.0):
        self.priority = priority
        self.delay = max(0.0, float(delay or 0))
        self.attempts = max(1, int(attempts))
        self.backoff = max(0.0, float(backoff))

    def to_dict(self) -> Dict:
        return {
            "priority": self.priority,
            "delay": self.delay,
            "attempts": self.attempts,
            "backoff": self.backoff,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "JobOptions":
        return cls(**(data or {}))

    def __repr__(self):
        return f"JobOptions(priority={self.priority}, delay={self.delay}, attempts={self.attempts})"


class Job:
    """A unit of queued work"""

    def __init__(
        self,
        queue: str,
        name: str,
        data: Dict[str, Any],
        options: JobOptions,
        id: Optional[str] = None,
        state: JobState = JobState.WAITING,
        attempts_made: int = 0,
        run_at: float = 0.0,
        created_at: Optional[float] = None,
        finished_at: Optional[float] = None,
        failed_reason: Optional[str] = None,
        result: Any = None,
        locked_until: Optional[float] = None,
    ):
        self.queue = queue
        self.name = name
        self.data = data
        self.options = options
        self.id = id
        self.state = JobState(state)
        self.attempts_made = attempts_made
        self.run_at = run_at
        self.created_at = created_at if created_at is not None else time.time()
        self.finished_at = finished_at
        self.failed_reason = failed_reason
        self.result = result
        self.locked_until = locked_until

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "data": self.data,
            "options": self.options.to_dict(),
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "run_at": self.run_at,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
            "locked_until": self.locked_until,
        }

    def __repr__(self):
        return f"Job(id={self.id}, queue={self.queue}, name={self.name}, state={self.state.value})"


class JobStore:
    """Interface implemented by the job backends"""

    async def add(self, job: Job) -> Job:
        raise NotImplementedError

    async def claim(self, queue: str, now: float, lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        """Mark the next runnable job active, leased until ``now + lease_seconds``"""
        raise NotImplementedError

    async def extend_lease(self, job: Job, locked_until: float) -> bool:
        """Renew the lease of an active job. False if the job is no longer active"""
        raise NotImplementedError

    async def update(self, job: Job) -> None:
        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def jobs(self, queue: str, state: Optional[JobState] = None) -> List[Job]:
        raise NotImplementedError

    async def counts(self, queue: str) -> Dict[str, int]:
        raise NotImplementedError

    async def clean(self, queue: str, grace_seconds: float, state: JobState, now: float) -> int:
        """Remove finished jobs older than the grace period"""
        raise NotImplementedError

    async def requeue_expired(self, queue: str, now: float) -> int:
        """Return active jobs whose lease ran out to the waiting state"""
        raise NotImplementedError


def _empty_counts() -> Dict[str, int]:
    return {state.value: 0 for state in JobState}


class MemoryJobStore(JobStore):
    """In-process job store"""

    def __init__(self, keep_completed: int = KEEP_COMPLETED, keep_failed: int = KEEP_FAILED):
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._jobs: Dict[str, Job] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count()
        self._ready: Dict[str, list] = {}
        self._delayed: Dict[str, list] = {}

    def _schedule(self, job: Job):
        if job.state == JobState.DELAYED:
            heapq.heappush(self._delayed.setdefault(job.queue, []), (job.run_at, next(self._seq), job.id))
        elif job.state == JobState.WAITING:
            heapq.heappush(self._ready.setdefault(job.queue, []), (job.options.priority, next(self._seq), job.id))

    def _promote(self, queue: str, now: float):
        delayed = self._delayed.get(queue, [])
        while delayed and delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.DELAYED:
                job.state = JobState.WAITING
                self._schedule(job)

    def _prune(self, queue: str, state: JobState, keep: int):
        finished = [j for j in self._jobs.values() if j.queue == queue and j.state == state]
        if len(finished) <= keep:
            return
        finished.sort(key=lambda j: j.finished_at or 0)
        for job in finished[: len(finished) - keep]:
            del self._jobs[job.id]

    async def add(self, job: Job) -> Job:
        job.id = str(next(self._ids))
        self._jobs[job.id] = job
        self._schedule(job)
        return job

    async def claim(self, queue: str, now: float, lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        self._promote(queue, now)
        ready = self._ready.get(queue, [])
        while ready:
            _, _, job_id = heapq.heappop(ready)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.WAITING:
                job.state = JobState.ACTIVE
                job.locked_until = now + lease_seconds
                return job
        return None

    async def extend_lease(self, job: Job, locked_until: float) -> bool:
        stored = self._jobs.get(job.id)
        if stored is None or stored.state != JobState.ACTIVE:
            return False
        stored.locked_until = locked_until
        job.locked_until = locked_until
        return True

    async def update(self, job: Job) -> None:
        if job.state != JobState.ACTIVE:
            job.locked_until = None
        self._jobs[job.id] = job
        if job.state in (JobState.WAITING, JobState.DELAYED):
            self._schedule(job)
        elif job.state == JobState.COMPLETED:
            self._prune(job.queue, JobState.COMPLETED, self.keep_completed)
        elif job.state == JobState.FAILED:
            self._prune(job.queue, JobState.FAILED, self.keep_failed)

    async def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def jobs(self, queue: str, state: Optional[JobState] = None) -> List[Job]:
        return [
            j for j in self._jobs.values()
            if j.queue == queue and (state is None or j.state == state)
        ]

    async def counts(self, queue: str) -> Dict[str, int]:
        counts = _empty_counts()
        for job in self._jobs.values():
            if job.queue == queue:
                counts[job.state.value] += 1
        return counts

    async def clean(self, queue: str, grace_seconds: float, state: JobState, now: float) -> int:
        cutoff = now - grace_seconds
        stale = [
            j.id for j in self._jobs.values()
            if j.queue == queue and j.state == state and (j.finished_at or 0) < cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    async def requeue_expired(self, queue: str, now: float) -> int:
        stalled = [
            j for j in self._jobs.values()
            if j.queue == queue and j.state == JobState.ACTIVE
            and (j.locked_until is None or j.locked_until < now)
        ]
        for job in stalled:
            job.state = JobState.WAITING
            job.locked_until = None
            self._schedule(job)
        return len(stalled)


def _ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, timezone.utc) if value is not None else None


def _epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _job_from_row(row: Dict) -> Job:
    return Job(
        queue=row["queue"],
        name=row["name"],
        data=row["data"] or {},
        options=JobOptions.from_dict(row["options"]),
        id=str(row["id"]),
        state=row["state"],
        attempts_made=row["attempts_made"],
        run_at=_epoch(row["run_at"]) or 0.0,
        created_at=_epoch(row["created_at"]),
        finished_at=_epoch(row["finished_at"]),
        failed_reason=row["failed_reason"],
        result=row["result"],
        locked_until=_epoch(row.get("locked_until")),
    )


class PostgresJobStore(JobStore):
    """Jobs in the crawl_jobs table"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def ensure_schema(self):
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS crawl_jobs (
                        id BIGSERIAL PRIMARY KEY,
                        queue TEXT NOT NULL,
                        name TEXT NOT NULL,
                        data JSONB NOT NULL DEFAULT '{}'::jsonb,
                        options JSONB NOT NULL DEFAULT '{}'::jsonb,
                        priority INTEGER NOT NULL DEFAULT 0,
                        state TEXT NOT NULL,
                        attempts_made INTEGER NOT NULL DEFAULT 0,
                        run_at TIMESTAMPTZ NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        finished_at TIMESTAMPTZ,
                        failed_reason TEXT,
                        result JSONB,
                        locked_until TIMESTAMPTZ
                    )
                """)
                cur.execute("ALTER TABLE crawl_jobs ADD COLUMN IF NOT EXISTS locked_until TIMESTAMPTZ")
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_crawl_jobs_claim
                    ON crawl_jobs (queue, state, priority, run_at)
                """)
                conn.commit()
        finally:
            conn.close()

    def _add(self, job: Job) -> Job:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO crawl_jobs
                        (queue, name, data, options, priority, state, attempts_made, run_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                """, (
                    job.queue, job.name, Json(job.data), Json(job.options.to_dict()),
                    job.options.priority, job.state.value, job.attempts_made,
                    _ts(job.run_at), _ts(job.created_at),
                ))
                job.id = str(cur.fetchone()[0])
                conn.commit()
                return job
        finally:
            conn.close()

    def _claim(self, queue: str, now: float, lease_seconds: float) -> Optional[Job]:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    UPDATE crawl_jobs SET state = 'active', locked_until = %s
                    WHERE id = (
                        SELECT id FROM crawl_jobs
                        WHERE queue = %s
                        AND state IN ('waiting', 'delayed')
                        AND run_at <= %s
                        ORDER BY priority, run_at, id
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    RETURNING *
                """, (_ts(now + lease_seconds), queue, _ts(now)))
                row = cur.fetchone()
                conn.commit()
                return _job_from_row(row) if row else None
        finally:
            conn.close()

    def _update(self, job: Job):
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE crawl_jobs
                    SET state = %s, attempts_made = %s, run_at = %s,
                        finished_at = %s, failed_reason = %s, result = %s,
                        locked_until = %s
                    WHERE id = %s
                """, (
                    job.state.value, job.attempts_made, _ts(job.run_at),
                    _ts(job.finished_at), job.failed_reason,
                    Json(job.result) if job.result is not None else None,
                    _ts(job.locked_until) if job.state == JobState.ACTIVE else None,
                    int(job.id),
                ))
                conn.commit()
        finally:
            conn.close()

    def _select(self, sql: str, params: tuple) -> List[Dict]:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return cur.fetchall()
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple) -> int:
        conn = get_db_conn(self.db_url)
        try:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                affected = cur.rowcount
                conn.commit()
                return affected
        finally:
            conn.close()

    async def add(self, job: Job) -> Job:
        return await asyncio.to_thread(self._add, job)

    async def claim(self, queue: str, now: float, lease_seconds: float = DEFAULT_LEASE_SECONDS) -> Optional[Job]:
        return await asyncio.to_thread(self._claim, queue, now, lease_seconds)

    async def extend_lease(self, job: Job, locked_until: float) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE crawl_jobs SET locked_until = %s WHERE id = %s AND state = 'active'",
            (_ts(locked_until), int(job.id)),
        )
        if updated:
            job.locked_until = locked_until
        return bool(updated)

    async def update(self, job: Job) -> None:
        await asyncio.to_thread(self._update, job)

    async def get(self, job_id: str) -> Optional[Job]:
        rows = await asyncio.to_thread(self._select, "SELECT * FROM crawl_jobs WHERE id = %s", (int(job_id),))
        return _job_from_row(rows[0]) if rows else None

    async def jobs(self, queue: str, state: Optional[JobState] = None) -> List[Job]:
        if state is None:
            rows = await asyncio.to_thread(
                self._select, "SELECT * FROM crawl_jobs WHERE queue = %s ORDER BY id", (queue,)
            )
        else:
            rows = await asyncio.to_thread(
                self._select,
                "SELECT * FROM crawl_jobs WHERE queue = %s AND state = %s ORDER BY id",
                (queue, state.value),
            )
        return [_job_from_row(row) for row in rows]

    async def counts(self, queue: str) -> Dict[str, int]:
        rows = await asyncio.to_thread(
            self._select,
            "SELECT state, COUNT(*) AS count FROM crawl_jobs WHERE queue = %s GROUP BY state",
            (queue,),
        )
        counts = _empty_counts()
        for row in rows:
            counts[row["state"]] = row["count"]
        return counts

    async def clean(self, queue: str, grace_seconds: float, state: JobState, now: float) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM crawl_jobs WHERE queue = %s AND state = %s AND finished_at < %s",
            (queue, state.value, _ts(now - grace_seconds)),
        )

    async def requeue_expired(self, queue: str, now: float) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE crawl_jobs SET state = 'waiting', locked_until = NULL
            WHERE queue = %s AND state = 'active'
            AND (locked_until IS NULL OR locked_until < %s)
            """,
            (queue, _ts(now)),
        )
