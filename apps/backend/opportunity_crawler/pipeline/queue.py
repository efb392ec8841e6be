"""
Async job queue with priority, delayed start, retry/backoff and a bounded
worker pool.

    queue = JobQueue("listing-crawl", MemoryJobStore(), concurrency=5)
    queue.process("crawl-listing", handle_listing)
    await queue.start()
    await queue.add("crawl-listing", {"crawl_source_id": "..."}, JobOptions(priority=1))
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from opportunity_crawler.core.errors import ConfigurationError, is_retryable
from opportunity_crawler.pipeline.job_store import DEFAULT_LEASE_SECONDS, Job, JobOptions, JobState, JobStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0

Handler = Callable[[Job], Awaitable[Any]]
FailedListener = Callable[[Job, BaseException], None]


class JobQueue:
    """A named queue served by ``concurrency`` worker tasks"""

    def __init__(
        self,
        name: str,
        store: JobStore,
        concurrency: int = 1,
        default_options: Optional[JobOptions] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.store = store
        self.concurrency = max(1, concurrency)
        self.default_options = default_options or JobOptions()
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._handlers: Dict[str, Handler] = {}
        self._failed_listeners: List[FailedListener] = []
        self._workers: List[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._closing = False
        self._last_requeue = 0.0

    def process(self, job_name: str, handler: Handler):
        """Register the handler for jobs with this name"""
        self._handlers[job_name] = handler

    def on_failed(self, listener: FailedListener):
        """Called once per job when it fails terminally"""
        self._failed_listeners.append(listener)

    async def add(self, job_name: str, data: Dict[str, Any], options: Optional[JobOptions] = None) -> Job:
        options = options or self.default_options
        now = self.clock()
        job = Job(
            queue=self.name,
            name=job_name,
            data=data,
            options=options,
            state=JobState.DELAYED if options.delay > 0 else JobState.WAITING,
            run_at=now + options.delay,
            created_at=now,
        )
        job = await self.store.add(job)
        self._wakeup.set()
        logger.debug(f"[queue:{self.name}] Added {job}")
        return job

    async def start(self):
        if self._workers:
            return
        self._closing = False
        await self._requeue_expired()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[queue:{self.name}] Started {self.concurrency} worker(s)")

    async def close(self):
        """Stop workers after their in-flight jobs finish"""
        self._closing = True
        self._wakeup.set()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"[queue:{self.name}] Closed")

    async def _requeue_expired(self):
        """Return jobs whose worker stopped renewing its lease to the queue"""
        now = self.clock()
        self._last_requeue = now
        stalled = await self.store.requeue_expired(self.name, now)
        if stalled:
            logger.warning(f"[queue:{self.name}] Re-queued {stalled} stalled job(s)")

    async def _wait_for_work(self):
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _worker(self, index: int):
        while not self._closing:
            try:
                job = await self.store.claim(self.name, self.clock(), self.lease_seconds)
            except Exception as e:
                logger.error(f"[queue:{self.name}] Worker {index} could not claim a job: {e}")
                await self._wait_for_work()
                continue

            if job is None:
                if index == 0 and self.clock() - self._last_requeue >= self.lease_seconds:
                    try:
                        await self._requeue_expired()
                    except Exception as e:
                        logger.error(f"[queue:{self.name}] Could not re-queue stalled jobs: {e}")
                await self._wait_for_work()
                continue

            try:
                await self._run(job)
            except Exception as e:
                # job stays active until its lease runs out, then it is re-queued
                logger.error(f"[queue:{self.name}] Worker {index} could not record job {job.id}: {e}", exc_info=True)
                await self._wait_for_work()

    async def _run(self, job: Job):
        handler = self._handlers.get(job.name)
        job.attempts_made += 1

        try:
            if handler is None:
                raise ConfigurationError(f"No handler registered for job {job.name!r}")
            result = await self._run_with_lease(handler, job)
        except Exception as e:
            await self._handle_failure(job, e)
            return

        job.state = JobState.COMPLETED
        job.result = result
        job.failed_reason = None
        job.finished_at = self.clock()
        await self.store.update(job)
        logger.debug(f"[queue:{self.name}] Job {job.id} completed")

    async def _run_with_lease(self, handler: Handler, job: Job):
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            return await handler(job)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, job: Job):
        interval = max(self.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.store.extend_lease(job, self.clock() + self.lease_seconds)
            except Exception as e:
                logger.warning(f"[queue:{self.name}] Could not renew lease of job {job.id}: {e}")
                continue
            if not renewed:
                logger.warning(f"[queue:{self.name}] Job {job.id} lost its lease")
                return

    async def _handle_failure(self, job: Job, error: BaseException):
        job.failed_reason = str(error)
        now = self.clock()

        if is_retryable(error) and job.attempts_made < job.options.attempts:
            delay = job.options.backoff * (2 ** (job.attempts_made - 1))
            job.state = JobState.DELAYED
            job.run_at = now + delay
            await self.store.update(job)
            logger.warning(
                f"[queue:{self.name}] Job {job.id} attempt {job.attempts_made}/{job.options.attempts} "
                f"failed: {error}. Retrying in {delay:.1f}s"
            )
            return

        job.state = JobState.FAILED
        job.finished_at = now
        await self.store.update(job)
        logger.error(f"[queue:{self.name}] Job {job.id} failed: {error}")

        for listener in self._failed_listeners:
            try:
                listener(job, error)
            except Exception as e:
                logger.error(f"[queue:{self.name}] Failed listener raised: {e}")

    async def run_pending(self) -> int:
        """
        Run every job that is due now, one at a time, in the calling task.

        Jobs re-delayed by a retry are picked up again once due. Returns the
        number of attempts made.
        """
        ran = 0
        while True:
            job = await self.store.claim(self.name, self.clock(), self.lease_seconds)
            if job is None:
                return ran
            await self._run(job)
            ran += 1

    async def get_counts(self) -> Dict[str, int]:
        return await self.store.counts(self.name)

    async def get_jobs(self, state: Optional[JobState] = None) -> List[Job]:
        return await self.store.jobs(self.name, state)

    async def clean(self, grace_seconds: float, state: JobState) -> int:
        removed = await self.store.clean(self.name, grace_seconds, state, self.clock())
        if removed:
            logger.info(f"[queue:{self.name}] Cleaned {removed} {state.value} job(s)")
        return removed
