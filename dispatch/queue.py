"""
Redis-backed priority job queue with delays, retries and stalled-job recovery.

Each queue owns these keys (prefix defaults to "queue"):

    {prefix}:{name}:id          submission counter (job ids)
    {prefix}:{name}:job:{id}    JSON job record
    {prefix}:{name}:wait        sorted set of eligible jobs
    {prefix}:{name}:delayed     sorted set scored by eligible-at (ms)
    {prefix}:{name}:active      sorted set scored by lease deadline (ms)
    {prefix}:{name}:completed   list, newest first, capped
    {prefix}:{name}:failed      list, newest first, capped
    {prefix}:{name}:paused      present while the queue is paused

Design decisions:
- The wait score packs priority and submission order into one number, so
  ZPOPMIN returns the highest priority job and FIFO among equals
- Every state move that can race with another worker is claimed with a
  single-key atomic command (ZPOPMIN, ZREM, LREM) before anything else
  is written
- Workers return a JobOutcome; an exception or a timeout in a worker is
  converted into a failed outcome and goes through the same retry policy
- Active jobs hold a lease that a heartbeat extends; check_stalled()
  returns jobs with an expired lease to the wait set
- Time comes from an injectable millisecond clock so tests can move it
- Delivery is at-least-once: a job whose lease expired mid-run may run again
- A job whose record is missing or unreadable is logged and dropped, so one
  bad record cannot stop a worker slot
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import pydantic
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shared.config import PRIORITY_SPAN_LIMIT
from shared.errors import ServiceUnavailableError, ValidationError
from shared.models import BackoffPolicy, BackoffType, Job, JobOutcome, JobState, QueueCounts

logger = logging.getLogger("job_queue")

Processor = Callable[[Job], Awaitable[JobOutcome]]
Clock = Callable[[], int]

# Room for a trillion submissions per priority level in the wait score
_SEQUENCE_SPAN = 10 ** 12


def system_clock() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class QueuePolicy:
    """Retry and retention rules for one queue."""
    max_attempts: int
    backoff: BackoffPolicy
    keep_completed: int
    keep_failed: int
    max_stalled_count: int = 1


EMAIL_POLICY = QueuePolicy(
    max_attempts=3,
    backoff=BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=5000),
    keep_completed=50,
    keep_failed=20,
)

IN_APP_POLICY = QueuePolicy(
    max_attempts=2,
    backoff=BackoffPolicy(type=BackoffType.FIXED, delay_ms=2000),
    keep_completed=100,
    keep_failed=50,
)


class JobQueue:
    """
    One named priority queue and its workers.

    Example:
        queue = JobQueue(redis, "email-notifications", EMAIL_POLICY)
        queue.register("send-email", send_email)
        await queue.submit("send-email", {"to": "a@b.com"}, priority=10)
        queue.start(concurrency=2)
        ...
        await queue.close()
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        policy: QueuePolicy,
        *,
        key_prefix: str = "queue",
        priority_range: tuple[int, int] = (0, 100),
        lease_ms: int = 30_000,
        job_timeout: float = 8.0,
        poll_interval_ms: int = 500,
        stalled_check_interval_ms: int = 30_000,
        clock: Optional[Clock] = None,
    ):
        self.redis = redis
        self.name = name
        self.policy = policy
        self.key_prefix = key_prefix
        self.priority_min, self.priority_max = priority_range
        if not 0 < self.priority_max - self.priority_min <= PRIORITY_SPAN_LIMIT:
            raise ValueError(
                f"Priority range {priority_range} must be increasing and at most {PRIORITY_SPAN_LIMIT} wide"
            )
        self.lease_ms = lease_ms
        self.job_timeout = job_timeout
        self.poll_interval_ms = poll_interval_ms
        self.stalled_check_interval_ms = stalled_check_interval_ms
        self.clock = clock or system_clock

        self._processors: dict[str, Processor] = {}
        self._tasks: list[asyncio.Task] = []
        self._stalled_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._closed = False

    def __repr__(self) -> str:
        return f"JobQueue({self.name!r})"

    def _key(self, suffix: str) -> str:
        return f"{self.key_prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _wait_score(self, job: Job) -> int:
        return (self.priority_max - job.priority) * _SEQUENCE_SPAN + job.sequence

    async def _save(self, job: Job) -> None:
        await self.redis.set(self._job_key(job.id), job.model_dump_json())

    # =========================================================================
    # Registration and submission
    # =========================================================================

    def register(self, job_type: str, processor: Processor) -> None:
        """Bind a worker function to a job type."""
        self._processors[job_type] = processor
        logger.debug(f"{self.name}: registered processor for '{job_type}'")

    @property
    def job_types(self) -> list[str]:
        return list(self._processors)

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        delay_ms: int = 0,
    ) -> Job:
        """
        Queue a job. Returns as soon as the job is stored.

        Raises:
            ValidationError: priority outside the configured range, or negative delay
            ServiceUnavailableError: the queue was closed
        """
        if self._closed:
            raise ServiceUnavailableError(f"Queue {self.name} is closed")
        if not self.priority_min <= priority <= self.priority_max:
            raise ValidationError(
                f"Priority {priority} outside range {self.priority_min}..{self.priority_max}"
            )
        if delay_ms < 0:
            raise ValidationError("Delay must not be negative")

        now = self.clock()
        seq = await self.redis.incr(self._key("id"))
        job = Job(
            id=str(seq),
            queue_name=self.name,
            job_type=job_type,
            payload=payload,
            priority=priority,
            delay_ms=delay_ms,
            max_attempts=self.policy.max_attempts,
            backoff=self.policy.backoff,
            state=JobState.DELAYED if delay_ms else JobState.WAITING,
            created_at=now,
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            if delay_ms:
                pipe.zadd(self._key("delayed"), {job.id: now + delay_ms})
            else:
                pipe.zadd(self._key("wait"), {job.id: self._wait_score(job)})
            await pipe.execute()

        logger.info(f"{self.name}: queued job {job.id} ({job_type}, priority={priority}, delay={delay_ms}ms)")
        return job

    # =========================================================================
    # Dequeue and execution
    # =========================================================================

    def _parse(self, job_id: str, raw: Optional[str]) -> Optional[Job]:
        if raw is None:
            return None
        try:
            return Job.model_validate_json(raw)
        except pydantic.ValidationError as exc:
            logger.error(f"{self.name}: job {job_id} has an unreadable record: {exc.error_count()} error(s)")
            return None

    async def get_job(self, job_id: str) -> Optional[Job]:
        """The stored job, or None when its record is missing or unreadable."""
        return self._parse(job_id, await self.redis.get(self._job_key(job_id)))

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come into the wait set."""
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", self.clock())
        promoted = 0
        for job_id in due:
            if not await self.redis.zrem(self._key("delayed"), job_id):
                continue  # another worker got it
            job = await self.get_job(job_id)
            if job is None:
                logger.warning(f"{self.name}: delayed job {job_id} has no usable record, dropping")
                await self.redis.delete(self._job_key(job_id))
                continue
            job.state = JobState.WAITING
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.zadd(self._key("wait"), {job.id: self._wait_score(job)})
                await pipe.execute()
            promoted += 1
        return promoted

    async def fetch_next(self) -> Optional[Job]:
        """
        Take the next eligible job and lease it to the caller.

        Returns None when the queue is paused, closing, or has nothing eligible.
        """
        if self._stop.is_set() or await self.is_paused():
            return None
        await self.promote_delayed()

        popped = await self.redis.zpopmin(self._key("wait"), 1)
        if not popped:
            return None
        job_id = popped[0][0]

        now = self.clock()
        await self.redis.zadd(self._key("active"), {job_id: now + self.lease_ms})
        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"{self.name}: job {job_id} has no usable record, dropping")
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key("active"), job_id)
                pipe.delete(self._job_key(job_id))
                await pipe.execute()
            return None

        job.state = JobState.ACTIVE
        job.processed_at = now
        await self._save(job)
        return job

    async def process_next(self) -> Optional[Job]:
        """
        Run one job end to end: fetch, execute, record the outcome.

        Returns:
            The job in its resulting state, or None when nothing was eligible
        """
        job = await self.fetch_next()
        if job is None:
            return None

        processor = self._processors.get(job.job_type)
        if processor is None:
            outcome = JobOutcome.failed(f"No processor registered for job type '{job.job_type}'")
        else:
            outcome = await self._execute(job, processor)

        if outcome.success:
            await self._complete(job, outcome.result)
        else:
            await self._fail(job, outcome.error or "unknown error")
        return job

    async def _execute(self, job: Job, processor: Processor) -> JobOutcome:
        heartbeat = asyncio.create_task(self._heartbeat(job.id))
        try:
            return await asyncio.wait_for(processor(job), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: job {job.id} timed out after {self.job_timeout}s")
            return JobOutcome.failed(f"Job timed out after {self.job_timeout}s")
        except Exception as exc:
            logger.exception(f"{self.name}: job {job.id} ({job.job_type}) raised")
            return JobOutcome.failed(f"{type(exc).__name__}: {exc}")
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, job_id: str) -> None:
        interval = self.lease_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.redis.zadd(self._key("active"), {job_id: self.clock() + self.lease_ms}, xx=True)
            except RedisError as exc:
                logger.warning(f"{self.name}: heartbeat for job {job_id} failed: {exc}")

    async def _release(self, job: Job) -> bool:
        if await self.redis.zrem(self._key("active"), job.id):
            return True
        logger.warning(f"{self.name}: lost the lease on job {job.id}, outcome not recorded")
        return False

    async def _complete(self, job: Job, result: dict[str, Any]) -> None:
        if not await self._release(job):
            return
        job.attempts += 1
        job.state = JobState.COMPLETED
        job.finished_at = self.clock()
        job.result = result
        job.failed_reason = None
        await self._archive(job, "completed", self.policy.keep_completed)
        logger.info(f"{self.name}: job {job.id} ({job.job_type}) completed")

    async def _fail(self, job: Job, error: str) -> None:
        if not await self._release(job):
            return
        job.attempts += 1
        job.failed_reason = error

        if job.can_retry:
            delay = job.backoff.delay_for(job.attempts)
            job.state = JobState.DELAYED
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.zadd(self._key("delayed"), {job.id: self.clock() + delay})
                await pipe.execute()
            logger.warning(
                f"{self.name}: job {job.id} ({job.job_type}) failed attempt "
                f"{job.attempts}/{job.max_attempts}, retrying in {delay}ms: {error}"
            )
            return

        job.state = JobState.FAILED
        job.finished_at = self.clock()
        await self._archive(job, "failed", self.policy.keep_failed)
        logger.error(
            f"{self.name}: job {job.id} ({job.job_type}) failed permanently "
            f"after {job.attempts} attempts: {error}"
        )

    async def _archive(self, job: Job, history: str, keep: int) -> None:
        key = self._key(history)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.lpush(key, job.id)
            pipe.lrange(key, keep, -1)
            pipe.ltrim(key, 0, keep - 1)
            _, _, evicted, _ = await pipe.execute()

        # evicted ids were trimmed in the same transaction
        if evicted:
            await self.redis.delete(*[self._job_key(job_id) for job_id in evicted])

    # =========================================================================
    # Stalled jobs
    # =========================================================================

    async def check_stalled(self) -> list[str]:
        """
        Return jobs whose lease expired to the wait set.

        A job that stalls more often than the policy allows fails terminally.

        Returns:
            Ids of the jobs that were recovered or failed
        """
        expired = await self.redis.zrangebyscore(self._key("active"), "-inf", self.clock())
        handled = []
        for job_id in expired:
            if not await self.redis.zrem(self._key("active"), job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                logger.warning(f"{self.name}: stalled job {job_id} has no usable record, dropping")
                await self.redis.delete(self._job_key(job_id))
                continue
            handled.append(job_id)
            job.stalled_count += 1

            if job.stalled_count > self.policy.max_stalled_count:
                job.state = JobState.FAILED
                job.failed_reason = "job stalled more than allowable limit"
                job.finished_at = self.clock()
                await self._archive(job, "failed", self.policy.keep_failed)
                logger.error(f"{self.name}: job {job_id} stalled {job.stalled_count} times, failed")
                continue

            job.state = JobState.WAITING
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.zadd(self._key("wait"), {job.id: self._wait_score(job)})
                await pipe.execute()
            logger.warning(f"{self.name}: job {job_id} stalled, returned to waiting")
        return handled

    # =========================================================================
    # Inspection and administration
    # =========================================================================

    async def counts(self) -> QueueCounts:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("wait"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("active"))
            pipe.llen(self._key("completed"))
            pipe.llen(self._key("failed"))
            pipe.exists(self._key("paused"))
            waiting, delayed, active, completed, failed, paused = await pipe.execute()
        return QueueCounts(
            waiting=waiting,
            delayed=delayed,
            active=active,
            completed=completed,
            failed=failed,
            paused=bool(paused),
        )

    async def list_jobs(self, state: JobState, start: int = 0, end: int = -1) -> list[Job]:
        """Jobs currently in a state, in queue order (history newest first)."""
        state = JobState(state)
        if state in (JobState.COMPLETED, JobState.FAILED):
            ids = await self.redis.lrange(self._key(state.value), start, end)
        else:
            set_name = {JobState.WAITING: "wait", JobState.DELAYED: "delayed", JobState.ACTIVE: "active"}[state]
            ids = await self.redis.zrange(self._key(set_name), start, end)
        if not ids:
            return []
        records = await self.redis.mget([self._job_key(job_id) for job_id in ids])
        jobs = [self._parse(job_id, raw) for job_id, raw in zip(ids, records)]
        return [job for job in jobs if job is not None]

    async def retry_failed(self) -> int:
        """
        Re-queue every terminally failed job with its attempt counter reset.

        Returns:
            Number of jobs re-queued
        """
        retried = 0
        for job_id in await self.redis.lrange(self._key("failed"), 0, -1):
            if not await self.redis.lrem(self._key("failed"), 0, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.attempts = 0
            job.stalled_count = 0
            job.failed_reason = None
            job.finished_at = None
            job.state = JobState.WAITING
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.zadd(self._key("wait"), {job.id: self._wait_score(job)})
                await pipe.execute()
            retried += 1
        logger.info(f"{self.name}: re-queued {retried} failed job(s)")
        return retried

    async def pause(self) -> None:
        """Stop dequeuing on every worker of this queue. In-flight jobs finish."""
        await self.redis.set(self._key("paused"), "1")
        logger.info(f"{self.name}: paused")

    async def resume(self) -> None:
        await self.redis.delete(self._key("paused"))
        logger.info(f"{self.name}: resumed")

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    # =========================================================================
    # Worker lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self, concurrency: int = 1) -> None:
        """Spawn worker slots and the stalled-job checker on the running loop."""
        if self.running:
            logger.warning(f"{self.name}: workers already running")
            return
        if self._closed:
            raise ServiceUnavailableError(f"Queue {self.name} is closed")
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(slot), name=f"{self.name}-worker-{slot}")
            for slot in range(concurrency)
        ]
        self._stalled_task = asyncio.create_task(self._stalled_loop(), name=f"{self.name}-stalled")
        logger.info(f"{self.name}: started {concurrency} worker slot(s)")

    async def _idle(self, interval_ms: int) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=interval_ms / 1000)

    async def _worker_loop(self, slot: int) -> None:
        while not self._stop.is_set():
            try:
                job = await self.process_next()
            except RedisError as exc:
                logger.error(f"{self.name}: worker {slot} lost Redis: {exc}")
                job = None
            except Exception:
                logger.exception(f"{self.name}: worker {slot} hit an unexpected error")
                job = None
            if job is None:
                await self._idle(self.poll_interval_ms)

    async def _stalled_loop(self) -> None:
        while not self._stop.is_set():
            await self._idle(self.stalled_check_interval_ms)
            if self._stop.is_set():
                break
            try:
                await self.check_stalled()
            except RedisError as exc:
                logger.error(f"{self.name}: stalled check failed: {exc}")
            except Exception:
                logger.exception(f"{self.name}: stalled check hit an unexpected error")

    async def close(self, timeout: float = 10.0) -> None:
        """
        Stop taking new jobs, wait for in-flight jobs, then stop the workers.

        Jobs still running after `timeout` seconds are cancelled; their lease
        expires and another instance picks them up.
        """
        self._closed = True
        self._stop.set()
        tasks = list(self._tasks)
        if self._stalled_task is not None:
            tasks.append(self._stalled_task)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        self._stalled_task = None
        logger.info(f"{self.name}: closed")
