"""
Durable job storage.

A store holds the records of one named queue and four indexes over them:
pending (by time the job becomes eligible), processing (by claim time),
completed and failed (by finish time). ``save`` writes a record and files it
under the index its status implies; ``claim_next`` atomically moves the
earliest eligible pending job into processing so two workers never claim the
same job.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.job_domain import Job, JobStatus, QueueCounts
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
INDEXES = (PENDING, PROCESSING, COMPLETED, FAILED)


def index_for(job: Job) -> tuple[str, datetime]:
    """Index a job belongs in and its score there."""
    if job.status == JobStatus.PENDING:
        return PENDING, job.available_at
    if job.status == JobStatus.PROCESSING:
        return PROCESSING, job.started_at or job.available_at
    if job.status == JobStatus.COMPLETED:
        return COMPLETED, job.completed_at or job.created_at
    # Failed with a retry scheduled waits in pending until the backoff expires
    if job.next_retry_at is not None:
        return PENDING, job.next_retry_at
    return FAILED, job.completed_at or job.created_at


class JobStore(ABC):
    """Persistence for the jobs of a single named queue."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Insert or replace a job record and re-file it under its status index."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Snapshot of a job, or None if unknown or purged."""

    @abstractmethod
    async def claim_next(self, now: datetime) -> Job | None:
        """
        Atomically move the earliest pending job eligible at ``now`` into processing.

        The returned record still carries its previous status; the caller
        transitions it and saves it.
        """

    @abstractmethod
    async def touch(self, job_id: str, now: datetime) -> bool:
        """
        Renew the lease of a job in processing by re-scoring it at ``now``.

        Returns False when the job is no longer in processing.
        """

    @abstractmethod
    async def find_stalled(self, claimed_before: datetime) -> list[Job]:
        """Jobs claimed before the given time and still in processing."""

    @abstractmethod
    async def pending_count(self) -> int:
        """Jobs waiting to run, including those waiting out a retry backoff."""

    @abstractmethod
    async def counts(self, now: datetime) -> QueueCounts:
        """Per-index counts; ``delayed`` are pending jobs not yet eligible."""

    @abstractmethod
    async def purge(self, retain_completed: int, retain_failed: int, finished_before: datetime) -> int:
        """
        Drop finished jobs beyond the retention count or older than the cutoff.

        Pending and processing jobs are never touched.
        """

    @abstractmethod
    async def set_paused(self, paused: bool) -> None:
        pass

    @abstractmethod
    async def is_paused(self) -> bool:
        pass

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    """Process-local store for tests and single-process development."""

    def __init__(self, queue_name: str):
        super().__init__(queue_name)
        self._jobs: dict[str, Job] = {}
        self._indexes: dict[str, dict[str, float]] = {name: {} for name in INDEXES}
        self._paused = False
        self._lock = asyncio.Lock()

    def _file(self, job: Job) -> None:
        for members in self._indexes.values():
            members.pop(job.id, None)
        index, when = index_for(job)
        self._indexes[index][job.id] = when.timestamp()

    async def save(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._file(job)

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def claim_next(self, now: datetime) -> Job | None:
        async with self._lock:
            pending = self._indexes[PENDING]
            eligible = [
                (score, self._jobs[job_id].created_at, job_id)
                for job_id, score in pending.items()
                if score <= now.timestamp()
            ]
            if not eligible:
                return None
            _, _, job_id = min(eligible)
            del pending[job_id]
            self._indexes[PROCESSING][job_id] = now.timestamp()
            return self._jobs[job_id].model_copy(deep=True)

    async def touch(self, job_id: str, now: datetime) -> bool:
        async with self._lock:
            processing = self._indexes[PROCESSING]
            if job_id not in processing:
                return False
            processing[job_id] = now.timestamp()
            return True

    async def find_stalled(self, claimed_before: datetime) -> list[Job]:
        cutoff = claimed_before.timestamp()
        return [
            self._jobs[job_id].model_copy(deep=True)
            for job_id, score in self._indexes[PROCESSING].items()
            if score < cutoff
        ]

    async def pending_count(self) -> int:
        return len(self._indexes[PENDING])

    async def counts(self, now: datetime) -> QueueCounts:
        pending = self._indexes[PENDING].values()
        ready = sum(1 for score in pending if score <= now.timestamp())
        return QueueCounts(
            pending=ready,
            delayed=len(self._indexes[PENDING]) - ready,
            processing=len(self._indexes[PROCESSING]),
            completed=len(self._indexes[COMPLETED]),
            failed=len(self._indexes[FAILED]),
        )

    async def purge(self, retain_completed: int, retain_failed: int, finished_before: datetime) -> int:
        removed = 0
        async with self._lock:
            for index, retain in ((COMPLETED, retain_completed), (FAILED, retain_failed)):
                members = self._indexes[index]
                newest_first = sorted(members.items(), key=lambda item: item[1], reverse=True)
                for position, (job_id, score) in enumerate(newest_first):
                    if position >= retain or score < finished_before.timestamp():
                        del members[job_id]
                        self._jobs.pop(job_id, None)
                        removed += 1
        return removed

    async def set_paused(self, paused: bool) -> None:
        self._paused = paused

    async def is_paused(self) -> bool:
        return self._paused


# KEYS: pending, processing. ARGV: now (epoch seconds).
CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #ids == 0 then
    return false
end
redis.call('ZREM', KEYS[1], ids[1])
redis.call('ZADD', KEYS[2], ARGV[1], ids[1])
return ids[1]
"""


class RedisJobStore(JobStore):
    """
    Redis-backed store shared by every worker process.

    Layout under ``{prefix}:{queue}``: ``job:{id}`` holds the JSON record,
    ``pending|processing|completed|failed`` are sorted sets of job ids and
    ``paused`` is a flag key. Storage errors propagate so the caller can
    decide whether to retry.
    """

    def __init__(self, queue_name: str, client=None, prefix: str | None = None):
        super().__init__(queue_name)
        self._client = client
        self.prefix = f"{prefix or settings.QUEUE_KEY_PREFIX}:{queue_name}"
        self._claim_script = None

    async def _redis(self):
        if self._client is None:
            self._client = await fast_redis.get_client()
        return self._client

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _index_key(self, index: str) -> str:
        return f"{self.prefix}:{index}"

    @property
    def _paused_key(self) -> str:
        return f"{self.prefix}:paused"

    async def save(self, job: Job) -> None:
        client = await self._redis()
        index, when = index_for(job)
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            for name in INDEXES:
                if name != index:
                    pipe.zrem(self._index_key(name), job.id)
            pipe.zadd(self._index_key(index), {job.id: when.timestamp()})
            await pipe.execute()

    async def get(self, job_id: str) -> Job | None:
        client = await self._redis()
        raw = await client.get(self._job_key(job_id))
        return Job.model_validate_json(raw) if raw else None

    async def claim_next(self, now: datetime) -> Job | None:
        client = await self._redis()
        if self._claim_script is None:
            self._claim_script = client.register_script(CLAIM_SCRIPT)

        while True:
            job_id = await self._claim_script(
                keys=[self._index_key(PENDING), self._index_key(PROCESSING)],
                args=[now.timestamp()],
            )
            if not job_id:
                return None
            if isinstance(job_id, bytes):
                job_id = job_id.decode("utf-8")
            job = await self.get(job_id)
            if job is not None:
                return job
            # Index entry without a record: drop it and try the next one
            logger.warning("Dropping orphaned job id", queue=self.queue_name, job_id=job_id)
            await client.zrem(self._index_key(PROCESSING), job_id)

    async def touch(self, job_id: str, now: datetime) -> bool:
        client = await self._redis()
        # xx: never re-add a job that already left processing
        changed = await client.zadd(
            self._index_key(PROCESSING), {job_id: now.timestamp()}, xx=True, ch=True
        )
        if changed:
            return True
        return await client.zscore(self._index_key(PROCESSING), job_id) is not None

    async def find_stalled(self, claimed_before: datetime) -> list[Job]:
        client = await self._redis()
        job_ids = await client.zrangebyscore(
            self._index_key(PROCESSING), "-inf", f"({claimed_before.timestamp()}"
        )
        jobs = []
        for job_id in job_ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def pending_count(self) -> int:
        client = await self._redis()
        return int(await client.zcard(self._index_key(PENDING)))

    async def counts(self, now: datetime) -> QueueCounts:
        client = await self._redis()
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcount(self._index_key(PENDING), "-inf", now.timestamp())
            pipe.zcard(self._index_key(PENDING))
            pipe.zcard(self._index_key(PROCESSING))
            pipe.zcard(self._index_key(COMPLETED))
            pipe.zcard(self._index_key(FAILED))
            ready, pending_total, processing, completed, failed = await pipe.execute()
        return QueueCounts(
            pending=ready,
            delayed=pending_total - ready,
            processing=processing,
            completed=completed,
            failed=failed,
        )

    async def purge(self, retain_completed: int, retain_failed: int, finished_before: datetime) -> int:
        client = await self._redis()
        removed = 0
        for index, retain in ((COMPLETED, retain_completed), (FAILED, retain_failed)):
            key = self._index_key(index)
            expired = set(
                await client.zrangebyscore(key, "-inf", f"({finished_before.timestamp()}")
            )
            # Everything except the newest `retain` entries
            expired.update(await client.zrange(key, 0, -(retain + 1)))
            if not expired:
                continue
            async with client.pipeline(transaction=True) as pipe:
                pipe.zrem(key, *expired)
                pipe.delete(*[self._job_key(job_id) for job_id in expired])
                await pipe.execute()
            removed += len(expired)
        return removed

    async def set_paused(self, paused: bool) -> None:
        client = await self._redis()
        if paused:
            await client.set(self._paused_key, "1")
        else:
            await client.delete(self._paused_key)

    async def is_paused(self) -> bool:
        client = await self._redis()
        return bool(await client.exists(self._paused_key))
