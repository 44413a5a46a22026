"""
Queue manager: the single entry point for submitting and inspecting jobs.

Queues are registered by job type at startup; the manager never needs to
change when a new job type is added.
"""

import asyncio
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.jobs.base_queue import JobQueue
from app.jobs.errors import UnknownJobType
from app.models.domain.job_domain import Job, JobType

logger = get_logger(__name__)


class QueueManager:
    def __init__(self):
        self._queues: dict[JobType, JobQueue] = {}
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def register(self, queue: JobQueue) -> None:
        if queue.job_type in self._queues:
            raise ValueError(f"Queue already registered for {queue.job_type.value}")
        self._queues[queue.job_type] = queue
        logger.debug("Queue registered", queue=queue.name)

    @property
    def queues(self) -> list[JobQueue]:
        return list(self._queues.values())

    def get_queue(self, job_type: JobType | str) -> JobQueue:
        """
        Resolve a job type (enum or its string value) to its queue.

        Raises:
            UnknownJobType: no queue registered under that name
        """
        try:
            resolved = JobType(job_type)
        except ValueError as e:
            raise UnknownJobType(f"Unknown job type: {job_type}", queue=str(job_type)) from e

        queue = self._queues.get(resolved)
        if queue is None:
            raise UnknownJobType(f"No queue registered for {resolved.value}", queue=resolved.value)
        return queue

    async def add_job(self, job_type: JobType | str, payload: dict[str, Any], **options) -> str:
        return await self.get_queue(job_type).add_job(payload, **options)

    async def get_job(self, job_id: str) -> Job | None:
        """Look the id up in every registered queue; first hit wins."""
        for queue in self._queues.values():
            job = await queue.get_job(job_id)
            if job is not None:
                return job
        return None

    async def get_queue_stats(self) -> dict[str, dict[str, Any]]:
        stats = {}
        for queue in self._queues.values():
            counts = await queue.get_job_counts()
            stats[queue.name] = counts.model_dump()
        return stats

    async def pause_queue(self, name: JobType | str) -> None:
        await self.get_queue(name).pause()

    async def resume_queue(self, name: JobType | str) -> None:
        await self.get_queue(name).resume()

    def start(self) -> list[asyncio.Task]:
        """Start one processing loop per queue on the running event loop."""
        if self._tasks:
            return self._tasks
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(queue.run(self._stop_event), name=f"queue:{queue.name}")
            for queue in self._queues.values()
        ]
        logger.info("Queue workers started", queues=[queue.name for queue in self._queues.values()])
        return self._tasks

    async def run(self) -> None:
        """Run every queue loop until stopped or cancelled."""
        tasks = self.start()
        try:
            await asyncio.gather(*tasks)
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

    async def close(self) -> None:
        await self.stop()
        for queue in self._queues.values():
            await queue.close()
