"""Job type -> queue class wiring, and the process-wide queue manager."""

from collections.abc import Callable

from app.jobs.base_queue import JobQueue
from app.jobs.cleanup_tokens_queue import CleanupTokensQueue
from app.jobs.connect_provider_queue import ConnectProviderQueue
from app.jobs.queue_manager import QueueManager
from app.jobs.store import JobStore, RedisJobStore
from app.jobs.sync_events_queue import SyncEventsQueue
from app.models.domain.job_domain import JobType

QUEUE_TYPES: dict[JobType, type[JobQueue]] = {
    JobType.SYNC_EVENTS: SyncEventsQueue,
    JobType.CONNECT_PROVIDER: ConnectProviderQueue,
    JobType.CLEANUP_EXPIRED_TOKENS: CleanupTokensQueue,
}

_queue_manager: QueueManager | None = None


def build_queue_manager(
    store_factory: Callable[[str], JobStore] | None = None, notifier=None
) -> QueueManager:
    """Create a manager with one queue per job type."""
    store_factory = store_factory or RedisJobStore
    manager = QueueManager()
    for job_type, queue_class in QUEUE_TYPES.items():
        manager.register(queue_class(store=store_factory(job_type.value), notifier=notifier))
    return manager


def get_queue_manager() -> QueueManager:
    global _queue_manager
    if _queue_manager is None:
        _queue_manager = build_queue_manager()
    return _queue_manager
