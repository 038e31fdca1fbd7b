"""
In-Memory Job Queue
Process-local queue for development and tests (not durable)
"""
import logging
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional

from bulk_audit.domain.interfaces.job_queue import JobQueue, QueueUnavailable
from bulk_audit.domain.models.queue_job import QueueJob

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    """
    Same semantics as RedisJobQueue, kept in process memory.

    Set `available = False` to simulate a backing-store outage.
    """

    def __init__(self):
        self._pending: Dict[str, Deque[QueueJob]] = defaultdict(deque)
        self._dead: Dict[str, List[QueueJob]] = defaultdict(list)
        self._stats: Dict[str, int] = defaultdict(int)
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise QueueUnavailable("in-memory queue marked unavailable")

    async def initialize(self) -> None:
        logger.info("Using in-memory job queue (jobs are lost on restart)")

    async def enqueue(self, job: QueueJob) -> str:
        self._check()
        self._pending[job.campaign_id].append(job.model_copy())
        self._stats["total_enqueued"] += 1
        return job.id

    async def dequeue(self, campaign_id: str) -> Optional[QueueJob]:
        self._check()
        queue = self._pending.get(campaign_id)
        if not queue:
            return None
        self._stats["total_dequeued"] += 1
        return queue.popleft()

    async def requeue(self, job: QueueJob, max_retries: int) -> bool:
        self._check()
        job.attempts += 1
        if job.attempts < max_retries:
            self._pending[job.campaign_id].append(job.model_copy())
            self._stats["total_requeued"] += 1
            return True
        self._dead[job.campaign_id].append(job.model_copy())
        self._stats["total_dead_lettered"] += 1
        return False

    async def dead_letter(self, job: QueueJob) -> None:
        self._check()
        self._dead[job.campaign_id].append(job.model_copy())
        self._stats["total_dead_lettered"] += 1

    async def length(self, campaign_id: str) -> int:
        self._check()
        return len(self._pending.get(campaign_id, ()))

    async def dead_letters(self, campaign_id: str) -> List[QueueJob]:
        self._check()
        return [job.model_copy() for job in self._dead.get(campaign_id, [])]

    async def clear(self, campaign_id: str) -> int:
        self._check()
        return len(self._pending.pop(campaign_id, ()))

    async def clear_dead_letters(self, campaign_id: str) -> int:
        self._check()
        return len(self._dead.pop(campaign_id, []))

    async def stats(self) -> dict:
        self._check()
        return {
            "backend": "memory",
            "total_enqueued": self._stats["total_enqueued"],
            "total_dequeued": self._stats["total_dequeued"],
            "total_requeued": self._stats["total_requeued"],
            "total_dead_lettered": self._stats["total_dead_lettered"],
        }

    async def close(self) -> None:
        pass
