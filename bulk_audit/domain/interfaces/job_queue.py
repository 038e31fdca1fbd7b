"""
Job Queue Interface
Abstract base class for durable per-campaign FIFO queues
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from bulk_audit.domain.models.queue_job import QueueJob


class QueueUnavailable(Exception):
    """
    The queue's backing store cannot be reached.

    Transient: callers treat it as "nothing to dispatch this tick", never as
    a job or campaign failure.
    """
    pass


@dataclass
class BatchEnqueueResult:
    """Outcome of a non-atomic batch enqueue"""
    enqueued_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_ids


class JobQueue(ABC):
    """
    Durable holding area for dispatch-ready work.

    Each campaign has a pending list and a dead-letter list. Pending is FIFO:
    enqueue appends to the tail, dequeue pops the head.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the backing store"""
        pass

    @abstractmethod
    async def enqueue(self, job: QueueJob) -> str:
        """
        Append a job to the tail of its campaign's pending list.

        Returns:
            The envelope id

        Raises:
            QueueUnavailable: backing store is down
        """
        pass

    async def enqueue_many(self, jobs: List[QueueJob]) -> BatchEnqueueResult:
        """
        Enqueue jobs one by one. Not atomic: a mid-batch failure leaves the
        earlier jobs queued and reports every id that was not.
        """
        result = BatchEnqueueResult()
        for index, job in enumerate(jobs):
            try:
                result.enqueued_ids.append(await self.enqueue(job))
            except QueueUnavailable:
                result.failed_ids.extend(j.id for j in jobs[index:])
                break
        return result

    @abstractmethod
    async def dequeue(self, campaign_id: str) -> Optional[QueueJob]:
        """
        Pop the least-recently enqueued job for a campaign.

        Returns None when nothing is pending (the common case, not an error).
        """
        pass

    @abstractmethod
    async def requeue(self, job: QueueJob, max_retries: int) -> bool:
        """
        Count a failed attempt and put the job back at the tail, or move it
        to the dead-letter list once `max_retries` is reached.

        Returns:
            True if re-queued, False if dead-lettered
        """
        pass

    @abstractmethod
    async def dead_letter(self, job: QueueJob) -> None:
        """Move a job straight to the dead-letter list (terminal failures)"""
        pass

    @abstractmethod
    async def length(self, campaign_id: str) -> int:
        """Pending count for a campaign"""
        pass

    @abstractmethod
    async def dead_letters(self, campaign_id: str) -> List[QueueJob]:
        """Jobs parked in the campaign's dead-letter list"""
        pass

    @abstractmethod
    async def clear(self, campaign_id: str) -> int:
        """
        Drop queued-but-not-started jobs for a campaign.

        Returns:
            Number of pending jobs dropped
        """
        pass

    @abstractmethod
    async def clear_dead_letters(self, campaign_id: str) -> int:
        """Empty the campaign's dead-letter list"""
        pass

    @abstractmethod
    async def stats(self) -> dict:
        """Queue-wide counters for observability"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the backing store connection"""
        pass
