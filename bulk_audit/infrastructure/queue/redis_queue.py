"""
Redis Job Queue
Redis-backed per-campaign FIFO queue with a dead-letter list
"""
import json
import logging
from typing import Optional, List

import redis.asyncio as redis
from redis.exceptions import RedisError

from bulk_audit.domain.interfaces.job_queue import JobQueue, QueueUnavailable
from bulk_audit.domain.models.queue_job import QueueJob

logger = logging.getLogger(__name__)


class RedisJobQueue(JobQueue):
    """
    Redis-based job queue for the campaign dispatcher.

    Uses Redis Lists: RPUSH to the tail, LPOP from the head.

    Queue Keys:
    - audit:campaign:{id}:queue - Pending FIFO for one campaign
    - audit:campaign:{id}:failed - Dead-letter list (manual retry only)
    - audit:stats - Queue-wide counters
    """

    PENDING_KEY = "audit:campaign:{campaign_id}:queue"
    DEAD_LETTER_KEY = "audit:campaign:{campaign_id}:failed"
    STATS_KEY = "audit:stats"

    def __init__(self, redis_url: str = "redis://localhost:6379", redis_client=None):
        """
        Initialize queue.

        Args:
            redis_url: Connection URL used when no client is given
            redis_client: Optional pre-configured Redis client
        """
        self._redis_url = redis_url
        self._redis = redis_client
        self._initialized = redis_client is not None

    async def initialize(self) -> None:
        """Initialize Redis connection if not provided."""
        if self._initialized:
            return

        try:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._initialized = True
            logger.info(f"RedisJobQueue connected to Redis: {self._redis_url}")
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise QueueUnavailable(f"Redis unavailable: {e}") from e

    async def _ensure(self) -> None:
        if not self._initialized:
            await self.initialize()

    def _pending_key(self, campaign_id: str) -> str:
        return self.PENDING_KEY.format(campaign_id=campaign_id)

    def _dead_key(self, campaign_id: str) -> str:
        return self.DEAD_LETTER_KEY.format(campaign_id=campaign_id)

    async def enqueue(self, job: QueueJob) -> str:
        await self._ensure()

        try:
            await self._redis.rpush(self._pending_key(job.campaign_id), json.dumps(job.to_redis_dict()))
            await self._redis.hincrby(self.STATS_KEY, "total_enqueued", 1)
            logger.debug(f"Enqueued job {job.id} for campaign {job.campaign_id}")
            return job.id
        except (RedisError, OSError) as e:
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            raise QueueUnavailable(str(e)) from e

    async def dequeue(self, campaign_id: str) -> Optional[QueueJob]:
        await self._ensure()

        try:
            job_data = await self._redis.lpop(self._pending_key(campaign_id))
        except (RedisError, OSError) as e:
            logger.error(f"Failed to dequeue job for campaign {campaign_id}: {e}")
            raise QueueUnavailable(str(e)) from e
        if not job_data:
            return None

        try:
            job = QueueJob.from_redis_dict(json.loads(job_data))
        except ValueError as e:
            # Unreadable entry: park it so it is visible, not silently lost
            logger.error(f"Dropping unreadable queue entry for campaign {campaign_id}: {e}")
            try:
                await self._redis.rpush(self._dead_key(campaign_id), job_data)
            except (RedisError, OSError) as redis_error:
                raise QueueUnavailable(str(redis_error)) from redis_error
            return None

        # Counter only; the envelope is already off the list
        try:
            await self._redis.hincrby(self.STATS_KEY, "total_dequeued", 1)
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to update dequeue stats: {e}")
        return job

    async def requeue(self, job: QueueJob, max_retries: int) -> bool:
        await self._ensure()

        job.attempts += 1
        job_data = json.dumps(job.to_redis_dict())

        try:
            if job.attempts < max_retries:
                await self._redis.rpush(self._pending_key(job.campaign_id), job_data)
                await self._redis.hincrby(self.STATS_KEY, "total_requeued", 1)
                logger.info(f"Re-queued job {job.id} (attempt {job.attempts}/{max_retries})")
                return True

            await self._redis.rpush(self._dead_key(job.campaign_id), job_data)
            await self._redis.hincrby(self.STATS_KEY, "total_dead_lettered", 1)
            logger.warning(f"Job {job.id} moved to dead-letter after {job.attempts} attempts")
            return False
        except (RedisError, OSError) as e:
            logger.error(f"Failed to requeue job {job.id}: {e}")
            raise QueueUnavailable(str(e)) from e

    async def dead_letter(self, job: QueueJob) -> None:
        await self._ensure()

        try:
            await self._redis.rpush(self._dead_key(job.campaign_id), json.dumps(job.to_redis_dict()))
            await self._redis.hincrby(self.STATS_KEY, "total_dead_lettered", 1)
            logger.warning(f"Job {job.id} moved to dead-letter: {job.last_error}")
        except (RedisError, OSError) as e:
            logger.error(f"Failed to dead-letter job {job.id}: {e}")
            raise QueueUnavailable(str(e)) from e

    async def length(self, campaign_id: str) -> int:
        await self._ensure()

        try:
            return await self._redis.llen(self._pending_key(campaign_id))
        except (RedisError, OSError) as e:
            raise QueueUnavailable(str(e)) from e

    async def dead_letters(self, campaign_id: str) -> List[QueueJob]:
        await self._ensure()

        try:
            entries = await self._redis.lrange(self._dead_key(campaign_id), 0, -1)
        except (RedisError, OSError) as e:
            raise QueueUnavailable(str(e)) from e

        jobs = []
        for entry in entries:
            try:
                jobs.append(QueueJob.from_redis_dict(json.loads(entry)))
            except ValueError:
                logger.warning(f"Skipping unreadable dead-letter entry for campaign {campaign_id}")
        return jobs

    async def clear(self, campaign_id: str) -> int:
        await self._ensure()

        try:
            queue_key = self._pending_key(campaign_id)
            count = await self._redis.llen(queue_key)
            await self._redis.delete(queue_key)
            logger.info(f"Cleared {count} queued jobs for campaign {campaign_id}")
            return count
        except (RedisError, OSError) as e:
            logger.error(f"Failed to clear queue for campaign {campaign_id}: {e}")
            raise QueueUnavailable(str(e)) from e

    async def clear_dead_letters(self, campaign_id: str) -> int:
        await self._ensure()

        try:
            dead_key = self._dead_key(campaign_id)
            count = await self._redis.llen(dead_key)
            await self._redis.delete(dead_key)
            return count
        except (RedisError, OSError) as e:
            raise QueueUnavailable(str(e)) from e

    async def stats(self) -> dict:
        """Get queue statistics."""
        await self._ensure()

        try:
            stats = await self._redis.hgetall(self.STATS_KEY) or {}
        except (RedisError, OSError) as e:
            raise QueueUnavailable(str(e)) from e

        return {
            "backend": "redis",
            "total_enqueued": int(stats.get("total_enqueued", 0)),
            "total_dequeued": int(stats.get("total_dequeued", 0)),
            "total_requeued": int(stats.get("total_requeued", 0)),
            "total_dead_lettered": int(stats.get("total_dead_lettered", 0))
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._initialized = False
