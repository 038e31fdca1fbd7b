"""
Job Queue Factory
"""
from typing import Dict, Type
from bulk_audit.core.config import Settings
from bulk_audit.domain.interfaces.job_queue import JobQueue
from bulk_audit.infrastructure.queue.memory_queue import InMemoryJobQueue
from bulk_audit.infrastructure.queue.redis_queue import RedisJobQueue


class QueueFactory:
    """Factory for creating job queue instances"""

    _backends: Dict[str, Type[JobQueue]] = {
        "redis": RedisJobQueue,
        "memory": InMemoryJobQueue,
    }

    @classmethod
    def create(cls, settings: Settings) -> JobQueue:
        """Create the queue selected by settings.queue_backend"""
        backend = settings.queue_backend
        if backend not in cls._backends:
            available = ", ".join(cls._backends.keys())
            raise ValueError(f"Unknown queue backend: {backend}. Available: {available}")

        if backend == "redis":
            return RedisJobQueue(redis_url=settings.redis_url)
        return cls._backends[backend]()

    @classmethod
    def list_backends(cls) -> list[str]:
        """List available backends"""
        return list(cls._backends.keys())
