"""Domain models"""

# Campaign models
from .campaign import (
    InvalidCampaignConfig,
    CampaignStatus,
    PauseReason,
    JobStatus,
    CampaignConfig,
    CampaignUsage,
    CampaignStats,
    JobInput,
    CampaignJob,
    Campaign,
)

# Dispatch models
from .queue_job import (
    QueueJob,
)

from .execution import (
    ExecutionError,
    AuditOutcome,
    ExecutionResult,
)

__all__ = [
    # Campaign models
    "InvalidCampaignConfig",
    "CampaignStatus",
    "PauseReason",
    "JobStatus",
    "CampaignConfig",
    "CampaignUsage",
    "CampaignStats",
    "JobInput",
    "CampaignJob",
    "Campaign",
    # Dispatch models
    "QueueJob",
    "ExecutionError",
    "AuditOutcome",
    "ExecutionResult",
]
