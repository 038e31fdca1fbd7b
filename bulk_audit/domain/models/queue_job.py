"""
Queue Job Model
Transient dispatch envelope for one campaign job
"""
import uuid
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from bulk_audit.domain.models.campaign import Campaign, CampaignJob


class QueueJob(BaseModel):
    """
    A copy of a campaign job handed to the job queue.

    The envelope is never the source of truth: results are written back
    through the campaign state machine. `attempts` mirrors the campaign
    job's counter at enqueue time and is used to drop stale duplicates.
    """

    # Identity
    id: str = Field(default_factory=lambda: f"job:{uuid.uuid4().hex}")
    campaign_id: str = Field(..., description="Campaign this job belongs to")
    job_id: str = Field(..., description="Campaign job this envelope dispatches")

    # Payload
    audio_url: str
    agent_name: Optional[str] = None
    call_id: Optional[str] = None
    parameter_set_id: Optional[str] = None

    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Set when the job lands in the dead-letter list
    last_error: Optional[str] = None

    @classmethod
    def for_job(cls, campaign: Campaign, job: CampaignJob) -> "QueueJob":
        """Build a fresh envelope from the campaign's canonical job record."""
        return cls(
            campaign_id=campaign.id,
            job_id=job.job_id,
            audio_url=job.audio_url,
            agent_name=job.agent_name,
            call_id=job.call_id,
            parameter_set_id=campaign.parameter_set_id,
            attempts=job.attempts,
        )

    def to_redis_dict(self) -> dict:
        """Serialize for Redis storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_redis_dict(cls, data: dict) -> "QueueJob":
        """Deserialize from Redis storage."""
        return cls.model_validate(data)

    def __repr__(self) -> str:
        return (
            f"QueueJob(id={self.id[:12]}..., "
            f"campaign={self.campaign_id[:8]}..., "
            f"attempts={self.attempts})"
        )
