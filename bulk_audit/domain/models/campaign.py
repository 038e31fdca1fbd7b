"""
Campaign Domain Models
A campaign is a batch of audio recordings audited together under shared
rate and failure settings. The campaign record owns its job list.
"""
import uuid
from pydantic import BaseModel, Field, computed_field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class InvalidCampaignConfig(ValueError):
    """Raised for out-of-range campaign configuration or oversized batches."""
    pass


class CampaignStatus(str, Enum):
    """Campaign status"""
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PauseReason(str, Enum):
    """Why a campaign is paused (manual and automatic pauses resume the same way)"""
    MANUAL = "manual"
    FAILURE_THRESHOLD = "failure_threshold"


class JobStatus(str, Enum):
    """Status of a single audit job within a campaign"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

# Campaigns the dispatcher picks up
ACTIVE_CAMPAIGN_STATUSES = {CampaignStatus.PENDING, CampaignStatus.PROCESSING}


class CampaignConfig(BaseModel):
    """
    Per-campaign dispatch settings.

    rpm of 0 means "use the engine default" rather than unbounded.
    min_sample_size of None means "use the engine default".
    """
    rpm: int = Field(default=0, ge=0, description="Jobs started per rolling minute")
    failure_threshold_percent: float = Field(
        default=20.0,
        ge=0,
        le=100,
        description="Failure rate (percent of attempted jobs) that auto-pauses the campaign"
    )
    min_sample_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Attempted jobs required before the failure threshold is evaluated"
    )

    def effective_rpm(self, default_rpm: int) -> int:
        return self.rpm or default_rpm

    def effective_min_sample(self, default_min_sample: int) -> int:
        return self.min_sample_size or default_min_sample


class CampaignUsage(BaseModel):
    """Dispatch bookkeeping used by the rate limiter"""
    last_job_started_at: Optional[datetime] = None
    recent_job_starts: List[datetime] = Field(default_factory=list)


class CampaignStats(BaseModel):
    """Aggregates computed when a campaign completes"""
    avg_score: float = 0.0
    total_tokens: int = 0
    avg_duration_ms: float = 0.0


class JobInput(BaseModel):
    """A recording submitted for auditing"""
    audio_url: str = Field(..., min_length=1, description="URL of the uploaded recording")
    agent_name: Optional[str] = Field(None, max_length=200)
    call_id: Optional[str] = Field(None, max_length=200)

    @field_validator('audio_url')
    @classmethod
    def strip_audio_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('audio_url cannot be empty')
        return v


class CampaignJob(BaseModel):
    """
    One recording within a campaign.

    Only the campaign state machine changes `status`, `attempts` and the
    result fields. `error` is kept after a successful retry.
    """
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    audio_url: str
    agent_name: Optional[str] = None
    call_id: Optional[str] = None

    status: JobStatus = JobStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    audit_id: Optional[str] = None
    error: Optional[str] = None

    # Result details from the audit service
    score: Optional[float] = None
    tokens: Optional[int] = None
    duration_ms: Optional[int] = None

    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @classmethod
    def from_input(cls, job: JobInput) -> "CampaignJob":
        return cls(
            audio_url=job.audio_url,
            agent_name=job.agent_name,
            call_id=job.call_id,
        )


class Campaign(BaseModel):
    """Bulk audit campaign"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    parameter_set_id: Optional[str] = None

    status: CampaignStatus = CampaignStatus.PENDING
    pause_reason: Optional[PauseReason] = None
    failure_reason: Optional[str] = None

    config: CampaignConfig = Field(default_factory=CampaignConfig)
    usage: CampaignUsage = Field(default_factory=CampaignUsage)
    jobs: List[CampaignJob] = Field(default_factory=list)

    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    stats: Optional[CampaignStats] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def total_jobs(self) -> int:
        return len(self.jobs)

    @property
    def attempted_jobs(self) -> int:
        return self.completed_jobs + self.failed_jobs

    @property
    def progress(self) -> float:
        """Percentage of jobs that reached a terminal state"""
        if not self.jobs:
            return 0.0
        return round(self.attempted_jobs / self.total_jobs * 100, 1)

    def get_job(self, job_id: str) -> Optional[CampaignJob]:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    def jobs_with_status(self, status: JobStatus) -> List[CampaignJob]:
        return [job for job in self.jobs if job.status == status]

    def to_status_dict(self) -> Dict[str, Any]:
        """Cheap progress view for polling clients"""
        return {
            "campaign_id": self.id,
            "status": self.status.value,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "progress": self.progress,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "total_jobs": self.total_jobs,
        }

    def __repr__(self) -> str:
        return (
            f"Campaign(id={self.id[:8]}..., "
            f"status={self.status.value}, "
            f"done={self.attempted_jobs}/{self.total_jobs})"
        )
