"""
Unit Tests for Campaign Models
Tests for campaign, job, config and queue envelope models
"""
import pytest
from pydantic import ValidationError

from bulk_audit.domain.models.campaign import (
    Campaign,
    CampaignConfig,
    CampaignJob,
    CampaignStatus,
    JobInput,
    JobStatus,
    PauseReason,
)
from bulk_audit.domain.models.execution import AuditOutcome, ExecutionResult
from bulk_audit.domain.models.queue_job import QueueJob


def make_campaign(n_jobs: int = 3, **kwargs) -> Campaign:
    jobs = [CampaignJob(audio_url=f"https://cdn.example.com/calls/{i}.wav") for i in range(n_jobs)]
    return Campaign(name="Q3 QA sweep", jobs=jobs, **kwargs)


class TestCampaignConfig:
    """Tests for CampaignConfig"""

    def test_defaults(self):
        """Default config defers rpm and sample size to the engine"""
        config = CampaignConfig()

        assert config.rpm == 0
        assert config.failure_threshold_percent == 20.0
        assert config.min_sample_size is None

    def test_zero_rpm_uses_engine_default(self):
        """rpm of 0 means the engine default, not unbounded"""
        assert CampaignConfig(rpm=0).effective_rpm(10) == 10
        assert CampaignConfig(rpm=25).effective_rpm(10) == 25

    def test_min_sample_falls_back_to_default(self):
        """Unset min_sample_size uses the engine default"""
        assert CampaignConfig().effective_min_sample(5) == 5
        assert CampaignConfig(min_sample_size=2).effective_min_sample(5) == 2

    @pytest.mark.parametrize("field,value", [
        ("rpm", -1),
        ("failure_threshold_percent", -5),
        ("failure_threshold_percent", 101),
        ("min_sample_size", 0),
    ])
    def test_out_of_range_values_rejected(self, field, value):
        """Out-of-range config values fail validation"""
        with pytest.raises(ValidationError):
            CampaignConfig(**{field: value})


class TestJobInput:
    """Tests for submitted recordings"""

    def test_audio_url_is_stripped(self):
        """Whitespace around the URL is removed"""
        job = JobInput(audio_url="  https://cdn.example.com/a.mp3 ")
        assert job.audio_url == "https://cdn.example.com/a.mp3"

    def test_blank_audio_url_rejected(self):
        """A whitespace-only URL is invalid"""
        with pytest.raises(ValidationError):
            JobInput(audio_url="   ")

    def test_campaign_job_from_input(self):
        """Metadata carries over and the job starts pending"""
        job = CampaignJob.from_input(
            JobInput(audio_url="https://cdn.example.com/a.mp3", agent_name="Dana", call_id="c-1")
        )

        assert job.agent_name == "Dana"
        assert job.call_id == "c-1"
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.job_id


class TestCampaign:
    """Tests for the Campaign aggregate"""

    def test_new_campaign_is_pending(self):
        """New campaigns start pending with zero counters"""
        campaign = make_campaign()

        assert campaign.status == CampaignStatus.PENDING
        assert campaign.pause_reason is None
        assert campaign.completed_jobs == 0
        assert campaign.failed_jobs == 0
        assert campaign.total_jobs == 3

    def test_total_jobs_is_serialized(self):
        """total_jobs is derived from the job list and included in dumps"""
        data = make_campaign(n_jobs=4).model_dump(mode="json")
        assert data["total_jobs"] == 4

    def test_record_round_trip(self):
        """A dumped record (including computed fields) validates back"""
        campaign = make_campaign()
        campaign.pause_reason = PauseReason.MANUAL

        restored = Campaign.model_validate(campaign.model_dump(mode="json"))

        assert restored.id == campaign.id
        assert restored.pause_reason == PauseReason.MANUAL
        assert [j.job_id for j in restored.jobs] == [j.job_id for j in campaign.jobs]

    def test_progress(self):
        """Progress counts completed and failed jobs"""
        campaign = make_campaign(n_jobs=3)
        campaign.completed_jobs = 1
        campaign.failed_jobs = 1

        assert campaign.attempted_jobs == 2
        assert campaign.progress == 66.7

    def test_progress_of_empty_campaign(self):
        """No jobs means zero progress, not a division error"""
        assert make_campaign(n_jobs=0).progress == 0.0

    def test_get_job(self):
        """Jobs are found by id"""
        campaign = make_campaign()
        job = campaign.jobs[1]

        assert campaign.get_job(job.job_id) is job
        assert campaign.get_job("missing") is None

    def test_status_dict(self):
        """Status view has the polling fields"""
        campaign = make_campaign()
        campaign.status = CampaignStatus.PAUSED
        campaign.pause_reason = PauseReason.FAILURE_THRESHOLD

        status = campaign.to_status_dict()

        assert status == {
            "campaign_id": campaign.id,
            "status": "paused",
            "pause_reason": "failure_threshold",
            "progress": 0.0,
            "completed_jobs": 0,
            "failed_jobs": 0,
            "total_jobs": 3,
        }


class TestQueueJob:
    """Tests for the queue envelope"""

    def test_for_job_copies_campaign_job(self):
        """Envelope mirrors the job and the campaign's parameter set"""
        campaign = make_campaign(parameter_set_id="params-1")
        job = campaign.jobs[0]
        job.attempts = 2

        envelope = QueueJob.for_job(campaign, job)

        assert envelope.campaign_id == campaign.id
        assert envelope.job_id == job.job_id
        assert envelope.audio_url == job.audio_url
        assert envelope.parameter_set_id == "params-1"
        assert envelope.attempts == 2
        assert envelope.id.startswith("job:")

    def test_redis_dict_is_json_safe(self):
        """Serialized envelope uses plain JSON types"""
        campaign = make_campaign()
        data = QueueJob.for_job(campaign, campaign.jobs[0]).to_redis_dict()

        assert isinstance(data["created_at"], str)
        assert QueueJob.from_redis_dict(data).job_id == campaign.jobs[0].job_id


class TestExecutionResult:
    """Tests for execution results"""

    def test_success(self):
        result = ExecutionResult.success(AuditOutcome(audit_id="a-1", overall_score=87.5), duration_ms=120)

        assert result.succeeded
        assert result.audit_id == "a-1"
        assert result.error is None

    def test_failure(self):
        result = ExecutionResult.failure("bad format", retryable=False)

        assert not result.succeeded
        assert result.audit_id is None
        assert result.error.retryable is False
