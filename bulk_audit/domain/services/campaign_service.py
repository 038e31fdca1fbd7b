"""
Campaign Service
Control surface for bulk audit campaigns, used by the API
"""
import logging
from typing import List, Optional

from bulk_audit.core.config import EngineLimits
from bulk_audit.domain.interfaces.campaign_store import CampaignStore
from bulk_audit.domain.interfaces.job_queue import JobQueue
from bulk_audit.domain.models.campaign import (
    Campaign,
    CampaignConfig,
    CampaignJob,
    InvalidCampaignConfig,
    JobInput,
    PauseReason,
)
from bulk_audit.domain.models.queue_job import QueueJob
from bulk_audit.domain.services.campaign_state_machine import CampaignStateMachine

logger = logging.getLogger(__name__)


class CampaignService:
    """
    Thin facade over the state machine: builds campaigns from requests and
    exposes reads that do not change state.
    """

    def __init__(
        self,
        state_machine: CampaignStateMachine,
        store: CampaignStore,
        queue: JobQueue,
        limits: EngineLimits
    ):
        self.state_machine = state_machine
        self.store = store
        self.queue = queue
        self.limits = limits

    async def create_campaign(
        self,
        name: str,
        jobs: List[JobInput],
        rpm: Optional[int] = None,
        failure_threshold_percent: Optional[float] = None,
        min_sample_size: Optional[int] = None,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        created_by: Optional[str] = None,
        parameter_set_id: Optional[str] = None
    ) -> Campaign:
        """
        Create a campaign in `pending` and queue one job per recording.

        Raises:
            InvalidCampaignConfig: empty or oversized batch
        """
        if not jobs:
            raise InvalidCampaignConfig("A campaign needs at least one recording")

        config = CampaignConfig(
            rpm=rpm or 0,
            failure_threshold_percent=(
                failure_threshold_percent
                if failure_threshold_percent is not None
                else self.limits.default_failure_threshold_percent
            ),
            min_sample_size=min_sample_size,
        )

        campaign = Campaign(
            name=name,
            description=description,
            project_id=project_id,
            created_by=created_by,
            parameter_set_id=parameter_set_id,
            config=config,
            jobs=[CampaignJob.from_input(job) for job in jobs],
        )
        return await self.state_machine.create(campaign)

    async def add_jobs(self, campaign_id: str, jobs: List[JobInput]) -> Campaign:
        if not jobs:
            raise InvalidCampaignConfig("No recordings to add")
        return await self.state_machine.add_jobs(
            campaign_id, [CampaignJob.from_input(job) for job in jobs]
        )

    async def pause(self, campaign_id: str) -> Campaign:
        return await self.state_machine.pause(campaign_id, PauseReason.MANUAL)

    async def resume(self, campaign_id: str) -> Campaign:
        return await self.state_machine.resume(campaign_id)

    async def cancel(self, campaign_id: str) -> Optional[int]:
        return await self.state_machine.cancel(campaign_id)

    async def retry_failed(self, campaign_id: str) -> int:
        return await self.state_machine.retry_failed(campaign_id)

    async def update_config(
        self,
        campaign_id: str,
        rpm: Optional[int] = None,
        failure_threshold_percent: Optional[float] = None,
        min_sample_size: Optional[int] = None
    ) -> Campaign:
        return await self.state_machine.update_config(
            campaign_id,
            rpm=rpm,
            failure_threshold_percent=failure_threshold_percent,
            min_sample_size=min_sample_size,
        )

    async def get_status(self, campaign_id: str) -> dict:
        return await self.state_machine.get_status(campaign_id)

    async def get_campaign(self, campaign_id: str) -> Campaign:
        return await self.store.load(campaign_id)

    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Campaign]:
        return await self.store.list_campaigns(project_id=project_id, limit=limit, offset=offset)

    async def dead_letters(self, campaign_id: str) -> List[QueueJob]:
        """Dead-lettered envelopes for a campaign (raises CampaignNotFound for unknown ids)"""
        await self.store.load(campaign_id)
        return await self.queue.dead_letters(campaign_id)
