"""
Campaign Store Interface
Abstract base class for campaign persistence
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from bulk_audit.domain.models.campaign import Campaign


class CampaignNotFound(Exception):
    """No campaign with the given id"""

    def __init__(self, campaign_id: str):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found")


class CampaignStoreCorrupted(Exception):
    """A stored campaign record can no longer be parsed"""

    def __init__(self, campaign_id: str, detail: str):
        self.campaign_id = campaign_id
        self.detail = detail
        super().__init__(f"Campaign {campaign_id} record is corrupted: {detail}")


class CampaignStore(ABC):
    """
    Simple CRUD over campaign records, strongly consistent per campaign.

    Campaigns are loaded, changed through the state machine and saved back.
    Implementations must return independent copies from `load`.
    """

    @abstractmethod
    async def load(self, campaign_id: str) -> Campaign:
        """
        Raises:
            CampaignNotFound: unknown id
            CampaignStoreCorrupted: record exists but fails validation
        """
        pass

    @abstractmethod
    async def save(self, campaign: Campaign) -> None:
        """Insert or replace the full campaign record"""
        pass

    @abstractmethod
    async def list_active(self) -> List[str]:
        """Ids of campaigns the dispatcher should look at (pending/processing)"""
        pass

    @abstractmethod
    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Campaign]:
        """Newest first"""
        pass

    @abstractmethod
    async def mark_failed(self, campaign_id: str, reason: str) -> None:
        """
        Force a campaign to `failed` without parsing the record.

        Only used for campaign-fatal conditions where the record itself
        cannot be loaded.
        """
        pass
