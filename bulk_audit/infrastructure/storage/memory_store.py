"""
In-Memory Campaign Store
Keeps serialized campaign records in process memory (development and tests)
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError

from bulk_audit.domain.interfaces.campaign_store import (
    CampaignStore,
    CampaignNotFound,
    CampaignStoreCorrupted,
)
from bulk_audit.domain.models.campaign import (
    Campaign,
    CampaignStatus,
    ACTIVE_CAMPAIGN_STATUSES,
)

logger = logging.getLogger(__name__)


class InMemoryCampaignStore(CampaignStore):
    """
    Stores records as plain dicts so every load returns an independent copy;
    changes are only visible after `save`.
    """

    def __init__(self):
        self._records: Dict[str, dict] = {}

    async def load(self, campaign_id: str) -> Campaign:
        record = self._records.get(campaign_id)
        if record is None:
            raise CampaignNotFound(campaign_id)
        try:
            return Campaign.model_validate(record)
        except ValidationError as e:
            raise CampaignStoreCorrupted(campaign_id, str(e)) from e

    async def save(self, campaign: Campaign) -> None:
        campaign.updated_at = datetime.utcnow()
        self._records[campaign.id] = campaign.model_dump(mode="json")

    async def list_active(self) -> List[str]:
        active = {s.value for s in ACTIVE_CAMPAIGN_STATUSES}
        records = sorted(self._records.values(), key=lambda r: r.get("created_at") or "")
        return [r["id"] for r in records if r.get("status") in active]

    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Campaign]:
        records = sorted(
            self._records.values(),
            key=lambda r: r.get("created_at") or "",
            reverse=True
        )
        if project_id:
            records = [r for r in records if r.get("project_id") == project_id]

        campaigns = []
        for record in records[offset:offset + limit]:
            try:
                campaigns.append(Campaign.model_validate(record))
            except ValidationError:
                logger.warning(f"Skipping unreadable campaign {record.get('id')} in listing")
        return campaigns

    async def mark_failed(self, campaign_id: str, reason: str) -> None:
        record = self._records.get(campaign_id)
        if record is None:
            raise CampaignNotFound(campaign_id)
        record["status"] = CampaignStatus.FAILED.value
        record["failure_reason"] = reason
        logger.error(f"Campaign {campaign_id} marked failed: {reason}")

    def put_raw(self, campaign_id: str, record: dict) -> None:
        """Store a raw record as-is (used to simulate corrupted rows)"""
        self._records[campaign_id] = record
