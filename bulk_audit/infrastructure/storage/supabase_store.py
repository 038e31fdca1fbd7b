"""
Supabase Campaign Store
Persists campaign records as JSONB rows in Supabase PostgreSQL

Table layout (one row per campaign):
    id          text primary key
    project_id  text
    status      text            -- indexed, used by list_active
    created_at  timestamptz
    updated_at  timestamptz
    record      jsonb           -- full Campaign document including jobs
"""
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from supabase import create_client, Client

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


class SupabaseCampaignStore(CampaignStore):
    """Campaign persistence on a Supabase table"""

    def __init__(self, client: Client, table: str = "bulk_audit_campaigns"):
        self._client = client
        self._table = table

    @classmethod
    def from_credentials(cls, url: str, key: str, table: str) -> "SupabaseCampaignStore":
        """
        Build a store from Supabase credentials.

        Raises:
            RuntimeError: If Supabase URL or SERVICE_KEY is not configured
        """
        if not url:
            raise RuntimeError(
                "SUPABASE_URL is not configured. "
                "Set SUPABASE_URL environment variable."
            )
        if not key:
            raise RuntimeError(
                "SUPABASE_SERVICE_KEY is not configured. "
                "Set SUPABASE_SERVICE_KEY environment variable."
            )
        return cls(create_client(url, key), table=table)

    def _parse(self, campaign_id: str, row: dict) -> Campaign:
        try:
            return Campaign.model_validate(row["record"])
        except (KeyError, TypeError, ValidationError) as e:
            raise CampaignStoreCorrupted(campaign_id, str(e)) from e

    async def load(self, campaign_id: str) -> Campaign:
        response = self._client.table(self._table).select(
            "record"
        ).eq("id", campaign_id).execute()

        if not response.data:
            raise CampaignNotFound(campaign_id)

        return self._parse(campaign_id, response.data[0])

    async def save(self, campaign: Campaign) -> None:
        campaign.updated_at = datetime.utcnow()
        row = {
            "id": campaign.id,
            "project_id": campaign.project_id,
            "status": campaign.status.value,
            "created_at": campaign.created_at.isoformat(),
            "updated_at": campaign.updated_at.isoformat(),
            "record": campaign.model_dump(mode="json"),
        }
        self._client.table(self._table).upsert(row).execute()
        logger.debug(f"Saved campaign {campaign.id} ({campaign.status.value})")

    async def list_active(self) -> List[str]:
        response = self._client.table(self._table).select(
            "id"
        ).in_("status", [s.value for s in ACTIVE_CAMPAIGN_STATUSES]).order("created_at").execute()

        return [row["id"] for row in response.data or []]

    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Campaign]:
        query = self._client.table(self._table).select("id, record")
        if project_id:
            query = query.eq("project_id", project_id)

        response = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()

        campaigns = []
        for row in response.data or []:
            try:
                campaigns.append(self._parse(row["id"], row))
            except CampaignStoreCorrupted as e:
                logger.warning(f"Skipping unreadable campaign in listing: {e}")
        return campaigns

    async def mark_failed(self, campaign_id: str, reason: str) -> None:
        # The record itself may be unreadable, so only the indexed columns change
        self._client.table(self._table).update({
            "status": CampaignStatus.FAILED.value,
            "updated_at": datetime.utcnow().isoformat()
        }).eq("id", campaign_id).execute()
        logger.error(f"Campaign {campaign_id} marked failed: {reason}")
