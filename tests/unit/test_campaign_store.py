"""
Unit Tests for Campaign Stores
Tests for the in-memory and Supabase campaign stores
"""
import pytest
from unittest.mock import MagicMock

from bulk_audit.core.config import Settings
from bulk_audit.domain.interfaces.campaign_store import CampaignNotFound, CampaignStoreCorrupted
from bulk_audit.domain.models.campaign import Campaign, CampaignJob, CampaignStatus
from bulk_audit.infrastructure.storage.factory import StoreFactory
from bulk_audit.infrastructure.storage.memory_store import InMemoryCampaignStore
from bulk_audit.infrastructure.storage.supabase_store import SupabaseCampaignStore


def make_campaign(name: str = "Weekly QA", **kwargs) -> Campaign:
    return Campaign(
        name=name,
        jobs=[CampaignJob(audio_url="https://cdn.example.com/1.wav")],
        **kwargs
    )


class TestInMemoryCampaignStore:
    """Tests for InMemoryCampaignStore"""

    @pytest.mark.asyncio
    async def test_load_returns_independent_copy(self):
        """Changes are only visible after save"""
        store = InMemoryCampaignStore()
        campaign = make_campaign()
        await store.save(campaign)

        loaded = await store.load(campaign.id)
        loaded.completed_jobs = 1

        assert (await store.load(campaign.id)).completed_jobs == 0
        await store.save(loaded)
        assert (await store.load(campaign.id)).completed_jobs == 1

    @pytest.mark.asyncio
    async def test_save_stamps_updated_at(self):
        store = InMemoryCampaignStore()
        campaign = make_campaign()

        await store.save(campaign)

        assert campaign.updated_at is not None

    @pytest.mark.asyncio
    async def test_unknown_campaign(self):
        with pytest.raises(CampaignNotFound):
            await InMemoryCampaignStore().load("missing")

    @pytest.mark.asyncio
    async def test_corrupted_record(self):
        """A record that fails validation raises CampaignStoreCorrupted"""
        store = InMemoryCampaignStore()
        store.put_raw("broken", {"id": "broken", "status": "processing", "jobs": "not-a-list"})

        with pytest.raises(CampaignStoreCorrupted):
            await store.load("broken")

    @pytest.mark.asyncio
    async def test_list_active_only_pending_and_processing(self):
        """Paused and finished campaigns are not dispatched"""
        store = InMemoryCampaignStore()
        statuses = [
            CampaignStatus.PENDING,
            CampaignStatus.PROCESSING,
            CampaignStatus.PAUSED,
            CampaignStatus.COMPLETED,
            CampaignStatus.CANCELLED,
        ]
        campaigns = [make_campaign(name=s.value, status=s) for s in statuses]
        for campaign in campaigns:
            await store.save(campaign)

        active = await store.list_active()

        assert set(active) == {campaigns[0].id, campaigns[1].id}

    @pytest.mark.asyncio
    async def test_list_campaigns_by_project(self):
        store = InMemoryCampaignStore()
        await store.save(make_campaign(project_id="p-1"))
        await store.save(make_campaign(project_id="p-2"))

        listed = await store.list_campaigns(project_id="p-1")

        assert [c.project_id for c in listed] == ["p-1"]

    @pytest.mark.asyncio
    async def test_mark_failed_on_corrupted_record(self):
        """mark_failed works without parsing the record"""
        store = InMemoryCampaignStore()
        store.put_raw("broken", {"id": "broken", "status": "processing", "jobs": 7})

        await store.mark_failed("broken", "unreadable record")

        assert "broken" not in await store.list_active()


class TestSupabaseCampaignStore:
    """Tests for SupabaseCampaignStore with a mocked client"""

    @pytest.mark.asyncio
    async def test_load_parses_record_column(self):
        campaign = make_campaign()
        mock_client = MagicMock()
        (
            mock_client.table.return_value.select.return_value.eq.return_value.execute.return_value
        ) = MagicMock(data=[{"record": campaign.model_dump(mode="json")}])

        store = SupabaseCampaignStore(mock_client, table="campaigns_test")
        loaded = await store.load(campaign.id)

        assert loaded.id == campaign.id
        mock_client.table.assert_called_with("campaigns_test")

    @pytest.mark.asyncio
    async def test_load_missing_row(self):
        mock_client = MagicMock()
        (
            mock_client.table.return_value.select.return_value.eq.return_value.execute.return_value
        ) = MagicMock(data=[])

        with pytest.raises(CampaignNotFound):
            await SupabaseCampaignStore(mock_client).load("missing")

    @pytest.mark.asyncio
    async def test_load_corrupted_row(self):
        mock_client = MagicMock()
        (
            mock_client.table.return_value.select.return_value.eq.return_value.execute.return_value
        ) = MagicMock(data=[{"record": {"id": "x", "jobs": "garbage"}}])

        with pytest.raises(CampaignStoreCorrupted):
            await SupabaseCampaignStore(mock_client).load("x")

    @pytest.mark.asyncio
    async def test_save_upserts_row(self):
        """Status is mirrored into an indexed column next to the JSON record"""
        mock_client = MagicMock()
        campaign = make_campaign(project_id="p-1", status=CampaignStatus.PROCESSING)

        await SupabaseCampaignStore(mock_client).save(campaign)

        row = mock_client.table.return_value.upsert.call_args.args[0]
        assert row["id"] == campaign.id
        assert row["status"] == "processing"
        assert row["project_id"] == "p-1"
        assert row["record"]["name"] == "Weekly QA"

    @pytest.mark.asyncio
    async def test_mark_failed_updates_status_column(self):
        mock_client = MagicMock()

        await SupabaseCampaignStore(mock_client).mark_failed("c-1", "corrupted")

        update = mock_client.table.return_value.update.call_args.args[0]
        assert update["status"] == "failed"
        mock_client.table.return_value.update.return_value.eq.assert_called_with("id", "c-1")

    def test_missing_credentials(self):
        with pytest.raises(RuntimeError, match="SUPABASE_URL"):
            SupabaseCampaignStore.from_credentials("", "key", "t")
        with pytest.raises(RuntimeError, match="SUPABASE_SERVICE_KEY"):
            SupabaseCampaignStore.from_credentials("https://x.supabase.co", "", "t")


class TestStoreFactory:
    """Tests for StoreFactory"""

    def test_memory_backend(self):
        assert isinstance(StoreFactory.create(Settings(store_backend="memory")), InMemoryCampaignStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown store backend"):
            StoreFactory.create(Settings(store_backend="mongo"))
