"""
Campaign Store Factory
"""
from bulk_audit.core.config import Settings
from bulk_audit.domain.interfaces.campaign_store import CampaignStore
from bulk_audit.infrastructure.storage.memory_store import InMemoryCampaignStore
from bulk_audit.infrastructure.storage.supabase_store import SupabaseCampaignStore


class StoreFactory:
    """Factory for creating campaign store instances"""

    _backends = ("supabase", "memory")

    @classmethod
    def create(cls, settings: Settings) -> CampaignStore:
        """Create the store selected by settings.store_backend"""
        backend = settings.store_backend
        if backend == "supabase":
            return SupabaseCampaignStore.from_credentials(
                settings.supabase_url,
                settings.supabase_service_key,
                settings.campaigns_table
            )
        if backend == "memory":
            return InMemoryCampaignStore()

        available = ", ".join(cls._backends)
        raise ValueError(f"Unknown store backend: {backend}. Available: {available}")
