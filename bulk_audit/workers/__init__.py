"""
Workers Package
Background worker that dispatches bulk audit jobs
"""
from bulk_audit.workers.dispatcher_worker import CampaignDispatcher

__all__ = [
    "CampaignDispatcher"
]
