"""
API Dependencies
Shared dependencies giving endpoints access to the campaign engine
"""
from fastapi import Depends, HTTPException, Request, status

from bulk_audit.core.engine import AuditEngine
from bulk_audit.domain.services.campaign_service import CampaignService


def get_engine(request: Request) -> AuditEngine:
    """
    Get the engine built at application startup.

    Raises:
        HTTPException 503: if the engine is not running
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Campaign engine is not running"
        )
    return engine


def get_campaign_service(engine: AuditEngine = Depends(get_engine)) -> CampaignService:
    return engine.service
