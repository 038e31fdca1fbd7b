"""
Campaigns API
Control surface for bulk audit campaigns: create, pause/resume/cancel,
retry failed jobs, update config, add recordings and poll progress
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from bulk_audit.core.engine import AuditEngine
from bulk_audit.domain.interfaces.campaign_store import CampaignNotFound, CampaignStoreCorrupted
from bulk_audit.domain.interfaces.job_queue import QueueUnavailable
from bulk_audit.domain.models.campaign import InvalidCampaignConfig, JobInput
from bulk_audit.domain.services.campaign_service import CampaignService
from bulk_audit.domain.services.campaign_state_machine import InvalidTransition
from bulk_audit.api.v1.dependencies import get_campaign_service, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignCreate(BaseModel):
    """Request body for creating a bulk audit campaign"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    parameter_set_id: Optional[str] = None
    jobs: List[JobInput] = Field(..., min_length=1)

    # Config; omitted values fall back to engine defaults
    rpm: Optional[int] = Field(None, ge=0)
    failure_threshold_percent: Optional[float] = Field(None, ge=0, le=100)
    min_sample_size: Optional[int] = Field(None, ge=1)


class ConfigUpdate(BaseModel):
    """Request body for changing a campaign's dispatch settings"""
    rpm: Optional[int] = None
    failure_threshold_percent: Optional[float] = None
    min_sample_size: Optional[int] = None


class JobsAdd(BaseModel):
    """Request body for adding recordings to a campaign"""
    jobs: List[JobInput] = Field(..., min_length=1)


def _to_http_error(e: Exception) -> HTTPException:
    """Map engine errors to HTTP responses"""
    if isinstance(e, CampaignNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InvalidCampaignConfig):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if isinstance(e, QueueUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, CampaignStoreCorrupted):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    logger.error(f"Unexpected campaign API error: {e}", exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


ENGINE_ERRORS = (
    CampaignNotFound,
    CampaignStoreCorrupted,
    InvalidTransition,
    InvalidCampaignConfig,
    QueueUnavailable,
)


@router.get("/")
async def list_campaigns(
    project_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: CampaignService = Depends(get_campaign_service)
):
    """List campaigns, newest first (status views, no job lists)"""
    campaigns = await service.list_campaigns(project_id=project_id, limit=limit, offset=offset)
    return {
        "campaigns": [
            {**c.to_status_dict(), "name": c.name, "project_id": c.project_id, "created_at": c.created_at}
            for c in campaigns
        ]
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CampaignCreate,
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Create a campaign and queue one audit job per recording.

    The campaign starts `pending`; the dispatcher moves it to `processing`
    when the first job starts.
    """
    try:
        campaign = await service.create_campaign(
            name=body.name,
            jobs=body.jobs,
            rpm=body.rpm,
            failure_threshold_percent=body.failure_threshold_percent,
            min_sample_size=body.min_sample_size,
            description=body.description,
            project_id=body.project_id,
            created_by=body.created_by,
            parameter_set_id=body.parameter_set_id,
        )
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)

    return {
        "campaign_id": campaign.id,
        "status": campaign.status.value,
        "total_jobs": campaign.total_jobs,
        "message": f"Campaign created with {campaign.total_jobs} recordings",
    }


@router.get("/dispatcher/status")
async def dispatcher_status(engine: AuditEngine = Depends(get_engine)):
    """Dispatcher and queue counters"""
    try:
        queue_stats = await engine.queue.stats()
    except QueueUnavailable as e:
        queue_stats = {"error": str(e)}
    return {"dispatcher": engine.dispatcher.get_stats(), "queue": queue_stats}


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    """Full campaign record including jobs"""
    try:
        campaign = await service.get_campaign(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {"campaign": campaign.model_dump(mode="json")}


@router.get("/{campaign_id}/status")
async def get_status(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    """Progress for polling clients"""
    try:
        return await service.get_status(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        campaign = await service.pause(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return campaign.to_status_dict()


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        campaign = await service.resume(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return campaign.to_status_dict()


@router.post("/{campaign_id}/cancel")
async def cancel_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    """Cancel a campaign; queued jobs are dropped, running jobs finish"""
    try:
        dropped = await service.cancel(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {"campaign_id": campaign_id, "status": "cancelled", "dropped_jobs": dropped}


@router.post("/{campaign_id}/retry-failed")
async def retry_failed(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    """Re-queue every failed job with a fresh retry budget"""
    try:
        retried = await service.retry_failed(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {"campaign_id": campaign_id, "retried_jobs": retried}


@router.patch("/{campaign_id}/config")
async def update_config(
    campaign_id: str,
    body: ConfigUpdate,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        campaign = await service.update_config(
            campaign_id,
            rpm=body.rpm,
            failure_threshold_percent=body.failure_threshold_percent,
            min_sample_size=body.min_sample_size,
        )
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {"campaign_id": campaign_id, "config": campaign.config.model_dump()}


@router.post("/{campaign_id}/jobs")
async def add_jobs(
    campaign_id: str,
    body: JobsAdd,
    service: CampaignService = Depends(get_campaign_service)
):
    """Append recordings to an open campaign"""
    try:
        campaign = await service.add_jobs(campaign_id, body.jobs)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {
        "campaign_id": campaign_id,
        "added_jobs": len(body.jobs),
        "total_jobs": campaign.total_jobs,
    }


@router.get("/{campaign_id}/dead-letters")
async def list_dead_letters(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service)
):
    """Jobs parked after terminal failure or spent retries"""
    try:
        jobs = await service.dead_letters(campaign_id)
    except ENGINE_ERRORS as e:
        raise _to_http_error(e)
    return {
        "campaign_id": campaign_id,
        "dead_letters": [
            {
                "job_id": j.job_id,
                "audio_url": j.audio_url,
                "attempts": j.attempts,
                "last_error": j.last_error,
            }
            for j in jobs
        ],
    }
