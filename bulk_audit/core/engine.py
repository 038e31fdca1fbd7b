"""
Engine Wiring
Builds the campaign engine's collaborators from settings
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from bulk_audit.core.config import EngineLimits, Settings
from bulk_audit.domain.interfaces.audit_executor import AuditExecutor
from bulk_audit.domain.interfaces.campaign_store import CampaignStore
from bulk_audit.domain.interfaces.job_queue import JobQueue
from bulk_audit.domain.services.campaign_service import CampaignService
from bulk_audit.domain.services.campaign_state_machine import CampaignStateMachine
from bulk_audit.domain.services.job_executor import JobExecutor
from bulk_audit.infrastructure.audit.http_auditor import HttpAuditExecutor
from bulk_audit.infrastructure.queue.factory import QueueFactory
from bulk_audit.infrastructure.storage.factory import StoreFactory
from bulk_audit.workers.dispatcher_worker import CampaignDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AuditEngine:
    """Everything the API and the dispatcher share"""
    limits: EngineLimits
    store: CampaignStore
    queue: JobQueue
    auditor: AuditExecutor
    state_machine: CampaignStateMachine
    service: CampaignService
    dispatcher: CampaignDispatcher

    async def start(self, run_dispatcher: bool = True) -> None:
        await self.queue.initialize()
        if run_dispatcher:
            self.dispatcher.start()
        logger.info(f"Audit engine started (dispatcher {'on' if run_dispatcher else 'off'})")

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.auditor.close()
        await self.queue.close()
        logger.info("Audit engine stopped")


def build_engine(
    settings: Settings,
    limits: EngineLimits,
    store: Optional[CampaignStore] = None,
    queue: Optional[JobQueue] = None,
    auditor: Optional[AuditExecutor] = None,
    clock: Callable[[], datetime] = datetime.utcnow
) -> AuditEngine:
    """
    Wire the engine. Any collaborator can be passed in (tests use the
    in-memory backends and a fake auditor).
    """
    store = store or StoreFactory.create(settings)
    queue = queue or QueueFactory.create(settings)
    auditor = auditor or HttpAuditExecutor(
        base_url=settings.audit_service_url,
        api_key=settings.audit_service_api_key,
        timeout_seconds=limits.audit_timeout_seconds,
    )

    state_machine = CampaignStateMachine(store, queue, limits, clock=clock)
    service = CampaignService(state_machine, store, queue, limits)
    dispatcher = CampaignDispatcher(
        store=store,
        queue=queue,
        state_machine=state_machine,
        executor=JobExecutor(auditor, limits),
        limits=limits,
        clock=clock,
    )

    return AuditEngine(
        limits=limits,
        store=store,
        queue=queue,
        auditor=auditor,
        state_machine=state_machine,
        service=service,
        dispatcher=dispatcher,
    )
