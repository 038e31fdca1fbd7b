"""
Campaign State Machine
Single writer of campaign and job status

Campaign transitions:
    pending    -> processing
    processing -> paused | completed | failed | cancelled
    paused     -> processing | cancelled | failed
    completed  -> processing (only when add_jobs or retry_failed reopen it)

Every change follows the same shape: take the campaign's lock, load the
record, apply one of the transition functions below, save it back. The
functions only touch the in-memory Campaign, so they are easy to test
in isolation.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set

from pydantic import ValidationError

from bulk_audit.core.config import EngineLimits
from bulk_audit.domain.interfaces.campaign_store import CampaignStore, CampaignStoreCorrupted
from bulk_audit.domain.interfaces.job_queue import JobQueue, QueueUnavailable
from bulk_audit.domain.models.campaign import (
    Campaign,
    CampaignConfig,
    CampaignJob,
    CampaignStats,
    CampaignStatus,
    InvalidCampaignConfig,
    JobStatus,
    PauseReason,
    ACTIVE_CAMPAIGN_STATUSES,
)
from bulk_audit.domain.models.execution import ExecutionResult
from bulk_audit.domain.models.queue_job import QueueJob

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[CampaignStatus, Set[CampaignStatus]] = {
    CampaignStatus.PENDING: {CampaignStatus.PROCESSING},
    CampaignStatus.PROCESSING: {
        CampaignStatus.PAUSED,
        CampaignStatus.COMPLETED,
        CampaignStatus.FAILED,
        CampaignStatus.CANCELLED,
    },
    CampaignStatus.PAUSED: {
        CampaignStatus.PROCESSING,
        CampaignStatus.CANCELLED,
        CampaignStatus.FAILED,
    },
    CampaignStatus.COMPLETED: set(),
    CampaignStatus.FAILED: set(),
    CampaignStatus.CANCELLED: set(),
}

# Campaigns whose job list and config are frozen
LOCKED_STATUSES = {CampaignStatus.COMPLETED, CampaignStatus.CANCELLED}

# Campaigns that still accept new jobs
OPEN_STATUSES = {CampaignStatus.PENDING, CampaignStatus.PROCESSING, CampaignStatus.PAUSED}

# Finished campaigns that new or retried jobs bring back to processing
REOPENABLE_STATUSES = {CampaignStatus.COMPLETED}


class InvalidTransition(Exception):
    """A state change the campaign's current status does not allow"""

    def __init__(self, campaign_id: str, current: CampaignStatus, action: str):
        self.campaign_id = campaign_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} campaign {campaign_id} while {current.value}")


# ============================================
# Transition functions
# ============================================

def apply_transition(
    campaign: Campaign,
    target: CampaignStatus,
    now: datetime,
    pause_reason: Optional[PauseReason] = None,
    failure_reason: Optional[str] = None
) -> None:
    """Move the campaign to `target` or raise InvalidTransition."""
    if target not in ALLOWED_TRANSITIONS[campaign.status]:
        raise InvalidTransition(campaign.id, campaign.status, f"move to {target.value}")

    campaign.status = target

    if target == CampaignStatus.PROCESSING:
        campaign.pause_reason = None
        if campaign.started_at is None:
            campaign.started_at = now
    elif target == CampaignStatus.PAUSED:
        campaign.pause_reason = pause_reason or PauseReason.MANUAL
    elif target == CampaignStatus.COMPLETED:
        campaign.completed_at = now
        campaign.stats = compute_stats(campaign)
    elif target in (CampaignStatus.CANCELLED, CampaignStatus.FAILED):
        campaign.completed_at = now
        if failure_reason:
            campaign.failure_reason = failure_reason


def reopen(campaign: Campaign) -> None:
    """Bring a completed campaign back to processing for more work"""
    campaign.status = CampaignStatus.PROCESSING
    campaign.pause_reason = None
    campaign.completed_at = None
    campaign.stats = None


def is_drained(campaign: Campaign) -> bool:
    """Every job reached a terminal state"""
    return campaign.total_jobs > 0 and campaign.attempted_jobs == campaign.total_jobs


def breaker_tripped(campaign: Campaign, default_min_sample: int) -> bool:
    """
    Failure-rate circuit breaker.

    Trips once enough jobs were attempted and the failed share reaches the
    configured threshold.
    """
    attempted = campaign.attempted_jobs
    if attempted < campaign.config.effective_min_sample(default_min_sample):
        return False
    if campaign.failed_jobs == 0:
        return False
    return campaign.failed_jobs / attempted >= campaign.config.failure_threshold_percent / 100


def compute_stats(campaign: Campaign) -> CampaignStats:
    """Averages over the jobs that produced an audit"""
    done = campaign.jobs_with_status(JobStatus.COMPLETED)
    scores = [j.score for j in done if j.score is not None]
    durations = [j.duration_ms for j in done if j.duration_ms is not None]
    return CampaignStats(
        avg_score=round(sum(scores) / len(scores), 2) if scores else 0.0,
        total_tokens=sum(j.tokens or 0 for j in done),
        avg_duration_ms=round(sum(durations) / len(durations), 1) if durations else 0.0,
    )


def apply_job_started(campaign: Campaign, job: CampaignJob, now: datetime) -> None:
    job.status = JobStatus.PROCESSING
    job.started_at = now
    job.updated_at = now
    campaign.usage.last_job_started_at = now
    if campaign.status == CampaignStatus.PENDING:
        apply_transition(campaign, CampaignStatus.PROCESSING, now)


def apply_job_succeeded(campaign: Campaign, job: CampaignJob, result: ExecutionResult, now: datetime) -> bool:
    """Returns False when the job already reached a terminal state"""
    if job.is_terminal:
        return False
    job.status = JobStatus.COMPLETED
    job.audit_id = result.audit_id
    job.score = result.outcome.overall_score
    job.tokens = result.outcome.total_tokens
    job.duration_ms = result.duration_ms
    job.updated_at = now
    campaign.completed_jobs += 1
    return True


def apply_job_failed(campaign: Campaign, job: CampaignJob, attempts: int, error: str, now: datetime) -> bool:
    """Returns False when the job already reached a terminal state"""
    if job.is_terminal:
        return False
    job.status = JobStatus.FAILED
    job.attempts = attempts
    job.error = error
    job.updated_at = now
    campaign.failed_jobs += 1
    return True


def apply_job_retry(job: CampaignJob, attempts: int, error: str, now: datetime) -> bool:
    """Put a job back to pending after a retryable failure"""
    if job.is_terminal:
        return False
    job.status = JobStatus.PENDING
    job.attempts = attempts
    job.error = error
    job.updated_at = now
    return True


def settle(campaign: Campaign, limits: EngineLimits, now: datetime) -> Optional[CampaignStatus]:
    """
    Campaign-level follow-up after a job result: complete a drained
    campaign, otherwise check the failure breaker. Only applies while
    processing.
    """
    if campaign.status != CampaignStatus.PROCESSING:
        return None

    if is_drained(campaign):
        apply_transition(campaign, CampaignStatus.COMPLETED, now)
        return CampaignStatus.COMPLETED

    if breaker_tripped(campaign, limits.min_sample_size):
        apply_transition(campaign, CampaignStatus.PAUSED, now, pause_reason=PauseReason.FAILURE_THRESHOLD)
        return CampaignStatus.PAUSED

    return None


# ============================================
# Store-backed state machine
# ============================================

class CampaignStateMachine:
    """
    Owns campaign status, job bookkeeping and the failure breaker.

    All writes for one campaign are serialized by a per-campaign lock, so
    counters stay consistent while several workers report results.
    """

    def __init__(
        self,
        store: CampaignStore,
        queue: JobQueue,
        limits: EngineLimits,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.queue = queue
        self.limits = limits
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, campaign_id: str) -> AsyncIterator[None]:
        """
        Hold the campaign's lock. The lock is dropped once no coroutine
        holds or waits for it.
        """
        lock = self._locks.get(campaign_id)
        if lock is None:
            lock = self._locks[campaign_id] = asyncio.Lock()
        self._lock_users[campaign_id] = self._lock_users.get(campaign_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[campaign_id] -= 1
            if self._lock_users[campaign_id] == 0:
                del self._lock_users[campaign_id]
                del self._locks[campaign_id]

    @asynccontextmanager
    async def _editing(self, campaign_id: str) -> AsyncIterator[Campaign]:
        """Load, hand out for mutation, save. Nothing is saved if the body raises."""
        async with self._locked(campaign_id):
            campaign = await self.store.load(campaign_id)
            yield campaign
            await self.store.save(campaign)

    async def _materialize(self, campaign: Campaign, jobs: Iterable[CampaignJob]) -> int:
        """Hand jobs to the queue; those that fail stay pending for reconciliation"""
        envelopes = [QueueJob.for_job(campaign, job) for job in jobs]
        if not envelopes:
            return 0
        result = await self.queue.enqueue_many(envelopes)
        if not result.complete:
            logger.warning(
                f"Queue unavailable: {len(result.failed_ids)} of {len(envelopes)} jobs "
                f"for campaign {campaign.id} left pending for later dispatch"
            )
        return len(result.enqueued_ids)

    # ----- creation -----

    async def create(self, campaign: Campaign) -> Campaign:
        """Persist a new campaign and queue its jobs"""
        self._check_job_limit(len(campaign.jobs))
        await self.store.save(campaign)
        queued = await self._materialize(campaign, campaign.jobs)
        logger.info(f"Campaign {campaign.id} created with {campaign.total_jobs} jobs ({queued} queued)")
        return campaign

    async def add_jobs(self, campaign_id: str, jobs: List[CampaignJob]) -> Campaign:
        """
        Append jobs to a campaign. A completed campaign is reopened, so
        uploads that arrive file by file keep landing in the same campaign.
        """
        async with self._editing(campaign_id) as campaign:
            if campaign.status not in OPEN_STATUSES | REOPENABLE_STATUSES:
                raise InvalidTransition(campaign_id, campaign.status, "add jobs to")
            self._check_job_limit(campaign.total_jobs + len(jobs))
            campaign.jobs.extend(jobs)
            reopened = campaign.status in REOPENABLE_STATUSES
            if reopened:
                reopen(campaign)

        if reopened:
            logger.info(f"Campaign {campaign_id} reopened for new jobs")

        await self._materialize(campaign, jobs)
        logger.info(f"Added {len(jobs)} jobs to campaign {campaign_id} (total {campaign.total_jobs})")
        return campaign

    def _check_job_limit(self, count: int) -> None:
        if count > self.limits.max_jobs_per_campaign:
            raise InvalidCampaignConfig(
                f"Maximum {self.limits.max_jobs_per_campaign} jobs allowed per campaign"
            )

    # ----- dispatch bookkeeping -----

    async def mark_started(
        self,
        queue_job: QueueJob,
        recent_starts: Optional[List[datetime]] = None
    ) -> Optional[Campaign]:
        """
        Mark a job processing before it is executed.

        Returns None (and changes nothing) when the envelope is stale: the
        campaign stopped dispatching, or the job is no longer pending at the
        attempt count the envelope carries.
        """
        async with self._locked(queue_job.campaign_id):
            campaign = await self.store.load(queue_job.campaign_id)
            job = campaign.get_job(queue_job.job_id)

            if job is None or job.status != JobStatus.PENDING or job.attempts != queue_job.attempts:
                logger.debug(f"Dropping stale envelope {queue_job.id} for job {queue_job.job_id}")
                return None
            if campaign.status not in ACTIVE_CAMPAIGN_STATUSES:
                if campaign.status == CampaignStatus.PAUSED:
                    await self._put_back(queue_job)
                return None

            now = self._clock()
            was_pending = campaign.status == CampaignStatus.PENDING
            apply_job_started(campaign, job, now)
            if recent_starts is not None:
                campaign.usage.recent_job_starts = list(recent_starts)
            await self.store.save(campaign)

        if was_pending:
            logger.info(f"Campaign {campaign.id} started processing")
        return campaign

    async def _put_back(self, queue_job: QueueJob) -> None:
        """Return an envelope taken while the campaign was being paused"""
        try:
            await self.queue.enqueue(queue_job)
        except QueueUnavailable:
            logger.warning(f"Could not return job {queue_job.job_id} to the queue; left for reconciliation")

    async def record_success(self, campaign_id: str, job_id: str, result: ExecutionResult) -> bool:
        """Record a successful audit. Duplicate deliveries are ignored."""
        async with self._editing(campaign_id) as campaign:
            job = campaign.get_job(job_id)
            now = self._clock()
            applied = job is not None and apply_job_succeeded(campaign, job, result, now)
            changed = settle(campaign, self.limits, now) if applied else None

        self._log_settled(campaign, changed)
        return applied

    async def record_retry(self, campaign_id: str, job_id: str, attempts: int, error: str) -> bool:
        """
        Record a retryable failure and put the job back to pending.

        Returns:
            True if the caller should re-queue the job. False for duplicates
            and for campaigns that are cancelled or already finished.
        """
        async with self._editing(campaign_id) as campaign:
            job = campaign.get_job(job_id)
            applied = job is not None and apply_job_retry(job, attempts, error, self._clock())
        return applied and campaign.status in OPEN_STATUSES

    async def record_failure(self, campaign_id: str, job_id: str, attempts: int, error: str) -> bool:
        """Record a terminal failure. Duplicate deliveries are ignored."""
        async with self._editing(campaign_id) as campaign:
            job = campaign.get_job(job_id)
            now = self._clock()
            applied = job is not None and apply_job_failed(campaign, job, attempts, error, now)
            changed = settle(campaign, self.limits, now) if applied else None

        self._log_settled(campaign, changed)
        return applied

    def _log_settled(self, campaign: Campaign, changed: Optional[CampaignStatus]) -> None:
        if changed == CampaignStatus.COMPLETED:
            logger.info(
                f"Campaign {campaign.id} completed: {campaign.completed_jobs} succeeded, "
                f"{campaign.failed_jobs} failed"
            )
        elif changed == CampaignStatus.PAUSED:
            rate = campaign.failed_jobs / campaign.attempted_jobs * 100
            logger.warning(
                f"Campaign {campaign.id} paused due to high failure rate "
                f"({rate:.1f}% >= {campaign.config.failure_threshold_percent}%)"
            )

    async def complete_if_drained(self, campaign_id: str) -> bool:
        async with self._editing(campaign_id) as campaign:
            if campaign.status != CampaignStatus.PROCESSING or not is_drained(campaign):
                return False
            apply_transition(campaign, CampaignStatus.COMPLETED, self._clock())

        self._log_settled(campaign, CampaignStatus.COMPLETED)
        return True

    async def recover(self, campaign_id: str, in_flight: Set[str]) -> int:
        """
        Visibility-timeout recovery for one campaign.

        - processing jobs with no update within the timeout that this process
          is not running are abandoned: counted as an attempt and re-queued
          (or failed once the retry budget is spent)
        - pending jobs with no queue entry (queue empty, nothing in flight)
          are queued again

        Returns:
            Number of jobs handed back to the queue
        """
        timeout = timedelta(seconds=self.limits.visibility_timeout_seconds)

        try:
            queue_empty = await self.queue.length(campaign_id) == 0
        except QueueUnavailable:
            queue_empty = False

        async with self._editing(campaign_id) as campaign:
            now = self._clock()
            if campaign.status not in OPEN_STATUSES:
                return 0

            abandoned = []
            for job in campaign.jobs_with_status(JobStatus.PROCESSING):
                if job.job_id in in_flight:
                    continue
                if job.updated_at and now - job.updated_at < timeout:
                    continue
                attempts = job.attempts + 1
                if attempts >= self.limits.max_retries:
                    apply_job_failed(campaign, job, attempts, "Abandoned by dispatcher (retries exhausted)", now)
                else:
                    apply_job_retry(job, attempts, "Abandoned by dispatcher", now)
                    abandoned.append(job)

            orphans = []
            if queue_empty and not in_flight:
                requeued = {j.job_id for j in abandoned}
                orphans = [
                    j for j in campaign.jobs_with_status(JobStatus.PENDING)
                    if j.job_id not in requeued
                ]

            changed = settle(campaign, self.limits, now)

        self._log_settled(campaign, changed)

        to_queue = abandoned + orphans
        if abandoned:
            logger.warning(f"Recovered {len(abandoned)} abandoned jobs for campaign {campaign_id}")
        if orphans:
            logger.info(f"Re-materializing {len(orphans)} unqueued jobs for campaign {campaign_id}")
        return await self._materialize(campaign, to_queue)

    # ----- control operations -----

    async def pause(self, campaign_id: str, reason: PauseReason = PauseReason.MANUAL) -> Campaign:
        async with self._editing(campaign_id) as campaign:
            apply_transition(campaign, CampaignStatus.PAUSED, self._clock(), pause_reason=reason)

        logger.info(f"Campaign {campaign_id} paused ({reason.value})")
        return campaign

    async def resume(self, campaign_id: str) -> Campaign:
        async with self._editing(campaign_id) as campaign:
            apply_transition(campaign, CampaignStatus.PROCESSING, self._clock())

        logger.info(f"Campaign {campaign_id} resumed")
        return campaign

    async def cancel(self, campaign_id: str) -> Optional[int]:
        """
        Cancel a campaign and drop its queued-but-not-started jobs.

        Returns:
            Number of queue entries dropped, or None if the queue was unreachable
            (the dispatcher never dequeues for a cancelled campaign anyway)
        """
        async with self._editing(campaign_id) as campaign:
            apply_transition(campaign, CampaignStatus.CANCELLED, self._clock())

        try:
            dropped = await self.queue.clear(campaign_id)
        except QueueUnavailable as e:
            logger.warning(f"Campaign {campaign_id} cancelled but queue not cleared: {e}")
            dropped = None

        logger.info(f"Campaign {campaign_id} cancelled (dropped {dropped} queued jobs)")
        return dropped

    async def fail(self, campaign_id: str, reason: str) -> None:
        """
        Campaign-fatal condition: move to failed and drop queued work.

        A record that cannot be parsed is forced to failed through the store.
        """
        try:
            async with self._editing(campaign_id) as campaign:
                apply_transition(campaign, CampaignStatus.FAILED, self._clock(), failure_reason=reason)
        except CampaignStoreCorrupted:
            await self.store.mark_failed(campaign_id, reason)

        logger.error(f"Campaign {campaign_id} failed: {reason}")
        try:
            await self.queue.clear(campaign_id)
        except QueueUnavailable as e:
            logger.warning(f"Queue not cleared for failed campaign {campaign_id}: {e}")

    async def retry_failed(self, campaign_id: str) -> int:
        """
        Re-queue every failed job with a fresh retry budget.

        A campaign paused by the failure breaker goes back to processing, as
        does a completed one with failed jobs; a manually paused one stays
        paused.

        Returns:
            Number of jobs re-queued
        """
        async with self._editing(campaign_id) as campaign:
            retryable_statuses = {CampaignStatus.PROCESSING, CampaignStatus.PAUSED} | REOPENABLE_STATUSES
            if campaign.status not in retryable_statuses:
                raise InvalidTransition(campaign_id, campaign.status, "retry failed jobs of")

            now = self._clock()
            retried = campaign.jobs_with_status(JobStatus.FAILED)
            for job in retried:
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.updated_at = now
                campaign.failed_jobs -= 1

            if retried and campaign.status in REOPENABLE_STATUSES:
                reopen(campaign)
            elif (
                retried
                and campaign.status == CampaignStatus.PAUSED
                and campaign.pause_reason == PauseReason.FAILURE_THRESHOLD
            ):
                apply_transition(campaign, CampaignStatus.PROCESSING, now)

        if not retried:
            return 0

        try:
            await self.queue.clear_dead_letters(campaign_id)
        except QueueUnavailable as e:
            logger.warning(f"Dead-letter list for campaign {campaign_id} not cleared: {e}")

        await self._materialize(campaign, retried)
        logger.info(f"Retried {len(retried)} failed jobs for campaign {campaign_id}")
        return len(retried)

    async def update_config(
        self,
        campaign_id: str,
        rpm: Optional[int] = None,
        failure_threshold_percent: Optional[float] = None,
        min_sample_size: Optional[int] = None
    ) -> Campaign:
        changes = {
            key: value
            for key, value in {
                "rpm": rpm,
                "failure_threshold_percent": failure_threshold_percent,
                "min_sample_size": min_sample_size,
            }.items()
            if value is not None
        }

        async with self._editing(campaign_id) as campaign:
            if campaign.status in LOCKED_STATUSES:
                raise InvalidTransition(campaign_id, campaign.status, "update config of")
            try:
                campaign.config = CampaignConfig.model_validate(
                    {**campaign.config.model_dump(), **changes}
                )
            except ValidationError as e:
                raise InvalidCampaignConfig(str(e)) from e

        logger.info(f"Campaign {campaign_id} config updated: {changes}")
        return campaign

    # ----- reads -----

    async def get_status(self, campaign_id: str) -> dict:
        campaign = await self.store.load(campaign_id)
        status = campaign.to_status_dict()
        try:
            status["queued_jobs"] = await self.queue.length(campaign_id)
        except QueueUnavailable:
            status["queued_jobs"] = None
        return status
