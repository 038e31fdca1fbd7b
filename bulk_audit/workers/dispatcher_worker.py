"""
Campaign Dispatcher Worker
Background worker that feeds queued audit jobs to the audit service

Run as separate process:
    python -m bulk_audit.workers.dispatcher_worker
"""
import asyncio
import logging
import signal
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set

from dotenv import load_dotenv

from bulk_audit.core.config import EngineLimits
from bulk_audit.domain.interfaces.campaign_store import (
    CampaignStore,
    CampaignNotFound,
    CampaignStoreCorrupted,
)
from bulk_audit.domain.interfaces.job_queue import JobQueue, QueueUnavailable
from bulk_audit.domain.models.campaign import CampaignStatus, ACTIVE_CAMPAIGN_STATUSES
from bulk_audit.domain.models.execution import ExecutionResult
from bulk_audit.domain.models.queue_job import QueueJob
from bulk_audit.domain.services.campaign_state_machine import CampaignStateMachine, is_drained
from bulk_audit.domain.services.job_executor import JobExecutor
from bulk_audit.domain.services.rate_limiter import CampaignRateLimiter


logger = logging.getLogger(__name__)


class CampaignDispatcher:
    """
    Background worker for processing campaign jobs.

    Responsibilities:
    - Poll campaigns that are pending or processing
    - Start jobs within each campaign's rpm and worker limits
    - Report each result to the state machine and route the envelope
      (done, back to the queue, or dead-letter)
    - Periodically recover jobs abandoned by a crashed dispatcher

    One dispatcher per deployment. Several would each enforce their own
    rate window.
    """

    def __init__(
        self,
        store: CampaignStore,
        queue: JobQueue,
        state_machine: CampaignStateMachine,
        executor: JobExecutor,
        limits: EngineLimits,
        rate_limiter: Optional[CampaignRateLimiter] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.store = store
        self.queue = queue
        self.state_machine = state_machine
        self.executor = executor
        self.limits = limits
        self.rate_limiter = rate_limiter or CampaignRateLimiter(clock=clock)
        self._clock = clock
        self._sleep = sleep

        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, Set[str]] = {}  # campaign_id -> job_ids
        self._last_recovery: Optional[datetime] = None

        # Stats
        self._jobs_started = 0
        self._jobs_completed = 0
        self._jobs_retried = 0
        self._jobs_failed = 0
        self._ticks = 0

    # ----- lifecycle -----

    def start(self) -> None:
        """Run the loop as a background task (inside the API process)."""
        if self._loop_task and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop polling and wait for running jobs to report."""
        self.running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.wait_idle()

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Recover abandoned jobs (periodically)
        2. Dispatch jobs for every active campaign
        3. Back off on repeated errors
        """
        self.running = True
        consecutive_errors = 0

        logger.info("Campaign Dispatcher started - polling for jobs")

        while self.running:
            try:
                await self.tick()
                consecutive_errors = 0
                await self._sleep(self.limits.poll_interval_seconds)

            except asyncio.CancelledError:
                logger.info("Dispatcher received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Dispatcher error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.limits.max_consecutive_errors:
                    logger.critical("Too many consecutive errors, stopping dispatcher")
                    break

                await self._sleep(min(5 * consecutive_errors, 60))

        self.running = False

    async def wait_idle(self) -> None:
        """Wait until every spawned job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Campaign Dispatcher...")
        await self.stop()
        logger.info(
            f"Campaign Dispatcher shutdown complete. "
            f"Started: {self._jobs_started}, Completed: {self._jobs_completed}, "
            f"Retried: {self._jobs_retried}, Failed: {self._jobs_failed}"
        )

    # ----- dispatch -----

    async def tick(self) -> int:
        """
        One dispatch pass over all active campaigns.

        Returns:
            Number of jobs started
        """
        self._ticks += 1

        if self._recovery_due():
            await self.recover()

        started = 0
        active = await self.store.list_active()
        self._forget_finished(active)

        for campaign_id in active:
            try:
                started += await self._dispatch_campaign(campaign_id)
            except QueueUnavailable as e:
                logger.warning(f"Queue unavailable, skipping tick: {e}")
                break
            except CampaignNotFound:
                continue
            except CampaignStoreCorrupted as e:
                await self.state_machine.fail(campaign_id, str(e))
                self.rate_limiter.forget(campaign_id)
        return started

    def _forget_finished(self, active_ids: Iterable[str]) -> None:
        """Drop rate windows of campaigns that left the active set and have nothing running"""
        active = set(active_ids)
        for campaign_id in self.rate_limiter.tracked() - active:
            if campaign_id not in self._in_flight:
                self.rate_limiter.forget(campaign_id)

    def _in_flight_count(self, campaign_id: str) -> int:
        return len(self._in_flight.get(campaign_id, ()))

    async def _dispatch_campaign(self, campaign_id: str) -> int:
        campaign = await self.store.load(campaign_id)
        if campaign.status not in ACTIVE_CAMPAIGN_STATUSES:
            if campaign_id not in self._in_flight:
                self.rate_limiter.forget(campaign_id)
            return 0

        rpm = campaign.config.effective_rpm(self.limits.default_rpm)
        self.rate_limiter.seed(campaign_id, campaign.usage.recent_job_starts)

        capacity = min(rpm, self.limits.max_workers_per_campaign) - self._in_flight_count(campaign_id)
        started = 0

        while capacity > 0:
            allowed, wait = self.rate_limiter.check(campaign_id, rpm)
            if not allowed:
                logger.debug(f"Campaign {campaign_id} rate limited for {wait:.1f}s")
                break

            queue_job = await self.queue.dequeue(campaign_id)
            if queue_job is None:
                break

            recent = self.rate_limiter.recent_starts(campaign_id) + [self._clock()]
            if await self.state_machine.mark_started(queue_job, recent) is None:
                continue

            self.rate_limiter.register_start(campaign_id, rpm)
            self._spawn(queue_job)
            capacity -= 1
            started += 1

        if (
            started == 0
            and self._in_flight_count(campaign_id) == 0
            and campaign.status == CampaignStatus.PROCESSING
            and is_drained(campaign)
        ):
            if await self.state_machine.complete_if_drained(campaign_id):
                self.rate_limiter.forget(campaign_id)

        return started

    def _spawn(self, queue_job: QueueJob) -> None:
        self._in_flight.setdefault(queue_job.campaign_id, set()).add(queue_job.job_id)
        self._jobs_started += 1
        task = asyncio.create_task(self._run_job(queue_job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, queue_job: QueueJob) -> None:
        logger.info(
            f"Processing job {queue_job.job_id} for campaign {queue_job.campaign_id} "
            f"(attempt {queue_job.attempts + 1})"
        )
        try:
            result = await self.executor.execute(queue_job)
            await self._handle_result(queue_job, result)
        except Exception as e:
            # The job stays `processing`; visibility recovery picks it up
            logger.error(f"Failed to record result for job {queue_job.job_id}: {e}", exc_info=True)
        finally:
            in_flight = self._in_flight.get(queue_job.campaign_id)
            if in_flight is not None:
                in_flight.discard(queue_job.job_id)
                if not in_flight:
                    del self._in_flight[queue_job.campaign_id]

    async def _handle_result(self, queue_job: QueueJob, result: ExecutionResult) -> None:
        campaign_id = queue_job.campaign_id
        job_id = queue_job.job_id

        if result.succeeded:
            await self.state_machine.record_success(campaign_id, job_id, result)
            self._jobs_completed += 1
            return

        message = result.error.message
        attempts = queue_job.attempts + 1

        if result.error.retryable and attempts < self.limits.max_retries:
            delay = self.limits.retry_delay(queue_job.attempts)
            if delay > 0:
                await self._sleep(delay)

            if not await self.state_machine.record_retry(campaign_id, job_id, attempts, message):
                return
            self._jobs_retried += 1
            try:
                await self.queue.requeue(queue_job, self.limits.max_retries)
            except QueueUnavailable as e:
                logger.warning(f"Job {job_id} left pending, queue unavailable: {e}")
            return

        # Terminal failure or retry budget spent
        await self.state_machine.record_failure(campaign_id, job_id, attempts, message)
        self._jobs_failed += 1
        queue_job.attempts = attempts
        queue_job.last_error = message
        try:
            await self.queue.dead_letter(queue_job)
        except QueueUnavailable as e:
            logger.warning(f"Job {job_id} failed but was not dead-lettered: {e}")

    # ----- recovery -----

    def _recovery_due(self) -> bool:
        if self._last_recovery is None:
            return True
        elapsed = (self._clock() - self._last_recovery).total_seconds()
        return elapsed >= self.limits.recovery_check_interval_seconds

    async def recover(self) -> int:
        """Re-queue abandoned and unqueued jobs for every active campaign."""
        self._last_recovery = self._clock()
        recovered = 0
        for campaign_id in await self.store.list_active():
            try:
                recovered += await self.state_machine.recover(
                    campaign_id, set(self._in_flight.get(campaign_id, ()))
                )
            except (CampaignNotFound, CampaignStoreCorrupted, QueueUnavailable) as e:
                logger.warning(f"Recovery skipped for campaign {campaign_id}: {e}")
        if recovered:
            logger.info(f"Recovery re-queued {recovered} jobs")
        return recovered

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "ticks": self._ticks,
            "jobs_started": self._jobs_started,
            "jobs_completed": self._jobs_completed,
            "jobs_retried": self._jobs_retried,
            "jobs_failed": self._jobs_failed,
            "in_flight": {
                campaign_id: len(job_ids)
                for campaign_id, job_ids in self._in_flight.items()
                if job_ids
            },
        }


async def main():
    """Entry point for running the dispatcher as a separate process."""
    from bulk_audit.core.config import get_engine_limits, get_settings
    from bulk_audit.core.engine import build_engine

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    engine = build_engine(get_settings(), get_engine_limits())
    await engine.start(run_dispatcher=False)
    dispatcher = engine.dispatcher

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        dispatcher.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await dispatcher.run()
    except KeyboardInterrupt:
        logger.info("Dispatcher interrupted by user")
    finally:
        await dispatcher.shutdown()
        await engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
