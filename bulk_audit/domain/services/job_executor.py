"""
Job Executor
Runs one queued job against the audit service and classifies the outcome
"""
import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

from bulk_audit.core.config import EngineLimits
from bulk_audit.domain.interfaces.audit_executor import AuditExecutor, AuditServiceError
from bulk_audit.domain.models.execution import ExecutionResult
from bulk_audit.domain.models.queue_job import QueueJob

logger = logging.getLogger(__name__)


class JobExecutor:
    """
    Executes a single job. Never raises: every outcome comes back as an
    ExecutionResult marked success, retryable failure or terminal failure.
    """

    def __init__(self, auditor: AuditExecutor, limits: EngineLimits):
        self.auditor = auditor
        self.limits = limits

    def validate_audio(self, audio_url: str) -> Optional[str]:
        """
        Reject recordings a retry can never fix.

        URLs without a file extension (provider recording links such as
        .../Recordings/RE123) are passed through; the audit service reads
        the format from the response content type.

        Returns:
            Error message, or None if the URL looks usable
        """
        parsed = urlparse(audio_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return f"Invalid audio URL: {audio_url}"

        filename = parsed.path.rsplit("/", 1)[-1]
        if "." not in filename:
            return None

        extension = filename.rsplit(".", 1)[-1].lower()
        if extension not in self.limits.supported_audio_formats:
            supported = ", ".join(self.limits.supported_audio_formats)
            return f"Unsupported audio format '{extension}'. Supported: {supported}"
        return None

    async def execute(self, job: QueueJob) -> ExecutionResult:
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        problem = self.validate_audio(job.audio_url)
        if problem:
            logger.warning(f"Job {job.job_id} rejected: {problem}")
            return ExecutionResult.failure(problem, retryable=False)

        try:
            outcome = await asyncio.wait_for(
                self.auditor.run_audit(
                    audio_url=job.audio_url,
                    parameter_set_id=job.parameter_set_id,
                    agent_name=job.agent_name,
                    call_id=job.call_id,
                ),
                timeout=self.limits.audit_timeout_seconds
            )
        except asyncio.TimeoutError:
            message = f"Audit timed out after {self.limits.audit_timeout_seconds}s"
            logger.warning(f"Job {job.job_id}: {message}")
            return ExecutionResult.failure(message, retryable=True, duration_ms=elapsed_ms())
        except AuditServiceError as e:
            logger.warning(f"Job {job.job_id} failed ({'retryable' if e.retryable else 'terminal'}): {e}")
            return ExecutionResult.failure(str(e), retryable=e.retryable, duration_ms=elapsed_ms())
        except Exception as e:
            logger.error(f"Unexpected error auditing job {job.job_id}: {e}", exc_info=True)
            return ExecutionResult.failure(str(e) or type(e).__name__, retryable=True, duration_ms=elapsed_ms())

        duration = elapsed_ms()
        logger.info(f"Job {job.job_id} audited in {duration}ms (audit {outcome.audit_id})")
        return ExecutionResult.success(outcome, duration_ms=duration)
