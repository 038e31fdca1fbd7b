"""
Audit Executor Interface
Abstract base class for the external AI audit service
"""
from abc import ABC, abstractmethod
from typing import Optional

from bulk_audit.domain.models.execution import AuditOutcome


class AuditServiceError(Exception):
    """Audit call failed; `retryable` says whether another attempt can help"""

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class AuditExecutor(ABC):
    """Runs one transcription + QA audit for an uploaded recording"""

    @abstractmethod
    async def run_audit(
        self,
        audio_url: str,
        parameter_set_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        call_id: Optional[str] = None
    ) -> AuditOutcome:
        """
        Audit a recording.

        Args:
            audio_url: URL of the uploaded recording
            parameter_set_id: QA parameter set to score against
            agent_name: Optional metadata passed through to the audit record
            call_id: Optional metadata passed through to the audit record

        Returns:
            AuditOutcome with the id of the created audit record

        Raises:
            AuditServiceError: the service rejected or failed the audit
            asyncio.TimeoutError: the call did not finish in time
        """
        pass

    async def close(self) -> None:
        """Release resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Executor name"""
        pass
