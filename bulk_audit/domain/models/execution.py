"""
Execution Result Models
Outcome of running one job against the AI audit service
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ExecutionError:
    """
    Why a job attempt failed.

    retryable: timeouts, upstream rate limits, transient network errors.
    terminal (retryable=False): malformed audio URL, unsupported format,
    anything a retry cannot fix.
    """
    message: str
    retryable: bool


@dataclass(frozen=True)
class AuditOutcome:
    """What the audit service reports for a successful audit"""
    audit_id: str
    overall_score: Optional[float] = None
    total_tokens: Optional[int] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Result<AuditOutcome, ExecutionError> for one attempt"""
    outcome: Optional[AuditOutcome] = None
    error: Optional[ExecutionError] = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome is not None

    @property
    def audit_id(self) -> Optional[str]:
        return self.outcome.audit_id if self.outcome else None

    @classmethod
    def success(cls, outcome: AuditOutcome, duration_ms: int = 0) -> "ExecutionResult":
        return cls(outcome=outcome, duration_ms=duration_ms)

    @classmethod
    def failure(cls, message: str, retryable: bool, duration_ms: int = 0) -> "ExecutionResult":
        return cls(error=ExecutionError(message=message, retryable=retryable), duration_ms=duration_ms)
