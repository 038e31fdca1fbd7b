"""
HTTP Audit Executor
Calls the AI audit service (transcription + QA scoring) over HTTP
"""
import logging
from typing import Optional

import httpx

from bulk_audit.domain.interfaces.audit_executor import AuditExecutor, AuditServiceError
from bulk_audit.domain.models.execution import AuditOutcome

logger = logging.getLogger(__name__)

# Upstream statuses worth another attempt
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class HttpAuditExecutor(AuditExecutor):
    """
    Client for the audit service's `POST /audits` endpoint.

    The service fetches the recording, transcribes it, scores it against the
    QA parameter set and stores the audit record. It answers with the id of
    that record.
    """

    AUDIT_PATH = "/audits"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds)
        )

    @property
    def name(self) -> str:
        return "http"

    async def run_audit(
        self,
        audio_url: str,
        parameter_set_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        call_id: Optional[str] = None
    ) -> AuditOutcome:
        payload = {
            "audioUrl": audio_url,
            "parameterSetId": parameter_set_id,
            "agentName": agent_name,
            "callId": call_id,
            "auditType": "bulk",
        }

        try:
            response = await self._client.post(self.AUDIT_PATH, json=payload)
        except httpx.TimeoutException as e:
            raise AuditServiceError(f"Audit service timed out: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise AuditServiceError(f"Audit service unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            detail = _error_detail(response)
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            logger.warning(f"Audit service returned {response.status_code} for {audio_url}: {detail}")
            raise AuditServiceError(
                f"Audit service error {response.status_code}: {detail}",
                retryable=retryable,
                status_code=response.status_code
            )

        try:
            data = response.json()
            audit_id = data.get("auditId") or data.get("id")
        except ValueError as e:
            raise AuditServiceError(f"Audit service sent invalid JSON: {e}", retryable=True) from e

        if not audit_id:
            raise AuditServiceError("Audit service response missing auditId", retryable=True)

        token_usage = data.get("tokenUsage") or {}
        return AuditOutcome(
            audit_id=str(audit_id),
            overall_score=data.get("overallScore"),
            total_tokens=token_usage.get("totalTokens")
        )

    async def close(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)
