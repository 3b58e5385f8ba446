"""
REST client for the CRM backend.

Three calls:
- GET  /api/scripts/{id}               call script (prompt, voice)
- POST /api/twilio/save-transcription  full transcript for a call
- POST /api/twilio/interest            one-shot interest notification

Script fetch and transcript save are idempotent and retried with exponential
backoff; the interest notification is sent once and never retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.callrelay.config import Config, get_config

logger = structlog.get_logger(__name__)


class BackendError(Exception):
    """Raised when a backend REST call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class CallScript(BaseModel):
    """Call script as stored by the backend. Unknown fields are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    voice_instructions: Optional[str] = Field(default=None, alias="voiceInstructions")


@dataclass
class InterestRecord:
    """A positive interest match; created at most once per call."""
    call_sid: str
    signal: str
    utterance: str
    caller_phone: Optional[str] = None
    transcript: str = ""
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "callId": self.call_sid,
            "callerPhone": self.caller_phone,
            "signal": self.signal,
            "utterance": self.utterance,
            "transcript": self.transcript,
            "detectedAt": self.detected_at.isoformat(),
        }


class BackendClient:
    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_base_url,
            timeout=httpx.Timeout(self.config.backend_timeout_seconds),
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise BackendError(f"{method} {path} returned HTTP {response.status_code}", response.status_code)
        if response.is_error:
            raise BackendError(
                f"{method} {path} returned HTTP {response.status_code}",
                response.status_code,
                retryable=False,
            )
        return response

    async def _request_with_retries(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        max_retries = max(0, self.config.backend_max_retries)
        for attempt in range(max_retries + 1):
            try:
                return await self._request(method, path, **kwargs)
            except BackendError as e:
                if not e.retryable or attempt >= max_retries:
                    raise
                delay = self.config.backend_retry_base_seconds * (2 ** attempt)
                logger.warning(
                    "Backend request failed; retrying",
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay_s=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
        raise BackendError(f"{method} {path}: max retries exceeded")

    async def fetch_script(self, script_id: Optional[str]) -> Optional[CallScript]:
        """Fetch the call script; None when unknown or unreachable."""
        if not script_id:
            return None
        try:
            response = await self._request_with_retries("GET", f"/api/scripts/{script_id}")
            script = CallScript.model_validate(response.json())
        except BackendError as e:
            logger.warning("Script fetch failed", script_id=script_id, error=str(e), status_code=e.status_code)
            return None
        except (ValueError, ValidationError) as e:
            logger.warning("Script payload invalid", script_id=script_id, error=str(e))
            return None

        logger.info("Script loaded", script_id=script_id, name=script.name)
        return script

    async def save_transcript(
        self,
        call_sid: str,
        script_id: Optional[str],
        transcription: str,
        entries: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        payload = {
            "callSid": call_sid,
            "scriptId": script_id,
            "transcription": transcription,
            "entries": entries or [],
        }
        try:
            await self._request_with_retries("POST", "/api/twilio/save-transcription", json=payload)
        except BackendError as e:
            logger.error("Transcript save failed", call_sid=call_sid, error=str(e), status_code=e.status_code)
            return False

        logger.info("Transcript saved", call_sid=call_sid, entries=len(entries or []))
        return True

    async def notify_interest(self, record: InterestRecord) -> bool:
        try:
            await self._request("POST", "/api/twilio/interest", json=record.to_payload())
        except BackendError as e:
            logger.error("Interest notification failed", call_sid=record.call_sid, error=str(e))
            return False

        logger.info("Interest notification sent", call_sid=record.call_sid, signal=record.signal)
        return True
