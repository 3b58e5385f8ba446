from __future__ import annotations

import time
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog

from src.callrelay.config import get_config
from src.callrelay.tts_providers.base import SynthesisError, TTSProvider
from src.callrelay.tts_types import TTSChunk

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
# ulaw_8000 is Twilio's native format; no transcoding on our side.
ELEVENLABS_OUTPUT_FORMAT = "ulaw_8000"


class ElevenLabsTTS(TTSProvider):
    """
    ElevenLabs streaming HTTP TTS client.

    Audio bytes are yielded as soon as each network read completes, so the first
    frame reaches the caller before the whole sentence has been synthesized.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=ELEVENLABS_BASE_URL,
                timeout=httpx.Timeout(30.0, connect=5.0),
                transport=self._transport,
            )
        return self._client

    def _request_payload(self, text: str) -> dict[str, Any]:
        return {
            "text": text,
            "model_id": self.config.elevenlabs_model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.8,
                "style": 0.0,
                "use_speaker_boost": True,
            },
        }

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        if not text or not text.strip():
            return

        client = self._get_client()
        url = f"/text-to-speech/{self.config.elevenlabs_voice_id}/stream"
        params = {
            "output_format": ELEVENLABS_OUTPUT_FORMAT,
            "optimize_streaming_latency": str(self.config.elevenlabs_streaming_latency),
        }
        headers = {
            "Accept": "audio/basic",
            "Content-Type": "application/json",
            "xi-api-key": self.config.elevenlabs_api_key,
        }

        start_time = time.time()
        first_byte_ms: Optional[float] = None
        total_bytes = 0

        try:
            async with client.stream(
                "POST", url, params=params, headers=headers, json=self._request_payload(text)
            ) as response:
                if response.is_error:
                    body = await response.aread()
                    raise SynthesisError(
                        f"ElevenLabs HTTP {response.status_code}: {body[:200]!r}",
                        status_code=response.status_code,
                    )

                async for audio in response.aiter_bytes():
                    if not audio:
                        continue
                    if first_byte_ms is None:
                        first_byte_ms = (time.time() - start_time) * 1000
                    total_bytes += len(audio)
                    yield TTSChunk(audio_bytes=audio)

        except httpx.HTTPError as e:
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e

        logger.debug(
            "ElevenLabs synthesis complete",
            characters=len(text),
            audio_ms=round(total_bytes / 8.0, 2),
            first_byte_ms=round(first_byte_ms, 2) if first_byte_ms is not None else None,
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        yield TTSChunk(audio_bytes=b"", is_final=True)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
