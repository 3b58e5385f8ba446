"""
Per-call speech synthesis pipeline.

Sentences produced by the segmenter are queued here and turned into outbound
Twilio frames by a single consumer task:

sentence queue -> provider.synthesize_streaming -> 20ms mu-law frames -> Twilio

Invariants:
- at most one sentence is synthesized/streamed at a time, in enqueue order
- the cancellation token is checked before every forwarded frame
- a provider failure skips that sentence only
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional

import structlog

from src.callrelay.audio import pad_frame, take_frames
from src.callrelay.tts_providers.base import SynthesisError, TTSProvider
from src.callrelay.tts_providers.elevenlabs import ElevenLabsTTS

logger = structlog.get_logger(__name__)


class CancellationToken:
    """One-way cancellation flag scoped to a single AI turn."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason or None


class SpeechSynthesisPipeline:
    def __init__(
        self,
        provider: TTSProvider,
        send_audio: Callable[[bytes], Awaitable[None]],
        *,
        on_drained: Optional[Callable[[], Awaitable[None]]] = None,
        call_sid: str = "",
    ):
        self._provider = provider
        self._send_audio = send_audio
        self._on_drained = on_drained
        self._log = logger.bind(call_sid=call_sid) if call_sid else logger

        self._queue: Deque[str] = deque()
        self._token = CancellationToken()
        self._task: Optional[asyncio.Task] = None
        self._task_token: Optional[CancellationToken] = None
        self._closed = False

        self.sentences_spoken = 0
        self.sentences_failed = 0
        self.sentences_dropped = 0

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def is_busy(self) -> bool:
        """True while a sentence is queued or being streamed."""
        return bool(self._queue) or (self._task is not None and not self._task.done())

    def begin_turn(self) -> CancellationToken:
        """
        Return the token for a new AI turn.

        A fresh token is created unless the previous turn is still draining, in
        which case the new turn's sentences queue up behind it under the same token.
        """
        if self._token.cancelled or not self.is_busy:
            self._token = CancellationToken()
        return self._token

    def enqueue(self, sentence: str) -> bool:
        sentence = (sentence or "").strip()
        if not sentence or self._closed:
            return False
        if self._token.cancelled:
            self._log.debug("Dropping sentence for cancelled turn", sentence=sentence[:60])
            self.sentences_dropped += 1
            return False

        self._queue.append(sentence)
        # A consumer still unwinding from a cancelled turn will not pick this up.
        if self._task is None or self._task.done() or self._task_token is not self._token:
            self._task_token = self._token
            self._task = asyncio.create_task(self._consume(self._token))
        return True

    def cancel(self, reason: str = "cancelled") -> int:
        """
        Cancel the current turn: drop queued sentences and abort the in-flight one.

        Safe to call repeatedly. Returns the number of queued sentences dropped.
        """
        dropped = len(self._queue)
        self._queue.clear()
        self.sentences_dropped += dropped
        self._token.cancel(reason)

        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

        if dropped:
            self._log.info("Sentence queue cleared", reason=reason, dropped=dropped)
        return dropped

    async def close(self) -> None:
        self._closed = True
        self.cancel("close")
        task = self._task
        if task and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        self._task = None
        await self._provider.close()

    async def _consume(self, token: CancellationToken) -> None:
        try:
            while self._queue and not token.cancelled:
                sentence = self._queue.popleft()
                try:
                    spoken = await self._speak(sentence, token)
                except SynthesisError as e:
                    # One bad sentence must not kill the call: skip it, keep draining.
                    self.sentences_failed += 1
                    self._log.warning(
                        "Sentence synthesis failed; skipping",
                        error=str(e),
                        status_code=e.status_code,
                        sentence=sentence[:60],
                    )
                    continue
                if spoken:
                    self.sentences_spoken += 1
        except asyncio.CancelledError:
            self._log.debug("Synthesis consumer cancelled", reason=token.reason)
            raise
        except Exception as e:
            self._log.error("Synthesis consumer failed", error=str(e))
            self._queue.clear()
            token.cancel("error")
            return
        finally:
            if self._task is asyncio.current_task():
                self._task = None

        if not token.cancelled and not self._queue and self._on_drained:
            await self._on_drained()

    async def _speak(self, sentence: str, token: CancellationToken) -> bool:
        """Stream one sentence. Returns False if cancelled part-way."""
        remainder = b""
        stream = self._provider.synthesize_streaming(sentence)
        try:
            async for chunk in stream:
                if token.cancelled:
                    return False
                frames, remainder = take_frames(remainder, chunk.audio_bytes)
                for frame in frames:
                    if token.cancelled:
                        return False
                    await self._send_audio(frame)

            if token.cancelled:
                return False
            if remainder:
                await self._send_audio(pad_frame(remainder))
            return True
        finally:
            await stream.aclose()


def create_tts_provider(config: Any) -> Optional[TTSProvider]:
    """External synthesis provider, or None when the backend speaks for itself."""
    if not config.use_external_tts:
        return None
    return ElevenLabsTTS(config)
