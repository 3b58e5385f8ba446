"""
Per-call turn-taking state machine.

Consumes caller-speech and AI-response lifecycle events (parsed from both
sockets into `TurnEvent` values) and decides when the AI may speak, when to
cancel it, and when to clear audio already buffered on the Twilio side.

States:
- GREETING_PENDING: caller speech detection is off; the greeting is in flight
- AI_SPEAKING: the current response is producing audio
- WAITING_FOR_CALLER: nobody is talking; the next AI turn is allowed
- CALLER_SPEAKING: the caller holds the floor

A caller_speech_started event always forces AI_SPEAKING -> CALLER_SPEAKING
(barge-in), no matter what else is pending.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.callrelay.interest import InterestClassifier
from src.callrelay.segmenter import SentenceSegmenter
from src.callrelay.transcript import Role, TranscriptLog
from src.callrelay.tts import CancellationToken, SpeechSynthesisPipeline

logger = structlog.get_logger(__name__)

# Backend error codes that end the session on the backend side.
SESSION_EXPIRED_CODES = frozenset({"session_expired", "session_expiration"})
# Cancelling a response that already finished is reported by the backend as an error.
CANCEL_NOT_ACTIVE_CODE = "response_cancel_not_active"


class TurnState(str, Enum):
    GREETING_PENDING = "greeting_pending"
    AI_SPEAKING = "ai_speaking"
    WAITING_FOR_CALLER = "waiting_for_caller"
    CALLER_SPEAKING = "caller_speaking"


class TurnEventType(str, Enum):
    CALLER_SPEECH_STARTED = "caller_speech_started"
    CALLER_SPEECH_STOPPED = "caller_speech_stopped"
    CALLER_UTTERANCE_FINAL = "caller_utterance_final"
    ASSISTANT_TEXT_DELTA = "assistant_text_delta"
    ASSISTANT_TEXT_FINAL = "assistant_text_final"
    ASSISTANT_AUDIO_DELTA = "assistant_audio_delta"
    ASSISTANT_AUDIO_DONE = "assistant_audio_done"
    ASSISTANT_RESPONSE_STARTED = "assistant_response_started"
    ASSISTANT_RESPONSE_DONE = "assistant_response_done"
    BACKEND_READY = "backend_ready"
    BACKEND_ERROR = "backend_error"
    BACKEND_CLOSED = "backend_closed"


@dataclass(frozen=True)
class TurnEvent:
    type: TurnEventType
    text: str = ""
    audio: bytes = b""
    code: str = ""
    response_id: Optional[str] = None


class TurnTakingStateMachine:
    """
    Owns all mutable turn state for one call.

    Collaborators:
        backend: `create_response()`, `cancel_response()`, `enable_turn_detection()`
        telephony: `send_audio(bytes)`, `send_clear()`
        synthesis: optional external speech pipeline; when set, AI text is
            segmented and spoken through it and backend audio is ignored
    """

    def __init__(
        self,
        *,
        backend: Any,
        telephony: Any,
        transcript: TranscriptLog,
        classifier: InterestClassifier,
        synthesis: Optional[SpeechSynthesisPipeline] = None,
        on_interest: Optional[Callable[[str, str], Awaitable[None]]] = None,
        on_end: Optional[Callable[[str], Awaitable[None]]] = None,
        min_utterances_for_interest: int = 2,
        session_expiry_policy: str = "end_call",
        call_sid: str = "",
    ):
        self.backend = backend
        self.telephony = telephony
        self.transcript = transcript
        self.classifier = classifier
        self.synthesis = synthesis
        self._on_interest = on_interest
        self._on_end = on_end
        self.min_utterances_for_interest = min_utterances_for_interest
        self.session_expiry_policy = session_expiry_policy
        self._log = logger.bind(call_sid=call_sid) if call_sid else logger

        self.state = TurnState.GREETING_PENDING
        self.user_utterances = 0
        self.turns_completed = 0
        self.interruptions = 0
        self.interest_signal: Optional[str] = None
        self.greeting_issued = False
        self.greeting_done = False
        self.ended = False
        self.end_reason: Optional[str] = None

        self._response_active = False
        self._response_id: Optional[str] = None
        self._cancel_requested = False
        self._caller_spoke_since_turn = False
        self._turn_token = CancellationToken()
        self._segmenter = SentenceSegmenter()
        self._response_text = ""
        self._response_recorded = False
        self._end_after_turn: Optional[str] = None

        self._handlers: Dict[TurnEventType, Callable[[TurnEvent], Awaitable[None]]] = {
            TurnEventType.BACKEND_READY: self._on_backend_ready,
            TurnEventType.ASSISTANT_RESPONSE_STARTED: self._on_response_started,
            TurnEventType.ASSISTANT_RESPONSE_DONE: self._on_response_done,
            TurnEventType.ASSISTANT_TEXT_DELTA: self._on_text_delta,
            TurnEventType.ASSISTANT_TEXT_FINAL: self._on_text_final,
            TurnEventType.ASSISTANT_AUDIO_DELTA: self._on_audio_delta,
            TurnEventType.ASSISTANT_AUDIO_DONE: self._on_audio_done,
            TurnEventType.CALLER_SPEECH_STARTED: self._on_caller_speech_started,
            TurnEventType.CALLER_SPEECH_STOPPED: self._on_caller_speech_stopped,
            TurnEventType.CALLER_UTTERANCE_FINAL: self._on_utterance_final,
            TurnEventType.BACKEND_ERROR: self._on_backend_error,
            TurnEventType.BACKEND_CLOSED: self._on_backend_closed,
        }

    @property
    def response_active(self) -> bool:
        return self._response_active

    @property
    def turn_token(self) -> CancellationToken:
        return self._turn_token

    async def handle(self, event: TurnEvent) -> None:
        if self.ended:
            return
        handler = self._handlers.get(event.type)
        if handler is None:
            return
        await handler(event)

    # ------------------------------------------------------------------
    # AI side
    # ------------------------------------------------------------------

    async def _on_backend_ready(self, event: TurnEvent) -> None:
        if self.state != TurnState.GREETING_PENDING or self.greeting_issued:
            # Arming VAD after the greeting re-triggers the same acknowledgment.
            self._log.debug("Session acknowledgment ignored", state=self.state.value)
            return
        self.greeting_issued = True
        self._log.info("Requesting greeting")
        await self.backend.create_response()

    async def _on_response_started(self, event: TurnEvent) -> None:
        backend_was_idle = not self._response_active
        self._response_active = True
        self._response_id = event.response_id
        self._cancel_requested = False

        if self.state == TurnState.GREETING_PENDING:
            self._begin_turn()
            return

        # Covers the playback tail too: AI_SPEAKING outlasts response.done while
        # synthesized audio drains.
        if backend_was_idle and not self._caller_spoke_since_turn and self.turns_completed >= 1:
            self._log.info("Cancelling unsolicited response", response_id=event.response_id)
            # Own token: the synthesis pipeline's current turn is left alone.
            self._begin_turn(CancellationToken())
            self._turn_token.cancel("auto_response")
            await self._cancel_response()
            return

        self._begin_turn()
        self._caller_spoke_since_turn = False
        self._set_state(TurnState.AI_SPEAKING)

    async def _on_text_delta(self, event: TurnEvent) -> None:
        if self._turn_token.cancelled or not event.text:
            return
        self._response_text += event.text
        if self.synthesis is None:
            return
        for sentence in self._segmenter.append(event.text):
            self.synthesis.enqueue(sentence)

    async def _on_text_final(self, event: TurnEvent) -> None:
        if self._turn_token.reason == "auto_response":
            return
        if self.synthesis is not None and not self._turn_token.cancelled:
            self._speak_remainder()
        self._record_response(event.text or self._response_text)

    async def _on_audio_delta(self, event: TurnEvent) -> None:
        if self.synthesis is not None or not event.audio:
            return
        if self._turn_token.cancelled:
            return
        if self.state not in (TurnState.AI_SPEAKING, TurnState.GREETING_PENDING):
            return
        await self.telephony.send_audio(event.audio)

    async def _on_audio_done(self, event: TurnEvent) -> None:
        await self._maybe_finish_turn()

    async def _on_response_done(self, event: TurnEvent) -> None:
        self._response_active = False
        self._response_id = None
        cancelled = self._cancel_requested or self._turn_token.cancelled or event.code == "cancelled"
        self._cancel_requested = False

        if cancelled:
            self._segmenter.reset()
            if self._turn_token.reason != "auto_response":
                self._record_response(self._response_text)
            if self._end_after_turn:
                await self._end(self._end_after_turn)
                return
            await self._maybe_finish_turn()
            return

        if self.synthesis is not None:
            self._speak_remainder()
        self._record_response(self._response_text)
        self.turns_completed += 1

        if self.state == TurnState.GREETING_PENDING:
            self.greeting_done = True
            await self.backend.enable_turn_detection()
            busy = self.synthesis is not None and self.synthesis.is_busy
            self._set_state(TurnState.AI_SPEAKING if busy else TurnState.WAITING_FOR_CALLER)
            self._log.info("Greeting complete; caller speech detection armed")
            if self._end_after_turn and not busy:
                await self._end(self._end_after_turn)
            return

        await self._maybe_finish_turn()

    async def _maybe_finish_turn(self) -> None:
        """AI_SPEAKING ends once the response is done and no synthesized audio is left."""
        if self._response_active:
            return
        if self.synthesis is not None and self.synthesis.is_busy:
            return
        if self.state == TurnState.AI_SPEAKING:
            self._set_state(TurnState.WAITING_FOR_CALLER)
        if self._end_after_turn:
            await self._end(self._end_after_turn)

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    async def _on_caller_speech_started(self, event: TurnEvent) -> None:
        if self.state == TurnState.GREETING_PENDING:
            self._log.debug("Caller speech during greeting ignored")
            return

        self._caller_spoke_since_turn = True
        previous = self.state
        self._set_state(TurnState.CALLER_SPEAKING)

        if previous == TurnState.AI_SPEAKING:
            self.interruptions += 1
            self._log.info("Barge-in", interruptions=self.interruptions)
            self._turn_token.cancel("barge_in")
            self._segmenter.reset()
            if self.synthesis is not None:
                self.synthesis.cancel("barge_in")
            await self.telephony.send_clear()
            await self._cancel_response()
            return

        if previous != TurnState.CALLER_SPEAKING:
            # Twilio keeps playing whatever it already buffered past the response end.
            await self.telephony.send_clear()

    async def _on_caller_speech_stopped(self, event: TurnEvent) -> None:
        if self.state == TurnState.CALLER_SPEAKING:
            self._set_state(TurnState.WAITING_FOR_CALLER)

    async def _on_utterance_final(self, event: TurnEvent) -> None:
        entry = self.transcript.append(Role.CALLER, event.text)
        if entry is None:
            return

        self.user_utterances += 1
        if self.state == TurnState.CALLER_SPEAKING:
            self._set_state(TurnState.WAITING_FOR_CALLER)

        self._log.info("Caller said", text=entry.text[:120], utterances=self.user_utterances)
        await self._check_interest(entry.text)

    async def _check_interest(self, text: str) -> None:
        if self.interest_signal is not None:
            return
        if self.user_utterances < self.min_utterances_for_interest:
            return

        result = self.classifier.classify(text)
        if not result.matched:
            return

        self.interest_signal = result.signal
        self._log.info("Interest detected", signal=result.signal, utterance=text[:120])
        if self._on_interest is not None:
            await self._on_interest(result.signal, text)

    # ------------------------------------------------------------------
    # Backend lifecycle
    # ------------------------------------------------------------------

    async def _on_backend_error(self, event: TurnEvent) -> None:
        if event.code == CANCEL_NOT_ACTIVE_CODE:
            self._log.debug("Cancel ignored; no active response")
            return

        if event.code in SESSION_EXPIRED_CODES:
            self._log.warning("Backend session expired", policy=self.session_expiry_policy)
            if self.session_expiry_policy == "finish_turn" and self._ai_turn_in_progress():
                self._end_after_turn = "session_expired"
                return
            await self._end("session_expired")
            return

        self._log.error("Backend error", code=event.code or None, message=event.text[:200])

    async def _on_backend_closed(self, event: TurnEvent) -> None:
        self._log.warning("Backend connection closed")
        await self._end("backend_closed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _begin_turn(self, token: Optional[CancellationToken] = None) -> None:
        if token is None:
            token = self.synthesis.begin_turn() if self.synthesis else CancellationToken()
        self._turn_token = token
        self._segmenter.reset()
        self._response_text = ""
        self._response_recorded = False

    def _speak_remainder(self) -> None:
        for sentence in self._segmenter.flush():
            self.synthesis.enqueue(sentence)

    def _record_response(self, text: str) -> None:
        if self._response_recorded:
            return
        if self.transcript.append(Role.ASSISTANT, text) is not None:
            self._response_recorded = True
            self._log.info("Assistant said", text=text.strip()[:120])

    def _ai_turn_in_progress(self) -> bool:
        if self._response_active:
            return True
        return self.synthesis is not None and self.synthesis.is_busy

    async def _cancel_response(self) -> None:
        """Ask the backend to stop the current response; repeated calls are no-ops."""
        if not self._response_active or self._cancel_requested:
            return
        self._cancel_requested = True
        await self.backend.cancel_response()

    async def _end(self, reason: str) -> None:
        if self.ended:
            return
        self.ended = True
        self.end_reason = reason
        self._end_after_turn = None
        if self.synthesis is not None:
            self.synthesis.cancel(reason)
        self._log.info("Call ending", reason=reason)
        if self._on_end is not None:
            await self._on_end(reason)

    def _set_state(self, state: TurnState) -> None:
        if state == self.state:
            return
        self._log.debug("Turn state", previous=self.state.value, state=state.value)
        self.state = state
