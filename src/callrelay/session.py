"""
Call session and session registry.

A CallSession binds one Twilio media stream to one OpenAI Realtime session.
Events from the backend socket and from the synthesis pipeline are pushed
onto a single asyncio.Queue and applied to the TurnTakingStateMachine by one
consumer task, so every state transition for a call happens in order on one
task.

Teardown (idempotent, whichever comes first: Twilio stop, backend close,
Twilio disconnect, process shutdown):
- stop the flush timer
- close the synthesis pipeline and the backend socket
- close the Twilio socket unless Twilio ended the call
- final transcript flush
- remove from the registry
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

import structlog

from src.callrelay.backend import BackendClient, CallScript, InterestRecord
from src.callrelay.config import Config, get_config
from src.callrelay.interest import InterestClassifier
from src.callrelay.realtime import RealtimeConnectionError, RealtimeSession, build_instructions
from src.callrelay.transcript import TranscriptLog
from src.callrelay.tts import SpeechSynthesisPipeline
from src.callrelay.tts_providers.base import TTSProvider
from src.callrelay.turn_taking import TurnEvent, TurnEventType, TurnTakingStateMachine
from src.callrelay.twilio_protocol import TwilioMediaEvent, TwilioProtocolHandler

logger = structlog.get_logger(__name__)

# Reasons for which the Twilio socket is already gone or going.
TELEPHONY_CLOSE_REASONS = frozenset({"telephony_stop", "telephony_disconnected"})


class CallSession:
    def __init__(
        self,
        *,
        telephony: TwilioProtocolHandler,
        registry: "SessionRegistry",
        backend_client: BackendClient,
        close_telephony: Callable[[], Awaitable[None]],
        script_id: Optional[str] = None,
        caller_phone: Optional[str] = None,
        tts_provider: Optional[TTSProvider] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.telephony = telephony
        self.registry = registry
        self.backend_client = backend_client
        self._close_telephony = close_telephony

        self.stream_sid = telephony.stream_sid
        self.call_sid = telephony.call_sid
        self.script_id = script_id
        self.caller_phone = caller_phone
        self.started_at = time.time()
        self._log = logger.bind(call_sid=self.call_sid, stream_sid=self.stream_sid)

        self.transcript = TranscriptLog()
        self.script: Optional[CallScript] = None
        self.degraded = False

        self._events: asyncio.Queue[Optional[TurnEvent]] = asyncio.Queue()
        self.realtime = RealtimeSession(self._events.put_nowait, config=self.config, call_sid=self.call_sid)

        self.synthesis: Optional[SpeechSynthesisPipeline] = None
        if tts_provider is not None:
            self.synthesis = SpeechSynthesisPipeline(
                tts_provider,
                telephony.send_audio,
                on_drained=self._on_synthesis_drained,
                call_sid=self.call_sid,
            )

        self.machine = TurnTakingStateMachine(
            backend=self.realtime,
            telephony=telephony,
            transcript=self.transcript,
            classifier=InterestClassifier.from_config(self.config),
            synthesis=self.synthesis,
            on_interest=self._on_interest,
            on_end=self._on_call_end,
            min_utterances_for_interest=self.config.interest_min_utterances,
            session_expiry_policy=self.config.session_expiry_policy,
            call_sid=self.call_sid,
        )

        self._consumer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._interest_tasks: Set[asyncio.Task] = set()
        self._flush_lock = asyncio.Lock()
        self._closing = False
        self._closed = asyncio.Event()
        self.close_reason: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self._closing

    async def start(self) -> None:
        """
        Fetch the script, open the backend session and register the call.

        Registration happens only after the backend handshake has resolved.
        If the backend cannot be reached the call stays up with a silent AI.
        """
        self.script = await self.backend_client.fetch_script(self.script_id)
        if self._closing:
            return
        self._consumer_task = asyncio.create_task(self._consume_events())

        try:
            await self.realtime.connect()
            voice = None
            if self.script is not None and not self.config.use_external_tts:
                voice = self.script.voice_id
            await self.realtime.configure(instructions=build_instructions(self.script), voice=voice)
        except RealtimeConnectionError as e:
            self.degraded = True
            self._log.error("Backend unreachable; continuing without AI", error=str(e))

        if self._closing:
            return

        self.registry.register(self)
        if self.config.transcript_flush_interval_seconds > 0:
            self._flush_task = asyncio.create_task(self._flush_loop())

        self._log.info(
            "Call session started",
            script_id=self.script_id,
            script_loaded=self.script is not None,
            voice_provider=self.config.voice_provider,
            degraded=self.degraded,
        )

    async def on_telephony_frame(self, event: TwilioMediaEvent) -> None:
        if self._closing or not event.payload:
            return
        await self.realtime.append_audio(event.payload)

    async def on_telephony_stop(self) -> None:
        await self.close("telephony_stop")

    async def flush_transcript(self) -> bool:
        """
        Persist the transcript if anything was said since the last flush.

        Returns True when a save was made and accepted. No network call is made
        when there is nothing pending.
        """
        async with self._flush_lock:
            if self.transcript.pending_count == 0:
                return False
            entries = self.transcript.entries
            saved = await self.backend_client.save_transcript(
                self.call_sid,
                self.script_id,
                self.transcript.render(),
                [e.to_dict() for e in entries],
            )
            if saved:
                self.transcript.mark_flushed(len(entries))
            return saved

    async def close(self, reason: str = "closed") -> None:
        if self._closing:
            if asyncio.current_task() is not self._consumer_task:
                await self._closed.wait()
            return
        self._closing = True
        self.close_reason = reason

        try:
            current = asyncio.current_task()
            if self._flush_task and self._flush_task is not current:
                self._flush_task.cancel()
                await asyncio.gather(self._flush_task, return_exceptions=True)

            if self.synthesis is not None:
                await self.synthesis.close()
            await self.realtime.close()

            if self._consumer_task and self._consumer_task is not current:
                self._events.put_nowait(None)
                await asyncio.gather(self._consumer_task, return_exceptions=True)

            if reason not in TELEPHONY_CLOSE_REASONS:
                await self._close_telephony()

            if self._interest_tasks:
                await asyncio.gather(*self._interest_tasks, return_exceptions=True)

            await self.flush_transcript()
        finally:
            self.registry.remove(self)
            self._closed.set()

        call_state = self.telephony.call_state
        self._log.info(
            "Call session closed",
            reason=reason,
            duration_s=round(time.time() - self.started_at, 1),
            utterances=self.machine.user_utterances,
            turns=self.machine.turns_completed,
            interruptions=self.machine.interruptions,
            interest_signal=self.machine.interest_signal,
            transcript_entries=len(self.transcript),
            frames_sent=call_state.frames_sent if call_state else 0,
            bytes_sent=call_state.bytes_sent if call_state else 0,
            clears_sent=call_state.clears_sent if call_state else 0,
        )

    async def _consume_events(self) -> None:
        try:
            while True:
                event = await self._events.get()
                if event is None:
                    break
                try:
                    await self.machine.handle(event)
                except Exception as e:
                    self._log.error("Turn event failed", event=event.type.value, error=str(e))
                if self._closing:
                    break
        except asyncio.CancelledError:
            pass

    async def _flush_loop(self) -> None:
        interval = self.config.transcript_flush_interval_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                if self.registry.get(self.stream_sid) is not self:
                    break
                await self.flush_transcript()
        except asyncio.CancelledError:
            pass

    async def _on_synthesis_drained(self) -> None:
        self._events.put_nowait(TurnEvent(TurnEventType.ASSISTANT_AUDIO_DONE))

    async def _on_interest(self, signal: str, utterance: str) -> None:
        record = InterestRecord(
            call_sid=self.call_sid,
            signal=signal,
            utterance=utterance,
            caller_phone=self.caller_phone,
            transcript=self.transcript.render(),
        )
        # Fire and forget; the turn loop must not wait on the CRM.
        task = asyncio.create_task(self.backend_client.notify_interest(record))
        self._interest_tasks.add(task)
        task.add_done_callback(self._interest_tasks.discard)

    async def _on_call_end(self, reason: str) -> None:
        await self.close(reason)


class SessionRegistry:
    """
    Live calls in this process, keyed by Twilio stream SID.

    Only mutated from the event loop; a session is inserted once its backend
    handshake has resolved and removed exactly once on teardown.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, CallSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, stream_sid: object) -> bool:
        return stream_sid in self._sessions

    def register(self, session: CallSession) -> None:
        existing = self._sessions.get(session.stream_sid)
        if existing is not None and existing is not session:
            logger.warning("Replacing registered session", stream_sid=session.stream_sid)
        self._sessions[session.stream_sid] = session

    def get(self, stream_sid: str) -> Optional[CallSession]:
        return self._sessions.get(stream_sid)

    def remove(self, session: CallSession) -> bool:
        """Remove `session` if it is the one registered under its stream SID."""
        if self._sessions.get(session.stream_sid) is not session:
            return False
        del self._sessions[session.stream_sid]
        return True

    def stream_sids(self) -> List[str]:
        return list(self._sessions)

    async def close_all(self, reason: str = "shutdown") -> None:
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("Closing active sessions", count=len(sessions), stream_sids=self.stream_sids())
        for session in sessions:
            await session.close(reason)
