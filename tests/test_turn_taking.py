"""
Tests for the turn-taking state machine (no sockets: fakes for backend/Twilio).
"""

import asyncio
from typing import AsyncGenerator, Dict, List, Optional, Set
from unittest.mock import AsyncMock

import pytest

from src.callrelay.interest import InterestClassifier
from src.callrelay.transcript import Role, TranscriptLog
from src.callrelay.tts import SpeechSynthesisPipeline
from src.callrelay.tts_providers.base import TTSProvider
from src.callrelay.tts_types import TTSChunk
from src.callrelay.turn_taking import (
    TurnEvent,
    TurnEventType,
    TurnState,
    TurnTakingStateMachine,
)

GREETING = "Olá! Aqui é a Ana da Zenix. Posso falar com você?"


class GatedProvider(TTSProvider):
    """Two 20ms chunks per sentence; sentences in `gated` block before the second."""

    def __init__(self, gated: Optional[Set[str]] = None):
        self.gated = gated or set()
        self.gate = asyncio.Event()
        self.calls: List[str] = []

    async def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        self.calls.append(text)
        yield TTSChunk(audio_bytes=b"\x01" * 160)
        if text in self.gated:
            await self.gate.wait()
        yield TTSChunk(audio_bytes=b"\x02" * 160)


def make_machine(synthesis=None, **kwargs) -> TurnTakingStateMachine:
    telephony = kwargs.pop("telephony", None) or AsyncMock()
    return TurnTakingStateMachine(
        backend=AsyncMock(),
        telephony=telephony,
        transcript=TranscriptLog(),
        classifier=InterestClassifier(),
        synthesis=synthesis,
        on_interest=AsyncMock(),
        on_end=AsyncMock(),
        **kwargs,
    )


def ev(event_type: TurnEventType, **kwargs) -> TurnEvent:
    return TurnEvent(event_type, **kwargs)


async def run_greeting(machine: TurnTakingStateMachine, text: str = GREETING) -> None:
    await machine.handle(ev(TurnEventType.BACKEND_READY))
    await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id="resp_greeting"))
    await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_FINAL, text=text))
    await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))


async def caller_says(machine: TurnTakingStateMachine, text: str) -> None:
    await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))
    await machine.handle(ev(TurnEventType.CALLER_SPEECH_STOPPED))
    await machine.handle(ev(TurnEventType.CALLER_UTTERANCE_FINAL, text=text))


async def wait_idle(pipeline: SpeechSynthesisPipeline) -> None:
    async def _wait() -> None:
        while pipeline.is_busy:
            await asyncio.sleep(0)
    await asyncio.wait_for(_wait(), timeout=1.0)


class TestGreeting:
    """Greeting is requested once, with caller speech detection off."""

    @pytest.mark.asyncio
    async def test_greeting_requested_exactly_once(self):
        machine = make_machine()

        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE))
        # Arming VAD re-acknowledges the session.
        await machine.handle(ev(TurnEventType.BACKEND_READY))

        machine.backend.create_response.assert_awaited_once()
        assert machine.greeting_issued

    @pytest.mark.asyncio
    async def test_greeting_done_arms_vad(self):
        machine = make_machine()

        await run_greeting(machine)

        machine.backend.enable_turn_detection.assert_awaited_once()
        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.greeting_done
        assert machine.turns_completed == 1
        assert [(e.role, e.text) for e in machine.transcript.entries] == [(Role.ASSISTANT, GREETING)]

    @pytest.mark.asyncio
    async def test_caller_speech_during_greeting_is_ignored(self):
        machine = make_machine()
        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))

        assert machine.state == TurnState.GREETING_PENDING
        machine.telephony.send_clear.assert_not_awaited()
        machine.backend.cancel_response.assert_not_awaited()
        assert machine.interruptions == 0

    @pytest.mark.asyncio
    async def test_greeting_audio_forwarded(self):
        machine = make_machine()
        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))

        machine.telephony.send_audio.assert_awaited_once_with(b"\x01" * 160)


class TestBackendAudioTurns:
    """Turns where the backend produces the audio itself."""

    @pytest.mark.asyncio
    async def test_turn_cycle(self):
        machine = make_machine()
        await run_greeting(machine)

        await caller_says(machine, "Sim, pode falar")
        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.user_utterances == 1

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id="resp_2"))
        assert machine.state == TurnState.AI_SPEAKING

        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 80))
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DONE))
        # Response still open: the AI keeps the floor.
        assert machine.state == TurnState.AI_SPEAKING

        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_FINAL, text="Ótimo. Vou explicar."))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))

        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.turns_completed == 2
        assert machine.transcript.render().splitlines() == [
            f"[ASSISTANT]: {GREETING}",
            "[CALLER]: Sim, pode falar",
            "[ASSISTANT]: Ótimo. Vou explicar.",
        ]

    @pytest.mark.asyncio
    async def test_barge_in_clears_and_cancels(self):
        machine = make_machine()
        await run_greeting(machine)
        await caller_says(machine, "Pode falar")
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))
        machine.telephony.reset_mock()

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))

        assert machine.state == TurnState.CALLER_SPEAKING
        assert machine.interruptions == 1
        machine.telephony.send_clear.assert_awaited_once()
        machine.backend.cancel_response.assert_awaited_once()

        # Late audio for the cancelled response never reaches Twilio.
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))
        machine.telephony.send_audio.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        machine = make_machine()
        await run_greeting(machine)
        await caller_says(machine, "Pode falar")
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))
        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="cancelled"))
        await machine.handle(ev(TurnEventType.BACKEND_ERROR, code="response_cancel_not_active"))

        machine.backend.cancel_response.assert_awaited_once()
        assert machine.turns_completed == 1
        assert not machine.ended

    @pytest.mark.asyncio
    async def test_no_cancel_after_response_finished(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))

        # Buffered audio is cleared, but there is nothing to cancel.
        machine.telephony.send_clear.assert_awaited_once()
        machine.backend.cancel_response.assert_not_awaited()
        assert machine.interruptions == 0

    @pytest.mark.asyncio
    async def test_speech_stopped_hands_back_the_floor(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))
        assert machine.state == TurnState.CALLER_SPEAKING
        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STOPPED))
        assert machine.state == TurnState.WAITING_FOR_CALLER

    @pytest.mark.asyncio
    async def test_audio_outside_ai_turn_is_dropped(self):
        machine = make_machine()
        await run_greeting(machine)
        machine.telephony.reset_mock()

        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))

        machine.telephony.send_audio.assert_not_awaited()


class TestAutoResponse:
    """Responses the caller never asked for are cancelled."""

    @pytest.mark.asyncio
    async def test_unsolicited_response_cancelled(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id="resp_auto"))
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_FINAL, text="Então, como eu dizia..."))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="cancelled"))

        machine.backend.cancel_response.assert_awaited_once()
        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.turns_completed == 1
        assert len(machine.transcript) == 1
        machine.telephony.send_audio.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_response_after_caller_spoke_is_allowed(self):
        machine = make_machine()
        await run_greeting(machine)
        await caller_says(machine, "Quem está falando?")

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        machine.backend.cancel_response.assert_not_awaited()
        assert machine.state == TurnState.AI_SPEAKING

    @pytest.mark.asyncio
    async def test_second_response_without_caller_input_cancelled(self):
        machine = make_machine()
        await run_greeting(machine)
        await caller_says(machine, "Quem está falando?")
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        machine.backend.cancel_response.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_late_transcription_does_not_license_next_response(self):
        machine = make_machine()
        await run_greeting(machine)
        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))
        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STOPPED))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id="resp_1"))
        # Transcription lands after the reply has already started.
        await machine.handle(ev(TurnEventType.CALLER_UTTERANCE_FINAL, text="Quem está falando?"))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))
        machine.backend.cancel_response.assert_not_awaited()
        assert not machine.response_active

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id="resp_2"))

        machine.backend.cancel_response.assert_awaited_once()
        assert machine.response_active
        assert machine.turn_token.reason == "auto_response"

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="cancelled"))

        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.turns_completed == 2
        assert machine.user_utterances == 1


class TestInterest:
    """Interest is classified from the second utterance on, and fires once."""

    @pytest.mark.asyncio
    async def test_interest_fires_once(self):
        machine = make_machine()
        await run_greeting(machine)

        await caller_says(machine, "quanto custa isso aqui")
        machine._on_interest.assert_not_awaited()

        await caller_says(machine, "quero agendar uma reunião")
        await caller_says(machine, "quanto custa isso")

        machine._on_interest.assert_awaited_once_with("agendar", "quero agendar uma reunião")
        assert machine.interest_signal == "agendar"
        assert machine.user_utterances == 3

    @pytest.mark.asyncio
    async def test_negative_utterance_does_not_fire(self):
        machine = make_machine(min_utterances_for_interest=1)
        await run_greeting(machine)

        await caller_says(machine, "não tenho interesse, obrigado")

        machine._on_interest.assert_not_awaited()
        assert machine.interest_signal is None

    @pytest.mark.asyncio
    async def test_blank_utterance_not_counted(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.CALLER_UTTERANCE_FINAL, text="   "))

        assert machine.user_utterances == 0
        assert len(machine.transcript) == 1


class TestBackendLifecycle:
    """Backend errors and closure."""

    @pytest.mark.asyncio
    async def test_session_expired_ends_call(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.BACKEND_ERROR, code="session_expired", text="expired"))

        assert machine.ended and machine.end_reason == "session_expired"
        machine._on_end.assert_awaited_once_with("session_expired")

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        assert machine.state == TurnState.WAITING_FOR_CALLER

    @pytest.mark.asyncio
    async def test_session_expired_finishes_turn_first(self):
        machine = make_machine(session_expiry_policy="finish_turn")
        await run_greeting(machine)
        await caller_says(machine, "Pode continuar")
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        await machine.handle(ev(TurnEventType.BACKEND_ERROR, code="session_expired"))
        assert not machine.ended

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))
        assert machine.ended
        machine._on_end.assert_awaited_once_with("session_expired")

    @pytest.mark.asyncio
    async def test_finish_turn_policy_when_idle_ends_now(self):
        machine = make_machine(session_expiry_policy="finish_turn")
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.BACKEND_ERROR, code="session_expired"))

        assert machine.ended

    @pytest.mark.asyncio
    async def test_other_errors_are_not_fatal(self):
        machine = make_machine()
        await run_greeting(machine)

        await machine.handle(ev(TurnEventType.BACKEND_ERROR, code="invalid_request_error", text="bad"))

        assert not machine.ended

    @pytest.mark.asyncio
    async def test_backend_closed_ends_call(self):
        machine = make_machine()

        await machine.handle(ev(TurnEventType.BACKEND_CLOSED))

        assert machine.ended
        machine._on_end.assert_awaited_once_with("backend_closed")


class TestExternalSynthesis:
    """Turns spoken through the sentence pipeline."""

    async def _greet(self, machine: TurnTakingStateMachine, synthesis: SpeechSynthesisPipeline) -> None:
        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="Olá! Aqui é a Ana"))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text=". Tudo bem?"))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))
        await wait_idle(synthesis)
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DONE))

    @pytest.mark.asyncio
    async def test_text_deltas_are_segmented_and_spoken(self):
        telephony = AsyncMock()
        provider = GatedProvider()
        synthesis = SpeechSynthesisPipeline(provider, telephony.send_audio)
        machine = make_machine(synthesis=synthesis, telephony=telephony)

        await self._greet(machine, synthesis)

        assert provider.calls == ["Olá!", "Aqui é a Ana.", "Tudo bem?"]
        assert telephony.send_audio.await_count == 6
        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.transcript.entries[0].text == "Olá! Aqui é a Ana. Tudo bem?"

    @pytest.mark.asyncio
    async def test_trailing_fragment_spoken_on_response_done(self):
        telephony = AsyncMock()
        provider = GatedProvider()
        synthesis = SpeechSynthesisPipeline(provider, telephony.send_audio)
        machine = make_machine(synthesis=synthesis, telephony=telephony)
        await self._greet(machine, synthesis)
        await caller_says(machine, "Pode falar")

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="Sem pontuação no fim"))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))
        # Still speaking until the pipeline drains.
        assert machine.state == TurnState.AI_SPEAKING

        await wait_idle(synthesis)
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DONE))

        assert provider.calls[-1] == "Sem pontuação no fim"
        assert machine.state == TurnState.WAITING_FOR_CALLER

    @pytest.mark.asyncio
    async def test_backend_audio_ignored(self):
        telephony = AsyncMock()
        synthesis = SpeechSynthesisPipeline(GatedProvider(), telephony.send_audio)
        machine = make_machine(synthesis=synthesis, telephony=telephony)
        await machine.handle(ev(TurnEventType.BACKEND_READY))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))

        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=b"\x01" * 160))

        telephony.send_audio.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_barge_in_drains_queue_and_stops_audio(self):
        telephony = AsyncMock()
        provider = GatedProvider(gated={"Primeira frase."})
        synthesis = SpeechSynthesisPipeline(provider, telephony.send_audio)
        machine = make_machine(synthesis=synthesis, telephony=telephony)
        await self._greet(machine, synthesis)
        await caller_says(machine, "Pode falar")
        telephony.reset_mock()

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="Primeira frase. Segunda frase. Terc"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert telephony.send_audio.await_count == 1
        assert synthesis.pending == 1

        await machine.handle(ev(TurnEventType.CALLER_SPEECH_STARTED))

        assert synthesis.pending == 0
        assert machine.turn_token.cancelled
        assert machine.state == TurnState.CALLER_SPEAKING
        telephony.send_clear.assert_awaited_once()
        machine.backend.cancel_response.assert_awaited_once()

        provider.gate.set()
        await wait_idle(synthesis)
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="eira frase."))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="cancelled"))

        assert telephony.send_audio.await_count == 1
        assert "Segunda frase." not in provider.calls
        assert machine.turns_completed == 1

    @pytest.mark.asyncio
    async def test_unsolicited_response_during_playback_tail_is_cancelled(self):
        telephony = AsyncMock()
        provider = GatedProvider(gated={"Primeira frase."})
        synthesis = SpeechSynthesisPipeline(provider, telephony.send_audio)
        machine = make_machine(synthesis=synthesis, telephony=telephony)
        await self._greet(machine, synthesis)
        await caller_says(machine, "Pode falar")
        telephony.reset_mock()

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="Primeira frase."))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="completed"))
        for _ in range(10):
            await asyncio.sleep(0)
        # Backend is idle but the first sentence is still playing.
        assert machine.state == TurnState.AI_SPEAKING
        assert synthesis.is_busy

        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_STARTED))
        await machine.handle(ev(TurnEventType.ASSISTANT_TEXT_DELTA, text="Monologo sem pedir."))
        await machine.handle(ev(TurnEventType.ASSISTANT_RESPONSE_DONE, code="cancelled"))

        machine.backend.cancel_response.assert_awaited_once()
        assert machine.state == TurnState.AI_SPEAKING

        provider.gate.set()
        await wait_idle(synthesis)
        await machine.handle(ev(TurnEventType.ASSISTANT_AUDIO_DONE))

        assert "Monologo sem pedir." not in provider.calls
        assert provider.calls[-1] == "Primeira frase."
        assert telephony.send_audio.await_count == 2
        assert machine.state == TurnState.WAITING_FOR_CALLER
        assert machine.turns_completed == 2
