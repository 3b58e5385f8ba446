"""
OpenAI Realtime backend session.

Owns the outbound WebSocket to the speech-to-speech backend:

Twilio (g711_ulaw 8kHz) -> input_audio_buffer.append -> OpenAI Realtime
OpenAI Realtime events -> TurnEvent -> per-call event queue

Speech detection is sent disabled in the first session.update so the backend
cannot answer before the greeting; it is armed with `enable_turn_detection()`
once the greeting response completes.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Any, Callable, Optional

import msgspec
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.callrelay.config import Config, get_config
from src.callrelay.turn_taking import TurnEvent, TurnEventType

logger = structlog.get_logger(__name__)

_encoder = msgspec.json.Encoder()
_decoder = msgspec.json.Decoder()

DEFAULT_SYSTEM_PROMPT = "Você é um assistente prestativo que fala português brasileiro."

CONVERSATION_RULES = """

=== REGRAS DE CONVERSAÇÃO TELEFÔNICA ===

Esta é uma LIGAÇÃO TELEFÔNICA real. Siga estas regras:

1. Se apresente com nome, empresa e motivo da ligação
2. Termine a abertura com uma pergunta simples
3. Fale no MÁXIMO 2 frases por vez
4. Após fazer uma pergunta, PARE e ESPERE a resposta
5. NUNCA faça duas perguntas seguidas
6. NUNCA repita a abertura
7. Seja natural e amigável

=== FIM DAS REGRAS ===
"""


class RealtimeConnectionError(Exception):
    """Raised when the backend WebSocket handshake fails."""
    pass


def build_instructions(script: Optional[Any] = None) -> str:
    """Script prompt + optional voice instructions + fixed phone-call rules."""
    prompt = (getattr(script, "system_prompt", None) or "").strip() or DEFAULT_SYSTEM_PROMPT
    voice_instructions = (getattr(script, "voice_instructions", None) or "").strip()
    if voice_instructions:
        prompt = f"{prompt}\n\nInstruções de voz: {voice_instructions}"
    return f"{prompt}{CONVERSATION_RULES}"


def output_modalities(use_external_tts: bool) -> list[str]:
    # Text-only output when ElevenLabs speaks; the backend must not produce audio too.
    return ["text"] if use_external_tts else ["text", "audio"]


def build_session_config(
    config: Config,
    *,
    instructions: str,
    voice: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "modalities": output_modalities(config.use_external_tts),
        "instructions": instructions,
        "voice": voice or config.openai_realtime_voice,
        "input_audio_format": "g711_ulaw",
        "output_audio_format": "g711_ulaw",
        "input_audio_transcription": {"model": config.openai_transcription_model},
        "turn_detection": None,
        "temperature": config.openai_temperature,
        "max_response_output_tokens": config.openai_max_output_tokens,
    }


def build_turn_detection(config: Config) -> dict[str, Any]:
    return {
        "type": "server_vad",
        "threshold": config.vad_threshold,
        "prefix_padding_ms": config.vad_prefix_padding_ms,
        "silence_duration_ms": config.vad_silence_duration_ms,
    }


def _b64decode(data: str) -> Optional[bytes]:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None


def parse_backend_event(raw: Any) -> Optional[TurnEvent]:
    """
    Translate one backend frame into a TurnEvent.

    Returns None for frames that are malformed or not relevant to turn-taking.
    """
    try:
        event = _decoder.decode(raw)
    except msgspec.DecodeError:
        return None
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")

    if event_type == "session.updated":
        return TurnEvent(TurnEventType.BACKEND_READY)

    if event_type == "response.created":
        response = event.get("response") or {}
        return TurnEvent(TurnEventType.ASSISTANT_RESPONSE_STARTED, response_id=response.get("id"))

    if event_type == "response.done":
        response = event.get("response") or {}
        return TurnEvent(
            TurnEventType.ASSISTANT_RESPONSE_DONE,
            code=str(response.get("status") or ""),
            response_id=response.get("id"),
        )

    if event_type in ("response.audio.delta", "response.output_audio.delta"):
        delta = event.get("delta")
        if not isinstance(delta, str) or not delta:
            return None
        audio = _b64decode(delta)
        if not audio:
            return None
        return TurnEvent(TurnEventType.ASSISTANT_AUDIO_DELTA, audio=audio, response_id=event.get("response_id"))

    if event_type in ("response.audio.done", "response.output_audio.done"):
        return TurnEvent(TurnEventType.ASSISTANT_AUDIO_DONE, response_id=event.get("response_id"))

    if event_type == "response.text.delta":
        delta = event.get("delta")
        if not isinstance(delta, str) or not delta:
            return None
        return TurnEvent(TurnEventType.ASSISTANT_TEXT_DELTA, text=delta, response_id=event.get("response_id"))

    if event_type == "response.text.done":
        return TurnEvent(
            TurnEventType.ASSISTANT_TEXT_FINAL,
            text=str(event.get("text") or ""),
            response_id=event.get("response_id"),
        )

    if event_type == "response.audio_transcript.done":
        return TurnEvent(
            TurnEventType.ASSISTANT_TEXT_FINAL,
            text=str(event.get("transcript") or ""),
            response_id=event.get("response_id"),
        )

    if event_type == "input_audio_buffer.speech_started":
        return TurnEvent(TurnEventType.CALLER_SPEECH_STARTED)

    if event_type == "input_audio_buffer.speech_stopped":
        return TurnEvent(TurnEventType.CALLER_SPEECH_STOPPED)

    if event_type == "conversation.item.input_audio_transcription.completed":
        return TurnEvent(TurnEventType.CALLER_UTTERANCE_FINAL, text=str(event.get("transcript") or ""))

    if event_type == "error":
        error = event.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return TurnEvent(
            TurnEventType.BACKEND_ERROR,
            code=str(error.get("code") or error.get("type") or ""),
            text=str(error.get("message") or ""),
        )

    return None


class RealtimeSession:
    """
    One OpenAI Realtime connection for one call.

    Outbound messages go through a send queue so the Twilio receiver never
    blocks on backend backpressure. Every inbound event relevant to
    turn-taking is handed to `on_event`; when the socket drops without
    `close()` having been called, a BACKEND_CLOSED event is emitted.
    """

    def __init__(
        self,
        on_event: Callable[[TurnEvent], None],
        *,
        config: Optional[Config] = None,
        call_sid: str = "",
    ):
        self.config = config or get_config()
        self._on_event = on_event
        self._log = logger.bind(call_sid=call_sid) if call_sid else logger

        self._ws: Optional[Any] = None
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._send_task: Optional[asyncio.Task] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    async def connect(self) -> None:
        if self._ws is not None:
            return

        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await websockets.connect(
                self.config.realtime_url, additional_headers=headers, open_timeout=10
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise RealtimeConnectionError(f"OpenAI Realtime connection failed: {e}") from e

        if self._closing:
            await self._ws.close()
            self._ws = None
            raise RealtimeConnectionError("Session closed while connecting")

        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._receive_loop())
        self._log.info("OpenAI Realtime connected", model=self.config.openai_realtime_model)

    async def configure(self, *, instructions: str, voice: Optional[str] = None) -> None:
        session = build_session_config(self.config, instructions=instructions, voice=voice)
        await self._send({"type": "session.update", "session": session})
        self._log.info(
            "Session configured",
            modalities=session["modalities"],
            voice=session["voice"],
            instructions_chars=len(instructions),
        )

    async def create_response(self) -> None:
        await self._send(
            {
                "type": "response.create",
                "response": {"modalities": output_modalities(self.config.use_external_tts)},
            }
        )

    async def cancel_response(self) -> None:
        await self._send({"type": "response.cancel"})

    async def enable_turn_detection(self) -> None:
        await self._send(
            {"type": "session.update", "session": {"turn_detection": build_turn_detection(self.config)}}
        )

    async def append_audio(self, ulaw_bytes: bytes) -> None:
        if not ulaw_bytes:
            return
        await self._send(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(ulaw_bytes).decode("utf-8"),
            }
        )

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        current = asyncio.current_task()
        tasks = [t for t in (self._send_task, self._recv_task) if t and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException as e:
                self._log.debug("OpenAI Realtime close failed", error=str(e))
        self._ws = None
        self._log.info("OpenAI Realtime closed")

    async def _send(self, message: dict) -> None:
        if not self.connected:
            # Degraded call: no backend, nothing to say.
            return
        try:
            self._send_queue.put_nowait(message)
        except asyncio.QueueFull:
            self._log.warning("OpenAI send queue full; dropping event", type=message.get("type"))

    async def _send_loop(self) -> None:
        ws = self._ws
        try:
            while True:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(_encoder.encode(item).decode("utf-8"))
                except ConnectionClosed as e:
                    self._log.warning("OpenAI send failed", error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    async def _receive_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                event = parse_backend_event(raw)
                if event is None:
                    continue
                self._on_event(event)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            self._log.warning("OpenAI Realtime connection lost", code=getattr(e, "code", None))

        if not self._closing:
            self._on_event(TurnEvent(TurnEventType.BACKEND_CLOSED))
