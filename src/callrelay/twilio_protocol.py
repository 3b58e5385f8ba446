"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and customParameters
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment (not requested by this relay; ignored)
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- clear: Clear buffered audio (for barge-in)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def script_id(self) -> Optional[str]:
        value = self.custom_parameters.get("scriptId")
        return str(value) if value else None

    @property
    def contact_phone(self) -> Optional[str]:
        value = self.custom_parameters.get("contactPhone")
        return str(value) if value else None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        if not isinstance(start, dict):
            raise ValueError("Malformed start event")
        stream_sid = start.get("streamSid") or message.get("streamSid") or ""
        if not stream_sid:
            raise ValueError("Start event without streamSid")
        custom_parameters = start.get("customParameters") or {}
        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            custom_parameters=custom_parameters if isinstance(custom_parameters, dict) else {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        if not isinstance(media, dict):
            raise ValueError("Malformed media event")

        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        return cls(
            stream_sid=message.get("streamSid", ""),
            payload=payload,
        )


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid JSON: expected an object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Outbound media frame; `audio_payload` is raw mu-law 8kHz."""
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("utf-8")},
    }
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Drop everything Twilio has buffered for playback on this stream."""
    return encoder.encode({"event": "clear", "streamSid": stream_sid}).decode("utf-8")


@dataclass
class CallState:
    """Outbound bookkeeping for an active Twilio stream."""
    stream_sid: str = ""
    call_sid: str = ""
    is_active: bool = True
    frames_sent: int = 0
    bytes_sent: int = 0
    clears_sent: int = 0


class TwilioProtocolHandler:
    """
    High-level handler for the outbound side of the Twilio protocol.

    Owns the stream identifiers and the send callable; the turn-taking and
    synthesis layers only ever talk to Twilio through `send_audio` / `send_clear`.
    """

    def __init__(self, send_message: Callable[[str], Awaitable[None]]):
        self._send_message = send_message
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        """Get the current stream SID."""
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        """Get the current call SID."""
        return self.call_state.call_sid if self.call_state else ""

    @property
    def is_active(self) -> bool:
        """Check if the call is active."""
        return self.call_state is not None and self.call_state.is_active

    def handle_start(self, event: TwilioStartEvent) -> None:
        """Handle a start event and initialize call state."""
        self.call_state = CallState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
        )

    def handle_stop(self) -> None:
        """Handle a stop event (or a dropped connection)."""
        if self.call_state:
            self.call_state.is_active = False

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send one media frame to Twilio. No-op once the stream is inactive."""
        if not audio_bytes or not self.is_active:
            return
        await self._send_message(create_media_message(self.call_state.stream_sid, audio_bytes))
        self.call_state.frames_sent += 1
        self.call_state.bytes_sent += len(audio_bytes)

    async def send_clear(self) -> None:
        """Tell Twilio to drop any buffered/playing audio."""
        if not self.is_active:
            return
        await self._send_message(create_clear_message(self.call_state.stream_sid))
        self.call_state.clears_sent += 1
        logger.info("Twilio clear sent", stream_sid=self.call_state.stream_sid)
