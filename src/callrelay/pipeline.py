"""
Twilio Media Streams entry point for one WebSocket connection.

Interface used by `server/app.py`:
- `handle_message(raw_message)` for every inbound text frame
- `stop()` when the socket goes away

The first `start` frame creates the CallSession; `media` frames are forwarded
to it and `stop` tears it down. Malformed frames are dropped one at a time.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping, Optional

import structlog

from src.callrelay.backend import BackendClient
from src.callrelay.config import Config, get_config
from src.callrelay.session import CallSession, SessionRegistry
from src.callrelay.tts import create_tts_provider
from src.callrelay.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class CallPipeline:
    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        close_telephony: Callable[[], Awaitable[None]],
        registry: SessionRegistry,
        *,
        config: Optional[Config] = None,
        query_params: Optional[Mapping[str, str]] = None,
        backend_client: Optional[BackendClient] = None,
    ):
        self.config = config or get_config()
        self.registry = registry
        self._close_telephony = close_telephony
        self._query_params = dict(query_params or {})
        self._backend_client = backend_client or BackendClient(self.config)

        self.protocol = TwilioProtocolHandler(send_message)
        self.session: Optional[CallSession] = None
        self.frames_dropped = 0

    @property
    def stream_sid(self) -> str:
        return self.protocol.stream_sid

    @property
    def closed(self) -> bool:
        return self.session is not None and self.session.is_closed

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self.frames_dropped += 1
            logger.warning("Failed to parse Twilio message", error=str(e), stream_sid=self.stream_sid or None)
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)
            return

        if event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
            return

        if event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", stream_sid=self.stream_sid)
            self.protocol.handle_stop()
            if self.session is not None:
                await self.session.on_telephony_stop()
            return

        # connected / mark carry nothing for the relay.

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self.session is not None:
            logger.warning("Duplicate start event ignored", stream_sid=event.stream_sid)
            return

        self.protocol.handle_start(event)
        script_id = event.script_id or self._query_params.get("scriptId") or None

        logger.info(
            "Call started",
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            script_id=script_id,
            voice_provider=self.config.voice_provider,
        )

        self.session = CallSession(
            telephony=self.protocol,
            registry=self.registry,
            backend_client=self._backend_client,
            close_telephony=self._close_telephony,
            script_id=script_id,
            caller_phone=event.contact_phone,
            tts_provider=create_tts_provider(self.config),
            config=self.config,
        )
        await self.session.start()

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if self.session is None:
            return
        await self.session.on_telephony_frame(event)

    async def stop(self) -> None:
        """Called when the Twilio socket disconnects (or the handler exits)."""
        self.protocol.handle_stop()
        if self.session is not None:
            await self.session.close("telephony_disconnected")


async def create_pipeline(
    send_message: Callable[[str], Awaitable[None]],
    close_telephony: Callable[[], Awaitable[None]],
    registry: SessionRegistry,
    *,
    query_params: Optional[Mapping[str, str]] = None,
) -> CallPipeline:
    """Create the pipeline for a freshly accepted Twilio WebSocket."""
    return CallPipeline(send_message, close_telephony, registry, query_params=query_params)
