"""
Audio framing utilities for the call relay.

Twilio, the OpenAI Realtime backend (g711_ulaw) and ElevenLabs (ulaw_8000) all
speak mu-law 8kHz, so no transcoding happens in this process. The only work left
is cutting streamed audio into Twilio-sized 20ms frames.
"""

from typing import List, Tuple

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def take_frames(remainder: bytes, audio_bytes: bytes) -> Tuple[List[bytes], bytes]:
    """
    Append streamed audio to a carry-over buffer and cut off every full frame.

    Padding is only applied once at the end of an utterance (see `pad_frame`);
    padding every streamed chunk inserts silence between chunks ("ticking").

    Returns:
        (complete 20ms frames, leftover bytes shorter than one frame)
    """
    buffer = remainder + audio_bytes
    frames: List[bytes] = []
    while len(buffer) >= TWILIO_FRAME_SIZE:
        frames.append(buffer[:TWILIO_FRAME_SIZE])
        buffer = buffer[TWILIO_FRAME_SIZE:]
    return frames, buffer


def pad_frame(remainder: bytes) -> bytes:
    """Pad a trailing partial frame with mu-law silence."""
    if not remainder:
        return b""
    return remainder.ljust(TWILIO_FRAME_SIZE, ULAW_SILENCE)
