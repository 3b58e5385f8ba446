from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class TTSChunk:
    """
    A chunk of synthesized audio.

    `audio_bytes` is Twilio-ready mu-law (8kHz); chunk boundaries follow the
    provider's network reads, not 20ms frames.
    """

    audio_bytes: bytes
    is_final: bool = False
    timestamp: float = field(default_factory=time.time)
