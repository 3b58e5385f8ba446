from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncGenerator

from src.callrelay.tts_types import TTSChunk


class SynthesisError(Exception):
    """Raised when the provider fails to synthesize one sentence."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TTSProvider(ABC):
    @abstractmethod
    def synthesize_streaming(self, text: str) -> AsyncGenerator[TTSChunk, None]:
        """
        Stream audio for `text` as it arrives from the provider.

        Raises SynthesisError on provider failure. Closing the generator early
        (or cancelling the consuming task) must abort the in-flight request.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None
