"""
Pytest configuration and fixtures.
"""

import asyncio
import pytest
import os
import json
import base64
from unittest.mock import AsyncMock, patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "sk-test-openai",
        "API_BASE_URL": "https://backend.test",
        "BACKEND_MAX_RETRIES": "2",
        "BACKEND_RETRY_BASE_SECONDS": "0",
        "TRANSCRIPT_FLUSH_INTERVAL_SECONDS": "0",
        "ELEVENLABS_API_KEY": "",
        "ELEVENLABS_VOICE_ID": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callrelay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.callrelay.config import get_config
    return get_config()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {
                "scriptId": "script-42",
                "contactPhone": "+5511999990000",
            },
        },
        "streamSid": "MZ123456",
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


class FakeWebSocket:
    """Minimal stand-in for a websockets client connection to the backend."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.connect = None
        self._incoming = asyncio.Queue()

    def feed(self, message) -> None:
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    def sent_types(self):
        return [m["type"] for m in self.sent]

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True
        self.drop()


@pytest.fixture
def fake_ws():
    """Patch the backend WebSocket connect with a FakeWebSocket."""
    ws = FakeWebSocket()
    with patch("src.callrelay.realtime.websockets.connect", AsyncMock(return_value=ws)) as connect:
        ws.connect = connect
        yield ws


async def settle(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until `predicate()` holds."""
    async def _wait() -> None:
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def wait_for():
    return settle
