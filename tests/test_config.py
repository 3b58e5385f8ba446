"""
Tests for environment-driven configuration.
"""

import os
from unittest.mock import patch

import pytest

from src.callrelay.config import ConfigError, get_config, init_config


def load(**env):
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        return get_config()


class TestDefaults:
    def test_defaults(self, config):
        assert config.openai_realtime_voice == "shimmer"
        assert config.vad_silence_duration_ms == 700
        assert config.interest_min_utterances == 2
        assert config.session_expiry_policy == "end_call"
        assert config.voice_provider == "openai"
        assert not config.use_external_tts
        assert config.realtime_url.startswith("wss://api.openai.com/v1/realtime?model=")

    def test_validates(self, config):
        config.validate()

    def test_trailing_slash_stripped(self):
        assert load(API_BASE_URL="https://crm.test/").api_base_url == "https://crm.test"


class TestValidation:
    def test_missing_openai_key(self):
        config = load(OPENAI_API_KEY="")
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            config.validate()

    def test_elevenlabs_needs_key_and_voice(self):
        config = load(ELEVENLABS_API_KEY="xi-test", ELEVENLABS_VOICE_ID="")
        with pytest.raises(ConfigError, match="ELEVENLABS_VOICE_ID"):
            config.validate()

    def test_elevenlabs_enabled(self):
        config = load(ELEVENLABS_API_KEY="xi-test", ELEVENLABS_VOICE_ID="voice-1")
        config.validate()
        assert config.use_external_tts
        assert config.voice_provider == "elevenlabs"

    def test_bad_expiry_policy(self):
        with patch.dict(os.environ, {"SESSION_EXPIRY_POLICY": "ignore"}):
            get_config.cache_clear()
            with pytest.raises(ConfigError, match="SESSION_EXPIRY_POLICY"):
                init_config()

    def test_finish_turn_policy(self):
        assert load(SESSION_EXPIRY_POLICY=" Finish_Turn ").session_expiry_policy == "finish_turn"


class TestParsing:
    def test_bad_numbers_fall_back_to_defaults(self):
        config = load(VAD_THRESHOLD="loud", BACKEND_MAX_RETRIES="many")
        assert config.vad_threshold == 0.5
        assert config.backend_max_retries == 3

    def test_keyword_lists(self):
        config = load(INTEREST_POSITIVE_KEYWORDS="Orçamento, quero comprar ,,")
        assert config.interest_positive_keywords == ("orçamento", "quero comprar")
        assert config.interest_negative_keywords == ()
