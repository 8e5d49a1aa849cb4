"""
Tests for environment-driven configuration.
"""

import os
from unittest.mock import patch

import pytest

from src.relay.config import (
    Config,
    ConfigError,
    clean_env_value,
    get_config,
    init_config,
    parse_whitelist,
)


class TestGetConfig:

    def test_defaults(self):
        config = get_config()

        assert config.port == 3000
        assert config.public_host == ""
        assert config.openai_chat_model == "gpt-4o"
        assert config.openai_stt_model == "whisper-1"
        assert config.elevenlabs_model_id == "eleven_turbo_v2"
        assert config.utterance_frames == 60
        assert config.cooldown_seconds == 2.0
        assert config.max_history_messages == 20
        assert config.caller_whitelist == frozenset()

    def test_cached(self):
        assert get_config() is get_config()

    def test_overrides(self):
        with patch.dict(os.environ, {
            "PORT": "8080",
            "UTTERANCE_FRAMES": "150",
            "COOLDOWN_SECONDS": "0.5",
            "AGENT_NAME": "Ada",
        }):
            get_config.cache_clear()
            config = get_config()

        assert config.port == 8080
        assert config.utterance_frames == 150
        assert config.cooldown_seconds == 0.5
        assert config.greeting == "Hey, this is Ada."

    def test_bad_number_falls_back_to_default(self):
        with patch.dict(os.environ, {"PORT": "not-a-port"}):
            get_config.cache_clear()
            assert get_config().port == 3000

    def test_pasted_key_prefix_is_stripped(self):
        with patch.dict(os.environ, {"OPENAI_API_KEY": "  OPENAI_API_KEY=sk-test  "}):
            get_config.cache_clear()
            assert get_config().openai_api_key == "sk-test"


class TestValidation:

    def test_init_config_passes_with_required_keys(self):
        assert init_config().elevenlabs_voice_id == "voice123"

    def test_missing_keys(self):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            Config(elevenlabs_api_key="k", elevenlabs_voice_id="v").validate()

    def test_signature_validation_requires_token(self):
        config = Config(
            openai_api_key="k",
            elevenlabs_api_key="k",
            elevenlabs_voice_id="v",
            twilio_validate_signature=True,
        )
        with pytest.raises(ConfigError, match="TWILIO_AUTH_TOKEN"):
            config.validate()

    def test_non_positive_frames(self):
        config = Config(openai_api_key="k", elevenlabs_api_key="k", elevenlabs_voice_id="v", utterance_frames=0)
        with pytest.raises(ConfigError, match="UTTERANCE_FRAMES"):
            config.validate()


class TestHelpers:

    def test_parse_whitelist(self):
        assert parse_whitelist(" +1555 , ,+1666") == frozenset({"+1555", "+1666"})
        assert parse_whitelist("") == frozenset()

    def test_clean_env_value(self):
        assert clean_env_value("  abc ") == "abc"
        assert clean_env_value("KEY=abc", "KEY") == "abc"
        assert clean_env_value("OTHER=abc", "KEY") == "OTHER=abc"

    def test_is_caller_allowed(self):
        config = Config(caller_whitelist=frozenset({"+15551234567"}))

        assert config.is_caller_allowed("+15551234567")
        assert config.is_caller_allowed(" +15551234567 ")
        assert not config.is_caller_allowed("+15550000000")
        assert not config.is_caller_allowed("")

    def test_stream_url(self):
        assert Config().stream_url("abc.ngrok.io") == "wss://abc.ngrok.io/twilio/stream"
        assert Config(public_host="relay.example.com").stream_url("abc") == "wss://relay.example.com/twilio/stream"
