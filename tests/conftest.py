"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from src.relay.config import Config
from src.relay.registry import SessionRegistry
from src.relay.tts_types import SynthesizedAudio


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "ELEVENLABS_VOICE_ID": "voice123",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_VALIDATE_SIGNATURE": "false",
    }

    with patch.dict(os.environ, env_vars):
        # The stream URL must come from the request host unless a test sets one
        for key in ("PUBLIC_HOST", "CALLER_WHITELIST", "GREETING_TEXT", "SYSTEM_PROMPT"):
            os.environ.pop(key, None)

        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def relay_config(tmp_path):
    """Config with no greeting delay and a private temp root."""
    return Config(
        openai_api_key="test_openai_key",
        elevenlabs_api_key="test_elevenlabs_key",
        elevenlabs_voice_id="voice123",
        elevenlabs_output_format="pcm_16000",
        greeting_delay_ms=0,
        audio_temp_dir=str(tmp_path),
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def fake_stt():
    stt = AsyncMock()
    stt.transcribe.return_value = "turn the lights on"
    return stt


@pytest.fixture
def fake_llm():
    llm = AsyncMock()
    llm.reply.return_value = "Sure thing."
    return llm


@pytest.fixture
def fake_tts():
    """Returns 100ms of 16kHz PCM silence for any text."""
    tts = AsyncMock()
    tts.synthesize.return_value = SynthesizedAudio(data=b"\x00\x00" * 1600, output_format="pcm_16000")
    return tts


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
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
        "stop": {"callSid": "CA789012"},
    })
