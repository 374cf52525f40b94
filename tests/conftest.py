"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from fakes import FakeSTT, FakeTTS, FakeTransport


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "VOICE_MODE": "pipeline",
        "COMPLETION_MODE": "structured",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o",
        "BUSINESS_NAME": "Bright Smile Dental",
        "BUSINESS_TIMEZONE": "America/New_York",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.telecaller.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def fast_config():
    """Config with short timers so session tests run in milliseconds."""
    from src.telecaller.config import get_config

    return replace(
        get_config(),
        turn_silence_ms=30,
        speech_final_ms=10,
        utterance_end_ms=10,
        dialogue_timeout_seconds=1.0,
        silence_reprompt_seconds=30.0,
        completion_delay_seconds=0.5,
        outbound_pace_ms=1,
        twilio_account_sid="",
        twilio_auth_token="",
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"from": "+15125551234", "to": "+15125550000"},
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


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_stt():
    return FakeSTT()


@pytest.fixture
def fake_tts():
    return FakeTTS()
