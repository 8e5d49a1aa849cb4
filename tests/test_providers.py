"""
Tests for the STT, chat and TTS provider clients.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from src.relay.config import Config
from src.relay.errors import ProviderError, ProviderHTTPError, ProviderMalformedResponse, ProviderTimeout
from src.relay.llm import ChatLLM
from src.relay.stt import WhisperSTT
from src.relay.tts import ElevenLabsTTS

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


@pytest.fixture
def config():
    return Config(
        openai_api_key="sk-test",
        elevenlabs_api_key="xi-test",
        elevenlabs_voice_id="voice123",
        elevenlabs_output_format="mp3_44100_128",
    )


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def openai_client(create):
    client = MagicMock()
    client.chat.completions.create = create
    client.audio.transcriptions.create = create
    client.close = AsyncMock()
    return client


class TestChatLLM:

    @pytest.mark.asyncio
    async def test_reply(self, config):
        create = AsyncMock(return_value=completion("  Sure thing.  "))
        llm = ChatLLM(config, client=openai_client(create))
        messages = [{"role": "system", "content": "p"}, {"role": "user", "content": "hi"}]

        assert await llm.reply(messages) == "Sure thing."
        create.assert_awaited_once_with(model="gpt-4o", messages=messages)

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        llm = ChatLLM(config, client=openai_client(AsyncMock(side_effect=openai.APITimeoutError(request=REQUEST))))

        with pytest.raises(ProviderTimeout) as exc_info:
            await llm.reply([])
        assert exc_info.value.stage == "reply"

    @pytest.mark.asyncio
    async def test_http_error(self, config):
        error = openai.APIStatusError(
            "Bad gateway",
            response=httpx.Response(502, request=REQUEST),
            body=None,
        )
        llm = ChatLLM(config, client=openai_client(AsyncMock(side_effect=error)))

        with pytest.raises(ProviderHTTPError) as exc_info:
            await llm.reply([])
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_connection_error(self, config):
        error = openai.APIConnectionError(request=REQUEST)
        llm = ChatLLM(config, client=openai_client(AsyncMock(side_effect=error)))

        with pytest.raises(ProviderError):
            await llm.reply([])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [completion(None), completion(""), SimpleNamespace(choices=[])])
    async def test_malformed(self, config, payload):
        llm = ChatLLM(config, client=openai_client(AsyncMock(return_value=payload)))

        with pytest.raises(ProviderMalformedResponse):
            await llm.reply([])

    def test_gateway_headers(self, config):
        llm = ChatLLM(config)
        assert llm._client.default_headers["x-openclaw-agent-id"] == "main"


class TestWhisperSTT:

    @pytest.mark.asyncio
    async def test_transcribe(self, config):
        create = AsyncMock(return_value=SimpleNamespace(text=" turn the lights on "))
        stt = WhisperSTT(config, client=openai_client(create))

        assert await stt.transcribe(b"RIFF....") == "turn the lights on"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["file"] == ("audio.wav", b"RIFF....", "audio/wav")

    @pytest.mark.asyncio
    async def test_empty_transcript_is_not_an_error(self, config):
        stt = WhisperSTT(config, client=openai_client(AsyncMock(return_value=SimpleNamespace(text=""))))
        assert await stt.transcribe(b"RIFF") == ""

    @pytest.mark.asyncio
    async def test_missing_text_is_malformed(self, config):
        stt = WhisperSTT(config, client=openai_client(AsyncMock(return_value=SimpleNamespace())))

        with pytest.raises(ProviderMalformedResponse) as exc_info:
            await stt.transcribe(b"RIFF")
        assert exc_info.value.stage == "transcribe"

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        stt = WhisperSTT(config, client=openai_client(AsyncMock(side_effect=openai.APITimeoutError(request=REQUEST))))

        with pytest.raises(ProviderTimeout):
            await stt.transcribe(b"RIFF")


class TestElevenLabsTTS:

    @pytest.mark.asyncio
    async def test_synthesize(self, config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["output_format"] = request.url.params.get("output_format")
            seen["api_key"] = request.headers.get("xi-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ID3mp3data", headers={"content-type": "audio/mpeg"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tts = ElevenLabsTTS(config, client=client)

        audio = await tts.synthesize("Sure thing.")

        assert audio.data == b"ID3mp3data"
        assert audio.output_format == "mp3_44100_128"
        assert seen["path"] == "/v1/text-to-speech/voice123"
        assert seen["output_format"] == "mp3_44100_128"
        assert seen["api_key"] == "xi-test"
        assert seen["body"] == {"text": "Sure thing.", "model_id": "eleven_turbo_v2"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error(self, config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(401, json={"detail": "invalid api key"})
        ))
        tts = ElevenLabsTTS(config, client=client)

        with pytest.raises(ProviderHTTPError) as exc_info:
            await tts.synthesize("hello")

        assert exc_info.value.status_code == 401
        assert exc_info.value.stage == "synthesize"
        assert "invalid api key" in exc_info.value.body_preview
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout(self, config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tts = ElevenLabsTTS(config, client=client)

        with pytest.raises(ProviderTimeout):
            await tts.synthesize("hello")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_json_body_is_malformed(self, config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"status": "queued"})
        ))
        tts = ElevenLabsTTS(config, client=client)

        with pytest.raises(ProviderMalformedResponse):
            await tts.synthesize("hello")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_text(self, config):
        tts = ElevenLabsTTS(config, client=httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: pytest.fail("no request expected")
        )))

        with pytest.raises(ProviderMalformedResponse):
            await tts.synthesize("   ")
