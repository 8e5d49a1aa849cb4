from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.relay.config import get_config
from src.relay.errors import ProviderError, ProviderHTTPError, ProviderMalformedResponse, ProviderTimeout
from src.relay.tts_types import SynthesizedAudio

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
STAGE = "synthesize"


class ElevenLabsTTS:
    """
    ElevenLabs text-to-speech provider (non-streaming).

    Returns the whole utterance in the configured `output_format`; the codec
    turns it into Twilio mu-law.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = ELEVENLABS_BASE_URL,
    ):
        self.config = config or get_config()
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.provider_timeout_seconds),
            )
        return self._client

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> SynthesizedAudio:
        """
        Synthesize `text` with the given (or configured) voice.

        Raises:
            ProviderError: On timeout, non-2xx response or empty audio
        """
        if not text or not text.strip():
            raise ProviderMalformedResponse("Nothing to synthesize", stage=STAGE)

        voice = voice_id or self.config.elevenlabs_voice_id
        output_format = self.config.elevenlabs_output_format
        url = f"{self.base_url}/text-to-speech/{voice}"

        started = time.time()
        try:
            resp = await self._get_client().post(
                url,
                params={"output_format": output_format},
                json={"text": text, "model_id": self.config.elevenlabs_model_id},
                headers={
                    "xi-api-key": self.config.elevenlabs_api_key,
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout("ElevenLabs request timed out", stage=STAGE) from e
        except httpx.RequestError as e:
            raise ProviderError(f"ElevenLabs request failed: {e}", stage=STAGE) from e

        elapsed_ms = (time.time() - started) * 1000

        if resp.status_code // 100 != 2:
            logger.error(
                "ElevenLabs error",
                status_code=resp.status_code,
                response=resp.text[:200],
            )
            raise ProviderHTTPError(
                f"ElevenLabs returned {resp.status_code}",
                stage=STAGE,
                status_code=resp.status_code,
                body_preview=resp.text[:200],
            )

        content_type = (resp.headers.get("content-type") or "").lower()
        if content_type.startswith("application/json") or not resp.content:
            raise ProviderMalformedResponse(
                f"ElevenLabs returned no audio (content-type={content_type or 'unset'})",
                stage=STAGE,
            )

        return SynthesizedAudio(
            data=resp.content,
            output_format=output_format,
            meta={"elapsed_ms": round(elapsed_ms, 2), "voice_id": voice},
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
