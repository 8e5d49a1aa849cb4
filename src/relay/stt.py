"""
Batch speech-to-text over the OpenAI transcription API (Whisper).

One utterance window is uploaded as a WAV and the full transcript comes back
in a single response. An empty transcript is a valid result (silence, noise).
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.relay.config import get_config
from src.relay.errors import ProviderError, ProviderHTTPError, ProviderMalformedResponse, ProviderTimeout

logger = structlog.get_logger(__name__)

STAGE = "transcribe"


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    latency_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)


class WhisperSTT:
    """Transcription client for one utterance at a time."""

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_stt_model
        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_stt_base_url.rstrip("/"),
            timeout=config.provider_timeout_seconds,
            max_retries=0,
        )

    async def transcribe(self, wav_bytes: bytes) -> str:
        """
        Transcribe a WAV upload.

        Returns:
            Transcript text, possibly empty

        Raises:
            ProviderError: On timeout, non-2xx response or malformed payload
        """
        return (await self.transcribe_with_metrics(wav_bytes)).text

    async def transcribe_with_metrics(self, wav_bytes: bytes) -> TranscriptionResult:
        started = time.time()
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.model,
                file=("audio.wav", wav_bytes, "audio/wav"),
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout("Transcription timed out", stage=STAGE) from e
        except openai.APIStatusError as e:
            logger.error(
                "Transcription failed",
                status_code=e.status_code,
                error=str(e)[:200],
            )
            raise ProviderHTTPError(
                f"Transcription returned {e.status_code}",
                stage=STAGE,
                status_code=e.status_code,
                body_preview=str(e)[:200],
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"Transcription connection failed: {e}", stage=STAGE) from e

        if isinstance(response, str):
            text = response
        else:
            text = getattr(response, "text", None)
            if not isinstance(text, str):
                raise ProviderMalformedResponse("Transcription response has no text", stage=STAGE)

        latency_ms = (time.time() - started) * 1000
        logger.debug(
            "STT transcript",
            text=text[:50] if len(text) > 50 else text,
            latency_ms=round(latency_ms, 2),
        )
        return TranscriptionResult(text=text.strip(), latency_ms=latency_ms)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            await close()
