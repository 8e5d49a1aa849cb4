"""
Chat model client over an OpenAI-compatible API.

Provides:
- System preamble configuration
- Single-shot reply generation from the full message history
- Typed failures (timeout / non-2xx / malformed payload)
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
import structlog
from openai import AsyncOpenAI

from src.relay.config import get_config
from src.relay.errors import ProviderError, ProviderHTTPError, ProviderMalformedResponse, ProviderTimeout

logger = structlog.get_logger(__name__)

STAGE = "reply"


@dataclass
class LLMResponse:
    """Response from the chat model."""
    text: str
    total_ms: float = 0.0
    model: str = ""


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system preamble for the voice relay.

    This defines the assistant's persona and behavior guidelines.
    """
    if config is None:
        config = get_config()

    if config.system_prompt:
        return config.system_prompt

    return f"""You are {config.agent_name}, a personal AI assistant answering a phone call.

IDENTITY:
- Name: {config.agent_name}
- Vibe: Enthusiastic, resourceful, proactive.
- Mode: Voice call (keep replies SHORT and CONVERSATIONAL. No lists, no markdown).

CAPABILITIES:
- You are running on a lightweight voice relay.
- You DO NOT have access to live tools (weather, calendar, email) right now.
- If asked for weather/news: "I can't check live data on this line yet, but I'll note it for later."
- If asked who you are: "I'm {config.agent_name}, your custom assistant, running on a lightweight voice relay right now."

GOAL:
- Be helpful, friendly, and brief. 1-2 sentences max usually.
- Remember what was just said (maintain context)."""


class ChatLLM:
    """
    Chat completion client.

    Uses the OpenAI SDK against OPENAI_BASE_URL, which may point at OpenAI
    itself or at a compatible gateway.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_chat_model

        self._client = client or AsyncOpenAI(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url.rstrip("/"),
            timeout=config.provider_timeout_seconds,
            max_retries=0,
            default_headers={
                "Bypass-Tunnel-Reminder": "true",
                "x-openclaw-agent-id": config.llm_gateway_agent_id,
            },
        )

    async def reply(self, messages: List[Dict[str, str]]) -> str:
        """
        Generate one assistant message for the given history.

        Args:
            messages: Ordered history in OpenAI format, preamble first

        Returns:
            The assistant's reply text

        Raises:
            ProviderError: On timeout, non-2xx response or malformed payload
        """
        return (await self.generate(messages)).text

    async def generate(self, messages: List[Dict[str, str]]) -> LLMResponse:
        """Generate a complete response with timing."""
        start_time = time.time()

        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout("Chat completion timed out", stage=STAGE) from e
        except openai.APIStatusError as e:
            logger.error(
                "Chat completion failed",
                status_code=e.status_code,
                error=str(e)[:200],
            )
            raise ProviderHTTPError(
                f"Chat completion returned {e.status_code}",
                stage=STAGE,
                status_code=e.status_code,
                body_preview=str(e)[:200],
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"Chat completion connection failed: {e}", stage=STAGE) from e

        text = _extract_reply_text(completion)
        if not text:
            raise ProviderMalformedResponse("Chat completion returned no content", stage=STAGE)

        return LLMResponse(
            text=text,
            total_ms=(time.time() - start_time) * 1000,
            model=self.model,
        )

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            await close()


def _extract_reply_text(completion: Any) -> str:
    """Pull `choices[0].message.content` out of a completion, tolerating odd shapes."""
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    if not isinstance(content, str):
        return ""
    return content.strip()
