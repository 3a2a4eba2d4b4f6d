"""
LLM Service - text generation for agent replies and memory extraction

Provides:
- A single ``generate(system_prompt, user_prompt, ...)`` contract
- Anthropic Claude (default) and OpenAI chat providers
- Token usage on every response

Retries are the caller's job (see services.retry); errors propagate.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import anthropic
from openai import AsyncOpenAI

from relaydesk.config import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int
    tokens_completion: int
    tokens_total: int
    finish_reason: str


class LLMService:
    """
    Text generation over Anthropic or OpenAI.

    The provider is chosen by ``settings.llm_provider``; clients are
    created lazily so a missing key only fails on first use.
    """

    def __init__(self, provider: Optional[str] = None):
        self.provider = provider or settings.llm_provider
        self.default_temperature = settings.temperature
        self.default_max_tokens = settings.response_max_tokens
        self._anthropic: Optional[anthropic.AsyncAnthropic] = None
        self._openai: Optional[AsyncOpenAI] = None

    @property
    def model(self) -> str:
        return settings.anthropic_model if self.provider == "anthropic" else settings.default_model

    @property
    def anthropic_client(self) -> anthropic.AsyncAnthropic:
        if self._anthropic is None:
            if not settings.anthropic_api_key:
                logger.warning("ANTHROPIC_API_KEY not set — generation will fail")
            self._anthropic = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key or "missing")
        return self._anthropic

    @property
    def openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._openai

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """One-shot completion with a system and a user message."""
        max_tokens = max_tokens or self.default_max_tokens
        temperature = temperature if temperature is not None else self.default_temperature

        if self.provider == "anthropic":
            response = await self.anthropic_client.messages.create(
                model=self.model,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
            text = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )
            return LLMResponse(
                content=text,
                model=response.model,
                tokens_prompt=response.usage.input_tokens,
                tokens_completion=response.usage.output_tokens,
                tokens_total=response.usage.input_tokens + response.usage.output_tokens,
                finish_reason=response.stop_reason or "",
            )

        response = await self.openai_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            tokens_prompt=usage.prompt_tokens if usage else 0,
            tokens_completion=usage.completion_tokens if usage else 0,
            tokens_total=usage.total_tokens if usage else 0,
            finish_reason=choice.finish_reason or "",
        )

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate reply text. Raises on provider errors or an empty reply."""
        response = await self.complete(system_prompt, user_prompt, max_tokens, temperature)
        if not response.content.strip():
            raise ValueError(f"Empty completion from {response.model}")
        logger.info(
            f"[LLM] {response.model} generated {response.tokens_completion} tokens "
            f"({response.finish_reason})"
        )
        return response.content


# Singleton instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
