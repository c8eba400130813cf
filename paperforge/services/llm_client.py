"""Thin adapter over the OpenAI chat completions API."""

import logging
from dataclasses import dataclass
from typing import Optional

from openai import OpenAI, OpenAIError

from paperforge.config import settings
from paperforge.exceptions import LLMProviderException
from paperforge.models.usage_models import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class LLMConfig:
    """Per-call model settings."""

    model: str
    system_prompt: Optional[str] = None
    temperature: float = settings.llm_temperature
    max_tokens: int = settings.llm_max_tokens
    json_mode: bool = False


@dataclass
class LLMResponse:
    """Raw text returned by the model plus its token usage."""

    text: str
    usage: TokenUsage
    model: str


class LLMClient:
    """Sends one prompt to the model and returns its raw text."""

    def __init__(self, openai_client: Optional[OpenAI] = None):
        """
        Initialize LLM client.

        Args:
            openai_client: OpenAI client instance
        """
        self.client = openai_client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.request_timeout_sec,
        )

    def generate(self, prompt: str, config: LLMConfig) -> LLMResponse:
        """
        Run a single chat completion.

        Args:
            prompt: User prompt
            config: Model, system prompt and sampling settings

        Returns:
            LLMResponse with the text and token usage

        Raises:
            LLMProviderException: If the provider call fails or returns no text
        """
        messages = []
        if config.system_prompt:
            messages.append({"role": "system", "content": config.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": config.model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        if config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"LLM call to {config.model} failed: {e}")
            raise LLMProviderException(
                f"LLM provider call failed: {str(e)}",
                details={"model": config.model, "error_type": type(e).__name__},
            ) from e

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        if not text.strip():
            raise LLMProviderException(
                "LLM provider returned an empty response",
                details={"model": config.model},
            )

        usage = _usage_from_response(response)
        logger.debug(
            f"LLM call to {config.model}: {usage.total_tokens} tokens, {len(text)} chars"
        )
        return LLMResponse(text=text, usage=usage, model=config.model)


def _usage_from_response(response) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()

    def _count(name: str) -> int:
        value = getattr(usage, name, 0)
        return value if isinstance(value, int) else 0

    prompt_tokens = _count("prompt_tokens")
    completion_tokens = _count("completion_tokens")
    total_tokens = _count("total_tokens") or prompt_tokens + completion_tokens
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
    )


def get_llm_client() -> LLMClient:
    """FastAPI dependency returning an LLM client."""
    return LLMClient()
