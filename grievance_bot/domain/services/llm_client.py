"""
LLM client over any OpenAI-compatible endpoint (OpenRouter by default).
"""
from typing import Optional

import openai
from openai import AsyncOpenAI

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import LLMError
from grievance_bot.core.logging import get_logger

logger = get_logger(__name__)


class LLMClient:
    """Single-shot chat completion, optionally in JSON mode"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model or settings.WHATSAPP_CONVERSATION_MODEL
        self._api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self._base_url = base_url or settings.LLM_BASE_URL
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._client or self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise LLMError("LLM_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=settings.LLM_TIMEOUT_SECONDS,
            )
        return self._client

    async def complete(
        self,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> str:
        """
        Run one completion and return the raw text.

        Raises:
            LLMError: transport/API failure or an empty response.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        kwargs = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens or settings.LLM_MAX_TOKENS,
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._get_client().chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            logger.error(
                "LLM completion failed",
                extra_data={"model": kwargs["model"], "error": str(e)},
            )
            raise LLMError(str(e), details={"model": kwargs["model"]}) from e

        if not response.choices or response.choices[0].message.content is None:
            raise LLMError("Empty completion", details={"model": kwargs["model"]})
        return response.choices[0].message.content.strip()
