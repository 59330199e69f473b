"""
Provider-agnostic async LLM client for OpsDesk answer composition.

Supports Anthropic, OpenAI, and Google Gemini with a shared text-generation
interface, both one-shot (``generate``) and incremental (``stream``).
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import AsyncIterator, Dict, List, Optional

from .errors import ProviderError

logger = logging.getLogger("opsdesk.common.llm_client")

Message = Dict[str, str]


class LLMClient:
    """Unified async text generation client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.model = model
        self._client = None
        self._google_models: Dict[str, object] = {}

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.AsyncAnthropic(api_key=anthropic_api_key)
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import AsyncOpenAI

                self._client = AsyncOpenAI(api_key=openai_api_key)
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Optional[List[Message]] = None,
        max_tokens: int = 1024,
        timeout: float = 30.0,
    ) -> str:
        """Generate a complete response. Provider failures raise ProviderError."""
        if not self.is_available:
            raise ProviderError("LLM client is not available")

        messages = _build_messages(prompt, history)
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system or "",
                    messages=messages,
                    timeout=timeout,
                )
                return response.content[0].text.strip()

            if self.provider == "openai":
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=_with_system(messages, system),
                    timeout=timeout,
                )
                return (response.choices[0].message.content or "").strip()

            if self.provider == "google":
                model = self._google_model(system)
                response = await model.generate_content_async(
                    _google_contents(messages),
                    generation_config={"max_output_tokens": max_tokens},
                    request_options={"timeout": timeout},
                )
                return response.text.strip()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"{self.provider} generation failed: {e}") from e

        raise ProviderError(f"Unsupported LLM provider: {self.provider}")

    async def stream(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        history: Optional[List[Message]] = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
    ) -> AsyncIterator[str]:
        """Yield response text fragments as the provider produces them."""
        if not self.is_available:
            raise ProviderError("LLM client is not available")

        messages = _build_messages(prompt, history)
        try:
            if self.provider == "anthropic":
                async with self._client.messages.stream(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system or "",
                    messages=messages,
                    timeout=timeout,
                ) as response:
                    async for text in response.text_stream:
                        if text:
                            yield text
                return

            if self.provider == "openai":
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=_with_system(messages, system),
                    timeout=timeout,
                    stream=True,
                )
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    text = chunk.choices[0].delta.content
                    if text:
                        yield text
                return

            if self.provider == "google":
                model = self._google_model(system)
                response = await model.generate_content_async(
                    _google_contents(messages),
                    generation_config={"max_output_tokens": max_tokens},
                    request_options={"timeout": timeout},
                    stream=True,
                )
                async for chunk in response:
                    if chunk.text:
                        yield chunk.text
                return
        except (asyncio.CancelledError, GeneratorExit):
            raise
        except Exception as e:
            raise ProviderError(f"{self.provider} streaming failed: {e}") from e

        raise ProviderError(f"Unsupported LLM provider: {self.provider}")

    def _google_model(self, system: Optional[str]):
        # Cache models by system prompt hash
        cache_key = hashlib.md5((system or "").encode()).hexdigest()
        if cache_key not in self._google_models:
            kwargs = {"model_name": self.model}
            if system:
                kwargs["system_instruction"] = system
            self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
        return self._google_models[cache_key]


def _build_messages(prompt: str, history: Optional[List[Message]]) -> List[Message]:
    messages = [
        {"role": m["role"], "content": m["content"]}
        for m in (history or [])
        if m.get("role") in ("user", "assistant") and m.get("content")
    ]
    messages.append({"role": "user", "content": prompt})
    return messages


def _with_system(messages: List[Message], system: Optional[str]) -> List[Message]:
    if not system:
        return messages
    return [{"role": "system", "content": system}] + messages


def _google_contents(messages: List[Message]) -> List[dict]:
    return [
        {"role": "model" if m["role"] == "assistant" else "user", "parts": [m["content"]]}
        for m in messages
    ]
