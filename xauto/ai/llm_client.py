"""OpenAI-compatible chat completion client.

Every configured provider exposes the same chat completions API, so one
provider class covers all of them; only base_url, api key and model differ.
Requests run with a 30 s timeout and no SDK-level retries: failover across
providers is the only retry mechanism.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import openai
from openai import AsyncOpenAI

from xauto.core.exceptions import ConfigurationError, ExtractionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_TEMPERATURE = 0.2

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


@dataclass
class LLMResponse:
    """Standardized response from a chat completion call."""

    content: str
    model: str
    usage: Optional[dict[str, Any]] = None


class ChatModel(Protocol):
    """Anything that can answer a chat completion request."""

    @property
    def model(self) -> str: ...

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = False,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> LLMResponse: ...


class OpenAICompatibleProvider:
    """Chat completions against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not api_key:
            raise ConfigurationError("Provider API key is required")
        if not model:
            raise ConfigurationError("Provider model is required")

        self._model = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool = False,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise ExtractionError(f"Provider API error: {e}") from e

        if not response.choices:
            raise ExtractionError("Provider returned no choices")
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise ExtractionError("Provider returned empty content")

        usage = None
        if response.usage is not None:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
            }

        return LLMResponse(
            content=content, model=response.model or self._model, usage=usage
        )


class LLMFactory:
    """Factory for creating chat model clients."""

    @staticmethod
    def create(base_url: str, api_key: str, model: str, **kwargs: Any) -> ChatModel:
        return OpenAICompatibleProvider(
            base_url=base_url, api_key=api_key, model=model, **kwargs
        )


def extract_json_object(response_text: str) -> dict[str, Any]:
    """Recover a JSON object from model output.

    Tries the whole text, then the contents of a code fence, then the
    outermost {...} span.

    Raises:
        ExtractionError: If no JSON object can be recovered.
    """
    text = (response_text or "").strip()
    if not text:
        raise ExtractionError("Model response is empty")

    candidates = [text]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    last_error = "no JSON object found"
    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e.msg
            continue
        if isinstance(result, dict):
            return result
        last_error = f"not a JSON object: {type(result).__name__}"

    raise ExtractionError(f"Model response is not valid JSON: {last_error}")
