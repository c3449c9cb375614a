"""Vendor clients for OpenAI-compatible chat-completion endpoints.

One subclass per supported vendor. Both vendors are reached through the
``openai`` SDK pointed at the vendor's base URL; only credentials, endpoint
and default model differ.
"""

import time
from abc import ABC
from collections.abc import AsyncIterator
from typing import Any, ClassVar

import openai
from openai import AsyncOpenAI

from opsagent.infrastructure.ai.types import AIRequest, AIResult, ProviderTag, ToolCall
from opsagent.shared.exceptions import AIRateLimitError, AIServiceError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


class ChatCompletionsClient(ABC):
    """Base client for a vendor exposing the chat-completions schema.

    The SDK's built-in retry loop is disabled: rate-limit handling belongs to
    the gateway's single fallback hop.
    """

    tag: ClassVar[ProviderTag]
    default_model: ClassVar[str]

    def __init__(self, api_key: str, base_url: str, timeout: float = 90.0) -> None:
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    def _request_kwargs(self, request: AIRequest) -> dict[str, Any]:
        payload = request.to_payload()
        payload["model"] = request.model or self.default_model
        if request.timeout is not None:
            payload["timeout"] = request.timeout
        return payload

    def _translate_error(self, exc: Exception, model: str) -> AIServiceError:
        provider = self.tag.value
        if isinstance(exc, openai.RateLimitError):
            return AIRateLimitError(
                f"{provider} rate limit exceeded", provider=provider, model=model
            )
        if isinstance(exc, openai.APIStatusError):
            return AIServiceError(
                f"{provider} API error: {exc.status_code}",
                status_code=exc.status_code,
                provider=provider,
                model=model,
            )
        if isinstance(exc, openai.APITimeoutError):
            return AIServiceError(f"{provider} request timed out", provider=provider, model=model)
        if isinstance(exc, openai.APIConnectionError):
            return AIServiceError(f"Connection to {provider} failed", provider=provider, model=model)
        return AIServiceError(f"Unexpected {provider} error: {exc}", provider=provider, model=model)

    async def complete(self, request: AIRequest) -> AIResult:
        """Send one non-streaming completion request.

        Raises:
            AIRateLimitError: If the vendor answered 429
            AIServiceError: For any other failure, with the HTTP status when known
        """
        kwargs = self._request_kwargs(request)
        model = kwargs["model"]
        start_time = time.monotonic()

        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise self._translate_error(e, model) from e

        latency_ms = (time.monotonic() - start_time) * 1000

        choice = completion.choices[0] if completion.choices else None
        message = choice.message if choice else None
        tool_calls = [
            ToolCall(
                id=tc.id,
                function_name=tc.function.name,
                arguments_raw=tc.function.arguments or "{}",
            )
            for tc in (getattr(message, "tool_calls", None) or [])
            if getattr(tc, "function", None) is not None
        ]
        usage = completion.usage

        return AIResult(
            content=(message.content if message else None) or "",
            tool_calls=tool_calls,
            provider=self.tag,
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

    async def stream(self, request: AIRequest) -> AsyncIterator[bytes]:
        """Stream the raw server-sent-event bytes of a completion.

        Status errors surface when the stream is opened, before any byte is
        yielded.
        """
        kwargs = self._request_kwargs(request)
        model = kwargs["model"]
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **kwargs, stream=True
            ) as response:
                async for chunk in response.iter_bytes():
                    yield chunk
        except openai.OpenAIError as e:
            raise self._translate_error(e, model) from e

    async def close(self) -> None:
        await self.client.close()


class GPTClient(ChatCompletionsClient):
    """OpenAI GPT models: reasoning, chat and structured output."""

    tag = ProviderTag.GPT
    default_model = "gpt-4o"


class GeminiClient(ChatCompletionsClient):
    """Google Gemini via its OpenAI-compatible endpoint: large context, multimodal."""

    tag = ProviderTag.GEMINI
    default_model = "gemini-2.5-flash"
