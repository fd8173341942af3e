"""
Providers for vendors exposing an OpenAI-compatible chat completions API.

Zhipu, DeepSeek, OpenAI, Alibaba (DashScope compatible mode) and
SiliconFlow all accept the same request shape. Reasoning models stream
their trace in a side-channel delta field (reasoning_content, thinking)
which is passed through untouched in each chunk.
"""

import logging
from typing import Any, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from ..errors import ProviderRequestError
from ..thinking import stream_field_value
from ..types import GenerateOptions, TokenUsage
from .base import ProviderSpec

logger = logging.getLogger(__name__)


def _usage_from(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.prompt_tokens or 0,
        completion_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class OpenAICompatibleProvider:
    """
    Base adapter for chat-completions style APIs.

    Subclasses adjust request parameters per vendor through
    _completion_kwargs(); everything else is shared.
    """

    def __init__(self, spec: ProviderSpec):
        self.spec = spec
        self.name = spec.id
        self.supported_models = list(spec.supported_models)
        self.supports_streaming = spec.supports_streaming
        self.supports_thinking = spec.supports_thinking

    def _client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=api_key, base_url=self.spec.base_url)

    def _completion_kwargs(self, options: GenerateOptions) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        return {"max_tokens": options.max_tokens, "temperature": options.temperature}

    async def generate_content(self, options: GenerateOptions) -> None:
        """Generate content, reporting failures through options.on_error."""
        if options.model not in self.supported_models:
            logger.warning("%s: model %s is not in the supported list, sending anyway",
                           self.name, options.model)

        client = self._client(options.api_key)
        try:
            if options.stream and self.supports_streaming:
                await self._stream(client, options)
            else:
                await self._complete(client, options)
        except APIStatusError as e:
            logger.warning("%s request failed with status %s", self.name, e.status_code)
            options.on_error(ProviderRequestError(str(e), e.status_code))
        except APIConnectionError as e:
            logger.warning("%s connection failed: %s", self.name, e)
            options.on_error(ProviderRequestError(f"Network connection failed: {e}"))
        finally:
            await client.close()

    async def _stream(self, client: AsyncOpenAI, options: GenerateOptions) -> None:
        stream = await client.chat.completions.create(
            model=options.model,
            messages=[{"role": "user", "content": options.prompt}],
            stream=True,
            **self._completion_kwargs(options),
        )

        text = ""
        usage: Optional[TokenUsage] = None
        async for chunk in stream:
            data = chunk.model_dump(exclude_none=True)
            if chunk.usage is not None:
                usage = _usage_from(chunk.usage)
            delta = chunk.choices[0].delta if chunk.choices else None
            piece = delta.content if delta is not None else None
            if piece:
                text += piece
            if piece or stream_field_value(data):
                options.on_stream(text, data)

        options.on_complete(text, usage)

    async def _complete(self, client: AsyncOpenAI, options: GenerateOptions) -> None:
        response = await client.chat.completions.create(
            model=options.model,
            messages=[{"role": "user", "content": options.prompt}],
            stream=False,
            **self._completion_kwargs(options),
        )
        data = response.model_dump(exclude_none=True)
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        # Reasoning models put the trace beside the message; surface it once
        if stream_field_value(data):
            options.on_stream(text, data)
        options.on_complete(text, _usage_from(response.usage))


class ZhipuProvider(OpenAICompatibleProvider):
    """GLM models. Thinking variants stream a ``thinking`` delta field."""


class DeepSeekProvider(OpenAICompatibleProvider):
    """DeepSeek chat and reasoner. The reasoner streams ``reasoning_content``."""

    def _completion_kwargs(self, options: GenerateOptions) -> dict:
        # The reasoner ignores sampling parameters
        if "reasoner" in options.model:
            return {"max_tokens": options.max_tokens}
        return super()._completion_kwargs(options)


class OpenAIProvider(OpenAICompatibleProvider):
    """OpenAI GPT models."""

    def _completion_kwargs(self, options: GenerateOptions) -> dict:
        # GPT-5+ and o-series reasoning models use a different API surface:
        # - max_completion_tokens instead of max_tokens
        # - temperature must be omitted (only default=1 supported)
        if options.model.startswith(("gpt-5", "o1", "o3", "o4")):
            return {"max_completion_tokens": options.max_tokens}
        return super()._completion_kwargs(options)


class AlibabaProvider(OpenAICompatibleProvider):
    """Qwen models through DashScope's OpenAI-compatible endpoint."""

    def _completion_kwargs(self, options: GenerateOptions) -> dict:
        kwargs = super()._completion_kwargs(options)
        # QwQ / Qwen3 only return reasoning_content when asked, and only in streaming
        if options.stream and options.model.startswith(("qwq", "qwen3")):
            kwargs["extra_body"] = {"enable_thinking": True}
        return kwargs


class SiliconFlowProvider(OpenAICompatibleProvider):
    """Hosted open models on SiliconFlow."""
