"""
Provider for Anthropic's Messages API.
"""

import logging
from typing import Optional

from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic

from ..errors import ProviderRequestError
from ..types import GenerateOptions, TokenUsage
from .base import ProviderSpec

logger = logging.getLogger(__name__)


def _usage_from(usage) -> Optional[TokenUsage]:
    if usage is None:
        return None
    prompt = usage.input_tokens or 0
    completion = usage.output_tokens or 0
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion,
                      total_tokens=prompt + completion)


class AnthropicProvider:
    """
    Claude models.

    Text deltas are accumulated into the cumulative text. Extended-thinking
    deltas are forwarded as ``{"thinking": ...}`` chunks so the thinking
    detector sees them on the same side channel as other vendors.
    """

    def __init__(self, spec: ProviderSpec):
        self.spec = spec
        self.name = spec.id
        self.supported_models = list(spec.supported_models)
        self.supports_streaming = spec.supports_streaming
        self.supports_thinking = spec.supports_thinking

    async def generate_content(self, options: GenerateOptions) -> None:
        """Generate content, reporting failures through options.on_error."""
        client = AsyncAnthropic(api_key=options.api_key)
        try:
            if options.stream:
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

    async def _stream(self, client: AsyncAnthropic, options: GenerateOptions) -> None:
        text = ""
        async with client.messages.stream(
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            messages=[{"role": "user", "content": options.prompt}],
        ) as stream:
            async for event in stream:
                if event.type != "content_block_delta":
                    continue
                delta = event.delta
                if delta.type == "text_delta":
                    text += delta.text
                    options.on_stream(text, {"text": delta.text})
                elif delta.type == "thinking_delta":
                    options.on_stream(text, {"thinking": delta.thinking})
            final = await stream.get_final_message()

        options.on_complete(text, _usage_from(final.usage))

    async def _complete(self, client: AsyncAnthropic, options: GenerateOptions) -> None:
        response = await client.messages.create(
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            messages=[{"role": "user", "content": options.prompt}],
        )
        text = "".join(b.text for b in response.content if b.type == "text")
        thinking = "".join(b.thinking for b in response.content if b.type == "thinking")
        if thinking:
            options.on_stream(text, {"thinking": thinking})
        options.on_complete(text, _usage_from(response.usage))
