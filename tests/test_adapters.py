"""
Tests for the vendor adapters with the SDK client replaced.

Responses are built from the SDK's own response models so the adapters
see the same objects as in production.
"""

from types import SimpleNamespace

import pytest
from openai.types.chat import ChatCompletion, ChatCompletionChunk

from noteai.providers.base import get_provider_spec
from noteai.providers.openai_compat import (
    AlibabaProvider,
    DeepSeekProvider,
    OpenAIProvider,
    ZhipuProvider,
)
from noteai.thinking import detect_from_stream_chunk
from noteai.types import GenerateOptions

from .conftest import DEEPSEEK_KEY


class FakeCompletions:

    def __init__(self, result):
        self.result = result
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.result


class FakeClient:

    def __init__(self, result):
        self.chat = SimpleNamespace(completions=FakeCompletions(result))
        self.closed = False

    async def close(self):
        self.closed = True


async def _aiter(items):
    for item in items:
        yield item


def _chunk(content=None, reasoning=None, usage=None) -> ChatCompletionChunk:
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    data = {
        "id": "chunk-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "deepseek-reasoner",
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
    }
    if usage is not None:
        data["usage"] = usage
    return ChatCompletionChunk.model_validate(data)


def _options(model="deepseek-reasoner", stream=True):
    events = {"stream": [], "complete": [], "error": []}
    options = GenerateOptions(
        note_id="n1",
        prompt="Plan my day",
        model=model,
        api_key=DEEPSEEK_KEY,
        stream=stream,
        on_stream=lambda text, chunk: events["stream"].append((text, chunk)),
        on_complete=lambda text, usage: events["complete"].append((text, usage)),
        on_error=events["error"].append,
    )
    return options, events


class TestOpenAICompatible:
    """Streaming and non-streaming chat completions."""

    @pytest.mark.asyncio
    async def test_stream_accumulates_and_passes_reasoning(self, monkeypatch):
        provider = DeepSeekProvider(get_provider_spec("deepseek"))
        reasoning = "Start with the meetings, then the errands that remain."
        client = FakeClient(_aiter([
            _chunk(reasoning=reasoning),
            _chunk(content="9:00 "),
            _chunk(content="standup"),
            _chunk(usage={"prompt_tokens": 4, "completion_tokens": 3, "total_tokens": 7}),
        ]))
        monkeypatch.setattr(provider, "_client", lambda api_key: client)

        options, events = _options()
        await provider.generate_content(options)

        texts = [text for text, _ in events["stream"]]
        assert texts == ["", "9:00 ", "9:00 standup"]
        assert detect_from_stream_chunk(events["stream"][0][1]) == reasoning
        [(final, usage)] = events["complete"]
        assert final == "9:00 standup"
        assert usage.total_tokens == 7
        assert events["error"] == []
        assert client.closed

        sent = client.chat.completions.kwargs
        assert sent["stream"] is True
        assert sent["model"] == "deepseek-reasoner"
        assert "temperature" not in sent

    @pytest.mark.asyncio
    async def test_non_stream_single_terminal_callback(self, monkeypatch):
        provider = DeepSeekProvider(get_provider_spec("deepseek"))
        response = ChatCompletion.model_validate({
            "id": "c1",
            "object": "chat.completion",
            "created": 0,
            "model": "deepseek-chat",
            "choices": [{
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": "Done."},
            }],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        })
        client = FakeClient(response)
        monkeypatch.setattr(provider, "_client", lambda api_key: client)

        options, events = _options(model="deepseek-chat", stream=False)
        await provider.generate_content(options)

        assert events["stream"] == []
        assert [text for text, _ in events["complete"]] == ["Done."]
        assert client.chat.completions.kwargs["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_non_stream_reasoning_surfaced_once(self, monkeypatch):
        provider = DeepSeekProvider(get_provider_spec("deepseek"))
        reasoning = "The user wants a short plan, so keep it to three items."
        response = ChatCompletion.model_validate({
            "id": "c2",
            "object": "chat.completion",
            "created": 0,
            "model": "deepseek-reasoner",
            "choices": [{
                "index": 0,
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": "1. 2. 3.", "reasoning_content": reasoning},
            }],
        })
        monkeypatch.setattr(provider, "_client", lambda api_key: FakeClient(response))

        options, events = _options(stream=False)
        await provider.generate_content(options)

        [(text, chunk)] = events["stream"]
        assert detect_from_stream_chunk(chunk) == reasoning
        assert events["complete"][0][1] is None


class TestCompletionKwargs:
    """Per-vendor request parameters."""

    def test_openai_reasoning_models(self):
        provider = OpenAIProvider(get_provider_spec("openai"))
        options, _ = _options(model="o3-mini")
        assert provider._completion_kwargs(options) == {"max_completion_tokens": 3500}
        options, _ = _options(model="gpt-4o")
        assert provider._completion_kwargs(options) == {"max_tokens": 3500, "temperature": 0.7}

    def test_alibaba_enables_thinking_when_streaming(self):
        provider = AlibabaProvider(get_provider_spec("alibaba"))
        options, _ = _options(model="qwq-plus")
        assert provider._completion_kwargs(options)["extra_body"] == {"enable_thinking": True}
        options, _ = _options(model="qwq-plus", stream=False)
        assert "extra_body" not in provider._completion_kwargs(options)

    def test_metadata_from_spec(self):
        provider = ZhipuProvider(get_provider_spec("zhipu"))
        assert provider.name == "zhipu"
        assert provider.supports_thinking
        assert provider.spec.base_url.startswith("https://open.bigmodel.cn")
