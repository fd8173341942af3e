"""
Base provider protocol and the provider registry.

A provider is a vendor adapter with a single streaming generation method.
Adapters live in their own modules and are imported lazily, the first time
a provider is used.
"""

import asyncio
import importlib
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional, Protocol, runtime_checkable

from ..errors import ProviderConfigError
from ..types import GenerateOptions

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class AIProvider(Protocol):
    """
    Generates note content from a prompt, streaming cumulative text.

    Contract:
    - on_stream(text, chunk) fires zero or more times; text is the
      cumulative output so far, never a delta. The adapter owns
      accumulation. chunk is the raw vendor chunk as a plain dict, so
      side-channel reasoning fields stay visible to the caller.
    - Then exactly one of on_complete(text, usage) or on_error(exc).
    - A non-streaming request still gets exactly one terminal callback.

    Example implementation:
        class EchoProvider:
            name = "echo"
            supported_models = ["echo-1"]
            supports_streaming = True
            supports_thinking = False

            async def generate_content(self, options: GenerateOptions) -> None:
                text = ""
                for word in options.prompt.split():
                    text += word + " "
                    options.on_stream(text, None)
                options.on_complete(text, None)
    """

    name: str
    supported_models: list[str]
    supports_streaming: bool
    supports_thinking: bool

    async def generate_content(self, options: GenerateOptions) -> None:
        """
        Run one generation request.

        Args:
            options: Resolved request with API key and callbacks

        Failures are reported through options.on_error. Adapters may
        also raise; the orchestrator classifies either path the same way.
        """
        ...


# -----------------------------------------------------------------------------
# Provider metadata
# -----------------------------------------------------------------------------

ProviderId = Literal["zhipu", "deepseek", "openai", "alibaba", "siliconflow", "anthropic"]


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a provider and where its adapter lives."""
    id: str
    name: str
    description: str
    module: str          # module under noteai.providers
    class_name: str
    supported_models: tuple[str, ...]
    default_model: str
    supports_streaming: bool
    supports_thinking: bool
    api_key_pattern: re.Pattern
    base_url: Optional[str] = None


PROVIDERS: dict[str, ProviderSpec] = {
    "zhipu": ProviderSpec(
        id="zhipu",
        name="Zhipu AI",
        description="GLM models, with thinking output on reasoning variants",
        module="openai_compat",
        class_name="ZhipuProvider",
        supported_models=("glm-4-plus", "glm-4-0520", "glm-4-air", "glm-4-airx", "glm-4-flash", "glm-z1-air"),
        default_model="glm-4-plus",
        supports_streaming=True,
        supports_thinking=True,
        api_key_pattern=re.compile(r"^[a-zA-Z0-9.]{32,}$"),
        base_url="https://open.bigmodel.cn/api/paas/v4/",
    ),
    "deepseek": ProviderSpec(
        id="deepseek",
        name="DeepSeek",
        description="Chat and reasoner models; reasoner streams reasoning_content",
        module="openai_compat",
        class_name="DeepSeekProvider",
        supported_models=("deepseek-chat", "deepseek-reasoner"),
        default_model="deepseek-chat",
        supports_streaming=True,
        supports_thinking=True,
        api_key_pattern=re.compile(r"^sk-[a-zA-Z0-9]{32,}$"),
        base_url="https://api.deepseek.com/v1",
    ),
    "openai": ProviderSpec(
        id="openai",
        name="OpenAI",
        description="GPT models",
        module="openai_compat",
        class_name="OpenAIProvider",
        supported_models=("gpt-4o", "gpt-4o-mini", "gpt-4", "gpt-4-turbo", "gpt-3.5-turbo"),
        default_model="gpt-4o-mini",
        supports_streaming=True,
        supports_thinking=False,
        api_key_pattern=re.compile(r"^sk-[a-zA-Z0-9_-]{32,}$"),
        base_url=None,
    ),
    "alibaba": ProviderSpec(
        id="alibaba",
        name="Alibaba Bailian",
        description="Qwen models through DashScope compatible mode",
        module="openai_compat",
        class_name="AlibabaProvider",
        supported_models=("qwen-plus", "qwen-turbo", "qwen-max", "qwq-plus"),
        default_model="qwen-plus",
        supports_streaming=True,
        supports_thinking=False,
        api_key_pattern=re.compile(r"^sk-[a-zA-Z0-9]{20,}$"),
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
    ),
    "siliconflow": ProviderSpec(
        id="siliconflow",
        name="SiliconFlow",
        description="Hosted open models",
        module="openai_compat",
        class_name="SiliconFlowProvider",
        supported_models=("deepseek-ai/DeepSeek-V3", "deepseek-ai/DeepSeek-R1", "Qwen/Qwen2.5-72B-Instruct"),
        default_model="deepseek-ai/DeepSeek-V3",
        supports_streaming=True,
        supports_thinking=False,
        api_key_pattern=re.compile(r"^sk-[a-zA-Z0-9]{32,}$"),
        base_url="https://api.siliconflow.cn/v1",
    ),
    "anthropic": ProviderSpec(
        id="anthropic",
        name="Anthropic",
        description="Claude models",
        module="anthropic",
        class_name="AnthropicProvider",
        supported_models=("claude-3-5-haiku-20241022", "claude-3-5-sonnet-20241022", "claude-3-7-sonnet-20250219"),
        default_model="claude-3-5-haiku-20241022",
        supports_streaming=True,
        supports_thinking=False,
        api_key_pattern=re.compile(r"^sk-ant-api03-[a-zA-Z0-9_-]{93}$"),
        base_url=None,
    ),
}

# Length heuristic for ids without a known key format
FALLBACK_MIN_KEY_LENGTH = 20


def is_valid_provider_id(provider_id: str) -> bool:
    return provider_id in PROVIDERS


def get_all_provider_ids() -> list[str]:
    return list(PROVIDERS.keys())


def get_provider_spec(provider_id: str) -> ProviderSpec:
    """Metadata for a provider id. Raises ProviderConfigError if unknown."""
    spec = PROVIDERS.get(provider_id)
    if spec is None:
        available = ", ".join(PROVIDERS.keys())
        raise ProviderConfigError(
            f"Unknown provider: '{provider_id}'. Available providers: {available}."
        )
    return spec


def get_default_model(provider_id: str) -> str:
    return get_provider_spec(provider_id).default_model


def get_supported_models(provider_id: str) -> tuple[str, ...]:
    return get_provider_spec(provider_id).supported_models


def validate_api_key(provider_id: str, api_key: str) -> bool:
    """
    Check an API key's shape for a provider.

    Unknown provider ids fall back to a length check.
    """
    if not api_key:
        return False
    spec = PROVIDERS.get(provider_id)
    if spec is None:
        return len(api_key) > FALLBACK_MIN_KEY_LENGTH
    return bool(spec.api_key_pattern.match(api_key))


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

ProviderLoader = Callable[[ProviderSpec], Awaitable[AIProvider]]


async def import_provider(spec: ProviderSpec) -> AIProvider:
    """Default loader: import the adapter module and instantiate its class."""
    module = importlib.import_module(f"{__package__}.{spec.module}")
    provider_class = getattr(module, spec.class_name)
    return provider_class(spec)


class ProviderRegistry:
    """
    Lazily loads provider adapters and caches one instance per id.

    Concurrent load_provider() calls for an id that is still loading
    await the same in-flight task, so each adapter is imported at most
    once. A failed load is not cached; the next call tries again.

    Example:
        registry = ProviderRegistry()
        provider = await registry.load_provider("deepseek")
        await provider.generate_content(options)
    """

    def __init__(self, loader: Optional[ProviderLoader] = None):
        self._loader = loader or import_provider
        self._loaded: dict[str, AIProvider] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    # Metadata passthroughs, so callers only need the registry

    def is_valid_provider_id(self, provider_id: str) -> bool:
        return is_valid_provider_id(provider_id)

    def get_all_provider_ids(self) -> list[str]:
        return get_all_provider_ids()

    def get_provider_spec(self, provider_id: str) -> ProviderSpec:
        return get_provider_spec(provider_id)

    def get_default_model(self, provider_id: str) -> str:
        return get_default_model(provider_id)

    def get_supported_models(self, provider_id: str) -> tuple[str, ...]:
        return get_supported_models(provider_id)

    def supports_thinking(self, provider_id: str) -> bool:
        return get_provider_spec(provider_id).supports_thinking

    def supports_streaming(self, provider_id: str) -> bool:
        return get_provider_spec(provider_id).supports_streaming

    def validate_api_key(self, provider_id: str, api_key: str) -> bool:
        return validate_api_key(provider_id, api_key)

    def is_loaded(self, provider_id: str) -> bool:
        return provider_id in self._loaded

    # Loading

    async def load_provider(self, provider_id: str) -> AIProvider:
        """
        Return the adapter for provider_id, importing it on first use.

        Raises:
            ProviderConfigError: Unknown id, or the adapter failed to load
        """
        cached = self._loaded.get(provider_id)
        if cached is not None:
            return cached

        spec = get_provider_spec(provider_id)

        task = self._inflight.get(provider_id)
        if task is None:
            task = asyncio.ensure_future(self._load(spec))
            self._inflight[provider_id] = task
        return await asyncio.shield(task)

    async def _load(self, spec: ProviderSpec) -> AIProvider:
        try:
            provider = await self._loader(spec)
        except Exception as e:
            raise ProviderConfigError(
                f"Failed to load provider '{spec.id}': {e}"
            ) from e
        finally:
            self._inflight.pop(spec.id, None)
        self._loaded[spec.id] = provider
        logger.info("Loaded provider %s", spec.id)
        return provider
