"""
Shared pytest fixtures for noteai tests.

Provides scripted providers so no test talks to a real vendor API, and
an in-memory keyring so credentials never touch the OS keychain.
"""

import asyncio
from typing import Optional

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from noteai.api import open_context
from noteai.providers.base import ProviderRegistry
from noteai.types import GenerateOptions, TokenUsage

# Keys matching each provider's format
DEEPSEEK_KEY = "sk-" + "a1b2c3d4" * 4
ZHIPU_KEY = "0123456789abcdef0123456789abcdef.zh"
OPENAI_KEY = "sk-proj_" + "x" * 40


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps secrets in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        try:
            del self.passwords[(service, username)]
        except KeyError:
            raise PasswordDeleteError(f"No password for {service}/{username}")


class ScriptedProvider:
    """
    Provider that replays a fixed script through the callbacks.

    Reasoning pieces are sent first as side-channel chunks, then text
    deltas, then the terminal callback.
    """

    name = "scripted"
    supported_models = ["scripted-1"]
    supports_streaming = True
    supports_thinking = True

    def __init__(
        self,
        deltas=("Hello", ", ", "world"),
        reasoning=(),
        error: Optional[Exception] = None,
        raises: Optional[Exception] = None,
        delay: float = 0.0,
        complete: bool = True,
        complete_twice: bool = False,
    ):
        self.deltas = list(deltas)
        self.reasoning = list(reasoning)
        self.error = error
        self.raises = raises
        self.delay = delay
        self.complete = complete
        self.complete_twice = complete_twice
        self.calls: list[GenerateOptions] = []

    async def generate_content(self, options: GenerateOptions) -> None:
        self.calls.append(options)
        text = ""
        for piece in self.reasoning:
            options.on_stream(text, {"choices": [{"delta": {"reasoning_content": piece}}]})
            await asyncio.sleep(self.delay)
        for delta in self.deltas:
            text += delta
            options.on_stream(text, {"choices": [{"delta": {"content": delta}}]})
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.error is not None:
            options.on_error(self.error)
            return
        if self.complete:
            usage = TokenUsage(prompt_tokens=3, completion_tokens=len(self.deltas), total_tokens=3 + len(self.deltas))
            options.on_complete(text, usage)
            if self.complete_twice:
                options.on_complete(text, usage)


@pytest.fixture(autouse=True)
def memory_keyring():
    """Install a fresh in-memory keyring for every test."""
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    return backend


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def registry(scripted_provider):
    """Registry whose loader hands out the scripted provider for every id."""
    async def loader(spec):
        return scripted_provider
    return ProviderRegistry(loader=loader)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def context(store_path, registry):
    """An open NoteAIContext on a temporary store."""
    ctx = open_context(store_path, registry=registry)
    yield ctx
    ctx.close()


@pytest.fixture
def service(context):
    """GenerationService with DeepSeek applied and its key stored."""
    context.service.apply_configuration("deepseek", "deepseek-chat")
    context.service.configure_provider("deepseek", DEEPSEEK_KEY)
    return context.service
