"""
Generation orchestrator for note content.

GenerationService is the single entry point that:
- snapshots the active (provider, model) pair for each request
- resolves the provider adapter and API key, failing closed
- wraps the caller's callbacks to accumulate text and reasoning
- detects the thinking chain on completion
- finalizes and persists exactly one HistoryRecord per attempt

NoteAIContext wires the stores, registry, credentials and service for one
store directory. Build it with open_context().
"""

import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .config import (
    AISettings,
    StoreConfig,
    default_settings,
    get_default_store_path,
    load_or_create_config,
    migrate_settings,
    needs_migration,
)
from .credentials import CredentialStore
from .errors import (
    CredentialStoreError,
    ErrorKind,
    GenerationError,
    ProviderConfigError,
    classify_error,
)
from .history_store import HistoryStore
from .logging_config import configure_ops_log
from .providers.base import ProviderRegistry
from .settings_store import SettingsStore
from .thinking import detect_thinking_chain, stream_field_value
from .types import (
    ActiveConfig,
    GenerateOptions,
    GenerationRequest,
    HistoryRecord,
    HistoryStatus,
    TokenUsage,
    utc_now,
)

logger = logging.getLogger(__name__)


SETTINGS_KEY = "ai_settings"
PREFERRED_MODEL_PREFIX = "provider_model_"

# Settings that save_settings() may change; the active config is not one
GENERATION_FIELDS = ("global_show_thinking", "temperature", "max_tokens", "stream", "auto_save")

# Round-trip used by test_configuration()
TEST_PROMPT = "Reply with the single word: OK"
TEST_MAX_TOKENS = 16

# Model-name substrings that indicate reasoning output, per provider.
# Advisory: a miss is logged, never enforced.
THINKING_MODEL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "zhipu": ("glm-z1", "thinking"),
    "deepseek": ("reasoner", "r1"),
    "openai": ("o1", "o3", "o4"),
    "alibaba": ("qwq", "qwen3"),
    "siliconflow": ("r1", "qwq", "thinking"),
    "anthropic": ("claude-3-7", "claude-sonnet-4", "claude-opus-4"),
}


def model_supports_thinking(provider: str, model: str) -> bool:
    """True if the model name matches a known reasoning-model keyword."""
    lowered = model.lower()
    return any(k in lowered for k in THINKING_MODEL_KEYWORDS.get(provider, ()))


def _truncate(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class GenerationService:
    """
    Provider-agnostic note generation with per-attempt history.

    Example:
        service = GenerationService(settings, history, credentials, registry)
        service.apply_configuration("deepseek", "deepseek-chat")
        record = await service.generate_note(GenerationRequest(
            note_id="note-1",
            prompt="Summarize my week",
            on_stream=lambda text, chunk: print(text),
        ))
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        history_store: HistoryStore,
        credentials: CredentialStore,
        registry: ProviderRegistry,
        defaults: Optional[StoreConfig] = None,
    ):
        self._settings_store = settings_store
        self._history = history_store
        self._credentials = credentials
        self._registry = registry
        self._defaults = defaults
        self._settings: Optional[AISettings] = None

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def load_settings(self) -> AISettings:
        """
        (Re)load settings from the settings table.

        Legacy flat settings are migrated and written back immediately; any
        plaintext API keys they carry move to the credential store.
        """
        data = self._settings_store.get(SETTINGS_KEY)
        if data is None:
            settings = self._fresh_settings()
        elif not isinstance(data, dict):
            logger.warning("Ignoring malformed %s value: %r", SETTINGS_KEY, data)
            settings = self._fresh_settings()
        elif needs_migration(data):
            settings = migrate_settings(data)
            self._import_legacy_keys(data.get("apiKeys"))
            self._settings_store.set(SETTINGS_KEY, settings.to_dict())
            logger.info("Migrated legacy AI settings (provider=%s, model=%s)",
                        settings.active_config.provider, settings.active_config.model)
        else:
            settings = AISettings.from_dict(data)
        self._settings = settings
        return settings

    def _import_legacy_keys(self, api_keys: Any) -> None:
        """Move plaintext keys from legacy settings into the credential store."""
        if not isinstance(api_keys, dict):
            return
        for provider, api_key in api_keys.items():
            if not api_key:
                continue
            if not self._credentials.validate_api_key(provider, api_key):
                logger.warning("Dropping legacy API key for %s: unknown provider or bad format", provider)
                continue
            try:
                self._credentials.set_api_key(provider, api_key)
            except (CredentialStoreError, ProviderConfigError) as e:
                logger.warning("Could not migrate legacy API key for %s: %s", provider, e)
                continue
            logger.info("Migrated legacy API key for %s", provider)

    def _fresh_settings(self) -> AISettings:
        if self._defaults is None:
            return default_settings()
        return default_settings(self._defaults.temperature, self._defaults.max_tokens)

    def get_settings(self) -> AISettings:
        if self._settings is None:
            return self.load_settings()
        return self._settings

    def save_settings(self, **changes: Any) -> AISettings:
        """
        Update generation parameters and persist.

        Raises:
            ValueError: An unknown field, or an attempt to change the active
                config (use apply_configuration for that)
        """
        unknown = set(changes) - set(GENERATION_FIELDS)
        if unknown:
            raise ValueError(f"Cannot change settings: {', '.join(sorted(unknown))}")
        settings = self.get_settings()
        for name, value in changes.items():
            setattr(settings, name, value)
        self._settings_store.set(SETTINGS_KEY, settings.to_dict())
        return settings

    def get_current_provider(self) -> str:
        return self.get_settings().active_config.provider

    def get_current_model(self) -> str:
        return self.get_settings().active_config.model

    def get_preferred_model(self, provider: str) -> str:
        """Last model applied for provider, else its default model."""
        stored = self._settings_store.get(f"{PREFERRED_MODEL_PREFIX}{provider}")
        if stored:
            return stored
        return self._registry.get_default_model(provider)

    def apply_configuration(self, provider: str, model: Optional[str] = None) -> ActiveConfig:
        """
        Make (provider, model) the active configuration.

        This is the only operation that changes the active config.

        Raises:
            GenerationError: VALIDATION for an unknown provider
        """
        if not self._registry.is_valid_provider_id(provider):
            raise GenerationError(ErrorKind.VALIDATION, f"Unknown provider: {provider}", code="AI_005")
        model = model or self.get_preferred_model(provider)

        settings = self.get_settings()
        settings.active_config = ActiveConfig(provider=provider, model=model, applied_at=utc_now())
        self._settings_store.set(f"{PREFERRED_MODEL_PREFIX}{provider}", model)
        self._settings_store.set(SETTINGS_KEY, settings.to_dict())
        logger.info("Applied configuration %s/%s", provider, model)
        return settings.active_config

    # -------------------------------------------------------------------------
    # Provider configuration
    # -------------------------------------------------------------------------

    def configure_provider(self, provider: str, api_key: str) -> None:
        """
        Validate and store an API key without testing or applying it.

        Raises:
            GenerationError: VALIDATION for an unknown provider or bad key format
            CredentialStoreError: The key could not be stored
        """
        if not self._registry.is_valid_provider_id(provider):
            raise GenerationError(ErrorKind.VALIDATION, f"Unknown provider: {provider}", code="AI_005")
        if not self._credentials.validate_api_key(provider, api_key):
            raise GenerationError(
                ErrorKind.VALIDATION,
                f"Invalid API key format for provider '{provider}'",
                code="AI_002",
            )
        self._credentials.set_api_key(provider, api_key)

    def is_provider_configured(self, provider: str) -> bool:
        return self._credentials.has_api_key(provider)

    async def test_configuration(self, provider: str, model: str, api_key: str) -> bool:
        """
        Check that provider/model work with api_key by making one request.

        The key is stored before the request is made, whatever the outcome.
        The active configuration and history are left untouched.

        Returns:
            True if the request completed or produced any text
        """
        if not self._registry.is_valid_provider_id(provider):
            logger.warning("Configuration test: unknown provider %s", provider)
            return False
        if not self._credentials.validate_api_key(provider, api_key):
            logger.warning("Configuration test: invalid key format for %s", provider)
            return False

        self._credentials.set_api_key(provider, api_key)

        try:
            adapter = await self._registry.load_provider(provider)
        except ProviderConfigError as e:
            logger.warning("Configuration test: %s", e)
            return False

        outcome = {"completed": False, "streamed": False, "error": None}

        def on_stream(text: str, chunk: Optional[dict] = None) -> None:
            if text:
                outcome["streamed"] = True

        def on_complete(text: str, usage: Optional[TokenUsage] = None) -> None:
            outcome["completed"] = True

        def on_error(exc: Exception) -> None:
            outcome["error"] = exc

        settings = self.get_settings()
        options = GenerateOptions(
            note_id=None,
            prompt=TEST_PROMPT,
            model=model,
            api_key=api_key,
            temperature=settings.temperature,
            max_tokens=TEST_MAX_TOKENS,
            stream=False,
            on_stream=on_stream,
            on_complete=on_complete,
            on_error=on_error,
        )
        try:
            await adapter.generate_content(options)
        except Exception as e:
            outcome["error"] = e

        ok = bool(outcome["completed"] or outcome["streamed"])
        if ok:
            logger.info("Configuration test passed for %s/%s", provider, model)
        else:
            logger.warning("Configuration test failed for %s/%s: %s", provider, model, outcome["error"])
        return ok

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate_note(self, request: GenerationRequest) -> HistoryRecord:
        """
        Generate note content and record the attempt.

        Callbacks on the request receive cumulative text while streaming,
        then exactly one of on_complete(content, record) or
        on_error(GenerationError). A cancelled request receives neither.

        Returns:
            The finalized HistoryRecord

        Raises:
            GenerationError: The provider or API key could not be resolved,
                or the provider raised instead of reporting through on_error

        Exceptions raised by the request's own callbacks propagate unchanged.
        """
        settings = self.get_settings()
        # Snapshot: a later apply_configuration() must not re-attribute this request
        active = settings.active_config
        provider_id = active.provider
        model = request.model or active.model

        record = HistoryRecord(
            note_id=request.note_id,
            prompt=request.prompt,
            provider=provider_id,
            model=model,
            temperature=request.temperature if request.temperature is not None else settings.temperature,
            max_tokens=request.max_tokens if request.max_tokens is not None else settings.max_tokens,
            stream=request.stream if request.stream is not None else settings.stream,
        )
        started = time.monotonic()
        logger.info("Generating for note %s with %s/%s: %s",
                    request.note_id, provider_id, model, _truncate(request.prompt))

        def cancelled() -> bool:
            return request.cancel_token is not None and request.cancel_token.cancelled

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            adapter = await self._registry.load_provider(provider_id)
        except ProviderConfigError as e:
            error = GenerationError(ErrorKind.NOT_FOUND, str(e), code="AI_005")
            self._fail(record, error, elapsed_ms(), request.on_error)
            raise error from e

        api_key = self._credentials.get_api_key(provider_id)
        if not api_key:
            error = GenerationError(
                ErrorKind.VALIDATION,
                f"No API key configured for provider '{provider_id}'",
                code="AI_001",
            )
            self._fail(record, error, elapsed_ms(), request.on_error)
            raise error

        if settings.global_show_thinking and not model_supports_thinking(provider_id, model):
            logger.debug("Model %s/%s is not known to produce reasoning output", provider_id, model)

        reasoning: list[str] = []
        # Exceptions raised by the caller's own callbacks; these propagate as-is
        caller_errors: list[Exception] = []

        def forward(callback: Optional[Callable[..., None]], *args: Any) -> None:
            if callback is None:
                return
            try:
                callback(*args)
            except Exception as e:
                caller_errors.append(e)
                raise

        def on_stream(text: str, chunk: Optional[dict] = None) -> None:
            if record.finalized:
                return
            record.generated_content = text
            piece = stream_field_value(chunk) if chunk is not None else None
            if piece:
                reasoning.append(piece)
            if not cancelled():
                forward(request.on_stream, text, chunk)

        def on_complete(text: str, usage: Optional[TokenUsage] = None) -> None:
            if record.finalized:
                logger.warning("Ignoring completion for finalized record %s", record.id)
                return
            if cancelled():
                self._cancel(record, elapsed_ms())
                return
            side_channel = "".join(reasoning)
            detection = detect_thinking_chain(
                text, {"reasoning_content": side_channel} if side_channel else None
            )
            record.generated_content = detection.clean_content
            record.thinking_chain = detection.thinking_content
            record.token_usage = usage
            record.finalize(HistoryStatus.SUCCESS, duration_ms=elapsed_ms())
            self._persist(record)
            logger.info("Generation %s succeeded in %d ms", record.id, record.duration_ms)
            forward(request.on_complete, detection.clean_content, record)

        def on_error(exc: Exception) -> None:
            if record.finalized:
                logger.warning("Ignoring error for finalized record %s: %s", record.id, exc)
                return
            if cancelled():
                self._cancel(record, elapsed_ms())
                return
            self._fail(record, classify_error(exc), elapsed_ms(),
                       lambda error: forward(request.on_error, error))

        options = GenerateOptions(
            note_id=request.note_id,
            prompt=request.prompt,
            model=model,
            api_key=api_key,
            temperature=record.temperature,
            max_tokens=record.max_tokens,
            stream=record.stream,
            on_stream=on_stream,
            on_complete=on_complete,
            on_error=on_error,
        )

        try:
            await adapter.generate_content(options)
        except Exception as e:
            if any(e is caller_error for caller_error in caller_errors):
                if not record.finalized:
                    error = GenerationError(
                        ErrorKind.UNKNOWN, f"Caller callback raised: {e!r}", code="AI_007"
                    )
                    self._fail(record, error, elapsed_ms(), None)
                raise
            error = classify_error(e)
            if not record.finalized:
                if cancelled():
                    self._cancel(record, elapsed_ms())
                    return record
                self._fail(record, error, elapsed_ms(), request.on_error)
            raise error from e

        if not record.finalized:
            if cancelled():
                self._cancel(record, elapsed_ms())
                return record
            error = GenerationError(
                ErrorKind.UNKNOWN,
                f"Provider '{provider_id}' returned without completing or reporting an error",
                code="AI_007",
            )
            self._fail(record, error, elapsed_ms(), request.on_error)
            raise error
        return record

    def _fail(
        self,
        record: HistoryRecord,
        error: GenerationError,
        duration_ms: int,
        notify: Optional[Callable[[GenerationError], None]],
    ) -> None:
        record.finalize(
            HistoryStatus.ERROR,
            duration_ms=duration_ms,
            error_message=error.technical_message,
            error_kind=error.kind.value,
        )
        self._persist(record)
        logger.warning("Generation %s failed (%s): %s", record.id, error.kind.value, error.technical_message)
        if notify is not None:
            notify(error)

    def _cancel(self, record: HistoryRecord, duration_ms: int) -> None:
        record.finalize(HistoryStatus.CANCELLED, duration_ms=duration_ms)
        self._persist(record)
        logger.info("Generation %s cancelled", record.id)

    def _persist(self, record: HistoryRecord) -> None:
        # History is diagnostic: a failed write is logged, not surfaced
        try:
            self._history.save(record)
        except sqlite3.Error as e:
            logger.error("Failed to save history record %s: %s", record.id, e)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def list_history(self, limit: int = 20, note_id: Optional[str] = None) -> list[HistoryRecord]:
        return self._history.list_recent(limit=limit, note_id=note_id)

    def get_history(self, record_id: str) -> Optional[HistoryRecord]:
        return self._history.get(record_id)


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------

class NoteAIContext:
    """
    Everything needed to generate for one store directory.

    Use as a context manager, or call close() when done.
    """

    def __init__(
        self,
        config: StoreConfig,
        settings_store: SettingsStore,
        history_store: HistoryStore,
        registry: ProviderRegistry,
        credentials: CredentialStore,
        service: GenerationService,
        log_handler: Optional[logging.Handler] = None,
    ):
        self.config = config
        self.settings_store = settings_store
        self.history_store = history_store
        self.registry = registry
        self.credentials = credentials
        self.service = service
        self._log_handler = log_handler

    def close(self) -> None:
        """Close the stores and detach the operations log."""
        self.history_store.close()
        self.settings_store.close()
        if self._log_handler is not None:
            logging.getLogger("noteai").removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False


def open_context(
    store_path: Optional[Union[str, Path]] = None,
    registry: Optional[ProviderRegistry] = None,
) -> NoteAIContext:
    """
    Open (creating if needed) the store at store_path.

    Args:
        store_path: Store directory. Defaults to NOTEAI_STORE_PATH or ~/.noteai
        registry: Provider registry to use; a default one is created if None
    """
    path = Path(store_path).expanduser() if store_path else get_default_store_path()
    config = load_or_create_config(path)
    log_handler = configure_ops_log(path)

    settings_store = SettingsStore(config.database_path)
    history_store = HistoryStore(config.database_path)
    registry = registry or ProviderRegistry()
    credentials = CredentialStore(
        settings_store, registry, allow_insecure=config.allow_insecure_credentials
    )
    service = GenerationService(settings_store, history_store, credentials, registry, defaults=config)
    logger.debug("Opened noteai store at %s", path)
    return NoteAIContext(
        config=config,
        settings_store=settings_store,
        history_store=history_store,
        registry=registry,
        credentials=credentials,
        service=service,
        log_handler=log_handler,
    )
