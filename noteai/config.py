"""
Configuration management for noteai.

Two layers:
- Store configuration: a TOML file in the store directory that holds
  process-level options (credential policy, generation defaults).
- AI settings: the active (provider, model) pair and generation
  parameters, kept as JSON in the settings table under "ai_settings".
  Older releases stored these as flat fields; they are migrated on load.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .providers.base import PROVIDERS, get_default_model, is_valid_provider_id
from .types import ActiveConfig, utc_now


CONFIG_FILENAME = "noteai.toml"
CONFIG_VERSION = 1

DEFAULT_PROVIDER = "zhipu"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 3500
MAX_TOKENS_LIMIT = 32000

# Flat fields written by releases before active_config existed
LEGACY_FIELDS = ("provider", "defaultModel", "showThinking", "temperature",
                 "maxTokens", "stream", "autoSave", "apiKeys")


def get_default_store_path() -> Path:
    """Store directory: NOTEAI_STORE_PATH or ~/.noteai."""
    env = os.environ.get("NOTEAI_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".noteai"


# -----------------------------------------------------------------------------
# Store configuration (TOML)
# -----------------------------------------------------------------------------

@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Permit the reversible (insecure) credential encoding when no OS
    # keyring is available. Off by default: storing a key then fails.
    allow_insecure_credentials: bool = False

    # Generation defaults for fresh settings
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database holding settings and history."""
        return self.path / "noteai.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    credentials = data.get("credentials", {})
    generation = data.get("generation", {})
    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        allow_insecure_credentials=bool(credentials.get("allow_insecure", False)),
        temperature=float(generation.get("temperature", DEFAULT_TEMPERATURE)),
        max_tokens=int(generation.get("max_tokens", DEFAULT_MAX_TOKENS)),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "credentials": {
            "allow_insecure": config.allow_insecure_credentials,
        },
        "generation": {
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    if (store_path / CONFIG_FILENAME).exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config


# -----------------------------------------------------------------------------
# AI settings
# -----------------------------------------------------------------------------

@dataclass
class AISettings:
    """Active configuration plus generation parameters."""
    active_config: ActiveConfig
    global_show_thinking: bool = True
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    stream: bool = True
    auto_save: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_config": self.active_config.to_dict(),
            "global_show_thinking": self.global_show_thinking,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
            "auto_save": self.auto_save,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AISettings":
        active = ActiveConfig.from_dict(data.get("active_config") or {})
        if not active.provider:
            active.provider = DEFAULT_PROVIDER
        if not active.model:
            active.model = _default_model_for(active.provider)
        return cls(
            active_config=active,
            global_show_thinking=bool(data.get("global_show_thinking", True)),
            temperature=float(data.get("temperature", DEFAULT_TEMPERATURE)),
            max_tokens=int(data.get("max_tokens", DEFAULT_MAX_TOKENS)),
            stream=bool(data.get("stream", True)),
            auto_save=bool(data.get("auto_save", True)),
        )


def _default_model_for(provider: str) -> str:
    if is_valid_provider_id(provider):
        return get_default_model(provider)
    return PROVIDERS[DEFAULT_PROVIDER].default_model


def default_settings(temperature: float = DEFAULT_TEMPERATURE,
                     max_tokens: int = DEFAULT_MAX_TOKENS) -> AISettings:
    """Settings used when nothing has been saved yet."""
    return AISettings(
        active_config=ActiveConfig(DEFAULT_PROVIDER, _default_model_for(DEFAULT_PROVIDER)),
        temperature=temperature,
        max_tokens=max_tokens,
    )


def needs_migration(data: dict[str, Any]) -> bool:
    """True if the stored settings use the legacy flat shape."""
    return "active_config" not in data and any(k in data for k in LEGACY_FIELDS)


def migrate_settings(data: dict[str, Any]) -> AISettings:
    """
    Convert legacy flat settings into AISettings.

    Missing model fields get the provider's default model. The model is
    not checked against the supported list here; that happens when the
    configuration is tested.
    """
    provider = data.get("provider") or DEFAULT_PROVIDER
    model = data.get("defaultModel") or _default_model_for(provider)
    return AISettings(
        active_config=ActiveConfig(provider=provider, model=model, applied_at=utc_now()),
        global_show_thinking=bool(data.get("showThinking", True)),
        temperature=float(data.get("temperature", DEFAULT_TEMPERATURE)),
        max_tokens=int(data.get("maxTokens", DEFAULT_MAX_TOKENS)),
        stream=bool(data.get("stream", True)),
        auto_save=bool(data.get("autoSave", True)),
    )


@dataclass
class SettingsReport:
    """Result of checking settings for problems."""
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_settings(settings: AISettings) -> SettingsReport:
    """Check settings for unknown providers and out-of-range parameters."""
    report = SettingsReport()
    active = settings.active_config

    if not active.provider:
        report.errors.append("No provider configured")
    elif not is_valid_provider_id(active.provider):
        report.errors.append(f"Unknown provider: {active.provider}")
    elif active.model not in PROVIDERS[active.provider].supported_models:
        report.warnings.append(
            f"Model {active.model} is not in the supported list for {active.provider}"
        )

    if not active.model:
        report.errors.append("No model configured")

    if not 0 <= settings.temperature <= 2:
        report.warnings.append(
            f"Temperature {settings.temperature} is outside the recommended range [0, 2]"
        )
    if not 1 <= settings.max_tokens <= MAX_TOKENS_LIMIT:
        report.warnings.append(
            f"max_tokens {settings.max_tokens} is outside [1, {MAX_TOKENS_LIMIT}]"
        )
    return report
