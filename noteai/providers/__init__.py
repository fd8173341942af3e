"""Provider contract, registry, and vendor adapters."""

from .base import (
    PROVIDERS,
    AIProvider,
    ProviderId,
    ProviderRegistry,
    ProviderSpec,
    get_all_provider_ids,
    get_default_model,
    get_provider_spec,
    is_valid_provider_id,
    validate_api_key,
)

__all__ = [
    "PROVIDERS",
    "AIProvider",
    "ProviderId",
    "ProviderRegistry",
    "ProviderSpec",
    "get_all_provider_ids",
    "get_default_model",
    "get_provider_spec",
    "is_valid_provider_id",
    "validate_api_key",
]
