"""
Tests for API key storage.
"""

import keyring
import pytest
from keyring.backends import fail

from noteai.credentials import (
    CredentialStore,
    KeyringCipher,
    ObfuscatingCipher,
    keyring_available,
    select_cipher,
)
from noteai.errors import CredentialStoreError, ProviderConfigError
from noteai.providers.base import ProviderRegistry
from noteai.settings_store import SettingsStore

from .conftest import DEEPSEEK_KEY, ZHIPU_KEY


@pytest.fixture
def settings(tmp_path):
    store = SettingsStore(tmp_path / "noteai.db")
    yield store
    store.close()


@pytest.fixture
def creds(settings):
    return CredentialStore(settings, ProviderRegistry())


@pytest.fixture
def no_keyring():
    keyring.set_keyring(fail.Keyring())


class TestKeyringStorage:
    """Default path: secrets in the OS keyring."""

    def test_round_trip(self, creds, settings, memory_keyring):
        creds.set_api_key("deepseek", DEEPSEEK_KEY)
        assert creds.get_api_key("deepseek") == DEEPSEEK_KEY
        assert creds.has_api_key("deepseek")

        record = settings.get("api_key_deepseek")
        assert record["cipher"] == "keyring"
        assert record["provider"] == "deepseek"
        assert DEEPSEEK_KEY not in record["encrypted_value"]
        assert ("noteai", "api_key_deepseek") in memory_keyring.passwords

    def test_missing_key(self, creds):
        assert creds.get_api_key("zhipu") is None
        assert not creds.has_api_key("zhipu")

    def test_update_keeps_created_at(self, creds, settings):
        creds.set_api_key("zhipu", ZHIPU_KEY)
        first = settings.get("api_key_zhipu")
        creds.set_api_key("zhipu", ZHIPU_KEY + "2")
        second = settings.get("api_key_zhipu")
        assert second["created_at"] == first["created_at"]
        assert creds.get_api_key("zhipu") == ZHIPU_KEY + "2"

    def test_clear(self, creds, memory_keyring):
        creds.set_api_key("deepseek", DEEPSEEK_KEY)
        assert creds.clear_api_key("deepseek")
        assert creds.get_api_key("deepseek") is None
        assert memory_keyring.passwords == {}
        assert not creds.clear_api_key("deepseek")

    def test_keyring_entry_removed_externally(self, creds, memory_keyring):
        creds.set_api_key("deepseek", DEEPSEEK_KEY)
        memory_keyring.passwords.clear()
        assert creds.get_api_key("deepseek") is None

    def test_corrupt_record_reads_as_missing(self, creds, settings):
        settings.set("api_key_deepseek", {"unexpected": True})
        assert creds.get_api_key("deepseek") is None

    def test_unknown_provider_rejected(self, creds):
        with pytest.raises(ProviderConfigError):
            creds.set_api_key("nope", DEEPSEEK_KEY)

    def test_empty_key_rejected(self, creds, settings):
        with pytest.raises(CredentialStoreError):
            creds.set_api_key("deepseek", "")
        assert settings.get("api_key_deepseek") is None

    def test_configured_providers(self, creds):
        creds.set_api_key("deepseek", DEEPSEEK_KEY)
        creds.set_api_key("zhipu", ZHIPU_KEY)
        assert sorted(creds.configured_providers()) == ["deepseek", "zhipu"]

    def test_validate_delegates_to_registry(self, creds):
        assert creds.validate_api_key("deepseek", DEEPSEEK_KEY)
        assert not creds.validate_api_key("deepseek", "nope")


class TestCipherSelection:
    """Fail-closed behaviour without a keyring."""

    def test_keyring_selected_when_available(self):
        assert keyring_available()
        assert isinstance(select_cipher(), KeyringCipher)

    def test_fails_closed_without_keyring(self, no_keyring, creds, settings):
        assert not keyring_available()
        with pytest.raises(CredentialStoreError, match="allow_insecure"):
            creds.set_api_key("deepseek", DEEPSEEK_KEY)
        assert settings.get("api_key_deepseek") is None

    def test_insecure_fallback_when_allowed(self, no_keyring, settings):
        creds = CredentialStore(settings, ProviderRegistry(), allow_insecure=True)
        creds.set_api_key("deepseek", DEEPSEEK_KEY)
        record = settings.get("api_key_deepseek")
        assert record["cipher"] == "xor-base64"
        assert record["encrypted_value"] != DEEPSEEK_KEY
        assert creds.get_api_key("deepseek") == DEEPSEEK_KEY

    def test_explicit_cipher(self, settings):
        creds = CredentialStore(settings, ProviderRegistry(), cipher=ObfuscatingCipher())
        creds.set_api_key("zhipu", ZHIPU_KEY)
        assert settings.get("api_key_zhipu")["cipher"] == "xor-base64"
        assert creds.get_api_key("zhipu") == ZHIPU_KEY


class TestObfuscatingCipher:

    def test_reversible(self):
        cipher = ObfuscatingCipher()
        stored = cipher.encrypt("deepseek", "密钥-secret")
        assert stored != "密钥-secret"
        assert cipher.decrypt("deepseek", stored) == "密钥-secret"

    def test_corrupt_value(self):
        with pytest.raises(CredentialStoreError):
            ObfuscatingCipher().decrypt("deepseek", "not base64 !!")
