"""
Per-provider API key storage.

Keys are kept in the settings table under ``api_key_<provider>`` as a
JSON record. The secret itself goes through a cipher:

- KeyringCipher: the OS keyring (macOS Keychain, Windows Credential
  Locker, Secret Service). The table only holds a reference.
- ObfuscatingCipher: reversible XOR + base64 inside the table. Not
  secure; only used when the store config sets
  ``[credentials] allow_insecure = true``.

When no keyring backend is usable and the insecure fallback is not
allowed, storing a key fails and nothing is written.
"""

import base64
import logging
import sqlite3
from typing import Optional, Protocol, runtime_checkable

import keyring
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import CredentialStoreError
from .providers.base import ProviderRegistry
from .settings_store import SettingsStore
from .types import CredentialRecord, utc_now

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "noteai"
KEY_PREFIX = "api_key_"


def credential_key(provider: str) -> str:
    """Settings-table key holding a provider's credential record."""
    return f"{KEY_PREFIX}{provider}"


# -----------------------------------------------------------------------------
# Ciphers
# -----------------------------------------------------------------------------

@runtime_checkable
class Cipher(Protocol):
    """Turns a plaintext API key into the value stored in the settings table."""

    name: str

    def encrypt(self, provider: str, plaintext: str) -> str:
        ...

    def decrypt(self, provider: str, stored: str) -> str:
        ...

    def forget(self, provider: str) -> None:
        """Drop any secret held outside the settings table."""
        ...


class KeyringCipher:
    """Stores the secret in the OS keyring; the table keeps a reference."""

    name = "keyring"

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def encrypt(self, provider: str, plaintext: str) -> str:
        username = credential_key(provider)
        keyring.set_password(self.service, username, plaintext)
        return f"keyring:{self.service}/{username}"

    def decrypt(self, provider: str, stored: str) -> str:
        secret = keyring.get_password(self.service, credential_key(provider))
        if secret is None:
            raise CredentialStoreError(f"Keyring has no entry for {stored}")
        return secret

    def forget(self, provider: str) -> None:
        try:
            keyring.delete_password(self.service, credential_key(provider))
        except PasswordDeleteError:
            pass  # Already gone


class ObfuscatingCipher:
    """
    XOR + base64. Reversible by anyone with this source: obfuscation only.
    """

    name = "xor-base64"

    _PAD = b"noteai-local-credential-obfuscation"

    def _xor(self, data: bytes) -> bytes:
        return bytes(b ^ self._PAD[i % len(self._PAD)] for i, b in enumerate(data))

    def encrypt(self, provider: str, plaintext: str) -> str:
        return base64.b64encode(self._xor(plaintext.encode("utf-8"))).decode("ascii")

    def decrypt(self, provider: str, stored: str) -> str:
        try:
            return self._xor(base64.b64decode(stored, validate=True)).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise CredentialStoreError(f"Corrupt credential for {provider}: {e}") from e

    def forget(self, provider: str) -> None:
        pass


CIPHERS: dict[str, type] = {
    KeyringCipher.name: KeyringCipher,
    ObfuscatingCipher.name: ObfuscatingCipher,
}


def keyring_available() -> bool:
    """True if the active keyring backend can actually store secrets."""
    try:
        backend = keyring.get_keyring()
        return not isinstance(backend, fail.Keyring) and backend.priority > 0
    except Exception as e:
        logger.debug("Keyring backend check failed: %s", e)
        return False


def get_keyring_backend_name() -> str:
    backend = keyring.get_keyring()
    return f"{type(backend).__module__}.{type(backend).__name__}"


def select_cipher(allow_insecure: bool = False) -> Cipher:
    """
    Pick the cipher for new credentials.

    Raises:
        CredentialStoreError: No usable keyring and insecure storage not allowed
    """
    if keyring_available():
        return KeyringCipher()
    if allow_insecure:
        logger.warning("No OS keyring available; storing API keys with reversible obfuscation")
        return ObfuscatingCipher()
    raise CredentialStoreError(
        "No secure credential storage is available (no OS keyring backend). "
        "Set [credentials] allow_insecure = true in noteai.toml to store keys "
        "with reversible obfuscation instead."
    )


# -----------------------------------------------------------------------------
# Credential store
# -----------------------------------------------------------------------------

class CredentialStore:
    """
    Stores and retrieves API keys per provider.

    Read failures are logged and reported as "no key". Write failures
    raise CredentialStoreError.
    """

    def __init__(
        self,
        settings: SettingsStore,
        registry: ProviderRegistry,
        cipher: Optional[Cipher] = None,
        allow_insecure: bool = False,
    ):
        """
        Args:
            settings: Key/value table the records are written to
            registry: Used for provider id and key format checks
            cipher: Fixed cipher for new keys. When None, one is selected
                on each write with select_cipher().
            allow_insecure: Passed to select_cipher()
        """
        self._settings = settings
        self._registry = registry
        self._cipher = cipher
        self._allow_insecure = allow_insecure

    def validate_api_key(self, provider: str, api_key: str) -> bool:
        return self._registry.validate_api_key(provider, api_key)

    def set_api_key(self, provider: str, api_key: str) -> None:
        """
        Encrypt and store the key for provider, replacing any existing one.

        Raises:
            ProviderConfigError: Unknown provider
            CredentialStoreError: The key could not be stored
        """
        self._registry.get_provider_spec(provider)
        if not api_key:
            raise CredentialStoreError("Refusing to store an empty API key")

        cipher = self._cipher or select_cipher(self._allow_insecure)
        existing = self._read_record(provider)
        try:
            stored = cipher.encrypt(provider, api_key)
        except KeyringError as e:
            raise CredentialStoreError(f"Could not write API key for {provider} to keyring: {e}") from e

        now = utc_now()
        record = CredentialRecord(
            provider=provider,
            encrypted_value=stored,
            cipher=cipher.name,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        try:
            self._settings.set(credential_key(provider), record.to_dict())
        except sqlite3.Error as e:
            raise CredentialStoreError(f"Could not save API key for {provider}: {e}") from e

        # A key moved between ciphers must not leave the old secret behind
        if existing and existing.cipher != cipher.name:
            self._cipher_for(existing).forget(provider)
        logger.info("Stored API key for %s (%s)", provider, cipher.name)

    def get_api_key(self, provider: str) -> Optional[str]:
        """Decrypted key for provider, or None if absent or unreadable."""
        record = self._read_record(provider)
        if record is None:
            return None
        try:
            return self._cipher_for(record).decrypt(provider, record.encrypted_value)
        except (CredentialStoreError, KeyringError) as e:
            logger.warning("Could not read API key for %s: %s", provider, e)
            return None

    def has_api_key(self, provider: str) -> bool:
        return self.get_api_key(provider) is not None

    def clear_api_key(self, provider: str) -> bool:
        """Remove the stored key. Returns True if one was stored."""
        record = self._read_record(provider)
        if record is not None:
            try:
                self._cipher_for(record).forget(provider)
            except (CredentialStoreError, KeyringError) as e:
                logger.warning("Could not remove stored secret for %s: %s", provider, e)
        removed = self._settings.delete(credential_key(provider))
        if removed:
            logger.info("Cleared API key for %s", provider)
        return removed

    def configured_providers(self) -> list[str]:
        """Provider ids that have a credential record."""
        return [k[len(KEY_PREFIX):] for k in self._settings.keys(KEY_PREFIX)]

    def _read_record(self, provider: str) -> Optional[CredentialRecord]:
        data = self._settings.get(credential_key(provider))
        if data is None:
            return None
        try:
            return CredentialRecord.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning("Corrupt credential record for %s: %s", provider, e)
            return None

    def _cipher_for(self, record: CredentialRecord) -> Cipher:
        if self._cipher is not None and self._cipher.name == record.cipher:
            return self._cipher
        cipher_class = CIPHERS.get(record.cipher)
        if cipher_class is None:
            raise CredentialStoreError(f"Unknown cipher '{record.cipher}' for {record.provider}")
        return cipher_class()
