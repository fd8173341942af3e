"""
Error types, classification, and error logging for noteai.

Every failure that reaches a caller is normalized to a GenerationError
carrying a machine-readable kind, a generic user-facing message (never
naming the configured vendor), and the technical message for logs.
"""

import os
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    NETWORK = "NETWORK"
    PERMISSION = "PERMISSION"
    UNKNOWN = "UNKNOWN"


class NoteAIError(Exception):
    """Base class for noteai errors."""


class ProviderConfigError(NoteAIError, ValueError):
    """Unknown or unloadable provider."""


class CredentialStoreError(NoteAIError):
    """An API key could not be stored."""


class ProviderRequestError(NoteAIError):
    """
    A provider adapter's request failed.

    Adapters translate vendor SDK exceptions into this type so the
    classifier never has to know about vendor SDKs.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RecoveryAction:
    """
    A recovery option offered to the caller.

    Descriptors only: nothing here is executed automatically.
    """
    type: str  # "retry" | "switch_model" | "reconfigure"
    label: str
    description: str = ""
    primary: bool = False


class GenerationError(NoteAIError):
    """A normalized generation failure."""

    def __init__(
        self,
        kind: ErrorKind,
        technical_message: str,
        *,
        code: str = "AI_999",
        user_message: Optional[str] = None,
    ):
        super().__init__(technical_message)
        self.kind = kind
        self.code = code
        self.technical_message = technical_message
        self.user_message = user_message or USER_MESSAGES[kind]

    @property
    def recovery_actions(self) -> tuple[RecoveryAction, ...]:
        return RECOVERY_ACTIONS[self.kind]

    def __repr__(self) -> str:
        return f"GenerationError({self.kind.value}, {self.technical_message!r})"


# -----------------------------------------------------------------------------
# Classification tables
# -----------------------------------------------------------------------------

# Ordered: the first rule with a matching pattern wins.
# (code, kind, lowercase substrings)
ERROR_RULES: tuple[tuple[str, ErrorKind, tuple[str, ...]], ...] = (
    ("AI_001", ErrorKind.VALIDATION, ("api密钥未配置", "api key", "authentication", "no api key")),
    ("AI_002", ErrorKind.VALIDATION, ("invalid api key", "密钥无效", "unauthorized")),
    ("AI_003", ErrorKind.NETWORK, ("网络", "network", "timeout", "timed out", "fetch failed", "connection")),
    ("AI_004", ErrorKind.PERMISSION, ("quota", "额度", "rate limit", "billing", "insufficient")),
    ("AI_005", ErrorKind.NOT_FOUND, ("model", "模型", "service unavailable", "not found")),
    ("AI_006", ErrorKind.VALIDATION, ("prompt", "提示词", "input too long")),
    ("AI_007", ErrorKind.UNKNOWN, ("生成失败", "generation failed", "internal server error")),
)

STATUS_RULES: dict[int, tuple[str, ErrorKind]] = {
    400: ("AI_006", ErrorKind.VALIDATION),
    401: ("AI_002", ErrorKind.VALIDATION),
    402: ("AI_004", ErrorKind.PERMISSION),
    403: ("AI_004", ErrorKind.PERMISSION),
    404: ("AI_005", ErrorKind.NOT_FOUND),
    429: ("AI_004", ErrorKind.PERMISSION),
}

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "The AI service is not configured correctly. Check the API key and your input.",
    ErrorKind.NOT_FOUND: "The AI model is temporarily unavailable. Try again later or switch models.",
    ErrorKind.NETWORK: "Could not reach the AI service. Check your connection and try again.",
    ErrorKind.PERMISSION: "The AI service refused the request. Check your account quota or billing.",
    ErrorKind.UNKNOWN: "Something went wrong while generating. Please try again.",
}

RECOVERY_ACTIONS: dict[ErrorKind, tuple[RecoveryAction, ...]] = {
    ErrorKind.VALIDATION: (
        RecoveryAction("reconfigure", "Configure API key", "Open the AI settings", primary=True),
    ),
    ErrorKind.NOT_FOUND: (
        RecoveryAction("switch_model", "Switch model", "Pick another model or provider", primary=True),
        RecoveryAction("retry", "Retry"),
    ),
    ErrorKind.NETWORK: (
        RecoveryAction("retry", "Retry", "Send the request again", primary=True),
    ),
    ErrorKind.PERMISSION: (
        RecoveryAction("reconfigure", "Check account", "Review quota or use another key", primary=True),
        RecoveryAction("switch_model", "Switch model"),
    ),
    ErrorKind.UNKNOWN: (
        RecoveryAction("retry", "Retry", primary=True),
    ),
}


def classify_error(error: BaseException | str) -> GenerationError:
    """
    Normalize any failure into a GenerationError.

    Precedence: an existing GenerationError passes through; then the
    HTTP status of a ProviderRequestError; then builtin network errors;
    then the keyword rule table over the message; UNKNOWN otherwise.
    """
    if isinstance(error, GenerationError):
        return error

    message = error if isinstance(error, str) else (str(error) or type(error).__name__)

    if isinstance(error, ProviderRequestError) and error.status_code is not None:
        rule = STATUS_RULES.get(error.status_code)
        if rule is not None:
            code, kind = rule
            return GenerationError(kind, message, code=code)

    if isinstance(error, (TimeoutError, ConnectionError)):
        return GenerationError(ErrorKind.NETWORK, message, code="AI_003")

    if isinstance(error, ProviderConfigError):
        return GenerationError(ErrorKind.NOT_FOUND, message, code="AI_005")

    lowered = message.lower()
    for code, kind, patterns in ERROR_RULES:
        if any(p in lowered for p in patterns):
            return GenerationError(kind, message, code=code)

    return GenerationError(ErrorKind.UNKNOWN, message, code="AI_999")


# -----------------------------------------------------------------------------
# Error log
# -----------------------------------------------------------------------------

def _error_log_path() -> Path:
    """Resolve error log path, respecting NOTEAI_STORE_PATH."""
    store = os.environ.get("NOTEAI_STORE_PATH")
    if store:
        return Path(store) / "noteai-errors.log"
    return Path.home() / ".noteai" / "noteai-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
