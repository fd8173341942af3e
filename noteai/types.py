"""
Data types for the generation pipeline.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.

    All timestamps in noteai are UTC, stored without timezone suffix.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def new_record_id() -> str:
    """Generate an id for a history record."""
    return f"gen_{uuid.uuid4().hex}"


class HistoryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class DetectedFormat(str, Enum):
    XML_TAG = "xml_tag"
    JSON_FIELD = "json_field"
    MIXED = "mixed"
    NONE = "none"


class StepType(str, Enum):
    THINKING = "thinking"
    ANALYSIS = "analysis"
    REASONING = "reasoning"
    CONCLUSION = "conclusion"


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

@dataclass
class ActiveConfig:
    """The (provider, model) pair currently used for generation."""
    provider: str
    model: str
    applied_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {"provider": self.provider, "model": self.model, "applied_at": self.applied_at}

    @classmethod
    def from_dict(cls, data: dict) -> "ActiveConfig":
        return cls(
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            applied_at=data.get("applied_at") or utc_now(),
        )


# -----------------------------------------------------------------------------
# Thinking chain
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ThinkingChainStep:
    """One step of a reasoning trace. Order in the chain is reasoning order."""
    id: str
    content: str
    timestamp: int
    type: StepType = StepType.THINKING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "timestamp": self.timestamp,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ThinkingChainStep":
        return cls(
            id=data["id"],
            content=data["content"],
            timestamp=int(data.get("timestamp", 0)),
            type=StepType(data.get("type", StepType.THINKING.value)),
        )


@dataclass
class ThinkingChainContent:
    """
    Structured reasoning content extracted from a response.

    Derived data: re-detection replaces the whole object rather than
    editing it. ``total_steps`` always equals ``len(steps)``.
    """
    steps: list[ThinkingChainStep]
    summary: str
    raw_content: str
    detected_format: DetectedFormat = DetectedFormat.NONE

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def to_dict(self) -> dict:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "summary": self.summary,
            "total_steps": self.total_steps,
            "raw_content": self.raw_content,
            "detected_format": self.detected_format.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ThinkingChainContent":
        return cls(
            steps=[ThinkingChainStep.from_dict(s) for s in data.get("steps", [])],
            summary=data.get("summary", ""),
            raw_content=data.get("raw_content", ""),
            detected_format=DetectedFormat(data.get("detected_format", "none")),
        )


@dataclass
class DetectionResult:
    """Outcome of scanning text and/or a stream chunk for reasoning content."""
    has_thinking_chain: bool
    thinking_content: Optional[ThinkingChainContent]
    clean_content: str


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------

@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TokenUsage":
        return cls(
            prompt_tokens=int(data.get("prompt_tokens", 0)),
            completion_tokens=int(data.get("completion_tokens", 0)),
            total_tokens=int(data.get("total_tokens", 0)),
        )


class CancelToken:
    """
    Soft cancellation flag for one generation request.

    The transport keeps running after cancel(); the orchestrator checks
    the flag before finalizing and drops the caller's callbacks.
    """

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


StreamCallback = Callable[[str, Optional[dict]], None]


@dataclass
class GenerationRequest:
    """
    A caller's request to generate note content.

    Transient: never persisted, but gives rise to exactly one HistoryRecord.

    Callbacks seen by the caller:
        on_stream(text, chunk): cumulative text so far, plus the raw chunk
        on_complete(content, record): final content (thinking removed) and
            the finalized HistoryRecord carrying the thinking chain
        on_error(error): a GenerationError
    """
    note_id: Optional[str]
    prompt: str
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: Optional[bool] = None
    on_stream: Optional[StreamCallback] = None
    on_complete: Optional[Callable[[str, "HistoryRecord"], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    cancel_token: Optional[CancelToken] = None


@dataclass
class GenerateOptions:
    """
    What a provider adapter receives from the orchestrator.

    Defaults are resolved, the API key is attached, and the callbacks
    are the orchestrator's wrappers. Adapters call:
        on_stream(cumulative_text, raw_chunk_dict_or_None)
        on_complete(final_text, token_usage_or_None)
        on_error(exception)
    """
    note_id: Optional[str]
    prompt: str
    model: str
    api_key: str
    temperature: float = 0.7
    max_tokens: int = 3500
    stream: bool = True
    on_stream: Optional[StreamCallback] = None
    on_complete: Optional[Callable[[str, Optional[TokenUsage]], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


@dataclass
class HistoryRecord:
    """
    Durable audit entry for one generation attempt.

    Created at request start with a snapshot of the then-active
    provider/model. Mutated in place while streaming, finalized once,
    then persisted once.
    """
    prompt: str
    provider: str
    model: str
    temperature: float
    max_tokens: int
    stream: bool
    note_id: Optional[str] = None
    id: str = field(default_factory=new_record_id)
    generated_content: str = ""
    thinking_chain: Optional[ThinkingChainContent] = None
    status: HistoryStatus = HistoryStatus.PENDING
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0
    token_usage: Optional[TokenUsage] = None
    created_at: str = field(default_factory=utc_now)

    @property
    def finalized(self) -> bool:
        return self.status != HistoryStatus.PENDING

    def finalize(
        self,
        status: HistoryStatus,
        *,
        duration_ms: int,
        error_message: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        """Set the terminal status. Raises if the record is already final."""
        if status == HistoryStatus.PENDING:
            raise ValueError("Cannot finalize a record as pending")
        if self.finalized:
            raise RuntimeError(
                f"History record {self.id} already finalized as {self.status.value}"
            )
        self.status = status
        self.duration_ms = duration_ms
        self.error_message = error_message
        self.error_kind = error_kind

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "note_id": self.note_id,
            "prompt": self.prompt,
            "provider": self.provider,
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": self.stream,
            "generated_content": self.generated_content,
            "thinking_chain": self.thinking_chain.to_dict() if self.thinking_chain else None,
            "status": self.status.value,
            "error_message": self.error_message,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
            "token_usage": self.token_usage.to_dict() if self.token_usage else None,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryRecord":
        thinking = data.get("thinking_chain")
        usage = data.get("token_usage")
        return cls(
            id=data["id"],
            note_id=data.get("note_id"),
            prompt=data.get("prompt", ""),
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(data.get("max_tokens", 0)),
            stream=bool(data.get("stream", True)),
            generated_content=data.get("generated_content", ""),
            thinking_chain=ThinkingChainContent.from_dict(thinking) if thinking else None,
            status=HistoryStatus(data.get("status", "pending")),
            error_message=data.get("error_message"),
            error_kind=data.get("error_kind"),
            duration_ms=int(data.get("duration_ms", 0)),
            token_usage=TokenUsage.from_dict(usage) if usage else None,
            created_at=data.get("created_at", ""),
        )


@dataclass
class CredentialRecord:
    """A stored (encrypted) API key for one provider."""
    provider: str
    encrypted_value: str
    cipher: str
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "encrypted_value": self.encrypted_value,
            "cipher": self.cipher,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CredentialRecord":
        return cls(
            provider=data["provider"],
            encrypted_value=data["encrypted_value"],
            cipher=data.get("cipher", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )
