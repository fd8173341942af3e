"""
noteai - AI content generation for sticky notes.

Streams generation from pluggable providers, separates the model's
thinking chain from the answer, and records every attempt.

Quick start:
    from noteai import open_context, GenerationRequest

    with open_context() as ctx:
        ctx.service.apply_configuration("deepseek", "deepseek-reasoner")
        record = await ctx.service.generate_note(
            GenerationRequest(note_id="n1", prompt="Plan my week")
        )
"""

__version__ = "0.3.0"

from .api import GenerationService, NoteAIContext, open_context
from .errors import ErrorKind, GenerationError, classify_error
from .providers.base import AIProvider, ProviderRegistry
from .thinking import detect_thinking_chain
from .types import (
    CancelToken,
    GenerateOptions,
    GenerationRequest,
    HistoryRecord,
    HistoryStatus,
    ThinkingChainContent,
    ThinkingChainStep,
)

__all__ = [
    "__version__",
    "AIProvider",
    "CancelToken",
    "ErrorKind",
    "GenerateOptions",
    "GenerationError",
    "GenerationRequest",
    "GenerationService",
    "HistoryRecord",
    "HistoryStatus",
    "NoteAIContext",
    "ProviderRegistry",
    "ThinkingChainContent",
    "ThinkingChainStep",
    "classify_error",
    "detect_thinking_chain",
    "open_context",
]
