"""
Thinking-chain detection and segmentation.

Vendors expose a model's reasoning trace through one of two channels:

- Embedded tags in the response text, e.g. ``<thinking>...</thinking>``
  or ``<think>...</think>`` (reasoning models).
- A side-channel field in each streaming chunk, e.g.
  ``choices[0].delta.reasoning_content``.

All functions here are stateless. Detection returns the reasoning text
split into ordered, typed steps plus the response with the reasoning
block removed.
"""

import re
import time
from collections.abc import Mapping
from typing import Any, Optional

from .types import (
    DetectedFormat,
    DetectionResult,
    StepType,
    ThinkingChainContent,
    ThinkingChainStep,
)

# Shorter candidates are treated as noise (stray tags, partial tokens)
MIN_THINKING_LENGTH = 20

# Input beyond this is not scanned, bounding regex cost on huge responses
MAX_DETECTION_LENGTH = 100_000

# Segmentation thresholds (characters)
MERGE_TARGET_LENGTH = 200
MAX_STEP_LENGTH = 500

# Tag variants in precedence order. <think> is the reasoning-model form.
THINKING_TAGS = ("thinking", "think", "reasoning", "thought")

_TAG_PATTERNS = tuple(
    re.compile(rf"<{tag}>(.*?)</{tag}>", re.IGNORECASE | re.DOTALL)
    for tag in THINKING_TAGS
)

# Side-channel field names in precedence order
STREAM_FIELDS = (
    "reasoning_content",
    "thinking",
    "thought_process",
    "chain_of_thought",
    "internal_thoughts",
)

# Envelopes a field may be nested under, checked after the flat key
_STREAM_ENVELOPES: tuple[tuple[Any, ...], ...] = (
    ("choices", 0, "delta"),
    ("choices", 0, "message"),
    ("data",),
    ("response",),
)

# Ordered rule table: the first step type with a matching keyword wins.
STEP_TYPE_RULES: tuple[tuple[StepType, tuple[str, ...]], ...] = (
    (StepType.ANALYSIS, (
        "分析", "观察", "考虑", "注意到", "发现", "检查", "查看",
        "analy", "observ", "consider", "notice", "check",
    )),
    (StepType.REASONING, (
        "因此", "所以", "推断", "推理", "得出", "可以", "能够", "应该",
        "therefore", "thus", "deduce", "infer", "reason",
    )),
    (StepType.CONCLUSION, (
        "结论", "总结", "综上", "最终", "总之", "总的来说",
        "conclusion", "conclude", "summary", "finally", "overall",
    )),
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")

# A sentence ends at CJK punctuation, or Latin punctuation followed by
# whitespace or end of line (so "3.14" is not split)
_SENTENCE_RE = re.compile(r".+?(?:[。！？；]+|[.!?;]+(?=\s|$)|$)")

_CJK_TERMINATORS = "。！？；"


# -----------------------------------------------------------------------------
# Detection
# -----------------------------------------------------------------------------

def _remove_block(text: str, start: int, end: int) -> str:
    """Cut text[start:end] out, collapsing the seam to one blank line."""
    before, after = text[:start], text[end:]
    if before.endswith("\n") and after.startswith("\n"):
        return f"{before.rstrip(chr(10))}\n\n{after.lstrip(chr(10))}".strip()
    return (before + after).strip()


def _find_tag_block(text: str) -> Optional[tuple[str, int, int]]:
    """First tag variant whose first block is long enough: (inner, start, end)."""
    scanned = text[:MAX_DETECTION_LENGTH]
    for pattern in _TAG_PATTERNS:
        match = pattern.search(scanned)
        if match is None:
            continue
        inner = match.group(1).strip()
        if len(inner) >= MIN_THINKING_LENGTH:
            return inner, match.start(), match.end()
    return None


def detect_from_text(content: Optional[str]) -> DetectionResult:
    """
    Detect a tagged reasoning block in finished or partial response text.

    Args:
        content: Response text

    Returns:
        DetectionResult; clean_content is the text without the block,
        trimmed. Without a block, clean_content is the input unchanged.
    """
    if not content or not isinstance(content, str):
        return DetectionResult(False, None, content if isinstance(content, str) else "")

    found = _find_tag_block(content)
    if found is None:
        return DetectionResult(False, None, content)

    inner, start, end = found
    return DetectionResult(
        has_thinking_chain=True,
        thinking_content=build_thinking_content(inner, DetectedFormat.XML_TAG),
        clean_content=_remove_block(content, start, end),
    )


def _lookup(chunk: Mapping, path: tuple) -> Any:
    current: Any = chunk
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def _stream_candidates(chunk: Any):
    """Yield string values of known fields in precedence order."""
    if not isinstance(chunk, Mapping):
        return
    for name in STREAM_FIELDS:
        for envelope in ((),) + _STREAM_ENVELOPES:
            value = _lookup(chunk, envelope + (name,))
            if isinstance(value, str):
                yield value


def stream_field_value(chunk: Any) -> Optional[str]:
    """
    Raw side-channel reasoning text carried by one chunk, if any.

    No length guard: streaming deltas are often a single token. Used to
    accumulate reasoning across a stream.
    """
    for value in _stream_candidates(chunk):
        if value:
            return value
    return None


def detect_from_stream_chunk(chunk: Any) -> Optional[str]:
    """
    Detect reasoning text in a streaming chunk.

    Looks for each known field name flat, then nested under
    ``choices[0].delta``, ``data`` and ``response``.

    Returns:
        The first value whose trimmed length reaches MIN_THINKING_LENGTH,
        trimmed; None if there is none.
    """
    for value in _stream_candidates(chunk):
        trimmed = value.strip()
        if len(trimmed) >= MIN_THINKING_LENGTH:
            return trimmed
    return None


def detect_thinking_chain(
    text: Optional[str] = None,
    chunk: Any = None,
) -> DetectionResult:
    """
    Combined detection over a stream chunk and/or response text.

    The stream channel is checked first: a side-channel field is an
    unambiguous signal, while tag scanning of partial text can hit an
    unterminated tag. If both channels carry reasoning the result is
    ``mixed`` and the tag block is still removed from the text.
    """
    streamed = detect_from_stream_chunk(chunk) if chunk is not None else None
    if streamed is None:
        if text:
            return detect_from_text(text)
        return DetectionResult(False, None, text or "")

    from_text = detect_from_text(text) if text else None
    if from_text is not None and from_text.has_thinking_chain:
        raw = f"{streamed}\n\n{from_text.thinking_content.raw_content}"
        return DetectionResult(
            has_thinking_chain=True,
            thinking_content=build_thinking_content(raw, DetectedFormat.MIXED),
            clean_content=from_text.clean_content,
        )
    return DetectionResult(
        has_thinking_chain=True,
        thinking_content=build_thinking_content(streamed, DetectedFormat.JSON_FIELD),
        clean_content=text or "",
    )


def build_thinking_content(
    raw_content: str,
    detected_format: DetectedFormat,
    base_timestamp: Optional[int] = None,
) -> ThinkingChainContent:
    """Segment raw reasoning text into a ThinkingChainContent."""
    steps = segment_thinking(raw_content, base_timestamp=base_timestamp)
    return ThinkingChainContent(
        steps=steps,
        summary=summarize_steps(steps),
        raw_content=raw_content,
        detected_format=detected_format,
    )


# -----------------------------------------------------------------------------
# Segmentation
# -----------------------------------------------------------------------------

def _join_sentences(current: str, sentence: str) -> str:
    if not current:
        return sentence
    sep = "" if current[-1] in _CJK_TERMINATORS else " "
    return f"{current}{sep}{sentence}"


def _split_sentences(text: str) -> list[str]:
    """
    Split on sentence boundaries, merging short neighbours.

    Line breaks are hard boundaries. Within a line, consecutive sentences
    are merged while the chunk stays under MERGE_TARGET_LENGTH.
    """
    chunks: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        current = ""
        for sentence in _SENTENCE_RE.findall(line):
            sentence = sentence.strip()
            if not sentence:
                continue
            if current and len(current) + len(sentence) >= MERGE_TARGET_LENGTH:
                chunks.append(current)
                current = sentence
            else:
                current = _join_sentences(current, sentence)
        if current:
            chunks.append(current)
    return chunks or [text.strip()]


def _hard_wrap(text: str) -> list[str]:
    """Split text with no usable sentence boundary into bounded pieces."""
    pieces = []
    while len(text) > MAX_STEP_LENGTH:
        cut = text.rfind(" ", 0, MAX_STEP_LENGTH)
        if cut <= 0:
            cut = MAX_STEP_LENGTH
        pieces.append(text[:cut].strip())
        text = text[cut:].strip()
    if text:
        pieces.append(text)
    return pieces


def _split_long(chunk: str) -> list[str]:
    if len(chunk) <= MAX_STEP_LENGTH:
        return [chunk]
    pieces = _split_sentences(chunk)
    if len(pieces) == 1:
        return _hard_wrap(pieces[0])
    result = []
    for piece in pieces:
        result.extend(_split_long(piece))
    return result


def segment_thinking(content: str, base_timestamp: Optional[int] = None) -> list[ThinkingChainStep]:
    """
    Split reasoning text into ordered steps.

    Paragraphs (blank-line separated) are the primary unit. With fewer
    than two paragraphs the text is re-split by sentence. Any chunk over
    MAX_STEP_LENGTH is split again.

    Args:
        content: Reasoning text
        base_timestamp: Epoch milliseconds of the first step. Steps get
            base + index, since real per-step timing is not available.
    """
    if not content or not content.strip():
        return []

    text = content.strip()
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
    if len(paragraphs) < 2:
        paragraphs = _split_sentences(text)

    chunks: list[str] = []
    for paragraph in paragraphs:
        chunks.extend(_split_long(paragraph))

    base = int(time.time() * 1000) if base_timestamp is None else base_timestamp
    return [
        ThinkingChainStep(
            id=f"thinking_step_{i + 1}",
            content=chunk,
            timestamp=base + i,
            type=infer_step_type(chunk),
        )
        for i, chunk in enumerate(chunks)
    ]


def infer_step_type(content: str) -> StepType:
    """Classify a step by the first matching rule in STEP_TYPE_RULES."""
    lowered = content.lower()
    for step_type, keywords in STEP_TYPE_RULES:
        if any(k in lowered for k in keywords):
            return step_type
    return StepType.THINKING


def summarize_steps(steps: list[ThinkingChainStep]) -> str:
    """Short label for a collapsed thinking chain, e.g. "3 steps (2 analysis, 1 conclusion)"."""
    if not steps:
        return "No reasoning steps"

    counts: dict[StepType, int] = {}
    for step in steps:
        counts[step.type] = counts.get(step.type, 0) + 1

    order = [rule[0] for rule in STEP_TYPE_RULES] + [StepType.THINKING]
    breakdown = ", ".join(f"{counts[t]} {t.value}" for t in order if t in counts)
    noun = "step" if len(steps) == 1 else "steps"
    return f"{len(steps)} {noun} ({breakdown})"
