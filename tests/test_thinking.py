"""
Tests for thinking-chain detection and segmentation.
"""

import pytest

from noteai.thinking import (
    MAX_DETECTION_LENGTH,
    MAX_STEP_LENGTH,
    detect_from_stream_chunk,
    detect_from_text,
    detect_thinking_chain,
    infer_step_type,
    segment_thinking,
    stream_field_value,
    summarize_steps,
)
from noteai.types import DetectedFormat, StepType

REASONING = "Let me work through the request before answering it."


class TestDetectFromText:
    """Tag-embedded reasoning in response text."""

    @pytest.mark.parametrize("tag", ["thinking", "think", "reasoning", "thought"])
    def test_each_tag_variant_detected(self, tag):
        text = f"<{tag}>{REASONING}</{tag}>\nThe answer is 42."
        result = detect_from_text(text)
        assert result.has_thinking_chain
        assert result.thinking_content.raw_content == REASONING
        assert result.thinking_content.detected_format == DetectedFormat.XML_TAG
        assert result.clean_content == "The answer is 42."

    def test_tags_are_case_insensitive(self):
        result = detect_from_text(f"<THINK>{REASONING}</THINK>Done.")
        assert result.has_thinking_chain
        assert result.clean_content == "Done."

    def test_short_block_is_ignored(self):
        text = "<think>too short</think>Answer"
        result = detect_from_text(text)
        assert not result.has_thinking_chain
        assert result.thinking_content is None
        assert result.clean_content == text

    def test_no_block_returns_input_unchanged(self):
        text = "  A plain answer with surrounding space.  "
        result = detect_from_text(text)
        assert not result.has_thinking_chain
        assert result.clean_content == text

    def test_unterminated_tag_not_detected(self):
        result = detect_from_text(f"<thinking>{REASONING} and still going")
        assert not result.has_thinking_chain

    def test_thinking_tag_takes_precedence(self):
        other = "A different line of reasoning that is long enough."
        text = f"<think>{other}</think><thinking>{REASONING}</thinking>Answer"
        result = detect_from_text(text)
        assert result.thinking_content.raw_content == REASONING
        assert result.clean_content == f"<think>{other}</think>Answer"

    def test_empty_input(self):
        result = detect_from_text("")
        assert not result.has_thinking_chain
        assert result.clean_content == ""

    def test_block_past_scan_limit_ignored(self):
        text = "a" * MAX_DETECTION_LENGTH + f"<think>{REASONING}</think>tail"
        result = detect_from_text(text)
        assert not result.has_thinking_chain
        assert result.clean_content == text
        assert len(result.clean_content) == len(text)

    def test_block_straddling_scan_limit_ignored(self):
        text = "a" * (MAX_DETECTION_LENGTH - 10) + f"<think>{REASONING}</think>"
        result = detect_from_text(text)
        assert not result.has_thinking_chain
        assert result.clean_content == text

    def test_block_within_scan_limit_keeps_tail(self):
        tail = "b" * MAX_DETECTION_LENGTH
        result = detect_from_text(f"<think>{REASONING}</think>{tail}")
        assert result.has_thinking_chain
        assert result.thinking_content.raw_content == REASONING
        assert result.clean_content == tail

    def test_bilingual_response(self):
        text = (
            "答案。\n\n<thinking>\n"
            "分析：用户想要了解如何提高写作效率，需要给出具体可行的方法。\n"
            "因此，建议从制定计划和减少干扰两个方面入手。\n"
            "</thinking>\n\n最终结论："
        )
        result = detect_from_text(text)
        assert result.has_thinking_chain
        assert result.clean_content == "答案。\n\n最终结论："
        steps = result.thinking_content.steps
        assert len(steps) == 2
        assert [s.type for s in steps] == [StepType.ANALYSIS, StepType.REASONING]


class TestStreamChunks:
    """Side-channel reasoning fields in streaming chunks."""

    def test_nested_reasoning_content(self):
        value = "思考中的具体内容，长度足够进行检测和分析的文本"
        chunk = {"choices": [{"delta": {"reasoning_content": value}}]}
        assert detect_from_stream_chunk(chunk) == value

    def test_flat_field(self):
        chunk = {"thinking": f"  {REASONING}  "}
        assert detect_from_stream_chunk(chunk) == REASONING

    def test_field_name_precedence(self):
        chunk = {
            "thinking": "Thinking field text that is long enough.",
            "choices": [{"delta": {"reasoning_content": REASONING}}],
        }
        assert detect_from_stream_chunk(chunk) == REASONING

    def test_data_and_response_envelopes(self):
        assert detect_from_stream_chunk({"data": {"thought_process": REASONING}}) == REASONING
        assert detect_from_stream_chunk({"response": {"chain_of_thought": REASONING}}) == REASONING

    def test_short_value_rejected(self):
        assert detect_from_stream_chunk({"reasoning_content": "hmm"}) is None

    def test_absent_or_malformed(self):
        assert detect_from_stream_chunk({"choices": [{"delta": {"content": "hi"}}]}) is None
        assert detect_from_stream_chunk({"choices": []}) is None
        assert detect_from_stream_chunk("not a dict") is None
        assert detect_from_stream_chunk(None) is None

    def test_stream_field_value_has_no_length_guard(self):
        chunk = {"choices": [{"delta": {"reasoning_content": "Ok"}}]}
        assert stream_field_value(chunk) == "Ok"
        assert stream_field_value({"choices": [{"delta": {"content": "x"}}]}) is None


class TestCombinedDetection:
    """detect_thinking_chain over both channels."""

    def test_stream_channel_wins(self):
        result = detect_thinking_chain("Answer text", {"reasoning_content": REASONING})
        assert result.has_thinking_chain
        assert result.thinking_content.detected_format == DetectedFormat.JSON_FIELD
        assert result.clean_content == "Answer text"

    def test_falls_back_to_tags(self):
        result = detect_thinking_chain(f"<think>{REASONING}</think>Answer", {"content": "x"})
        assert result.thinking_content.detected_format == DetectedFormat.XML_TAG
        assert result.clean_content == "Answer"

    def test_both_channels_is_mixed(self):
        tagged = "Inline reasoning inside the answer text."
        result = detect_thinking_chain(f"<think>{tagged}</think>Answer", {"reasoning_content": REASONING})
        content = result.thinking_content
        assert content.detected_format == DetectedFormat.MIXED
        assert content.raw_content == f"{REASONING}\n\n{tagged}"
        assert result.clean_content == "Answer"

    def test_nothing(self):
        result = detect_thinking_chain()
        assert not result.has_thinking_chain
        assert result.clean_content == ""


class TestSegmentation:
    """Splitting reasoning text into typed steps."""

    def test_paragraphs_become_steps(self):
        text = (
            "First, consider what the user is asking for.\n\n"
            "Therefore the list should be short.\n\n"
            "In conclusion, three items are enough."
        )
        steps = segment_thinking(text, base_timestamp=1000)
        assert [s.type for s in steps] == [StepType.ANALYSIS, StepType.REASONING, StepType.CONCLUSION]
        assert [s.id for s in steps] == ["thinking_step_1", "thinking_step_2", "thinking_step_3"]
        assert [s.timestamp for s in steps] == [1000, 1001, 1002]
        assert summarize_steps(steps) == "3 steps (1 analysis, 1 reasoning, 1 conclusion)"

    def test_single_short_paragraph_is_one_step(self):
        steps = segment_thinking("Just one short thought. And a second sentence.")
        assert len(steps) == 1
        assert steps[0].content == "Just one short thought. And a second sentence."

    def test_cjk_sentences_merge_without_space(self):
        steps = segment_thinking("第一句话。第二句话。")
        assert len(steps) == 1
        assert steps[0].content == "第一句话。第二句话。"

    def test_long_text_is_bounded(self):
        text = "word " * 400
        steps = segment_thinking(text)
        assert len(steps) > 1
        assert all(len(s.content) <= MAX_STEP_LENGTH for s in steps)

    def test_empty(self):
        assert segment_thinking("") == []
        assert segment_thinking("   \n\n ") == []
        assert summarize_steps([]) == "No reasoning steps"

    def test_total_steps_matches(self):
        result = detect_from_text(f"<reasoning>{REASONING}\n\nSo the answer follows.</reasoning>ok")
        content = result.thinking_content
        assert content.total_steps == len(content.steps) == 2
        assert content.to_dict()["total_steps"] == 2


class TestStepTypes:
    """Keyword rule table for step classification."""

    @pytest.mark.parametrize("content,expected", [
        ("Let me analyze the data", StepType.ANALYSIS),
        ("观察到三个问题", StepType.ANALYSIS),
        ("Thus the result is 4", StepType.REASONING),
        ("所以应该先做计划", StepType.REASONING),
        ("Finally, we are done", StepType.CONCLUSION),
        ("综上，方案可行", StepType.CONCLUSION),
        ("Hmm, hold on a moment", StepType.THINKING),
    ])
    def test_infer(self, content, expected):
        assert infer_step_type(content) == expected

    def test_analysis_wins_over_later_rules(self):
        assert infer_step_type("Therefore, consider the conclusion") == StepType.ANALYSIS

    def test_summary_singular(self):
        steps = segment_thinking("Hmm, hold on a moment")
        assert summarize_steps(steps) == "1 step (1 thinking)"
