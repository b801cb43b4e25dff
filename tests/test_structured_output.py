# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for structured output extraction, repair and validation."""
import json

from reviewfix.prompts import (
    FIX_SUMMARY_END_TOKEN,
    FIX_SUMMARY_START_TOKEN,
    REVIEW_SUMMARY_END_TOKEN,
    REVIEW_SUMMARY_START_TOKEN,
)
from reviewfix.structured_output import (
    NO_CANDIDATES,
    NO_MATCH,
    close_unterminated,
    extract_balanced_objects,
    extract_json_block,
    parse_fix_summary,
    parse_review_summary,
    remove_trailing_commas,
)

_REVIEW = {
    "findings": [{
        "title": "Off by one",
        "body": "Loop skips the last element.",
        "confidence_score": 0.8,
        "priority": 1,
        "code_location": {"absolute_file_path": "/repo/a.py", "line_range": {"start": 3, "end": 5}},
    }],
    "overall_correctness": "patch is incorrect",
    "overall_explanation": "One bug.",
    "overall_confidence_score": 0.7,
}

_FIX = {
    "decision": "APPLY_SELECTIVELY",
    "fixes": [{
        "id": 1, "title": "Off by one", "priority": "P1", "file": "a.py",
        "claim": "Loop skips last", "evidence": "a.py:3", "fix": "Use <=",
    }],
    "skipped": [{"id": 2, "title": "Style", "reason": "Not worth it"}],
    "stop_iteration": False,
}


class TestExtraction:

    def test_json_block(self):
        text = "intro\n```json\n{\"a\": 1}\n```\noutro"
        assert extract_json_block(text) == '{"a": 1}'

    def test_json_block_missing(self):
        assert extract_json_block("no fences here") is None

    def test_balanced_objects_ignore_braces_in_strings(self):
        text = 'x {"a": "}{"} y {"b": {"c": 1}}'
        assert extract_balanced_objects(text) == ['{"a": "}{"}', '{"b": {"c": 1}}']


class TestRepair:

    def test_remove_trailing_commas(self):
        assert remove_trailing_commas('{"a": [1, 2,], }') == '{"a": [1, 2] }'

    def test_trailing_comma_inside_string_kept(self):
        assert remove_trailing_commas('{"a": ",}"}') == '{"a": ",}"}'

    def test_close_unterminated_string_and_brackets(self):
        repaired = close_unterminated('{"a": [1, 2], "b": "trunc')
        assert json.loads(repaired) == {"a": [1, 2], "b": "trunc"}

    def test_close_unterminated_dangling_key(self):
        repaired = close_unterminated('{"a": 1, "b":')
        assert json.loads(repaired) == {"a": 1, "b": None}

    def test_balanced_input_unchanged(self):
        assert close_unterminated('{"a": 1}') == '{"a": 1}'


class TestParseReviewSummary:

    def test_framed_payload(self):
        raw = "thinking...\n{}\n{}\n{}\ndone".format(
            REVIEW_SUMMARY_START_TOKEN, json.dumps(_REVIEW), REVIEW_SUMMARY_END_TOKEN,
        )
        result = parse_review_summary(None, raw)
        assert result.ok
        assert result.source == "framed"
        assert result.used_repair is False
        assert result.value.findings[0].title == "Off by one"

    def test_fenced_payload(self):
        raw = "Here you go:\n```json\n{}\n```".format(json.dumps(_REVIEW, indent=2))
        result = parse_review_summary(None, raw)
        assert result.ok
        assert result.source == "fenced"

    def test_extracted_text_preferred(self):
        result = parse_review_summary(json.dumps(_REVIEW), "garbage")
        assert result.ok
        assert result.source == "direct"

    def test_object_embedded_in_prose(self):
        raw = "My verdict: {} Thanks.".format(json.dumps(_REVIEW))
        result = parse_review_summary(None, raw)
        assert result.ok
        assert len(result.value.findings) == 1

    def test_smart_quotes_and_trailing_comma_repaired(self):
        payload = json.dumps(_REVIEW).replace('"overall_confidence_score"', "“overall_confidence_score”")
        payload = payload[:-1] + ",}"
        result = parse_review_summary(None, payload)
        assert result.ok
        assert result.used_repair is True

    def test_schema_mismatch(self):
        bad = dict(_REVIEW, overall_correctness="looks fine")
        result = parse_review_summary(None, json.dumps(bad))
        assert not result.ok
        assert result.failure_reason == NO_MATCH

    def test_strict_types(self):
        bad = dict(_REVIEW, overall_confidence_score="0.7")
        assert not parse_review_summary(None, json.dumps(bad)).ok

    def test_empty_output(self):
        result = parse_review_summary(None, "   ")
        assert not result.ok
        assert result.failure_reason == NO_CANDIDATES


class TestParseFixSummary:

    def test_framed(self):
        raw = "{}{}{}".format(FIX_SUMMARY_START_TOKEN, json.dumps(_FIX), FIX_SUMMARY_END_TOKEN)
        result = parse_fix_summary(None, raw)
        assert result.ok
        assert result.value.decision == "APPLY_SELECTIVELY"
        assert result.value.stop_iteration is False

    def test_truncated_payload_repaired(self):
        payload = json.dumps(dict(_FIX, stop_iteration=True))
        truncated = payload[:payload.rindex("}")]
        result = parse_fix_summary(None, truncated)
        assert result.ok
        assert result.used_repair is True
        assert result.value.stop_iteration is True

    def test_duplicate_ids_rejected(self):
        bad = dict(_FIX, skipped=[{"id": 1, "title": "dup", "reason": "x"}])
        assert not parse_fix_summary(None, json.dumps(bad)).ok

    def test_unknown_fields_ignored(self):
        extra = dict(_FIX, notes="extra")
        assert parse_fix_summary(None, json.dumps(extra)).ok

    def test_invalid_priority_rejected(self):
        fix = dict(_FIX["fixes"][0], priority="P9")
        assert not parse_fix_summary(None, json.dumps(dict(_FIX, fixes=[fix]))).ok

    def test_deeply_nested_payload_fails_cleanly(self):
        raw = '{"decision": ' + "[" * 100000
        result = parse_fix_summary(None, raw)
        assert not result.ok
