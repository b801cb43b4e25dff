# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Extraction and validation of the JSON summary embedded in agent output.

Agents answer in free-form text that should contain one JSON payload. The
parser looks for it in several places, validates it against the expected
schema, and applies a mechanical repair pass before giving up. Malformed
output is an expected condition: every failure comes back as a
``StructuredParseResult`` with a reason string, never as an exception.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Generic, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from reviewfix.models import FixSummary, ReviewSummary
from reviewfix.prompts import (
    FIX_SUMMARY_END_TOKEN,
    FIX_SUMMARY_START_TOKEN,
    REVIEW_SUMMARY_END_TOKEN,
    REVIEW_SUMMARY_START_TOKEN,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

SOURCE_FRAMED = "framed"
SOURCE_FENCED = "fenced"
SOURCE_DIRECT = "direct"
SOURCE_BALANCED = "balanced"

NO_CANDIDATES = "no output candidates available for parsing"
NO_MATCH = "no structured output candidate matched the required schema"

_JSON_BLOCK_RE = re.compile(r"```json[ \t]*\r?\n(.*?)\r?\n[ \t]*```", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*\n(.*?)\n```$", re.DOTALL | re.IGNORECASE)
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\u2060]")
_DOUBLE_QUOTES_RE = re.compile("[\u201c\u201d\u201e\u201f\u00ab\u00bb]")
_SINGLE_QUOTES_RE = re.compile("[\u2018\u2019\u201a\u201b]")


@dataclass(frozen=True)
class StructuredParseResult(Generic[T]):
    """Typed outcome of a parse: either a value or a failure reason."""
    ok: bool
    value: Optional[T] = None
    source: Optional[str] = None
    used_repair: bool = False
    failure_reason: Optional[str] = None

    @classmethod
    def success(cls, value: T, source: str, used_repair: bool = False) -> "StructuredParseResult[T]":
        return cls(ok=True, value=value, source=source, used_repair=used_repair)

    @classmethod
    def failure(cls, reason: str, used_repair: bool = False) -> "StructuredParseResult[T]":
        return cls(ok=False, used_repair=used_repair, failure_reason=reason)


# ── Candidate extraction ──────────────────────────────────────


def extract_json_block(text: str) -> Optional[str]:
    """Return the body of the first ```json fenced block, if any."""
    match = _JSON_BLOCK_RE.search(text)
    if not match or not match.group(1).strip():
        return None
    return match.group(1).strip()


def extract_framed_payload(text: str, start_token: str, end_token: str) -> Optional[str]:
    start = text.find(start_token)
    if start < 0:
        return None
    begin = start + len(start_token)
    end = text.find(end_token, begin)
    if end < 0:
        return None
    return text[begin:end].strip()


def extract_balanced_objects(text: str) -> List[str]:
    """Return every top-level ``{...}`` span, string-aware, in order."""
    objects = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if in_string:
            if char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                objects.append(text[start:index + 1])
                start = -1
    return objects


def _build_candidates(
    extracted_text: Optional[str],
    raw_output: str,
    start_token: str,
    end_token: str,
) -> List[Tuple[str, str]]:
    texts = []
    for text in (extracted_text, raw_output):
        if text and text.strip() and text.strip() not in texts:
            texts.append(text.strip())

    candidates: List[Tuple[str, str]] = []
    seen = set()

    def add(source: str, payload: Optional[str]) -> None:
        if not payload or not payload.strip():
            return
        key = (source, payload.strip())
        if key in seen:
            return
        seen.add(key)
        candidates.append(key)

    for text in texts:
        add(SOURCE_FRAMED, extract_framed_payload(text, start_token, end_token))
    for text in texts:
        add(SOURCE_FENCED, extract_json_block(text))
    for text in texts:
        add(SOURCE_DIRECT, text)
    for text in texts:
        for obj in extract_balanced_objects(text):
            add(SOURCE_BALANCED, obj)
    return candidates


# ── Repair pass ───────────────────────────────────────────────


def _normalize_text(candidate: str) -> str:
    text = candidate.lstrip("\ufeff")
    text = _ZERO_WIDTH_RE.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def _normalize_quotes(candidate: str) -> str:
    return _SINGLE_QUOTES_RE.sub("'", _DOUBLE_QUOTES_RE.sub('"', candidate))


def _unwrap_fence(candidate: str) -> str:
    match = _FENCE_RE.match(candidate)
    return match.group(1).strip() if match else candidate


def _isolate_object(candidate: str) -> str:
    objects = extract_balanced_objects(candidate)
    if objects:
        return objects[-1].strip()
    start = candidate.find("{")
    # A truncated payload never balances; keep everything from its opening brace.
    return candidate[start:] if start >= 0 else candidate


def remove_trailing_commas(candidate: str) -> str:
    out = []
    in_string = False
    escaped = False
    length = len(candidate)
    for index, char in enumerate(candidate):
        if escaped:
            out.append(char)
            escaped = False
            continue
        if char == "\\":
            out.append(char)
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            out.append(char)
            continue
        if in_string or char != ",":
            out.append(char)
            continue
        look = index + 1
        while look < length and candidate[look].isspace():
            look += 1
        if look < length and candidate[look] in "}]":
            continue
        out.append(char)
    return "".join(out)


def close_unterminated(candidate: str) -> str:
    """Close a dangling string and any brackets left open at end of input."""
    stack = []
    in_string = False
    escaped = False
    for char in candidate:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if in_string:
            if char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()
    if not in_string and not stack:
        return candidate
    repaired = candidate
    if escaped:
        repaired = repaired[:-1]
    if in_string:
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(":"):
        repaired += " null"
    while repaired.endswith(","):
        repaired = repaired[:-1].rstrip()
    return repaired + "".join(reversed(stack))


def repair_candidate(candidate: str) -> Tuple[str, bool]:
    """Apply the deterministic repair pipeline. Returns (payload, changed)."""
    text = _normalize_text(candidate)
    text = _unwrap_fence(text)
    text = _normalize_quotes(text)
    text = _isolate_object(text)
    text = remove_trailing_commas(text)
    text = close_unterminated(text)
    text = remove_trailing_commas(text).strip()
    return text, text != candidate.strip()


# ── Validation ────────────────────────────────────────────────


def _validate(payload: str, model: Type[T]) -> Optional[T]:
    try:
        data = json.loads(payload)
    except (ValueError, RecursionError) as e:
        logger.debug("%s candidate is not JSON: %s", model.__name__, str(e)[:200])
        return None
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate_json(json.dumps(data), strict=True)
    except ValidationError as e:
        logger.debug("%s candidate rejected: %s", model.__name__, e.errors()[:3])
        return None
    except RecursionError:
        logger.debug("%s candidate nested too deeply", model.__name__)
        return None


def _parse_structured(
    extracted_text: Optional[str],
    raw_output: str,
    start_token: str,
    end_token: str,
    model: Type[T],
) -> StructuredParseResult[T]:
    candidates = _build_candidates(extracted_text, raw_output or "", start_token, end_token)
    repair_attempted = False

    for source, payload in candidates:
        value = _validate(payload, model)
        if value is not None:
            return StructuredParseResult.success(value, source)

        repaired, changed = repair_candidate(payload)
        if not changed:
            continue
        repair_attempted = True
        value = _validate(repaired, model)
        if value is not None:
            logger.info("Parsed %s from %s candidate after repair", model.__name__, source)
            return StructuredParseResult.success(value, source, used_repair=True)

    reason = NO_CANDIDATES if not candidates else NO_MATCH
    return StructuredParseResult.failure(reason, used_repair=repair_attempted)


def parse_review_summary(
    extracted_text: Optional[str],
    raw_output: str,
) -> StructuredParseResult[ReviewSummary]:
    return _parse_structured(
        extracted_text, raw_output,
        REVIEW_SUMMARY_START_TOKEN, REVIEW_SUMMARY_END_TOKEN,
        ReviewSummary,
    )


def parse_fix_summary(
    extracted_text: Optional[str],
    raw_output: str,
) -> StructuredParseResult[FixSummary]:
    return _parse_structured(
        extracted_text, raw_output,
        FIX_SUMMARY_START_TOKEN, FIX_SUMMARY_END_TOKEN,
        FixSummary,
    )
