"""
Tolerant extraction of JSON from LLM responses.

Models wrap JSON in markdown fences, prepend prose, or drop commas between
fields. `extract_json` tries progressively looser strategies:

1. strip code fences, parse directly
2. parse balanced ``{...}`` / ``[...]`` substrings, trying every opening
   bracket and preferring an object
3. repair missing commas between fields (per candidate)
4. remove trailing commas before ``}`` / ``]``

and raises `JSONExtractionError` when nothing parses.
"""

from __future__ import annotations

import json
import re
from typing import Any

from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter
from triageq.triage.errors import JSONExtractionError

logger = get_logger(__name__)

_FENCE_OPEN = re.compile(r"```(?:json|JSON)?\s*")
_FENCE_CLOSE = re.compile(r"```\s*")
_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def _balanced_end(text: str, start: int) -> int | None:
    """End index (exclusive) of the bracket span opened at ``start``, or None."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return idx + 1
    return None


def find_balanced(text: str) -> str | None:
    """
    Return the first balanced JSON object or array substring, or None.

    Brackets inside string literals are ignored.
    """
    start = next((idx for idx, char in enumerate(text) if char in _CLOSERS), None)
    if start is None:
        return None
    end = _balanced_end(text, start)
    return text[start:end] if end is not None else None


def _repair_missing_commas(json_text: str) -> str:
    repaired = re.sub(r'"\s*\n\s*"', '",\n"', json_text)
    repaired = re.sub(r"(\d+\.?\d*|true|false|null)\s*\n\s*\"", r'\1,\n"', repaired)
    repaired = re.sub(r'\}\s*\n\s*"', '},\n"', repaired)
    return re.sub(r'\]\s*\n\s*"', '],\n"', repaired)


def _remove_trailing_commas(json_text: str) -> str:
    return re.sub(r",\s*([\}\]])", r"\1", json_text)


_NOT_PARSED = object()


def _parse_with_repair(candidate: str) -> Any:
    """Parse ``candidate`` as-is, then with each repair applied; ``_NOT_PARSED`` if none works."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    repaired = _repair_missing_commas(candidate)
    for note, text in (
        ("missing commas fixed", repaired),
        ("trailing commas removed", _remove_trailing_commas(repaired)),
    ):
        try:
            result = json.loads(text)
        except json.JSONDecodeError:
            continue
        counter("json_extraction.repaired")
        logger.info("JSON repair succeeded (%s)", note)
        return result
    return _NOT_PARSED


def _scan_candidates(text: str) -> Any:
    """
    Try every ``{`` / ``[`` position as the start of a JSON value.

    Prose often carries brackets of its own ("[see below]", "[0,100]"), so an
    object wins over any array found before it. Openers nested inside a span
    that already parsed are skipped.
    """
    fallback = _NOT_PARSED
    consumed_to = 0
    for start, char in enumerate(text):
        if char not in _CLOSERS or start < consumed_to:
            continue
        end = _balanced_end(text, start)
        if end is None:
            continue
        value = _parse_with_repair(text[start:end])
        if value is _NOT_PARSED:
            continue
        if isinstance(value, dict):
            return value
        if fallback is _NOT_PARSED:
            fallback = value
        consumed_to = end
    return fallback


def extract_json(text: str | None) -> Any:
    """Extract a JSON value from a model response.

    Raises:
        JSONExtractionError: no strategy produced valid JSON
    """
    if not text or not text.strip():
        counter("json_extraction.empty")
        raise JSONExtractionError("empty model response")

    cleaned = strip_code_fences(text)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.debug("JSON parse error (attempting repair): %s", e)

    value = _scan_candidates(cleaned)
    if value is not _NOT_PARSED:
        return value

    # Unbalanced output (e.g. truncated or missing commas confused the scan)
    match = re.search(r"[\{\[].*[\}\]]", cleaned, re.DOTALL)
    if match is None:
        counter("json_extraction.failed")
        logger.warning("No JSON object found in model response")
        raise JSONExtractionError("no JSON object found in model response")

    value = _parse_with_repair(match.group(0))
    if value is _NOT_PARSED:
        counter("json_extraction.failed")
        logger.warning("JSON repair failed for model response")
        raise JSONExtractionError("unparseable JSON in model response")
    return value
