"""
Redaction helpers for logs, telemetry and LLM prompts.

Mail content never reaches a log line in clear text. Identifiers that operators
need to correlate (user ids, emails, batch ids) are logged as short stable
hashes; message fields that go into a prompt are cleaned with
`sanitize_for_prompt` first.
"""

from __future__ import annotations

import re
from hashlib import sha256

# Chat-template and instruction-override markers seen in hostile mail
_INJECTION_REGEX = re.compile(
    r"(?:ignore|disregard|forget)\s+(?:previous|above|all|prior)\s+instructions?"
    r"|new\s+instructions?:"
    r"|\b(?:system|assistant|user)\s*:"
    r"|\[/?INST\]"
    r"|<\|im_(?:start|end)\|>",
    re.IGNORECASE,
)
_TEMPLATE_CHARS = re.compile(r"[<>{}|\\]")
_BLANK_RUNS = re.compile(r"\n\s*\n+")


def redact(value: str | None) -> str:
    """Return ``hash:<12 hex>`` for a sensitive string, stable across processes."""
    if not value:
        return "hash:missing"
    return "hash:" + sha256(value.encode("utf-8")).hexdigest()[:12]


def sanitize_for_prompt(text: str | None, max_length: int = 500) -> str:
    """
    Clean a sender, subject or body before it is placed in a scoring prompt.

    Truncates to ``max_length``, replaces injection markers with ``[REDACTED]``,
    drops characters that collide with the prompt template and folds runs of
    blank lines (quoted replies, signatures) into one.
    """
    if not text:
        return ""

    cleaned = _INJECTION_REGEX.sub("[REDACTED]", text[:max_length])
    cleaned = _TEMPLATE_CHARS.sub("", cleaned)
    return _BLANK_RUNS.sub("\n", cleaned).strip()
