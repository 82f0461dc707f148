"""
Gmail adapter utilities for converting API payloads into MessageRecords.

This module focuses on deterministic parsing and validation while remaining side-effect free.
Observability hooks surface parse failures without exposing PII.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import sha256
from typing import Any

from pydantic import ValidationError

from triageq.config import BODY_PREVIEW_CHARS
from triageq.observability.telemetry import counter, log_event
from triageq.storage.models import MessageRecord
from triageq.triage.errors import GmailParsingError

_TEXT_PLAIN = "text/plain"


def _hash_id(value: Any) -> str:
    return sha256(str(value or "").encode()).hexdigest()[:12]


def _header_lookup(headers: Iterable[dict[str, str]], name: str) -> str | None:
    name_lower = name.lower()
    for header in headers:
        if header.get("name", "").lower() == name_lower:
            return header.get("value")
    return None


def _decode_base64(data: str) -> str:
    """Decode Gmail's URL-safe base64 payloads."""
    padding = "=" * (-len(data) % 4)
    try:
        decoded = base64.urlsafe_b64decode((data + padding).encode("utf-8"))
        return decoded.decode("utf-8", errors="replace")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise GmailParsingError("failed to decode message body") from exc


def _extract_text(payload: dict[str, Any]) -> str:
    """Return the first text/plain body, walking nested multiparts depth-first."""
    mime_type = payload.get("mimeType", "")
    data = payload.get("body", {}).get("data")
    if data and mime_type == _TEXT_PLAIN:
        return _decode_base64(data)

    for part in payload.get("parts") or []:
        text = _extract_text(part)
        if text:
            return text
    return ""


def _received_at(message: dict[str, Any], headers: list[dict[str, str]]) -> datetime:
    internal_date = message.get("internalDate")
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError) as exc:
            raise GmailParsingError("invalid internalDate") from exc

    date_header = _header_lookup(headers, "Date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError) as exc:
            raise GmailParsingError("invalid Date header") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    raise GmailParsingError("message has no receive timestamp")


def parse_message(message: dict[str, Any], user_id: str) -> MessageRecord:
    """
    Convert a Gmail API ``users.messages.get`` payload into a `MessageRecord`.

    Only metadata and a short preview are kept; ``body_ref`` points back at the
    provider copy. `GmailParsingError` is raised on failure.
    """
    if not isinstance(message, dict):
        raise GmailParsingError("message must be a dict")

    try:
        message_id = message["id"]
        payload = message["payload"]
    except KeyError as exc:
        raise GmailParsingError(f"missing field: {exc}") from exc

    headers = payload.get("headers") or []
    sender = _header_lookup(headers, "From")
    if not sender:
        raise GmailParsingError("required address headers missing")

    preview = message.get("snippet") or _extract_text(payload)

    record_payload = {
        "external_id": message_id,
        "user_id": user_id,
        "subject": _header_lookup(headers, "Subject") or "",
        "sender": sender,
        "received_at": _received_at(message, headers),
        "body_ref": f"gmail:{message_id}",
        "body_preview": preview[:BODY_PREVIEW_CHARS],
        "list_unsubscribe": _header_lookup(headers, "List-Unsubscribe"),
        "precedence": _header_lookup(headers, "Precedence"),
        "auto_submitted": _header_lookup(headers, "Auto-Submitted"),
    }
    try:
        record = MessageRecord.model_validate(record_payload)
    except ValidationError as exc:
        counter("schema_validation_failures")
        log_event(
            "gmail.message.validation_failed",
            errors=exc.errors(),
            message_id_hash=_hash_id(message_id),
        )
        raise GmailParsingError("message validation failed") from exc

    log_event("gmail.parsed", message_id_hash=_hash_id(message_id))
    counter("gmail.parsed.count")
    return record


def parse_message_strict(message: dict[str, Any], user_id: str) -> MessageRecord:
    """
    Wrapper that emits observability signals on failure.
    """
    try:
        return parse_message(message, user_id)
    except GmailParsingError as exc:
        log_event(
            "gmail.parse_failed",
            message_id_hash=_hash_id(message.get("id") if isinstance(message, dict) else None),
            error=str(exc),
        )
        counter("gmail.parse_failed.count")
        raise
