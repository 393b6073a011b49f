"""Data shapes shared by the pipeline, the store and the HTTP layer."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -----------------------------
# Stored conversation entries
# -----------------------------
class ConversationEntry(BaseModel):
    """Current-format entry. The only shape written going forward."""

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)
    timestamp: str = Field(default_factory=utc_iso)


class LegacyEntry(BaseModel):
    """Old-format entry: ``{query, timestamp}`` without role/content."""

    query: str
    timestamp: Optional[str] = None


StoredEntry = Union[ConversationEntry, LegacyEntry]


def is_legacy_entry(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    return "query" in raw and not ("role" in raw and "content" in raw)


def parse_entry(raw: Any) -> Optional[StoredEntry]:
    """Classify a raw stored dict; ``None`` for anything unrecognized."""
    if not isinstance(raw, dict):
        return None
    try:
        if is_legacy_entry(raw):
            return LegacyEntry.model_validate(raw)
        return ConversationEntry.model_validate(raw)
    except PydanticValidationError:
        return None


def current_entries(raw_entries: List[Any]) -> List[ConversationEntry]:
    out: List[ConversationEntry] = []
    for raw in raw_entries:
        entry = parse_entry(raw)
        if isinstance(entry, ConversationEntry):
            out.append(entry)
    return out


# -----------------------------
# Inbound chat message
# -----------------------------
_MESSAGE_FIELDS = ("message", "text", "query")


class MessageRequest(BaseModel):
    message: str
    email: Optional[str] = None


def parse_message_request(body: bytes, content_type: Optional[str] = None) -> MessageRequest:
    """Turn a raw request body into one canonical :class:`MessageRequest`.

    Accepted shapes: a JSON object carrying ``message`` (or ``text`` /
    ``query``) and an optional ``email``; a JSON string; a plain-text body.
    Emptiness is checked by the pipeline after normalization.
    """
    ct = (content_type or "").split(";")[0].strip().lower()
    text = body.decode("utf-8", errors="replace") if body else ""
    if not text.strip():
        raise ValidationError("Message is required")

    if ct == "application/json" or ct.endswith("+json") or not ct:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            if ct:
                raise ValidationError("Request body is not valid JSON")
            return MessageRequest(message=text)
        if not ct and not isinstance(data, (str, dict)):
            # Untyped body that merely parses as JSON (e.g. "42"): keep it as text.
            return MessageRequest(message=text)
        return _from_json(data)

    if ct.startswith("text/"):
        return MessageRequest(message=text)

    raise ValidationError(f"Unsupported content type: {ct}")


def _from_json(data: Any) -> MessageRequest:
    if isinstance(data, str):
        return MessageRequest(message=data)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a string or an object with a 'message' field")

    message = None
    for field in _MESSAGE_FIELDS:
        if field in data and data[field] is not None:
            message = data[field]
            break
    if message is None:
        raise ValidationError("Message is required")
    if not isinstance(message, str):
        raise ValidationError("Message must be a string")

    email = data.get("email")
    if email is not None and not isinstance(email, str):
        raise ValidationError("Email must be a string")
    return MessageRequest(message=message, email=email)


def parse_text_body(body: bytes, content_type: Optional[str] = None) -> str:
    """Extract the text of a knowledge-base / system-prompt mutation body."""
    ct = (content_type or "").split(";")[0].strip().lower()
    text = body.decode("utf-8", errors="replace") if body else ""
    if ct == "application/json":
        try:
            data = json.loads(text) if text.strip() else None
        except json.JSONDecodeError:
            raise ValidationError("Request body is not valid JSON")
        if isinstance(data, dict):
            data = data.get("text", data.get("content"))
        if not isinstance(data, str):
            raise ValidationError("Expected a JSON string or an object with a 'text' field")
        text = data
    if not text.strip():
        raise ValidationError("Text content is required")
    return text


def entry_dicts(entries: List[ConversationEntry]) -> List[Dict[str, Any]]:
    return [e.model_dump() for e in entries]
