"""Process-wide mutable text blobs (knowledge base, system prompt)."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_UPLOAD_SUFFIXES = (".txt",)


class TextBlob:
    """A single replaceable/appendable string. No history, lost on restart."""

    def __init__(self, name: str, initial: str = "") -> None:
        self.name = name
        self._text = initial

    @property
    def value(self) -> str:
        return self._text

    def set(self, text: str) -> str:
        self._text = text
        logger.info("%s replaced (%d chars)", self.name, len(self._text))
        return self._text

    def append(self, text: str) -> str:
        self._text = f"{self._text}\n{text}" if self._text else text
        logger.info("%s appended (%d chars total)", self.name, len(self._text))
        return self._text

    def __len__(self) -> int:
        return len(self._text)


def check_upload_name(filename: Optional[str]) -> str:
    name = (filename or "").strip()
    if not name:
        raise ValidationError("No file uploaded")
    if Path(name).suffix.lower() not in ALLOWED_UPLOAD_SUFFIXES:
        raise ValidationError("Only .txt files are allowed")
    return name


def decode_upload(data: bytes, filename: str) -> str:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError(f"{filename} is not valid UTF-8 text") from e
    if not text.strip():
        raise ValidationError(f"{filename} is empty")
    return text


def load_seed(path: Optional[str]) -> Optional[str]:
    """Read a seed file for a blob; None when unset or unreadable."""
    if not path:
        return None
    p = Path(path)
    try:
        return p.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to read %s: %s", p, e)
        return None
