from __future__ import annotations

import hashlib
import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Normalization used for hashing/dedup.

    Keeps meaning but removes irrelevant variance.
    """
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def content_hash(text: str) -> str:
    """Document dedup key: sha256 over the normalized text."""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def identity_key(name: str) -> str:
    """Case-insensitive entity identity key."""
    return normalize_text(name).casefold()


def truncate(text: str, max_chars: int, *, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - len(suffix))] + suffix
