"""Local text transforms used by text processor nodes."""

from __future__ import annotations

import re
from typing import Callable

_WORD = re.compile(r"\w\S*")
_WHITESPACE = re.compile(r"\s+")


def _title(text: str) -> str:
    return _WORD.sub(lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), text)


def _word_count(text: str) -> str:
    # Empty text still counts as one word, same as the editor's live preview
    return f"Word count: {len(_WHITESPACE.split(text.strip()))}"


OPERATIONS: dict[str, Callable[[str], str]] = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "title": _title,
    "reverse": lambda text: text[::-1],
    "wordcount": _word_count,
    "charcount": lambda text: f"Character count: {len(text)}",
    "trim": str.strip,
    "removeSpaces": lambda text: _WHITESPACE.sub("", text),
    "addPrefix": lambda text: f"Processed: {text}",
    "addSuffix": lambda text: f"{text} - Processed",
}


def process_text(text: str, operation: str, custom_operation: str = "") -> str:
    """Apply a named operation to text. Unknown operations leave text unchanged."""
    if operation == "custom":
        return f"{custom_operation}: {text}" if custom_operation else text
    fn = OPERATIONS.get(operation)
    if fn is None:
        return text
    return fn(text)
