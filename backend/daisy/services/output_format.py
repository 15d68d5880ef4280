"""
Display format detection for output nodes.

Each format has a pure predicate over the raw string; detect_format evaluates
them in a fixed priority order and falls back to plain text.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Callable, Literal
from urllib.parse import unquote_to_bytes

OutputFormat = Literal["text", "json", "html", "markdown", "image"]

_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|gif|webp|svg)(\?|$)", re.IGNORECASE)


def looks_like_image(content: str) -> bool:
    if content.startswith("data:image"):
        return True
    return content.startswith("http") and _IMAGE_EXTENSION.search(content) is not None


def _reject_constant(name: str) -> None:
    raise ValueError(f"{name} is not valid JSON")


def looks_like_json(content: str) -> bool:
    try:
        json.loads(content, parse_constant=_reject_constant)
    except ValueError:
        return False
    return True


def looks_like_html(content: str) -> bool:
    return "<" in content and ">" in content


def looks_like_markdown(content: str) -> bool:
    return any(marker in content for marker in ("#", "*", "["))


FORMAT_PREDICATES: tuple[tuple[OutputFormat, Callable[[str], bool]], ...] = (
    ("image", looks_like_image),
    ("json", looks_like_json),
    ("html", looks_like_html),
    ("markdown", looks_like_markdown),
)


def detect_format(content: str) -> OutputFormat:
    """Sniff the display format of content; empty content is plain text."""
    if not content:
        return "text"
    for fmt, predicate in FORMAT_PREDICATES:
        if predicate(content):
            return fmt
    return "text"


# Used when an output value is downloaded
MIME_TYPES: dict[str, str] = {
    "text": "text/plain",
    "json": "application/json",
    "html": "text/html",
    "markdown": "text/markdown",
    "image": "image/png",
}

FILE_EXTENSIONS: dict[str, str] = {
    "text": "txt",
    "json": "json",
    "html": "html",
    "markdown": "md",
    "image": "png",
}


# Extensions for image subtypes whose name is not the usual extension
_IMAGE_SUBTYPE_EXTENSIONS: dict[str, str] = {
    "jpeg": "jpg",
    "svg+xml": "svg",
    "x-icon": "ico",
}


def decode_data_uri(value: str) -> tuple[bytes, str, str]:
    """
    Decode a data: URI into (content, mime type, file extension).

    Handles both base64 and percent-encoded payloads. Raises ValueError for a
    value that is not a well-formed data URI.
    """
    if not value.startswith("data:") or "," not in value:
        raise ValueError("Not a data URI")
    header, _, payload = value[len("data:"):].partition(",")
    params = header.split(";")
    mime_type = params[0].strip().lower() or "text/plain"

    if "base64" in (p.strip().lower() for p in params[1:]):
        try:
            content = base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
    else:
        content = unquote_to_bytes(payload)

    major, _, subtype = mime_type.partition("/")
    if major == "image" and subtype:
        extension = _IMAGE_SUBTYPE_EXTENSIONS.get(subtype, subtype)
    else:
        extension = FILE_EXTENSIONS["text"]
    return content, mime_type, extension
