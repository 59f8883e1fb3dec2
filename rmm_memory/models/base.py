"""
Shared helpers for the RMM data model.
"""

import hashlib
import time
from typing import Any


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def content_hash(*parts: str) -> str:
    """Stable sha256 hex digest over newline-joined parts."""
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


def response_text(response: Any) -> str:
    """
    Plain text of a chat model response.

    Accepts a str, a LangChain message, or anything with ``content`` that is a
    str or a list of content parts (str or dicts with a ``text`` key).
    """
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    content = getattr(response, "content", None)
    if content is None and isinstance(response, dict):
        if isinstance(response.get("text"), str):
            return response["text"]
        content = response.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    text = getattr(response, "text", None)
    return text if isinstance(text, str) else ""
