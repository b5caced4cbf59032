"""Text and payload sanitization for canonical events.

Chat text is sanitized for rendering only: normalization decisions
(self-filtering, cheermote parsing, keyword matching) run on the original
text, and the builder keeps both.  Sanitization removes script blocks,
``javascript:`` URLs, inline ``on...=`` handlers and template-injection
markers (``${...}``, ``{{...}}``); all other characters, including every
non-ASCII code point, pass through untouched.
"""

from __future__ import annotations

import re
from typing import Any

_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JAVASCRIPT_URL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)
_DOLLAR_TEMPLATE_RE = re.compile(r"\$\{[^}]*\}")
_MUSTACHE_TEMPLATE_RE = re.compile(r"\{\{[^}]*\}\}")

_PATTERNS: tuple[re.Pattern[str], ...] = (
    _SCRIPT_BLOCK_RE,
    _JAVASCRIPT_URL_RE,
    _EVENT_HANDLER_RE,
    _DOLLAR_TEMPLATE_RE,
    _MUSTACHE_TEMPLATE_RE,
)


def sanitize_text(text: Any) -> str:
    """Return *text* with injection patterns removed and outer whitespace trimmed.

    Non-string input yields an empty string.

    Example::

        >>> sanitize_text("hi <script>alert(1)</script>there ${x}")
        'hi there'
    """
    if not isinstance(text, str):
        return ""
    for pattern in _PATTERNS:
        text = pattern.sub("", text)
    return text.strip()


def has_injection(text: str) -> bool:
    """Return True when *text* contains any pattern :func:`sanitize_text` removes."""
    return any(pattern.search(text) for pattern in _PATTERNS)


def sanitize_envelope_data(platform: str, event_type: str, data: Any) -> Any:
    """Strip envelope-level keys from a platform payload.

    ``type`` and ``platform`` belong to the ``platform:event`` envelope.  A
    payload value that conflicts with the envelope is kept under
    ``source_type`` / ``source_platform``; a matching one is dropped.
    Non-mapping payloads are returned unchanged.
    """
    if not isinstance(data, dict):
        return data
    rest = {key: value for key, value in data.items() if key not in ("type", "platform")}
    original_type = data.get("type")
    original_platform = data.get("platform")
    if original_type and original_type != event_type:
        rest["source_type"] = original_type
    if original_platform and original_platform != platform:
        rest["source_platform"] = original_platform
    return rest
