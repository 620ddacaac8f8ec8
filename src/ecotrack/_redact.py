"""Masking for debug logs.

Broker credentials and the opaque store token can show up in bus payloads,
store documents and request URLs. Everything that goes to a DEBUG log line
passes through here first.
"""

from __future__ import annotations

from collections.abc import Mapping, Set
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_MASK = "<redacted>"
_MAX_DEPTH = 16

# Exact (case-insensitive) key names.
_SECRET_KEYS: frozenset[str] = frozenset({"auth", "authorization", "cookie", "password", "passwd", "pw"})
# Substrings that mark a key as secret wherever they appear (``idToken``, ``apiKey``, ...).
_SECRET_MARKERS: tuple[str, ...] = ("token", "secret", "apikey", "api_key")


def is_secret_key(key: object) -> bool:
    name = str(key).lower()
    return name in _SECRET_KEYS or any(marker in name for marker in _SECRET_MARKERS)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}…<truncated {len(text) - limit} chars>"


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Copy *value* with secrets masked, long strings clipped and bytes summarized."""
    if _depth >= _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _clip(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"

    def nested(item: Any) -> Any:
        return redact_for_log(item, max_string=max_string, _depth=_depth + 1)

    if isinstance(value, Mapping):
        return {str(key): (_MASK if is_secret_key(key) else nested(item)) for key, item in value.items()}
    if isinstance(value, (list, tuple, Set)):
        return [nested(item) for item in value]
    return _clip(repr(value), max_string)


def redact_url(url: str) -> str:
    """Mask secret query parameters (``auth=...``) in *url*."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    masked = [(key, _MASK if is_secret_key(key) else item) for key, item in pairs]
    return urlunsplit(parts._replace(query=urlencode(masked, safe="<>")))
