from __future__ import annotations

import re
from typing import Any

_SENSITIVE_KEYWORDS = ("authorization", "api_key", "apikey", "token", "secret", "password", "passwd")
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[a-z0-9_\-\.]+")
_MAX_STRING = 2000


def _is_sensitive_key(key: str) -> bool:
    normalized = key.lower()
    return any(word in normalized for word in _SENSITIVE_KEYWORDS)


def _redact_string(key: str, value: str) -> str:
    if _is_sensitive_key(key):
        return "<redacted>"
    value = _BEARER_PATTERN.sub("Bearer <redacted>", value)
    if len(value) > _MAX_STRING:
        return value[:_MAX_STRING] + "...<truncated>"
    return value


def redact(value: Any, key: str = "") -> Any:
    if isinstance(value, dict):
        return {k: redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item, key) for item in value]
    if isinstance(value, str):
        return _redact_string(key, value)
    return value
