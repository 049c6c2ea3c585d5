"""Redaction module to mask secrets in outputs and logs."""
import re
from typing import Any, Dict

REDACTED = "[REDACTED]"

# Keys whose values are always masked, whatever their content
SECRET_KEYS = (
    "authorization",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "service_role",
    "password",
)

_PATTERNS = [
    (r'(Authorization["\']?\s*[:=]\s*["\']?)Token\s+[A-Za-z0-9]+', r'\1Token [REDACTED]'),
    (r'(Authorization["\']?\s*[:=]\s*["\']?)Bearer\s+[A-Za-z0-9._\-]+', r'\1Bearer [REDACTED]'),
    (r'\bToken\s+[0-9a-f]{32,}', r'Token [REDACTED]'),
    (r'(apikey["\']?\s*[:=]\s*["\']?)[A-Za-z0-9._\-]+', r'\1[REDACTED]'),
    # Supabase JWT keys (header.payload.signature)
    (r'eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+', REDACTED),
]


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    result = text
    for pattern, replacement in _PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
    return result


def redact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if isinstance(key, str) and key.lower() in SECRET_KEYS:
            redacted[key] = REDACTED
        else:
            redacted[key] = redact_json(value)
    return redacted


def redact_json(data: Any) -> Any:
    """Redact secrets from JSON-serializable data."""
    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return [redact_json(item) for item in data]
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data
