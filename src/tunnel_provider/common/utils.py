"""Helpers for field validation, log file names and log redaction."""

import re
from typing import Any

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Config fields whose name contains one of these never reach a log line
SECRET_FIELD_MARKERS = (
    "password",
    "passphrase",
    "token",
    "secret",
    "key",
    "certificate",
    "env",
    "args",
)


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Strip ``value`` and reject blanks with a message naming the field.

    Raises:
        ValueError: If nothing but whitespace is left
    """
    stripped = value.strip() if value else ""
    if not stripped:
        raise ValueError(f"{field_name} cannot be empty")
    return stripped


def safe_filename_part(value: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", value) or "_"


def is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SECRET_FIELD_MARKERS)


def redact(value: Any) -> str | None:
    """Replace a secret by a placeholder that only tells whether it was set.

    ``None`` stays ``None`` so absent and empty credentials remain
    distinguishable in the logs.
    """
    if value is None:
        return None
    if value in ("", {}, []):
        return "<empty>"
    return "<redacted>"


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a dumped config that is safe to log.

    Secret fields are redacted and nested mappings (cluster access, exec
    plugin settings) are sanitized recursively.
    """
    sanitized: dict[str, Any] = {}
    for name, value in data.items():
        if is_secret_field(name):
            sanitized[name] = redact(value)
        elif isinstance(value, dict):
            sanitized[name] = sanitize_log_data(value)
        else:
            sanitized[name] = value
    return sanitized
