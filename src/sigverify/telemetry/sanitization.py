"""Strip secrets from messages before they reach spans or logs.

cosign stderr can echo key references and registry URLs verbatim. PKCS#11
URIs may carry a ``pin-value`` and registry URLs may embed basic-auth
credentials; both are redacted here.
"""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|token|api_key|authorization|credential|pin-value|pin)"
    r"\s*[=:]\s*[^\s&;]+",
    re.IGNORECASE,
)
_URL_CREDENTIAL_PATTERN = re.compile(r"://[^@/\s]+:[^@/\s]+@")
_BEARER_PATTERN = re.compile(r"(Bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def _redact_key_value(match: re.Match[str]) -> str:
    text = match.group(0)
    if "=" in text:
        return text.split("=", 1)[0] + "=<REDACTED>"
    return text.split(":", 1)[0] + ": <REDACTED>"


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials in ``msg`` and truncate it to ``max_length``.

    Example:
        >>> sanitize_error_message("pkcs11:object=key?pin-value=1234")
        'pkcs11:object=key?pin-value=<REDACTED>'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", msg)
    sanitized = _BEARER_PATTERN.sub(r"\1 <REDACTED>", sanitized)
    sanitized = _SENSITIVE_KEY_PATTERN.sub(_redact_key_value, sanitized)
    return sanitized[:max_length]


__all__ = ["sanitize_error_message"]
