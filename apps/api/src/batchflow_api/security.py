from __future__ import annotations

import hashlib
import hmac
import re

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|passwd|secret)\b(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_QUERY_RE = re.compile(
    r"(?i)([?&](?:api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|secret|signature)=)([^&\s]+)"
)
_SENSITIVE_BEARER_RE = re.compile(r"(?i)\b(authorization\s*[:=]\s*bearer\s+)([^\s,;]+)")
_SIGNATURE_HEADER_RE = re.compile(r"(?i)\b(x-signature\s*[:=]\s*)([0-9a-f]+)")


def redact_sensitive_text(value: str | None) -> str | None:
    if value is None:
        return None

    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SENSITIVE_BEARER_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SIGNATURE_HEADER_RE.sub(r"\1[REDACTED]", redacted)
    return redacted


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
