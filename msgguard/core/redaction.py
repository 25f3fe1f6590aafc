from __future__ import annotations

"""
Redaction helpers.

Two layers:
- secret redaction (keys that look like credentials)
- content minimization: message bodies never leave the message store, so any
  payload headed for logs, events or the audit trail drops content-like keys
  and keeps only a length + short hash.
"""

import hashlib
from typing import Any, Dict


REDACT_KEYS = {
    "passphrase",
    "password",
    "secret",
    "token",
    "api_key",
    "key",
    "content_key",
    "authorization",
}

_CONTENT_KEYS = {"content", "text", "body", "message", "raw", "plaintext", "ciphertext"}


def _hash8(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", errors="ignore")).hexdigest()[:8]


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, list):
        return [redact(x) for x in obj]
    return obj


def content_redact(obj: Any) -> Any:
    """
    Redact secrets and strip message content.
    """
    safe = redact(obj)
    if isinstance(safe, dict):
        out: Dict[str, Any] = {}
        for k, v in list(safe.items())[:200]:
            kk = str(k or "")
            if kk.lower() in _CONTENT_KEYS:
                if isinstance(v, str):
                    out[f"{kk}_len"] = len(v)
                    out[f"{kk}_hash8"] = _hash8(v)
                else:
                    out[f"{kk}_present"] = True
                continue
            out[kk] = content_redact(v)
        return out
    if isinstance(safe, list):
        return [content_redact(x) for x in safe[:100]]
    if isinstance(safe, (set, frozenset)):
        return sorted(str(x) for x in safe)
    if isinstance(safe, str):
        return safe if len(safe) <= 500 else safe[:500] + "…"
    return safe
