"""Secret redaction helpers for config snapshots and error text."""

from __future__ import annotations

import hashlib
import re
from typing import Any

__all__ = ["mask_secret", "sanitize_text"]


_DISCORD_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]{24}\.[A-Za-z0-9_-]{6}\.[A-Za-z0-9_-]{27,}")
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._\-]{16,})")
_SECRET_FIELD_RE = re.compile(
    r"(?P<prefix>(token|secret|password|access_token|refresh_token)\s*[=:]\s*)(?P<secret>[^\s,;]+)",
    re.IGNORECASE,
)


def _stable_suffix(text: str) -> str:
    digest = hashlib.sha1(text.encode("utf-8", "ignore")).hexdigest()
    return digest[:4]


def mask_secret(text: str) -> str:
    suffix = _stable_suffix(text)
    return f"***{suffix}"


def sanitize_text(value: Any) -> Any:
    """Mask tokens and credential-looking fragments inside ``value``."""

    if value is None or not isinstance(value, str):
        return value
    text = _DISCORD_TOKEN_RE.sub(lambda m: mask_secret(m.group(0)), value)
    text = _BEARER_RE.sub(lambda m: m.group(1) + mask_secret(m.group(2)), text)
    text = _SECRET_FIELD_RE.sub(
        lambda m: m.group("prefix") + mask_secret(m.group("secret")), text
    )
    return text
