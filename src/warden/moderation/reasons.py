from __future__ import annotations

from datetime import datetime
from typing import Optional

from ..constants import DEFAULT_MOD_REASON, MAX_AUDIT_REASON_LENGTH


def normalize_reason(reason: Optional[str]) -> str:
    text = (reason or "").strip()
    return text or DEFAULT_MOD_REASON


def bound_reason(reason: Optional[str], limit: int = MAX_AUDIT_REASON_LENGTH) -> str:
    return normalize_reason(reason)[:limit]


def build_audit_reason(
    reason: Optional[str],
    moderator_tag: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    limit: int = MAX_AUDIT_REASON_LENGTH,
) -> str:
    """Reason string attached to the platform's own audit log.

    ``"spamming - by mod#0001 (until 2024-01-01T00:00:00+00:00)"``
    """
    text = normalize_reason(reason)
    if moderator_tag:
        text = f"{text} - by {moderator_tag}"
    if expires_at is not None:
        text = f"{text} (until {expires_at.isoformat()})"
    return text[:limit]
