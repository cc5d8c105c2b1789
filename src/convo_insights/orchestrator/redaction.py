"""Pattern-based redaction applied before any backend transmission."""

from __future__ import annotations

import re
from dataclasses import replace

from convo_insights.orchestrator.models import ConversationPayload, MessagePayload

_MAX_PREVIEW_CHARS = 2_000

# Placeholders contain no characters any pattern can match again.
_REPLACEMENTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"sk-ant-[a-zA-Z0-9-]{20,}"), "[ANTHROPIC_KEY]"),
    (re.compile(r"sk-[a-zA-Z0-9]{20,}"), "[API_KEY]"),
    (re.compile(r"ghp_[a-zA-Z0-9]{36}"), "[GITHUB_TOKEN]"),
    (re.compile(r"AKIA[A-Z0-9]{16}"), "[AWS_ACCESS_KEY]"),
    (
        re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
        "[SSH_KEY_REDACTED]",
    ),
    (re.compile(r"(?i)(?:password|passwd|pwd)\s*[:=]\s*\S+"), "[PASSWORD_REDACTED]"),
)


def redact_text(text: str) -> str:
    """Replace emails, phone numbers and known secret shapes with placeholders."""

    redacted = text
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def redact_payload(payload: ConversationPayload) -> ConversationPayload:
    """Copy of ``payload`` with title and message bodies redacted."""

    return replace(
        payload,
        title=redact_text(payload.title),
        messages=[
            MessagePayload(id=message.id, role=message.role, content=redact_text(message.content))
            for message in payload.messages
        ],
    )


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact and clamp tool diagnostics before they are stored or shown."""

    compact = text.strip()
    if not compact:
        return ""
    redacted = redact_text(compact)
    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]
