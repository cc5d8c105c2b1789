"""Build compact, size-bounded conversation payloads for backend calls."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace

from convo_insights.orchestrator.models import (
    AnalysisType,
    Conversation,
    ConversationPayload,
    Message,
    MessagePayload,
)
from convo_insights.orchestrator.stores import ConversationStore

logger = logging.getLogger(__name__)

TOKENS_PER_CHAR = 0.25
ELLIPSIS = "..."
SUMMARY_MESSAGE_THRESHOLD = 2
BUDGET_TRUNCATION_THRESHOLD = 10
BUDGET_TAIL_MESSAGES = 9
METADATA_MODE = "metadata"

# (max chars per message, max messages) keyed by payload mode.
_TYPE_LIMITS: dict[AnalysisType, dict[str, tuple[int, int]]] = {
    AnalysisType.WORKFLOW: {"minimized": (300, 10), "expanded": (800, 25)},
    AnalysisType.LEARNING: {"minimized": (500, 20), "expanded": (1200, 40)},
    AnalysisType.DEDUPE: {"minimized": (200, 5), "expanded": (400, 10)},
}


@dataclass(slots=True)
class TokenBudgetFit:
    """Outcome of fitting payloads into a backend token budget."""

    kept: list[ConversationPayload] = field(default_factory=list)
    dropped_ids: list[str] = field(default_factory=list)
    estimated_tokens: int = 0


class PayloadPreparer:
    """Turns stored conversations into per-analysis-type backend payloads."""

    def __init__(self, store: ConversationStore, *, payload_mode: str = "minimized") -> None:
        self.store = store
        self.payload_mode = payload_mode

    def prepare(
        self,
        conversation_ids: list[str],
        analysis_type: AnalysisType,
    ) -> list[ConversationPayload]:
        """Load, shape and minimize conversations in the given order.

        Conversations missing from the store are skipped; the caller
        notices them as items without results.
        """

        payloads: list[ConversationPayload] = []
        seen: set[str] = set()
        for conversation_id in conversation_ids:
            if conversation_id in seen:
                continue
            seen.add(conversation_id)
            conversation = self.store.fetch(conversation_id)
            if conversation is None:
                logger.warning("Conversation %s not found; skipping payload", conversation_id)
                continue
            messages = self.store.fetch_messages(conversation_id)
            payload = build_payload(conversation, messages)
            payloads.append(minimize_for_analysis(payload, analysis_type, mode=self.payload_mode))
        return payloads


def build_payload(conversation: Conversation, messages: list[Message]) -> ConversationPayload:
    """Full, untruncated payload for one conversation."""

    message_payloads = [
        MessagePayload(id=message.message_id, role=message.role, content=message.content)
        for message in messages
    ]
    title = conversation.title or ""
    return ConversationPayload(
        id=conversation.conversation_id,
        title=title,
        messages=message_payloads,
        message_count=len(message_payloads),
        estimated_character_count=_estimate_chars(title, message_payloads),
    )


def truncate_messages(
    payload: ConversationPayload,
    *,
    max_messages: int,
    max_chars: int,
) -> ConversationPayload:
    """Keep the first ceil(N/2) and last floor(N/2) messages, each capped at ``max_chars``."""

    truncated = payload.was_truncated
    messages = payload.messages
    if len(messages) > max_messages:
        head = math.ceil(max_messages / 2)
        tail = max_messages // 2
        messages = messages[:head] + (messages[-tail:] if tail else [])
        truncated = True

    capped: list[MessagePayload] = []
    for message in messages:
        if len(message.content) > max_chars:
            capped.append(replace(message, content=message.content[:max_chars] + ELLIPSIS))
            truncated = True
        else:
            capped.append(message)

    if not truncated:
        return payload
    return _with_messages(payload, capped, was_truncated=True)


def for_summary(payload: ConversationPayload) -> ConversationPayload:
    """Title plus first and last message for conversations longer than two messages."""

    if len(payload.messages) <= SUMMARY_MESSAGE_THRESHOLD:
        return payload
    return _with_messages(
        payload,
        [payload.messages[0], payload.messages[-1]],
        was_truncated=True,
    )


def metadata_only(payload: ConversationPayload) -> ConversationPayload:
    """Drop every message body, keeping title and counts."""

    return _with_messages(payload, [], was_truncated=True)


def minimize_for_analysis(
    payload: ConversationPayload,
    analysis_type: AnalysisType,
    *,
    mode: str = "minimized",
) -> ConversationPayload:
    """Apply the per-type truncation policy.

    The ``metadata`` mode sends no message bodies for any type.
    """

    if mode == METADATA_MODE:
        return metadata_only(payload)
    if analysis_type is AnalysisType.SUMMARY:
        return for_summary(payload)
    max_chars, max_messages = message_limits(analysis_type, mode=mode)
    return truncate_messages(payload, max_messages=max_messages, max_chars=max_chars)


def message_limits(analysis_type: AnalysisType, *, mode: str = "minimized") -> tuple[int, int]:
    """(max chars per message, max messages) for a non-summary type."""

    return _TYPE_LIMITS[analysis_type][mode]


def estimate_tokens(payload: ConversationPayload) -> int:
    return int(payload.estimated_character_count * TOKENS_PER_CHAR)


def fit_to_token_budget(
    payloads: list[ConversationPayload],
    *,
    budget_tokens: int,
) -> TokenBudgetFit:
    """Accumulate payloads in order until the budget is spent.

    A payload that would overflow the budget and has more than ten
    messages is cut to its first message plus the last nine. If it still
    does not fit, it is dropped and reported, never sent half-empty.
    """

    fit = TokenBudgetFit()
    for payload in payloads:
        candidate = payload
        if fit.estimated_tokens + estimate_tokens(candidate) > budget_tokens:
            if len(candidate.messages) > BUDGET_TRUNCATION_THRESHOLD:
                candidate = _with_messages(
                    candidate,
                    [candidate.messages[0], *candidate.messages[-BUDGET_TAIL_MESSAGES:]],
                    was_truncated=True,
                )
            if fit.estimated_tokens + estimate_tokens(candidate) > budget_tokens:
                fit.dropped_ids.append(payload.id)
                continue
        fit.kept.append(candidate)
        fit.estimated_tokens += estimate_tokens(candidate)
    return fit


def _with_messages(
    payload: ConversationPayload,
    messages: list[MessagePayload],
    *,
    was_truncated: bool,
) -> ConversationPayload:
    return replace(
        payload,
        messages=messages,
        estimated_character_count=_estimate_chars(payload.title, messages),
        was_truncated=was_truncated,
    )


def _estimate_chars(title: str, messages: list[MessagePayload]) -> int:
    return len(title) + sum(len(message.content) for message in messages)
