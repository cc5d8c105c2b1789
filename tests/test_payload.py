from __future__ import annotations

import allure

from convo_insights.orchestrator.models import AnalysisType, ConversationPayload, MessagePayload
from convo_insights.orchestrator.payload import (
    ELLIPSIS,
    PayloadPreparer,
    estimate_tokens,
    fit_to_token_budget,
    for_summary,
    metadata_only,
    minimize_for_analysis,
    truncate_messages,
)

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Payload Preparation"),
]


def _payload(
    conversation_id: str,
    *,
    messages: int,
    chars: int = 10,
    title: str = "",
) -> ConversationPayload:
    bodies = [
        MessagePayload(id=f"m{index}", role="user", content="a" * chars)
        for index in range(messages)
    ]
    return ConversationPayload(
        id=conversation_id,
        title=title,
        messages=bodies,
        message_count=messages,
        estimated_character_count=len(title) + chars * messages,
    )


def _ids(payload: ConversationPayload) -> list[str]:
    return [message.id for message in payload.messages]


def test_conversation_within_limits_is_returned_unchanged() -> None:
    payload = _payload("c1", messages=3, chars=20)

    result = truncate_messages(payload, max_messages=10, max_chars=300)

    assert result is payload
    assert result.was_truncated is False


def test_truncate_keeps_ceil_head_and_floor_tail() -> None:
    payload = _payload("c1", messages=8)

    result = truncate_messages(payload, max_messages=5, max_chars=300)

    assert _ids(result) == ["m0", "m1", "m2", "m6", "m7"]
    assert result.was_truncated is True
    assert result.message_count == 8


def test_truncate_caps_long_messages_with_ellipsis() -> None:
    payload = _payload("c1", messages=2, chars=50, title="T")

    result = truncate_messages(payload, max_messages=10, max_chars=20)

    assert [message.content for message in result.messages] == ["a" * 20 + ELLIPSIS] * 2
    assert result.was_truncated is True
    assert result.estimated_character_count == 1 + 2 * (20 + len(ELLIPSIS))
    assert payload.messages[0].content == "a" * 50


def test_for_summary_keeps_first_and_last_message_only() -> None:
    payload = _payload("c1", messages=5, chars=900)

    result = for_summary(payload)

    assert _ids(result) == ["m0", "m4"]
    assert all(len(message.content) == 900 for message in result.messages)
    assert result.was_truncated is True


def test_for_summary_leaves_short_conversations_alone() -> None:
    payload = _payload("c1", messages=2)

    assert for_summary(payload) is payload


def test_metadata_only_drops_bodies_but_keeps_counts() -> None:
    payload = _payload("c1", messages=4, title="Title")

    result = metadata_only(payload)

    assert result.messages == []
    assert result.message_count == 4
    assert result.estimated_character_count == len("Title")
    assert result.was_truncated is True


def test_minimize_applies_per_type_limits_for_each_mode() -> None:
    payload = _payload("c1", messages=30, chars=1000)

    workflow = minimize_for_analysis(payload, AnalysisType.WORKFLOW)
    workflow_expanded = minimize_for_analysis(payload, AnalysisType.WORKFLOW, mode="expanded")
    learning = minimize_for_analysis(payload, AnalysisType.LEARNING)
    summary = minimize_for_analysis(payload, AnalysisType.SUMMARY)

    assert len(workflow.messages) == 10
    assert len(workflow.messages[0].content) == 300 + len(ELLIPSIS)
    assert len(workflow_expanded.messages) == 25
    assert len(workflow_expanded.messages[0].content) == 800 + len(ELLIPSIS)
    assert len(learning.messages) == 20
    assert _ids(summary) == ["m0", "m29"]


def test_metadata_mode_sends_no_bodies_for_any_type() -> None:
    payload = _payload("c1", messages=6, chars=50, title="Title")

    for analysis_type in (AnalysisType.WORKFLOW, AnalysisType.LEARNING, AnalysisType.SUMMARY):
        result = minimize_for_analysis(payload, analysis_type, mode="metadata")

        assert result.messages == []
        assert result.message_count == 6
        assert result.was_truncated is True


def test_estimate_tokens_uses_quarter_token_per_character() -> None:
    assert estimate_tokens(_payload("c1", messages=4, chars=100)) == 100


def test_budget_fit_drops_oversized_conversation_and_keeps_walking() -> None:
    small = _payload("small", messages=2, chars=100)
    huge = _payload("huge", messages=12, chars=100)
    tiny = _payload("tiny", messages=1, chars=100)

    fit = fit_to_token_budget([small, huge, tiny], budget_tokens=100)

    assert [payload.id for payload in fit.kept] == ["small", "tiny"]
    assert fit.dropped_ids == ["huge"]
    assert fit.estimated_tokens == 75


def test_budget_fit_cuts_long_conversation_to_first_plus_last_nine() -> None:
    long = _payload("long", messages=12, chars=110)

    fit = fit_to_token_budget([long], budget_tokens=300)

    assert fit.dropped_ids == []
    assert _ids(fit.kept[0]) == ["m0", *[f"m{index}" for index in range(3, 12)]]
    assert fit.kept[0].was_truncated is True
    assert fit.estimated_tokens == 275


def test_budget_fit_never_cuts_conversations_of_ten_messages_or_fewer() -> None:
    ten = _payload("ten", messages=10, chars=100)

    fit = fit_to_token_budget([ten], budget_tokens=100)

    assert fit.kept == []
    assert fit.dropped_ids == ["ten"]


def test_preparer_skips_missing_and_repeated_conversations(
    conversation_store,
    seed_conversation,
) -> None:
    seed_conversation("c1", messages=3)
    preparer = PayloadPreparer(conversation_store)

    payloads = preparer.prepare(["c1", "missing", "c1"], AnalysisType.WORKFLOW)

    assert [payload.id for payload in payloads] == ["c1"]
    assert payloads[0].title == "Pytest fixtures"
    assert payloads[0].message_count == 3
    assert _ids(payloads[0]) == ["c1-m0", "c1-m1", "c1-m2"]
    assert payloads[0].was_truncated is False


def test_preparer_uses_summary_policy(conversation_store, seed_conversation) -> None:
    seed_conversation("c1", messages=5)
    preparer = PayloadPreparer(conversation_store, payload_mode="expanded")

    payloads = preparer.prepare(["c1"], AnalysisType.SUMMARY)

    assert _ids(payloads[0]) == ["c1-m0", "c1-m4"]
