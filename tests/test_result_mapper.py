import json

import allure
import pytest

from convo_insights.orchestrator.errors import InvalidResponse
from convo_insights.orchestrator.models import AnalysisType, QueueItemStatus
from convo_insights.orchestrator.result_mapper import (
    NO_RESULT_REASON,
    ResultMapper,
    index_by_queue_id,
    parse_result_objects,
)

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Result Mapping"),
]


def _workflow(queue_id: str, **overrides) -> dict:
    return {
        "queue_id": queue_id,
        "action": "Debug",
        "artifact": "Test Suite",
        "domains": ["python"],
        "confidence": 0.7,
        **overrides,
    }


def test_each_item_gets_exactly_one_terminal_state(repository, claim_entries) -> None:
    entries = claim_entries(["c1", "c2", "c3"])
    q1, q2, q3 = (entry.item.queue_id for entry in entries)
    raw = json.dumps([_workflow(q1), _workflow(q2, action=""), _workflow("unknown-id")])

    summary = ResultMapper(repository).map_results(
        raw,
        entries,
        analysis_type=AnalysisType.WORKFLOW,
        backend="claude_code",
        model="test-model",
    )

    assert (summary.completed, summary.failed) == (1, 2)
    completed = repository.get(q1)
    assert completed.status is QueueItemStatus.COMPLETED
    assert json.loads(completed.result_json)["action"] == "Debug"
    assert completed.backend == "claude_code"
    assert completed.model == "test-model"
    invalid = repository.get(q2)
    assert invalid.status is QueueItemStatus.FAILED
    assert "action" in invalid.error_message
    missing = repository.get(q3)
    assert missing.status is QueueItemStatus.FAILED
    assert missing.error_message == NO_RESULT_REASON
    assert repository.get("unknown-id") is None


def test_mapping_is_not_repeated_for_terminal_items(repository, claim_entries) -> None:
    entries = claim_entries(["c1"])
    raw = json.dumps([_workflow(entries[0].item.queue_id)])
    mapper = ResultMapper(repository)

    first = mapper.map_results(
        raw,
        entries,
        analysis_type=AnalysisType.WORKFLOW,
        backend="gemini",
        model=None,
    )
    second = mapper.map_results(
        raw,
        entries,
        analysis_type=AnalysisType.WORKFLOW,
        backend="gemini",
        model=None,
    )

    assert first.completed == 1
    assert (second.completed, second.failed) == (0, 0)


def test_first_result_wins_for_duplicate_queue_ids() -> None:
    indexed = index_by_queue_id(
        [{"queue_id": "q1", "n": 1}, {"queue_id": "q1", "n": 2}, {"n": 3}],
    )

    assert list(indexed) == ["q1"]
    assert indexed["q1"].structured_output["n"] == 1


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('[{"queue_id": "q1"}, 5, {"queue_id": "q2"}]', ["q1", "q2"]),
        ('{"results": [{"queue_id": "q1"}]}', ["q1"]),
        ('{"summaries": [{"queue_id": "q3"}]}', ["q3"]),
        ('{"queue_id": "q1", "learnings": []}', ["q1"]),
        ('{"queue_id": "q1"}\nnot json\n{"queue_id": "q2"}\n', ["q1", "q2"]),
    ],
)
def test_parse_result_objects_accepts_common_shapes(raw: str, expected: list[str]) -> None:
    assert [entry["queue_id"] for entry in parse_result_objects(raw)] == expected


@pytest.mark.parametrize("raw", ["", "   ", "42", "not json at all"])
def test_parse_result_objects_rejects_unreadable_output(raw: str) -> None:
    with pytest.raises(InvalidResponse):
        parse_result_objects(raw)
