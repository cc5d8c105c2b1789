from datetime import timedelta

import allure

from convo_insights.orchestrator.models import AnalysisType, QueueItemCreate, QueueItemStatus
from convo_insights.storage.common import utc_now

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Queue Repository"),
]


def _enqueue(repository, *conversation_ids: str, priority: int = 0, **kwargs):
    return repository.insert_many(
        [
            QueueItemCreate(
                conversation_id=conversation_id,
                analysis_type=kwargs.get("analysis_type", AnalysisType.WORKFLOW),
                priority=priority,
            )
            for conversation_id in conversation_ids
        ],
    )


def test_enqueued_items_start_pending(repository) -> None:
    items = _enqueue(repository, "c1", "c1")

    assert [item.status for item in items] == [QueueItemStatus.PENDING] * 2
    assert items[0].queue_id != items[1].queue_id
    assert items[0].attempt_count == 0
    assert repository.pending_count() == 2


def test_claim_orders_by_priority_then_creation(repository) -> None:
    _enqueue(repository, "low-1", "low-2")
    _enqueue(repository, "high", priority=5)

    claimed = repository.claim_pending(count=2, owner_id="worker-a")

    assert [item.conversation_id for item in claimed] == ["high", "low-1"]
    assert all(item.status is QueueItemStatus.CLAIMED for item in claimed)
    assert all(item.claimed_by == "worker-a" for item in claimed)
    assert all(item.attempt_count == 1 for item in claimed)
    assert claimed[0].claimed_at is not None
    assert repository.pending_count() == 1


def test_claimed_items_are_invisible_to_other_owners(repository) -> None:
    _enqueue(repository, "c1", "c2")

    first = repository.claim_pending(count=5, owner_id="worker-a")
    second = repository.claim_pending(count=5, owner_id="worker-b")

    assert len(first) == 2
    assert second == []
    assert repository.claim_pending(count=0, owner_id="worker-b") == []


def test_transitions_only_leave_claimed(repository) -> None:
    (item,) = _enqueue(repository, "c1")

    assert repository.mark_completed(
        queue_id=item.queue_id,
        result_json="{}",
        backend="gemini",
        model=None,
    ) is False
    repository.claim_pending(count=1, owner_id="worker-a")
    assert repository.mark_failed(queue_id=item.queue_id, reason="boom") is True
    assert repository.mark_completed(
        queue_id=item.queue_id,
        result_json="{}",
        backend="gemini",
        model=None,
    ) is False
    assert repository.mark_failed(queue_id=item.queue_id, reason="again") is False

    failed = repository.get(item.queue_id)
    assert failed.status is QueueItemStatus.FAILED
    assert failed.error_message == "boom"
    assert failed.completed_at is not None


def test_events_record_each_transition(repository) -> None:
    (item,) = _enqueue(repository, "c1")
    repository.claim_pending(count=1, owner_id="worker-a")
    repository.mark_completed(
        queue_id=item.queue_id,
        result_json='{"queue_id": "x"}',
        backend="claude_code",
        model="m",
    )

    events = repository.list_events(item.queue_id)

    assert [event.event_type for event in events] == ["enqueued", "claimed", "completed"]
    assert events[1].status_from == "pending"
    assert events[1].status_to == "claimed"


def test_counts_and_listing_filters(repository) -> None:
    _enqueue(repository, "c1", "c2")
    _enqueue(repository, "c3", analysis_type=AnalysisType.SUMMARY)
    (claimed,) = repository.claim_pending(count=1, owner_id="worker-a")

    assert repository.count_by_status() == {
        "pending": 2,
        "claimed": 1,
        "completed": 0,
        "failed": 0,
    }
    summaries = repository.list_items(analysis_type=AnalysisType.SUMMARY)
    assert [item.conversation_id for item in summaries] == ["c3"]
    claimed_items = repository.list_items(status=QueueItemStatus.CLAIMED)
    assert [item.queue_id for item in claimed_items] == [claimed.queue_id]
    assert len(repository.list_items(limit=2)) == 2
    assert [item.conversation_id for item in repository.fetch_pending()] == ["c2", "c3"]


def test_stale_claims_are_failed_not_requeued(repository) -> None:
    _enqueue(repository, "c1")
    (item,) = repository.claim_pending(count=1, owner_id="crashed-worker")

    assert repository.fail_stale_claims(older_than_seconds=600) == []
    failed = repository.fail_stale_claims(
        older_than_seconds=600,
        now=utc_now() + timedelta(seconds=601),
    )

    assert failed == [item.queue_id]
    stale = repository.get(item.queue_id)
    assert stale.status is QueueItemStatus.FAILED
    assert "600s" in stale.error_message
    assert repository.pending_count() == 0
    assert repository.list_events(item.queue_id)[-1].event_type == "stale_claim_failed"


def test_touched_claims_are_not_stale(repository) -> None:
    _enqueue(repository, "c1", "c2")
    busy, idle = repository.claim_pending(count=2, owner_id="worker-a")
    later = utc_now() + timedelta(seconds=500)

    assert repository.touch_claims([busy.queue_id, "unknown"], now=later) == 1
    failed = repository.fail_stale_claims(
        older_than_seconds=600,
        now=later + timedelta(seconds=200),
    )

    assert failed == [idle.queue_id]
    assert repository.get(busy.queue_id).status is QueueItemStatus.CLAIMED


def test_retention_deletes_only_old_terminal_items(repository) -> None:
    _enqueue(repository, "failed-one", "finished")
    (done, completed) = repository.claim_pending(count=2, owner_id="worker-a")
    repository.mark_failed(queue_id=done.queue_id, reason="boom")
    repository.mark_completed(
        queue_id=completed.queue_id,
        result_json="{}",
        backend="gemini",
        model=None,
    )
    _enqueue(repository, "still-pending")

    assert repository.delete_old_items(older_than_days=30) == 0
    deleted = repository.delete_old_items(
        older_than_days=30,
        now=utc_now() + timedelta(days=31),
    )

    assert deleted == 2
    assert repository.get(done.queue_id) is None
    assert repository.list_events(done.queue_id) == []
    assert [item.conversation_id for item in repository.fetch_pending()] == ["still-pending"]


def test_results_are_marked_applied_once(repository) -> None:
    (item,) = _enqueue(repository, "c1")
    repository.claim_pending(count=1, owner_id="worker-a")
    repository.mark_completed(
        queue_id=item.queue_id,
        result_json="{}",
        backend="gemini",
        model=None,
    )

    unapplied = repository.list_unapplied_completed()

    assert [row.queue_id for row in unapplied] == [item.queue_id]
    assert repository.mark_results_applied(queue_id=item.queue_id) is True
    assert repository.mark_results_applied(queue_id=item.queue_id) is False
    assert repository.list_unapplied_completed() == []
    assert repository.get(item.queue_id).results_applied_at is not None
