"""Persistent analysis queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from convo_insights.orchestrator.models import (
    RESULT_SCHEMA_VERSION,
    AnalysisType,
    QueueEventView,
    QueueItemCreate,
    QueueItemStatus,
    QueueItemView,
)
from convo_insights.storage.alembic_runner import upgrade_head
from convo_insights.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from convo_insights.storage.sqlmodel_models import AnalysisQueueEventRow, AnalysisQueueRow

_TERMINAL_STATUSES = (QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value)


class QueueRepository:
    """Queue persistence facade.

    Every state mutation is a conditional UPDATE guarded by the expected
    current status, so a lost race shows up as ``rowcount != 1`` instead of
    a double transition.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert(self, payload: QueueItemCreate) -> QueueItemView:
        """Create one pending item."""

        return self.insert_many([payload])[0]

    def insert_many(self, payloads: list[QueueItemCreate]) -> list[QueueItemView]:
        """Create pending items in one transaction, preserving input order."""

        now = to_db_datetime(utc_now())
        queue_ids: list[str] = []
        with Session(self.engine) as session:
            for payload in payloads:
                queue_id = payload.queue_id or str(uuid4())
                queue_ids.append(queue_id)
                session.add(
                    AnalysisQueueRow(
                        queue_id=queue_id,
                        conversation_id=payload.conversation_id,
                        analysis_type=payload.analysis_type.value,
                        status=QueueItemStatus.PENDING.value,
                        priority=payload.priority,
                        attempt_count=0,
                        max_attempts=payload.max_attempts,
                        schema_version=RESULT_SCHEMA_VERSION,
                        created_at=now,
                    ),
                )
            session.flush()
            for payload, queue_id in zip(payloads, queue_ids, strict=True):
                self._add_event(
                    session=session,
                    queue_id=queue_id,
                    event_type="enqueued",
                    status_from=None,
                    status_to=QueueItemStatus.PENDING,
                    details={
                        "analysis_type": payload.analysis_type.value,
                        "priority": payload.priority,
                    },
                )
            session.commit()
            rows = {
                row.queue_id: row
                for row in session.exec(
                    select(AnalysisQueueRow).where(col(AnalysisQueueRow.queue_id).in_(queue_ids)),
                ).all()
            }
            return [_to_item_view(rows[queue_id]) for queue_id in queue_ids]

    def claim_pending(self, *, count: int, owner_id: str) -> list[QueueItemView]:
        """Atomically claim up to ``count`` pending items for ``owner_id``.

        Candidates are ordered by priority (highest first), then creation
        order. Each candidate is flipped with a status-guarded UPDATE; rows
        another owner got first are skipped.
        """

        if count <= 0:
            return []
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            candidates = session.exec(
                select(AnalysisQueueRow)
                .where(
                    AnalysisQueueRow.status == QueueItemStatus.PENDING.value,
                    col(AnalysisQueueRow.attempt_count) < col(AnalysisQueueRow.max_attempts),
                )
                .order_by(
                    col(AnalysisQueueRow.priority).desc(),
                    col(AnalysisQueueRow.created_at).asc(),
                    literal_column("analysis_queue.rowid").asc(),
                )
                .limit(count),
            ).all()
            candidate_ids = [row.queue_id for row in candidates]

            claimed_ids: list[str] = []
            for queue_id in candidate_ids:
                result = session.exec(
                    sa_update(AnalysisQueueRow)
                    .where(
                        col(AnalysisQueueRow.queue_id) == queue_id,
                        col(AnalysisQueueRow.status) == QueueItemStatus.PENDING.value,
                    )
                    .values(
                        status=QueueItemStatus.CLAIMED.value,
                        claimed_by=owner_id,
                        claimed_at=now,
                        started_at=now,
                        attempt_count=col(AnalysisQueueRow.attempt_count) + 1,
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                claimed_ids.append(queue_id)
                self._add_event(
                    session=session,
                    queue_id=queue_id,
                    event_type="claimed",
                    status_from=QueueItemStatus.PENDING,
                    status_to=QueueItemStatus.CLAIMED,
                    details={"owner_id": owner_id},
                )
            session.commit()

            if not claimed_ids:
                return []
            rows = {
                row.queue_id: row
                for row in session.exec(
                    select(AnalysisQueueRow).where(
                        col(AnalysisQueueRow.queue_id).in_(claimed_ids),
                        AnalysisQueueRow.claimed_by == owner_id,
                    ),
                ).all()
            }
            return [_to_item_view(rows[queue_id]) for queue_id in claimed_ids if queue_id in rows]

    def touch_claims(self, queue_ids: list[str], *, now: datetime | None = None) -> int:
        """Refresh ``claimed_at`` of items still claimed; returns rows touched."""

        if not queue_ids:
            return 0
        current = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisQueueRow)
                .where(
                    col(AnalysisQueueRow.queue_id).in_(queue_ids),
                    col(AnalysisQueueRow.status) == QueueItemStatus.CLAIMED.value,
                )
                .values(claimed_at=current)
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return result.rowcount

    def mark_completed(
        self,
        *,
        queue_id: str,
        result_json: str,
        backend: str,
        model: str | None,
    ) -> bool:
        """Mark a claimed item as completed with its structured result."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisQueueRow)
                .where(
                    col(AnalysisQueueRow.queue_id) == queue_id,
                    col(AnalysisQueueRow.status) == QueueItemStatus.CLAIMED.value,
                )
                .values(
                    status=QueueItemStatus.COMPLETED.value,
                    result_json=result_json,
                    backend=backend,
                    model=model,
                    error_message=None,
                    completed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                queue_id=queue_id,
                event_type="completed",
                status_from=QueueItemStatus.CLAIMED,
                status_to=QueueItemStatus.COMPLETED,
                details={"backend": backend, "model": model},
            )
            session.commit()
            return True

    def mark_failed(
        self,
        *,
        queue_id: str,
        reason: str,
        backend: str | None = None,
        model: str | None = None,
    ) -> bool:
        """Mark a claimed item as failed. Failed items are terminal."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisQueueRow)
                .where(
                    col(AnalysisQueueRow.queue_id) == queue_id,
                    col(AnalysisQueueRow.status) == QueueItemStatus.CLAIMED.value,
                )
                .values(
                    status=QueueItemStatus.FAILED.value,
                    error_message=reason,
                    backend=backend,
                    model=model,
                    completed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                queue_id=queue_id,
                event_type="failed",
                status_from=QueueItemStatus.CLAIMED,
                status_to=QueueItemStatus.FAILED,
                details={"reason": reason},
            )
            session.commit()
            return True

    def fetch_pending(self, *, limit: int | None = None) -> list[QueueItemView]:
        """Pending items in claim order."""

        with Session(self.engine) as session:
            statement = (
                select(AnalysisQueueRow)
                .where(AnalysisQueueRow.status == QueueItemStatus.PENDING.value)
                .order_by(
                    col(AnalysisQueueRow.priority).desc(),
                    col(AnalysisQueueRow.created_at).asc(),
                    literal_column("analysis_queue.rowid").asc(),
                )
            )
            if limit is not None:
                statement = statement.limit(limit)
            return [_to_item_view(row) for row in session.exec(statement).all()]

    def pending_count(self) -> int:
        """Number of items still waiting to be claimed."""

        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(AnalysisQueueRow)
                    .where(AnalysisQueueRow.status == QueueItemStatus.PENDING.value),
                ).one(),
            )

    def count_by_status(self) -> dict[str, int]:
        """Item counts keyed by status value, including zero counts."""

        counts = {status.value: 0 for status in QueueItemStatus}
        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisQueueRow.status, func.count()).group_by(AnalysisQueueRow.status),
            ).all()
        for status, total in rows:
            counts[status] = int(total)
        return counts

    def get(self, queue_id: str) -> QueueItemView | None:
        """One item by id."""

        with Session(self.engine) as session:
            row = session.exec(
                select(AnalysisQueueRow).where(AnalysisQueueRow.queue_id == queue_id),
            ).one_or_none()
            return _to_item_view(row) if row is not None else None

    def list_items(
        self,
        *,
        status: QueueItemStatus | None = None,
        analysis_type: AnalysisType | None = None,
        limit: int = 50,
    ) -> list[QueueItemView]:
        """Most recent items first, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(AnalysisQueueRow)
            if status is not None:
                statement = statement.where(AnalysisQueueRow.status == status.value)
            if analysis_type is not None:
                statement = statement.where(
                    AnalysisQueueRow.analysis_type == analysis_type.value,
                )
            statement = statement.order_by(
                col(AnalysisQueueRow.created_at).desc(),
                literal_column("analysis_queue.rowid").desc(),
            ).limit(limit)
            return [_to_item_view(row) for row in session.exec(statement).all()]

    def list_events(self, queue_id: str) -> list[QueueEventView]:
        """Audit trail for one item in chronological order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisQueueEventRow)
                .where(AnalysisQueueEventRow.queue_id == queue_id)
                .order_by(col(AnalysisQueueEventRow.event_id).asc()),
            ).all()
            return [
                QueueEventView(
                    event_id=row.event_id or 0,
                    queue_id=row.queue_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    details_json=row.details_json,
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def fail_stale_claims(
        self,
        *,
        older_than_seconds: int,
        now: datetime | None = None,
    ) -> list[str]:
        """Fail items left ``claimed`` longer than the threshold.

        Stale claims are failed rather than returned to pending so that
        items only ever move forward through their lifecycle.
        """

        current = now or utc_now()
        cutoff = to_db_datetime(current - timedelta(seconds=older_than_seconds))
        reason = f"Claim expired after {older_than_seconds}s without a result"
        failed: list[str] = []
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(AnalysisQueueRow.queue_id).where(
                    AnalysisQueueRow.status == QueueItemStatus.CLAIMED.value,
                    col(AnalysisQueueRow.claimed_at) < cutoff,
                ),
            ).all()
            for queue_id in stale_ids:
                result = session.exec(
                    sa_update(AnalysisQueueRow)
                    .where(
                        col(AnalysisQueueRow.queue_id) == queue_id,
                        col(AnalysisQueueRow.status) == QueueItemStatus.CLAIMED.value,
                    )
                    .values(
                        status=QueueItemStatus.FAILED.value,
                        error_message=reason,
                        completed_at=to_db_datetime(current),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    continue
                failed.append(queue_id)
                self._add_event(
                    session=session,
                    queue_id=queue_id,
                    event_type="stale_claim_failed",
                    status_from=QueueItemStatus.CLAIMED,
                    status_to=QueueItemStatus.FAILED,
                    details={"older_than_seconds": older_than_seconds},
                )
            session.commit()
        return failed

    def delete_old_items(self, *, older_than_days: int, now: datetime | None = None) -> int:
        """Delete terminal items created before the retention cutoff."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - timedelta(days=older_than_days))
        with Session(self.engine) as session:
            doomed = session.exec(
                select(AnalysisQueueRow.queue_id).where(
                    col(AnalysisQueueRow.status).in_(_TERMINAL_STATUSES),
                    col(AnalysisQueueRow.created_at) < cutoff,
                ),
            ).all()
            if not doomed:
                return 0
            session.exec(
                sa_delete(AnalysisQueueEventRow).where(
                    col(AnalysisQueueEventRow.queue_id).in_(doomed),
                ),
            )
            session.exec(
                sa_delete(AnalysisQueueRow).where(col(AnalysisQueueRow.queue_id).in_(doomed)),
            )
            session.commit()
        return len(doomed)

    def list_unapplied_completed(self, *, limit: int = 100) -> list[QueueItemView]:
        """Completed items whose results were not yet written to domain tables."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisQueueRow)
                .where(
                    AnalysisQueueRow.status == QueueItemStatus.COMPLETED.value,
                    col(AnalysisQueueRow.results_applied_at).is_(None),
                )
                .order_by(col(AnalysisQueueRow.completed_at).asc())
                .limit(limit),
            ).all()
            return [_to_item_view(row) for row in rows]

    def mark_results_applied(self, *, queue_id: str) -> bool:
        """Stamp a completed item as consumed by the result applier."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AnalysisQueueRow)
                .where(
                    col(AnalysisQueueRow.queue_id) == queue_id,
                    col(AnalysisQueueRow.status) == QueueItemStatus.COMPLETED.value,
                    col(AnalysisQueueRow.results_applied_at).is_(None),
                )
                .values(results_applied_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                queue_id=queue_id,
                event_type="results_applied",
                status_from=QueueItemStatus.COMPLETED,
                status_to=QueueItemStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        queue_id: str,
        event_type: str,
        status_from: QueueItemStatus | None,
        status_to: QueueItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AnalysisQueueEventRow(
                queue_id=queue_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def _to_item_view(row: AnalysisQueueRow) -> QueueItemView:
    return QueueItemView(
        queue_id=row.queue_id,
        conversation_id=row.conversation_id,
        analysis_type=AnalysisType(row.analysis_type),
        status=QueueItemStatus(row.status),
        priority=row.priority,
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        schema_version=row.schema_version,
        claimed_by=row.claimed_by,
        claimed_at=_optional_aware(row.claimed_at),
        backend=row.backend,
        model=row.model,
        result_json=row.result_json,
        error_message=row.error_message,
        created_at=to_utc_aware(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        results_applied_at=_optional_aware(row.results_applied_at),
    )
