"""Periodic queue maintenance: expire stale claims and drop old terminal items."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from convo_insights.orchestrator.repository import QueueRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReapSummary:
    failed_stale: list[str] = field(default_factory=list)
    deleted: int = 0
    passes: int = 0


class StaleClaimsReaper:
    """Fails claims abandoned by a crashed or killed process."""

    def __init__(
        self,
        repository: QueueRepository,
        *,
        stale_claim_seconds: int = 600,
        retention_days: int = 30,
        interval_seconds: float = 300.0,
    ) -> None:
        self.repository = repository
        self.stale_claim_seconds = stale_claim_seconds
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self.totals = ReapSummary()

    def reap(self) -> ReapSummary:
        """One maintenance pass."""

        summary = ReapSummary(
            passes=1,
            failed_stale=self.repository.fail_stale_claims(
                older_than_seconds=self.stale_claim_seconds,
            ),
            deleted=self.repository.delete_old_items(older_than_days=self.retention_days),
        )
        if summary.failed_stale or summary.deleted:
            logger.info(
                "Reaper failed %d stale claims and deleted %d old items",
                len(summary.failed_stale),
                summary.deleted,
            )
        return summary

    async def run(self, stop_event: asyncio.Event, *, max_passes: int | None = None) -> int:
        """Reap every ``interval_seconds`` until stopped; returns passes run.

        Stops when ``stop_event`` is set or after ``max_passes`` passes.
        Each pass runs in a worker thread and adds to ``totals``.
        """

        passes = 0
        while not stop_event.is_set():
            summary = await asyncio.to_thread(self.reap)
            self.totals.failed_stale.extend(summary.failed_stale)
            self.totals.deleted += summary.deleted
            self.totals.passes += 1
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
        return passes
