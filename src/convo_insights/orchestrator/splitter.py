"""Adaptive batch splitting on oversized payloads."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from convo_insights.orchestrator.backend.base import BatchEntry
from convo_insights.orchestrator.errors import AnalysisError, PayloadTooLarge
from convo_insights.orchestrator.result_mapper import parse_result_objects

logger = logging.getLogger(__name__)

BatchExecutor = Callable[[list[BatchEntry]], Awaitable[str]]


@dataclass(slots=True)
class AdaptiveSplitResult:
    """Merged backend output plus items that never got a usable answer.

    ``rejected`` holds single items too large to send at all; ``failed``
    holds items of a split half whose call raised, keyed by queue id.
    """

    output: str = "[]"
    rejected: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    calls: int = 0


async def run_with_adaptive_split(
    entries: list[BatchEntry],
    execute: BatchExecutor,
) -> AdaptiveSplitResult:
    """Run ``execute`` on the whole batch, halving only on ``PayloadTooLarge``.

    Halves are retried independently. A single entry that is still too
    large is rejected with the error text. Once the batch has been split,
    an analysis error in one half fails only that half and the answers of
    the other halves are kept. An error on the unsplit batch propagates.
    """

    result = AdaptiveSplitResult()
    merged: list[Any] = []
    await _run(entries, execute, merged=merged, result=result, split=False)
    result.output = json.dumps(merged, ensure_ascii=False)
    return result


async def _run(
    entries: list[BatchEntry],
    execute: BatchExecutor,
    *,
    merged: list[Any],
    result: AdaptiveSplitResult,
    split: bool,
) -> None:
    if not entries:
        return
    result.calls += 1
    try:
        objects = parse_result_objects(await execute(entries))
    except PayloadTooLarge as error:
        if len(entries) == 1:
            queue_id = entries[0].item.queue_id
            logger.warning("Queue item %s is too large to send alone: %s", queue_id, error)
            result.rejected[queue_id] = str(error)
            return
        middle = len(entries) // 2
        logger.info(
            "Batch of %d items too large; splitting into %d + %d",
            len(entries),
            middle,
            len(entries) - middle,
        )
        await _run(entries[:middle], execute, merged=merged, result=result, split=True)
        await _run(entries[middle:], execute, merged=merged, result=result, split=True)
        return
    except AnalysisError as error:
        if not split:
            raise
        reason = str(error) or type(error).__name__
        logger.warning("Split batch of %d items failed: %s", len(entries), reason)
        for entry in entries:
            result.failed[entry.item.queue_id] = reason
        return
    merged.extend(objects)
