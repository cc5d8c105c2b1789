"""Deterministic stand-in for the local CLI tool, used by integration tests.

Speaks the same flags and JSON envelope as the real tool. Behaviour knobs are
read from the environment so tests can provoke each failure mode.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from typing import Any

from convo_insights.orchestrator.backend.base import INPUT_DATA_SEPARATOR

ENV_DROP_LAST = "CONVO_INSIGHTS_ECHO_DROP_LAST"
ENV_STDOUT_PADDING = "CONVO_INSIGHTS_ECHO_STDOUT_PADDING_BYTES"
ENV_STDERR_PADDING = "CONVO_INSIGHTS_ECHO_STDERR_PADDING_BYTES"
ENV_SLEEP = "CONVO_INSIGHTS_ECHO_SLEEP_SECONDS"
ENV_IGNORE_SIGTERM = "CONVO_INSIGHTS_ECHO_IGNORE_SIGTERM"
ENV_FAIL_MESSAGE = "CONVO_INSIGHTS_ECHO_FAIL_MESSAGE"
ENV_FENCED = "CONVO_INSIGHTS_ECHO_FENCED"


def main(argv: list[str] | None = None) -> int:
    """Answer one request read from stdin."""

    parser = argparse.ArgumentParser(prog="echo-tool")
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--tools", default=None)
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--input-format", default="text")
    parser.add_argument("--no-session-persistence", action="store_true")
    args = parser.parse_args(argv)

    if os.getenv(ENV_IGNORE_SIGTERM) == "1":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    raw_input = sys.stdin.read()
    _write_padding(sys.stderr, os.getenv(ENV_STDERR_PADDING))

    sleep_seconds = float(os.getenv(ENV_SLEEP, "0") or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    fail_message = os.getenv(ENV_FAIL_MESSAGE)
    if fail_message:
        sys.stderr.write(fail_message + "\n")
        return 1

    if not args.print_mode:
        sys.stdout.write("interactive mode is not supported\n")
        return 2

    _, _, data_text = raw_input.partition(INPUT_DATA_SEPARATOR)
    data = json.loads(data_text) if data_text.strip() else {}
    answer = json.dumps(build_answer(data), ensure_ascii=False)
    if os.getenv(ENV_FENCED) == "1":
        answer = f"Here you go:\n```json\n{answer}\n```"

    _write_padding(sys.stdout, os.getenv(ENV_STDOUT_PADDING))
    envelope = {"type": "result", "subtype": "success", "is_error": False, "result": answer}
    if args.output_format == "json":
        sys.stdout.write(json.dumps(envelope) + "\n")
    else:
        sys.stdout.write(answer + "\n")
    return 0


def build_answer(data: dict[str, Any]) -> Any:
    """One well-formed result object per queue item, or merge suggestions."""

    if "learnings" in data:
        ids = [str(entry["id"]) for entry in data["learnings"]]
        suggestions = []
        if len(ids) >= 2:  # noqa: PLR2004
            suggestions.append(
                {
                    "source_ids": ids[:2],
                    "merged_rule": "Merged rule",
                    "confidence": 0.8,
                    "reasoning": "Same intent.",
                },
            )
        return {"merge_suggestions": suggestions}

    analysis_type = data.get("analysisType")
    titles = {entry["id"]: entry.get("title") or "" for entry in data.get("conversations", [])}
    results = [
        _result_for(analysis_type, item["queueId"], titles.get(item["conversationId"], ""))
        for item in data.get("queueItems", [])
    ]
    if os.getenv(ENV_DROP_LAST) == "1" and results:
        results.pop()
    return results


def _result_for(analysis_type: str | None, queue_id: str, title: str) -> dict[str, Any]:
    if analysis_type == "workflow":
        return {
            "queue_id": queue_id,
            "action": "Review",
            "artifact": "Pull Request",
            "domains": ["python", "testing"],
            "confidence": 0.9,
            "reasoning": f"Conversation titled {title!r}.",
        }
    if analysis_type == "learning":
        return {
            "queue_id": queue_id,
            "learnings": [
                {"type": "correction", "rule": "Always use pytest.", "confidence": 0.85},
            ],
        }
    return {
        "queue_id": queue_id,
        "suggested_title": f"Summary of {title}".strip(),
        "suggested_summary": "The user asked for help and got it.",
        "confidence": 0.9,
    }


def _write_padding(stream: Any, size: str | None) -> None:
    if not size:
        return
    remaining = int(size)
    line = "x" * 1023 + "\n"
    while remaining > 0:
        chunk = line[: min(remaining, len(line))]
        stream.write(chunk)
        remaining -= len(chunk)
    stream.write("\n")
    stream.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
