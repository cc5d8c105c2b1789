import asyncio
import json
import stat
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from convo_insights.orchestrator.backend.base import AnalysisRequest, BatchEntry
from convo_insights.orchestrator.backend.cli_backend import (
    CliToolBackend,
    CliToolCapabilities,
    DetectedCliTool,
    candidate_paths,
    detect_cli_tool,
    parse_help_capabilities,
    parse_tool_output,
)
from convo_insights.orchestrator.errors import (
    AuthenticationRequired,
    BackendRunError,
    InvalidResponse,
    PayloadTooLarge,
)
from convo_insights.orchestrator.models import (
    AnalysisType,
    BackendKind,
    ConversationPayload,
    MessagePayload,
    QueueItemStatus,
    QueueItemView,
)
from convo_insights.orchestrator.prompts import prompt_for, response_schema_for

pytestmark = [
    allure.epic("Analysis Backends"),
    allure.feature("CLI Tool Backend"),
]

MISSING_TOOL = "convo-insights-test-missing-tool"
FULL_HELP = """Usage: claude [options]
  -p, --print                 Print response and exit
  --output-format <format>    text, json or stream-json
  --input-format <format>     text or stream-json
  --tools <tools...>          Built-in tools to allow
  --no-session-persistence    Do not save the session
"""


def _write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, "utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def _item(queue_id: str, conversation_id: str) -> QueueItemView:
    return QueueItemView(
        queue_id=queue_id,
        conversation_id=conversation_id,
        analysis_type=AnalysisType.WORKFLOW,
        status=QueueItemStatus.CLAIMED,
        priority=0,
        attempt_count=1,
        max_attempts=3,
        schema_version=1,
        claimed_by="test",
        claimed_at=None,
        backend=None,
        model=None,
        result_json=None,
        error_message=None,
        created_at=datetime(2026, 10, 1, tzinfo=UTC),
        started_at=None,
        completed_at=None,
        results_applied_at=None,
    )


def _workflow_request(*pairs: tuple[str, str]) -> AnalysisRequest:
    entries = [
        BatchEntry(
            item=_item(queue_id, conversation_id),
            conversation=ConversationPayload(
                id=conversation_id,
                title="Fix flaky test",
                messages=[MessagePayload(id="m0", role="user", content="The test is flaky")],
                message_count=1,
                estimated_character_count=31,
            ),
        )
        for queue_id, conversation_id in pairs
    ]
    return AnalysisRequest.for_batch(
        analysis_type=AnalysisType.WORKFLOW,
        prompt=prompt_for(AnalysisType.WORKFLOW),
        entries=entries,
        response_schema=response_schema_for(AnalysisType.WORKFLOW),
    )


def test_help_parsing_requires_all_four_flags() -> None:
    full = parse_help_capabilities(FULL_HELP)
    limited = parse_help_capabilities("Usage: tool\n  -p, --print\n  --output-format <f>\n")

    assert full.fully_supported is True
    assert full.no_session_persistence is True
    assert limited.fully_supported is False
    assert limited.missing() == ["--tools", "--input-format"]


def test_candidate_paths_put_custom_path_first_without_duplicates(tmp_path: Path) -> None:
    custom = tmp_path / "claude"

    paths = candidate_paths(tool_name=MISSING_TOOL, custom_path=custom)

    assert paths[0] == custom
    assert Path("/usr/local/bin") / MISSING_TOOL in paths
    assert len(paths) == len({str(path) for path in paths})


def test_detect_accepts_tool_advertising_required_flags(echo_tool: Path) -> None:
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))

    assert detected is not None
    assert detected.path == echo_tool
    assert detected.kind is BackendKind.CLAUDE_CODE
    assert detected.capabilities.no_session_persistence is True


def test_detect_rejects_tool_with_partial_flags(tmp_path: Path) -> None:
    script = _write_script(
        tmp_path / "bin" / "old-tool",
        "echo 'Usage: old-tool'\necho '  -p, --print'\necho '  --output-format <f>'\n",
    )

    assert asyncio.run(detect_cli_tool(custom_path=script, tool_name=MISSING_TOOL)) is None


def test_detect_skips_non_executable_path(tmp_path: Path) -> None:
    plain = tmp_path / "not-executable"
    plain.write_text(FULL_HELP, "utf-8")

    assert asyncio.run(detect_cli_tool(custom_path=plain, tool_name=MISSING_TOOL)) is None


def test_build_args_disable_tools_and_force_json(tmp_path: Path) -> None:
    backend = CliToolBackend(
        DetectedCliTool(
            kind=BackendKind.CLAUDE_CODE,
            path=tmp_path / "claude",
            capabilities=CliToolCapabilities(
                tools_flag=True,
                input_format=True,
                output_format=True,
                print_mode=True,
            ),
        ),
    )

    assert backend.build_args() == [
        "-p",
        "--tools",
        "",
        "--output-format",
        "json",
        "--input-format",
        "text",
    ]
    assert backend.build_env()["CLAUDE_NO_INTERACTIVE"] == "1"
    assert backend.token_budget is None


def test_parse_tool_output_unwraps_string_result() -> None:
    stdout = json.dumps({"type": "result", "is_error": False, "result": '[{"queue_id": "q1"}]'})

    assert json.loads(parse_tool_output(stdout)) == [{"queue_id": "q1"}]


def test_parse_tool_output_reads_last_envelope_line_and_structured_result() -> None:
    stdout = "debug noise\n" + json.dumps({"type": "result", "result": {"queue_id": "q1"}})

    assert json.loads(parse_tool_output(stdout)) == {"queue_id": "q1"}


def test_parse_tool_output_picks_result_from_event_list() -> None:
    stdout = json.dumps(
        [
            {"type": "system", "subtype": "init"},
            {"type": "result", "result": "```json\n[]\n```"},
        ],
    )

    assert parse_tool_output(stdout) == "[]"


@pytest.mark.parametrize(
    ("stdout", "error_type"),
    [
        ("", InvalidResponse),
        ("plain words", InvalidResponse),
        (json.dumps({"type": "assistant"}), InvalidResponse),
        (json.dumps({"type": "result", "is_error": False}), InvalidResponse),
        (json.dumps({"type": "result", "is_error": True, "result": "boom"}), InvalidResponse),
        (
            json.dumps({"type": "result", "is_error": True, "result": "Not logged in"}),
            AuthenticationRequired,
        ),
    ],
)
def test_parse_tool_output_rejects_bad_envelopes(stdout: str, error_type: type) -> None:
    with pytest.raises(error_type):
        parse_tool_output(stdout)


def test_analyze_round_trips_through_echo_tool(echo_tool: Path) -> None:
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))
    assert detected is not None
    backend = CliToolBackend(detected, timeout_seconds=60)

    output = asyncio.run(backend.analyze(_workflow_request(("q1", "c1"), ("q2", "c2"))))

    results = json.loads(output)
    assert [result["queue_id"] for result in results] == ["q1", "q2"]
    assert results[0]["action"] == "Review"


def test_analyze_recovers_fenced_answer(echo_tool: Path, monkeypatch) -> None:
    monkeypatch.setenv("CONVO_INSIGHTS_ECHO_FENCED", "1")
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))
    assert detected is not None

    output = asyncio.run(CliToolBackend(detected).analyze(_workflow_request(("q1", "c1"))))

    assert json.loads(output)[0]["queue_id"] == "q1"


def test_analyze_survives_megabytes_of_output(echo_tool: Path, monkeypatch) -> None:
    monkeypatch.setenv("CONVO_INSIGHTS_ECHO_STDOUT_PADDING_BYTES", str(2_000_000))
    monkeypatch.setenv("CONVO_INSIGHTS_ECHO_STDERR_PADDING_BYTES", str(1_000_000))
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))
    assert detected is not None

    output = asyncio.run(CliToolBackend(detected).analyze(_workflow_request(("q1", "c1"))))

    assert json.loads(output)[0]["queue_id"] == "q1"


def test_analyze_maps_tool_failure(echo_tool: Path, monkeypatch) -> None:
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))
    assert detected is not None
    monkeypatch.setenv("CONVO_INSIGHTS_ECHO_FAIL_MESSAGE", "Rate limit reached")

    with pytest.raises(BackendRunError) as error:
        asyncio.run(CliToolBackend(detected).analyze(_workflow_request(("q1", "c1"))))

    assert error.value.transient is True


def test_analyze_rejects_input_over_byte_limit(echo_tool: Path) -> None:
    detected = asyncio.run(detect_cli_tool(custom_path=echo_tool, tool_name=MISSING_TOOL))
    assert detected is not None

    with pytest.raises(PayloadTooLarge):
        asyncio.run(
            CliToolBackend(detected, max_input_bytes=100).analyze(
                _workflow_request(("q1", "c1")),
            ),
        )
