import asyncio
import sys
import time
from pathlib import Path

import allure
import pytest

from convo_insights.orchestrator.backend.subprocess_runner import (
    SubprocessResult,
    classify_exit_failure,
    run_subprocess,
)
from convo_insights.orchestrator.errors import (
    AnalysisTimeout,
    AuthenticationRequired,
    BackendRunError,
    PayloadTooLarge,
    ToolNotFound,
)

pytestmark = [
    allure.epic("Analysis Backends"),
    allure.feature("Subprocess Runner"),
]


def _run_python(code: str, **kwargs):
    return asyncio.run(
        run_subprocess(
            sys.executable,
            ["-c", code],
            stdin=kwargs.pop("stdin", b""),
            timeout_seconds=kwargs.pop("timeout_seconds", 30.0),
            **kwargs,
        ),
    )


def test_large_stdout_and_stderr_do_not_deadlock() -> None:
    code = (
        "import sys\n"
        "sys.stderr.write('e' * 1_000_000)\n"
        "sys.stdout.write('o' * 2_000_000)\n"
    )

    result = _run_python(code)

    assert result.exit_code == 0
    assert len(result.stdout) == 2_000_000
    assert len(result.stderr) == 1_000_000


def test_large_stdin_is_fed_while_output_is_drained() -> None:
    payload = b"z" * 1_500_000
    code = "import sys\nsys.stdout.buffer.write(sys.stdin.buffer.read())\n"

    result = _run_python(code, stdin=payload, max_input_bytes=None)

    assert result.stdout == payload


def test_child_exiting_without_reading_stdin_is_not_an_error() -> None:
    result = _run_python("import sys\nsys.exit(0)\n", stdin=b"q" * 2_000_000, max_input_bytes=None)

    assert result.exit_code == 0


def test_timeout_terminates_child() -> None:
    started = time.monotonic()

    with pytest.raises(AnalysisTimeout) as error:
        _run_python("import time\ntime.sleep(30)\n", timeout_seconds=0.5, grace_seconds=1.0)

    assert error.value.timeout_seconds == 0.5
    assert time.monotonic() - started < 10


def test_child_ignoring_sigterm_is_killed_after_grace() -> None:
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "time.sleep(30)\n"
    )
    started = time.monotonic()

    with pytest.raises(AnalysisTimeout):
        _run_python(code, timeout_seconds=1.0, grace_seconds=0.5)

    assert time.monotonic() - started < 10


def test_timeout_kills_grandchild_holding_stdout_open() -> None:
    started = time.monotonic()

    with pytest.raises(AnalysisTimeout):
        asyncio.run(
            run_subprocess(
                "/bin/sh",
                ["-c", "sleep 30 & echo hi"],
                stdin=b"",
                timeout_seconds=1.0,
                grace_seconds=0.5,
            ),
        )

    assert time.monotonic() - started < 10


def test_oversized_stdin_is_rejected_before_spawning(tmp_path: Path) -> None:
    with pytest.raises(PayloadTooLarge) as error:
        asyncio.run(
            run_subprocess(
                tmp_path / "never-started",
                [],
                stdin=b"x" * 11,
                timeout_seconds=1.0,
                max_input_bytes=10,
            ),
        )

    assert error.value.size_bytes == 11
    assert error.value.max_bytes == 10


def test_missing_executable_raises_tool_not_found(tmp_path: Path) -> None:
    with pytest.raises(ToolNotFound):
        asyncio.run(
            run_subprocess(tmp_path / "missing-tool", [], stdin=b"", timeout_seconds=1.0),
        )


def test_non_zero_exit_with_auth_message_requires_login() -> None:
    code = "import sys\nsys.stderr.write('Error: not logged in')\nsys.exit(1)\n"

    with pytest.raises(AuthenticationRequired):
        _run_python(code)


def test_check_disabled_returns_failed_result() -> None:
    result = _run_python("import sys\nprint('partial')\nsys.exit(3)\n", check=False)

    assert result.exit_code == 3
    assert result.stdout_text.strip() == "partial"


@pytest.mark.parametrize(
    ("stderr", "transient"),
    [
        (b"429 Too Many Requests", True),
        (b"Service overloaded, try again later", True),
        (b"unexpected argument", False),
    ],
)
def test_exit_failures_are_classified(stderr: bytes, transient: bool) -> None:
    error = classify_exit_failure(
        SubprocessResult(stdout=b"", stderr=stderr, exit_code=1, duration_seconds=0.1),
    )

    assert isinstance(error, BackendRunError)
    assert error.transient is transient
    assert "exited with code 1" in str(error)


def test_auth_failure_is_classified_before_transient() -> None:
    error = classify_exit_failure(
        SubprocessResult(
            stdout=b"",
            stderr=b"authentication failed (429)",
            exit_code=1,
            duration_seconds=0.1,
        ),
    )

    assert isinstance(error, AuthenticationRequired)
