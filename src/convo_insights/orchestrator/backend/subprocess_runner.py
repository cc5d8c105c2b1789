"""Run a local CLI tool with piped stdio, a hard timeout and no pipe deadlocks.

Both output pipes are drained by their own tasks from the moment the child
starts, concurrently with feeding stdin and waiting for exit. A chatty child
can therefore never block on a full pipe buffer while the parent blocks on
``wait``.

Timeout protocol: race ``process.wait()`` against the deadline; on expiry
send SIGTERM, give the child ``grace_seconds`` to exit, then SIGKILL. The
child runs in its own session and signals go to the whole process group,
so a grandchild holding a pipe open cannot outlive the deadline. Every
wait after the kill is bounded. The drain tasks are always awaited before
returning or raising.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from convo_insights.orchestrator.errors import (
    AnalysisTimeout,
    AuthenticationRequired,
    BackendRunError,
    PayloadTooLarge,
    ToolNotFound,
)
from convo_insights.orchestrator.redaction import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_BYTES = 500_000
_DRAIN_AFTER_KILL_SECONDS = 2.0
_AUTH_PATTERNS: tuple[str, ...] = ("not logged in", "authentication")
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "overloaded",
)


@dataclass(slots=True)
class SubprocessResult:
    """Captured output of a finished child process."""

    stdout: bytes
    stderr: bytes
    exit_code: int
    duration_seconds: float

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


async def run_subprocess(  # noqa: PLR0913
    tool_path: str | Path,
    args: Sequence[str],
    *,
    stdin: bytes,
    timeout_seconds: float,
    env: Mapping[str, str] | None = None,
    grace_seconds: float = 5.0,
    max_input_bytes: int | None = DEFAULT_MAX_INPUT_BYTES,
    check: bool = True,
) -> SubprocessResult:
    """Run ``tool_path args`` feeding ``stdin``; raise typed errors on failure.

    With ``check`` enabled a non-zero exit raises ``AuthenticationRequired``
    or ``BackendRunError``; otherwise the result is returned as is.
    """

    if max_input_bytes is not None and len(stdin) > max_input_bytes:
        raise PayloadTooLarge(size_bytes=len(stdin), max_bytes=max_input_bytes)

    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(  # noqa: S603
            str(tool_path),
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as error:
        raise ToolNotFound(f"Cannot start CLI tool {tool_path}: {error}") from error

    if process.stdout is None or process.stderr is None or process.stdin is None:
        raise RuntimeError("Subprocess pipes were not created.")
    stdout_task = asyncio.create_task(process.stdout.read())
    stderr_task = asyncio.create_task(process.stderr.read())
    writer_task = asyncio.create_task(_feed_stdin(process.stdin, stdin))
    wait_task = asyncio.create_task(process.wait())

    timed_out = False
    try:
        done, _ = await asyncio.wait({wait_task}, timeout=timeout_seconds)
        if wait_task not in done:
            timed_out = True
            logger.warning(
                "CLI tool %s exceeded %.1fs; terminating",
                Path(tool_path).name,
                timeout_seconds,
            )
            await _terminate(process, wait_task, grace_seconds=grace_seconds)
    except BaseException:
        _signal_group(process, signal.SIGKILL)
        raise
    finally:
        if not wait_task.done():
            wait_task.cancel()
            await asyncio.gather(wait_task, return_exceptions=True)
        stdout, stderr = await _collect_drains(
            stdout_task,
            stderr_task,
            writer_task,
            bounded=timed_out or process.returncode is None,
        )

    duration = time.monotonic() - started
    if timed_out:
        raise AnalysisTimeout(
            f"CLI tool timed out after {timeout_seconds:.0f}s",
            timeout_seconds=timeout_seconds,
        )

    exit_code = process.returncode if process.returncode is not None else -1
    result = SubprocessResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        duration_seconds=duration,
    )
    logger.debug(
        "CLI tool %s exited with %s in %.2fs (stdout=%d bytes, stderr=%d bytes)",
        Path(tool_path).name,
        exit_code,
        duration,
        len(stdout),
        len(stderr),
    )
    if check and exit_code != 0:
        raise classify_exit_failure(result)
    return result


def classify_exit_failure(result: SubprocessResult) -> AuthenticationRequired | BackendRunError:
    """Map a non-zero exit to a typed error, keeping a redacted stderr excerpt."""

    stderr_text = result.stderr_text
    haystack = f"{stderr_text}\n{result.stdout_text}".lower()
    excerpt = sanitize_preview(stderr_text or result.stdout_text, max_chars=500)
    if any(pattern in haystack for pattern in _AUTH_PATTERNS):
        return AuthenticationRequired(f"CLI tool requires authentication: {excerpt}")
    transient = any(pattern in haystack for pattern in _TRANSIENT_PATTERNS)
    return BackendRunError(
        f"CLI tool exited with code {result.exit_code}: {excerpt or 'no output'}",
        transient=transient,
    )


async def _feed_stdin(writer: asyncio.StreamWriter, data: bytes) -> None:
    try:
        if data:
            writer.write(data)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # Child exited before reading all of its input.
        pass
    finally:
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            writer.close()
            await writer.wait_closed()


async def _terminate(
    process: asyncio.subprocess.Process,
    wait_task: asyncio.Task[int],
    *,
    grace_seconds: float,
) -> None:
    _signal_group(process, signal.SIGTERM)
    done, _ = await asyncio.wait({wait_task}, timeout=grace_seconds)
    if wait_task in done:
        return
    logger.warning("Process group %s ignored SIGTERM; killing", process.pid)
    _signal_group(process, signal.SIGKILL)
    done, _ = await asyncio.wait({wait_task}, timeout=_DRAIN_AFTER_KILL_SECONDS)
    if wait_task not in done:
        logger.warning("Process %s still holds its pipes after SIGKILL", process.pid)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    # pgid equals the child pid because of start_new_session.
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, sig)


async def _collect_drains(
    stdout_task: asyncio.Task[bytes],
    stderr_task: asyncio.Task[bytes],
    writer_task: asyncio.Task[None],
    *,
    bounded: bool,
) -> tuple[bytes, bytes]:
    tasks = (stdout_task, stderr_task, writer_task)
    timeout = _DRAIN_AFTER_KILL_SECONDS if bounded else None
    done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        # Grandchildren may keep a pipe open after the direct child is gone.
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    stdout = stdout_task.result() if stdout_task in done and not stdout_task.exception() else b""
    stderr = stderr_task.result() if stderr_task in done and not stderr_task.exception() else b""
    if writer_task in done:
        writer_task.exception()
    return stdout, stderr
