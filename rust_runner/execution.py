from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from .errors import ExecutionTimeout, InternalError
from .logging import log_event

EXECUTION_COMPONENT = "execution"
RUN_MODE = "run"


@dataclass(frozen=True)
class RunInvocation:
    project_dir: Path
    args: tuple[str, ...] = field(default_factory=tuple)
    cwd: Path | None = None

    def argv(self, runner_path: str) -> list[str]:
        return [runner_path, RUN_MODE, str(self.project_dir), *self.args]

    @property
    def working_dir(self) -> Path:
        return self.cwd if self.cwd is not None else self.project_dir


class ProcessResult(BaseModel):
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0


def emit_execution_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=EXECUTION_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


async def kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    _ = await process.wait()


async def invoke_runner(
    invocation: RunInvocation,
    *,
    runner_path: str,
    timeout_seconds: float,
) -> ProcessResult:
    """Run the external runner against a prepared project directory.

    The child gets its own session so that a timeout or cancellation can
    kill everything it spawned (cargo, rustc, the built binary).
    """
    argv = invocation.argv(runner_path)
    started = time.monotonic()
    emit_execution_log(
        "runner.start",
        project_dir=str(invocation.project_dir),
        args=list(invocation.args),
        timeout_seconds=timeout_seconds,
    )
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=invocation.working_dir,
            start_new_session=True,
        )
    except OSError as error:
        emit_execution_log(
            "runner.launch_failed",
            level="error",
            runner=runner_path,
            error=str(error),
        )
        raise InternalError(f"Failed to execute project: {error}") from error

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        await kill_process_group(process)
        emit_execution_log(
            "runner.timeout",
            level="error",
            pid=process.pid,
            timeout_seconds=timeout_seconds,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        raise ExecutionTimeout(
            f"Execution timed out after {timeout_seconds:g} seconds"
        ) from None
    finally:
        if process.returncode is None:
            await kill_process_group(process)

    exit_code = process.returncode if process.returncode is not None else -1
    duration_ms = int((time.monotonic() - started) * 1000)
    stdout_text = stdout_bytes.decode(errors="replace")
    stderr_text = stderr_bytes.decode(errors="replace")
    emit_execution_log(
        "runner.complete",
        level="error" if exit_code != 0 else "info",
        pid=process.pid,
        exit_code=exit_code,
        duration_ms=duration_ms,
        stderr_tail=stderr_text.strip()[-800:] or None,
    )
    return ProcessResult(
        stdout=stdout_text,
        stderr=stderr_text,
        exit_code=exit_code,
        duration_ms=duration_ms,
    )
