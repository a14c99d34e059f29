from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterable, Awaitable, Iterable
from typing import Protocol

from .config import Settings
from .errors import RunnerError
from .execution import ProcessResult, RunInvocation, invoke_runner
from .intake import SubmissionPart, consume_parts
from .layout import ProjectLayout
from .locks import KeyedLock
from .logging import log_context, log_event
from .outcome import ExecutionOutcome, classify_exit

PIPELINE_COMPONENT = "pipeline"


class Runner(Protocol):
    def __call__(
        self,
        invocation: RunInvocation,
        *,
        runner_path: str,
        timeout_seconds: float,
    ) -> Awaitable[ProcessResult]: ...


def emit_pipeline_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=PIPELINE_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


class RunService:
    """Intake, execute and classify one submission at a time per project.

    Submissions for the same (user, project) pair are serialized; at most
    ``max_concurrent_runs`` runner processes exist at once across all pairs.
    """

    def __init__(self, settings: Settings, *, runner: Runner = invoke_runner) -> None:
        self.settings: Settings = settings
        self.runner: Runner = runner
        self.project_locks: KeyedLock = KeyedLock()
        self.admission: asyncio.Semaphore = asyncio.Semaphore(
            settings.max_concurrent_runs
        )

    def layout_for(self, user_id: str, project_id: str) -> ProjectLayout:
        return ProjectLayout.for_project(
            self.settings.projects_root,
            user_id,
            project_id,
        )

    async def execute(
        self,
        user_id: str,
        project_id: str,
        parts: AsyncIterable[SubmissionPart] | Iterable[SubmissionPart],
    ) -> ProcessResult:
        layout = self.layout_for(user_id, project_id)
        async with self.project_locks.hold((user_id, project_id)):
            layout.prepare()
            intake = await consume_parts(
                parts,
                layout,
                unknown_parts=self.settings.unknown_parts,
            )
            invocation = RunInvocation(
                project_dir=layout.root,
                args=tuple(intake.args),
            )
            async with self.admission:
                return await self.runner(
                    invocation,
                    runner_path=self.settings.runner_path,
                    timeout_seconds=self.settings.run_timeout_seconds,
                )

    async def run(
        self,
        user_id: str,
        project_id: str,
        parts: AsyncIterable[SubmissionPart] | Iterable[SubmissionPart],
    ) -> ExecutionOutcome:
        started = time.monotonic()
        with log_context(user_id=user_id, project_id=project_id):
            emit_pipeline_log("run.start")
            try:
                result = await self.execute(user_id, project_id, parts)
            except RunnerError as error:
                outcome = ExecutionOutcome.from_error(error)
            else:
                outcome = classify_exit(result.exit_code, result.stdout, result.stderr)

            emit_pipeline_log(
                "run.complete",
                level="info" if outcome.ok else "error",
                status=outcome.status.value,
                exit_code=outcome.exit_code,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return outcome
