from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel

from .constants import PANIC_EXIT_CODE, PANIC_MARKER
from .errors import (
    ExecutionError,
    InvalidInputError,
    PanicError,
    RunnerError,
    http_status_for,
)


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    INVALID_INPUT = "invalid-input"
    EXECUTION_ERROR = "execution-error"
    PANIC = "panic"
    INTERNAL_ERROR = "internal-error"


ERROR_STATUSES: dict[type[RunnerError], OutcomeStatus] = {
    InvalidInputError: OutcomeStatus.INVALID_INPUT,
    ExecutionError: OutcomeStatus.EXECUTION_ERROR,
    PanicError: OutcomeStatus.PANIC,
}


class ExecutionOutcome(BaseModel):
    status: OutcomeStatus
    output: str
    exit_code: int | None = None
    http_status: int = 200

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def from_error(cls, error: RunnerError) -> ExecutionOutcome:
        status = OutcomeStatus.INTERNAL_ERROR
        for error_type, mapped in ERROR_STATUSES.items():
            if isinstance(error, error_type):
                status = mapped
                break
        return cls(
            status=status,
            output=error.message,
            http_status=http_status_for(error),
        )

    def response_body(self) -> dict[str, object]:
        if self.ok:
            return {"status": self.status.value, "output": self.output}
        return {"status": self.status.value, "error": self.output}


def is_panic(exit_code: int, stderr: str) -> bool:
    return exit_code == PANIC_EXIT_CODE or PANIC_MARKER in stderr


def classify_exit(exit_code: int, stdout: str, stderr: str) -> ExecutionOutcome:
    """Map a finished runner process onto an outcome.

    The panic check runs before the generic non-zero check: a panic is
    recognised by its stderr marker even when the exit code is not 101.
    """
    if exit_code == 0:
        return ExecutionOutcome(
            status=OutcomeStatus.SUCCESS,
            output=stdout.strip(),
            exit_code=exit_code,
        )
    if is_panic(exit_code, stderr):
        return ExecutionOutcome(
            status=OutcomeStatus.PANIC,
            output=f"Panic: {stderr}",
            exit_code=exit_code,
            http_status=PanicError.status_code,
        )
    return ExecutionOutcome(
        status=OutcomeStatus.EXECUTION_ERROR,
        output=f"Execution error: {stderr}",
        exit_code=exit_code,
        http_status=ExecutionError.status_code,
    )
