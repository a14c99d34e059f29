"""Error taxonomy for the run pipeline and the blob store client.

Every fallible step raises exactly one of these at the point of failure.
The HTTP layer turns any RunnerError into a JSON body with ``kind`` as the
``status`` field and ``status_code`` as the response code.
"""

from __future__ import annotations

from typing import ClassVar, override


class RunnerError(Exception):
    kind: ClassVar[str] = "internal-error"
    status_code: ClassVar[int] = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def payload(self) -> dict[str, object]:
        return {"status": self.kind, "error": self.message}


class InvalidInputError(RunnerError):
    kind = "invalid-input"
    status_code = 400


class FileSystemError(RunnerError):
    kind = "filesystem-error"
    status_code = 500


class ExecutionError(RunnerError):
    kind = "execution-error"
    status_code = 400


class ExecutionTimeout(ExecutionError):
    status_code = 408


class PanicError(RunnerError):
    kind = "panic"
    status_code = 500


class InternalError(RunnerError):
    kind = "internal-error"
    status_code = 500


class StorageError(RunnerError):
    kind = "storage-error"
    status_code = 502
    failure: ClassVar[str] = "transport"

    @override
    def payload(self) -> dict[str, object]:
        return {**super().payload(), "kind": self.failure}


class StorageTransportError(StorageError):
    """The storage API could not be reached or answered with garbage."""

    failure = "transport"


class StorageRejectedError(StorageError):
    """The storage API answered with a non-success status."""

    failure = "rejected"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int,
        error: str = "",
        details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.upstream_status: int = upstream_status
        self.error: str = error
        self.details: str | None = details

    @property
    def http_status(self) -> int:
        if 400 <= self.upstream_status < 500:
            return self.upstream_status
        return self.status_code

    @override
    def payload(self) -> dict[str, object]:
        body = super().payload()
        body["upstream_status"] = self.upstream_status
        if self.details:
            body["details"] = self.details
        return body


def http_status_for(error: RunnerError) -> int:
    if isinstance(error, StorageRejectedError):
        return error.http_status
    return error.status_code
