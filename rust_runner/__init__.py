from .client import RunnerClient, connect, pack_project
from .config import Settings
from .errors import (
    ExecutionError,
    ExecutionTimeout,
    FileSystemError,
    InternalError,
    InvalidInputError,
    PanicError,
    RunnerError,
    StorageError,
    StorageRejectedError,
    StorageTransportError,
)
from .outcome import ExecutionOutcome, OutcomeStatus, classify_exit
from .pipeline import RunService
from .storage import BlobInfo, BlobMetadata, BlobStoreClient, UploadReceipt

__all__ = [
    "BlobInfo",
    "BlobMetadata",
    "BlobStoreClient",
    "ExecutionError",
    "ExecutionOutcome",
    "ExecutionTimeout",
    "FileSystemError",
    "InternalError",
    "InvalidInputError",
    "OutcomeStatus",
    "PanicError",
    "RunService",
    "RunnerClient",
    "RunnerError",
    "Settings",
    "StorageError",
    "StorageRejectedError",
    "StorageTransportError",
    "UploadReceipt",
    "classify_exit",
    "connect",
    "pack_project",
]
