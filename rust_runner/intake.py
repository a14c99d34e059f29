from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .config import UnknownPartPolicy
from .constants import MAIN_SOURCE_FILENAME, MANIFEST_FILENAME, SOURCE_SUFFIX
from .errors import FileSystemError, InvalidInputError
from .layout import ProjectLayout
from .logging import log_event
from .normalize import normalize_archive

INTAKE_COMPONENT = "intake"


class PartRole(StrEnum):
    MANIFEST = "manifest"
    MAIN_SOURCE = "main_source"
    ENV_FILE = "env_file"
    ARCHIVE = "archive"
    ARGUMENTS = "arguments"
    AUX_SOURCE = "aux_source"
    UNKNOWN = "unknown"


NAMED_ROLES: dict[str, PartRole] = {
    "cargo_toml": PartRole.MANIFEST,
    "main_rs": PartRole.MAIN_SOURCE,
    "env_file": PartRole.ENV_FILE,
    "archive": PartRole.ARCHIVE,
    "tar_file": PartRole.ARCHIVE,
    "tarFile": PartRole.ARCHIVE,
    "args": PartRole.ARGUMENTS,
}


@dataclass(frozen=True)
class SubmissionPart:
    name: str
    data: bytes
    filename: str | None = None


@dataclass
class IntakeResult:
    layout: ProjectLayout
    args: list[str] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)
    moved: list[Path] = field(default_factory=list)
    archive_received: bool = False


def emit_intake_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=INTAKE_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


def classify_part(part: SubmissionPart) -> PartRole:
    role = NAMED_ROLES.get(part.name)
    if role is not None:
        return role
    if part.name.endswith(SOURCE_SUFFIX):
        return PartRole.AUX_SOURCE
    if part.filename and part.filename.endswith(SOURCE_SUFFIX):
        return PartRole.AUX_SOURCE
    return PartRole.UNKNOWN


def parse_arguments(raw: str) -> list[str]:
    """Split an argument string on whitespace, keeping order. No quoting."""
    return raw.split()


def auxiliary_target(layout: ProjectLayout, part: SubmissionPart) -> Path:
    if part.name.endswith(SOURCE_SUFFIX) or not part.filename:
        return layout.source_path(part.name)
    return layout.source_path(part.filename)


def write_part(path: Path, data: bytes) -> None:
    try:
        _ = path.write_bytes(data)
    except OSError as error:
        raise FileSystemError(f"Failed to write {path.name}: {error}") from error


async def iterate_parts(
    parts: AsyncIterable[SubmissionPart] | Iterable[SubmissionPart],
) -> AsyncIterator[SubmissionPart]:
    if isinstance(parts, AsyncIterable):
        async for part in parts:
            yield part
        return
    for part in parts:
        yield part


async def consume_parts(
    parts: AsyncIterable[SubmissionPart] | Iterable[SubmissionPart],
    layout: ProjectLayout,
    *,
    unknown_parts: UnknownPartPolicy = "accept",
) -> IntakeResult:
    """Place every submitted part and validate the resulting project.

    The layout directory must already exist (see ProjectLayout.prepare).
    Writes go straight to disk; a failure part-way leaves what was written.
    """
    result = IntakeResult(layout=layout)
    has_manifest = False
    has_main = False
    archive_path: Path | None = None

    async for part in iterate_parts(parts):
        role = classify_part(part)
        emit_intake_log(
            "part.received",
            part=part.name,
            role=role.value,
            size=len(part.data),
        )
        match role:
            case PartRole.MANIFEST:
                write_part(layout.manifest, part.data)
                result.written.append(layout.manifest)
                has_manifest = True
            case PartRole.MAIN_SOURCE:
                write_part(layout.main_source, part.data)
                result.written.append(layout.main_source)
                has_main = True
            case PartRole.ENV_FILE:
                write_part(layout.env_file, part.data)
                result.written.append(layout.env_file)
            case PartRole.ARCHIVE:
                if archive_path is not None:
                    raise InvalidInputError("Only one archive part is allowed")
                archive_path = layout.upload_archive
                write_part(archive_path, part.data)
            case PartRole.ARGUMENTS:
                try:
                    raw_args = part.data.decode("utf-8")
                except UnicodeDecodeError as error:
                    raise InvalidInputError(
                        "Argument part must be UTF-8 text"
                    ) from error
                result.args.extend(parse_arguments(raw_args))
            case PartRole.AUX_SOURCE:
                target = auxiliary_target(layout, part)
                write_part(target, part.data)
                result.written.append(target)
                if target == layout.main_source:
                    has_main = True
            case PartRole.UNKNOWN:
                if unknown_parts == "reject":
                    raise InvalidInputError(f"Unexpected field: {part.name}")
                target = layout.source_path(part.name)
                write_part(target, part.data)
                result.written.append(target)

    result.archive_received = archive_path is not None
    if not has_manifest and archive_path is None:
        raise InvalidInputError(f"Missing {MANIFEST_FILENAME} file")
    if not has_main and archive_path is None:
        raise InvalidInputError(f"Missing src/{MAIN_SOURCE_FILENAME} file")

    if archive_path is not None:
        result.moved = await normalize_archive(layout, archive_path)

    layout.verify()
    emit_intake_log(
        "intake.complete",
        root=str(layout.root),
        files=len(result.written),
        args=len(result.args),
        archive=result.archive_received,
    )
    return result
