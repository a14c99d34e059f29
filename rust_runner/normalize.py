from __future__ import annotations

import asyncio
import tarfile
import zlib
from pathlib import Path

from .errors import FileSystemError, InternalError, InvalidInputError
from .layout import ProjectLayout, is_source_file
from .logging import log_event

NORMALIZE_COMPONENT = "normalize"


def emit_normalize_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=NORMALIZE_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


def extract_tarball(archive_path: Path, destination: Path) -> None:
    try:
        with tarfile.open(archive_path, "r:gz") as archive:
            archive.extractall(destination, filter="data")
    except tarfile.FilterError as error:
        raise InvalidInputError(f"Archive member rejected: {error}") from error
    except (tarfile.TarError, EOFError, zlib.error) as error:
        raise InternalError(f"Failed to extract archive: {error}") from error
    except OSError as error:
        raise FileSystemError(f"Failed to extract archive: {error}") from error


def move_root_sources(layout: ProjectLayout) -> list[Path]:
    """Move source files sitting at the project root into src/.

    Only the immediate children of the root are inspected; anything nested
    deeper than that (other than in src/) stays where it is.
    """
    moved: list[Path] = []
    try:
        layout.source_dir.mkdir(parents=True, exist_ok=True)
        for child in sorted(layout.root.iterdir()):
            if not is_source_file(child):
                continue
            destination = layout.source_dir / child.name
            _ = child.replace(destination)
            moved.append(destination)
    except OSError as error:
        raise FileSystemError(f"Failed to normalize project layout: {error}") from error
    return moved


async def normalize_archive(layout: ProjectLayout, archive_path: Path) -> list[Path]:
    emit_normalize_log(
        "archive.extract.start",
        archive=str(archive_path),
        root=str(layout.root),
    )
    try:
        await asyncio.to_thread(extract_tarball, archive_path, layout.root)
    finally:
        archive_path.unlink(missing_ok=True)

    moved = move_root_sources(layout)
    emit_normalize_log(
        "archive.extract.complete",
        root=str(layout.root),
        moved=[path.name for path in moved],
    )
    return moved
