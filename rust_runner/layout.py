"""The on-disk project contract consumed by the external runner.

    <projects_root>/<user_id>/<project_id>/
        Cargo.toml
        project.env        (optional)
        src/
            main.rs
            *.rs
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

from .constants import (
    ENV_FILENAME,
    MAIN_SOURCE_FILENAME,
    MANIFEST_FILENAME,
    SOURCE_DIRNAME,
    SOURCE_SUFFIX,
    UPLOAD_ARCHIVE_FILENAME,
)
from .errors import FileSystemError, InvalidInputError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_identifier(value: str, *, label: str) -> str:
    if not IDENTIFIER_PATTERN.match(value) or value in {".", ".."}:
        raise InvalidInputError(f"Invalid {label}: {value!r}")
    return value


def safe_basename(name: str) -> str:
    """Strip every directory component from a client-supplied file name."""
    base = PureWindowsPath(PurePosixPath(name).name).name.strip()
    if not base or base in {".", ".."}:
        raise InvalidInputError(f"Invalid file name: {name!r}")
    if any(ord(char) < 0x20 or char == "\x7f" for char in base):
        raise InvalidInputError(f"Invalid file name: {name!r}")
    return base


def is_source_file(path: Path) -> bool:
    return path.is_file() and path.suffix == SOURCE_SUFFIX


@dataclass(frozen=True)
class ProjectLayout:
    root: Path

    @classmethod
    def for_project(
        cls,
        projects_root: str | Path,
        user_id: str,
        project_id: str,
    ) -> ProjectLayout:
        validate_identifier(user_id, label="user id")
        validate_identifier(project_id, label="project id")
        return cls(Path(projects_root) / user_id / project_id)

    @property
    def manifest(self) -> Path:
        return self.root / MANIFEST_FILENAME

    @property
    def source_dir(self) -> Path:
        return self.root / SOURCE_DIRNAME

    @property
    def main_source(self) -> Path:
        return self.source_dir / MAIN_SOURCE_FILENAME

    @property
    def env_file(self) -> Path:
        return self.root / ENV_FILENAME

    @property
    def upload_archive(self) -> Path:
        return self.root / UPLOAD_ARCHIVE_FILENAME

    def source_path(self, name: str) -> Path:
        return self.source_dir / safe_basename(name)

    def source_files(self) -> list[Path]:
        if not self.source_dir.is_dir():
            return []
        return sorted(
            path for path in self.source_dir.iterdir() if is_source_file(path)
        )

    def prepare(self) -> None:
        """Recreate the project directory empty, with its source subdirectory."""
        try:
            if self.root.exists():
                shutil.rmtree(self.root)
            self.source_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise FileSystemError(
                f"Failed to create project directory {self.root}: {error}"
            ) from error

    def verify(self) -> None:
        if not self.manifest.is_file():
            raise InvalidInputError(f"Missing {MANIFEST_FILENAME} file")
        if not self.source_files():
            raise InvalidInputError(
                f"Missing source files under {SOURCE_DIRNAME}/"
            )
