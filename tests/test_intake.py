from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from conftest import make_tarball
from rust_runner.config import UnknownPartPolicy
from rust_runner.errors import InvalidInputError
from rust_runner.intake import (
    IntakeResult,
    PartRole,
    SubmissionPart,
    classify_part,
    consume_parts,
    parse_arguments,
)
from rust_runner.layout import ProjectLayout, safe_basename, validate_identifier

MANIFEST = b'[package]\nname = "demo"\nversion = "0.1.0"\nedition = "2021"\n'
MAIN = b'fn main() { println!("hello"); }\n'


def run_intake(
    tmp_path: Path,
    parts: list[SubmissionPart],
    unknown_parts: UnknownPartPolicy = "accept",
) -> tuple[ProjectLayout, IntakeResult]:
    layout = ProjectLayout.for_project(tmp_path, "alice", "demo")
    layout.prepare()
    result = asyncio.run(consume_parts(parts, layout, unknown_parts=unknown_parts))
    return layout, result


def test_parse_arguments_preserves_order() -> None:
    assert parse_arguments("--flag value") == ["--flag", "value"]
    assert parse_arguments("  a \t b\nc  ") == ["a", "b", "c"]
    assert parse_arguments("") == []


@pytest.mark.parametrize(
    ("part", "role"),
    [
        (SubmissionPart("cargo_toml", b""), PartRole.MANIFEST),
        (SubmissionPart("main_rs", b""), PartRole.MAIN_SOURCE),
        (SubmissionPart("env_file", b""), PartRole.ENV_FILE),
        (SubmissionPart("archive", b""), PartRole.ARCHIVE),
        (SubmissionPart("tarFile", b""), PartRole.ARCHIVE),
        (SubmissionPart("args", b""), PartRole.ARGUMENTS),
        (SubmissionPart("src/utils.rs", b""), PartRole.AUX_SOURCE),
        (SubmissionPart("helper", b"", filename="helper.rs"), PartRole.AUX_SOURCE),
        (SubmissionPart("notes", b"", filename="notes.txt"), PartRole.UNKNOWN),
    ],
)
def test_classify_part(part: SubmissionPart, role: PartRole) -> None:
    assert classify_part(part) is role


def test_discrete_files_are_placed_canonically(tmp_path: Path) -> None:
    layout, result = run_intake(
        tmp_path,
        [
            SubmissionPart("cargo_toml", MANIFEST),
            SubmissionPart("main_rs", MAIN),
            SubmissionPart("env_file", b"API_KEY=secret\n"),
            SubmissionPart("src/math.rs", b"pub fn add() {}\n"),
            SubmissionPart("args", b"--flag value"),
        ],
    )

    assert layout.manifest.read_bytes() == MANIFEST
    assert layout.main_source.read_bytes() == MAIN
    assert layout.env_file.read_text() == "API_KEY=secret\n"
    assert (layout.source_dir / "math.rs").is_file()
    assert result.args == ["--flag", "value"]
    assert not result.archive_received


def test_missing_manifest_is_invalid(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError, match="Missing Cargo.toml file"):
        _ = run_intake(tmp_path, [SubmissionPart("main_rs", MAIN)])


def test_missing_main_source_without_archive_is_invalid(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError, match="Missing src/main.rs file"):
        _ = run_intake(tmp_path, [SubmissionPart("cargo_toml", MANIFEST)])


def test_traversal_names_are_reduced_to_basenames(tmp_path: Path) -> None:
    layout, _ = run_intake(
        tmp_path,
        [
            SubmissionPart("cargo_toml", MANIFEST),
            SubmissionPart("main_rs", MAIN),
            SubmissionPart("../../../etc/evil.rs", b"// nope\n"),
            SubmissionPart("..\\..\\windows.rs", b"// nope\n"),
            SubmissionPart("../outside.txt", b"data"),
        ],
    )

    assert (layout.source_dir / "evil.rs").is_file()
    assert (layout.source_dir / "windows.rs").is_file()
    assert (layout.source_dir / "outside.txt").is_file()
    assert not (tmp_path / "outside.txt").exists()
    assert not (layout.root.parent / "outside.txt").exists()


def test_unknown_parts_rejected_when_configured(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError, match="Unexpected field: notes"):
        _ = run_intake(
            tmp_path,
            [
                SubmissionPart("cargo_toml", MANIFEST),
                SubmissionPart("main_rs", MAIN),
                SubmissionPart("notes", b"hello"),
            ],
            unknown_parts="reject",
        )


def test_auxiliary_sources_allowed_when_rejecting_unknown(tmp_path: Path) -> None:
    layout, _ = run_intake(
        tmp_path,
        [
            SubmissionPart("cargo_toml", MANIFEST),
            SubmissionPart("main_rs", MAIN),
            SubmissionPart("extra", b"pub fn x() {}\n", filename="dir/extra.rs"),
        ],
        unknown_parts="reject",
    )
    assert (layout.source_dir / "extra.rs").is_file()


def test_archive_submission_is_normalized(tmp_path: Path) -> None:
    archive = make_tarball({"Cargo.toml": MANIFEST, "main.rs": MAIN})
    layout, result = run_intake(
        tmp_path,
        [SubmissionPart("archive", archive), SubmissionPart("args", b"10")],
    )

    assert result.archive_received
    assert result.moved == [layout.main_source]
    assert result.args == ["10"]
    assert layout.manifest.is_file()
    assert layout.main_source.is_file()
    assert not layout.upload_archive.exists()


def test_archive_without_manifest_fails_verification(tmp_path: Path) -> None:
    archive = make_tarball({"src/main.rs": MAIN})
    with pytest.raises(InvalidInputError, match="Missing Cargo.toml file"):
        _ = run_intake(tmp_path, [SubmissionPart("archive", archive)])


def test_second_archive_is_invalid(tmp_path: Path) -> None:
    archive = make_tarball({"Cargo.toml": MANIFEST, "src/main.rs": MAIN})
    with pytest.raises(InvalidInputError, match="Only one archive"):
        _ = run_intake(
            tmp_path,
            [SubmissionPart("archive", archive), SubmissionPart("tar_file", archive)],
        )


def test_parts_are_consumed_from_async_streams(tmp_path: Path) -> None:
    consumed: list[str] = []

    async def stream() -> AsyncIterator[SubmissionPart]:
        for part in (
            SubmissionPart("main_rs", MAIN),
            SubmissionPart("cargo_toml", MANIFEST),
        ):
            consumed.append(part.name)
            yield part

    layout = ProjectLayout.for_project(tmp_path, "alice", "stream")
    layout.prepare()
    _ = asyncio.run(consume_parts(stream(), layout))

    assert consumed == ["main_rs", "cargo_toml"]
    assert layout.manifest.is_file()


@pytest.mark.parametrize("identifier", ["..", ".", "a/b", "", "../etc", "-rf"])
def test_invalid_identifiers(identifier: str) -> None:
    with pytest.raises(InvalidInputError):
        _ = validate_identifier(identifier, label="user id")


@pytest.mark.parametrize("name", ["", "..", "a/..", "/", "evil\x00.rs", "line\nbreak.rs"])
def test_invalid_basenames(name: str) -> None:
    with pytest.raises(InvalidInputError):
        _ = safe_basename(name)


def test_nul_in_part_name_is_invalid_input(tmp_path: Path) -> None:
    with pytest.raises(InvalidInputError, match="Invalid file name"):
        _ = run_intake(
            tmp_path,
            [
                SubmissionPart("cargo_toml", MANIFEST),
                SubmissionPart("main_rs", MAIN),
                SubmissionPart("notes\x00.txt", b"data"),
            ],
        )
