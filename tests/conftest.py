from __future__ import annotations

import io
import json
import stat
import tarfile
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest
from rust_runner.logging import LogRecord, reset_log_callback, set_log_callback

FAKE_RUNNER = """\
#!/bin/sh
mode="$1"
project="$2"
shift 2
main="$project/src/main.rs"
if grep -q PANIC "$main" 2>/dev/null; then
    echo "thread 'main' panicked at src/main.rs:2:5:" >&2
    exit 101
fi
if grep -q FAIL "$main" 2>/dev/null; then
    echo "error[E0425]: cannot find value in this scope" >&2
    exit 1
fi
if grep -q SLEEP "$main" 2>/dev/null; then
    sleep 30
fi
echo "mode=$mode"
echo "args=$*"
ls "$project/src"
"""


@pytest.fixture
def fake_runner(tmp_path: Path) -> Path:
    script = tmp_path / "runner.sh"
    _ = script.write_text(FAKE_RUNNER, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def log_records() -> Iterator[list[LogRecord]]:
    records: list[LogRecord] = []
    token = set_log_callback(records.append)
    yield records
    reset_log_callback(token)


def make_tarball(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeStorageService:
    """In-memory stand-in for the Walrus storage API."""

    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, dict[str, object]]] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/upload":
            return self.upload(request)
        if request.method == "GET" and path.startswith("/retrieve/"):
            blob = self.blobs.get(path.removeprefix("/retrieve/"))
            if blob is None:
                return httpx.Response(404, json={"error": "Blob not found"})
            return httpx.Response(200, content=blob[0])
        if request.method == "GET" and path.startswith("/info/"):
            blob_id = path.removeprefix("/info/")
            blob = self.blobs.get(blob_id)
            if blob is None:
                return httpx.Response(
                    500,
                    json={"error": "Failed to get file info", "details": "not found"},
                )
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "blobId": blob_id,
                    "metadata": blob[1],
                    "fileSize": len(blob[0]),
                    "message": "File info retrieved successfully",
                },
            )
        return httpx.Response(404, text="not found")

    def upload(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        content_type = request.headers["content-type"]
        boundary = content_type.split("boundary=")[1].encode()
        fields: dict[str, bytes] = {}
        filename = ""
        for chunk in body.split(b"--" + boundary):
            if b"\r\n\r\n" not in chunk:
                continue
            header_blob, value = chunk.split(b"\r\n\r\n", 1)
            headers = header_blob.decode()
            name = headers.split('name="')[1].split('"')[0]
            if 'filename="' in headers:
                filename = headers.split('filename="')[1].split('"')[0]
            fields[name] = value.removesuffix(b"\r\n")

        if "tarFile" not in fields:
            return httpx.Response(400, json={"error": "No file uploaded"})
        description = fields.get("description", b"").decode()
        tags_raw = fields.get("tags", b"").decode()
        tags = tags_raw.split(",") if tags_raw else ["uploaded", "tar"]
        blob_id = f"blob{len(self.blobs) + 1}"
        self.blobs[blob_id] = (
            fields["tarFile"],
            {
                "fileName": filename,
                "description": description,
                "tags": tags,
                "timestamp": "2024-01-01T00:00:00.000Z",
            },
        )
        return httpx.Response(
            200,
            content=json.dumps(
                {
                    "success": True,
                    "blobId": blob_id,
                    "fileName": filename,
                    "fileSize": len(fields["tarFile"]),
                    "description": description,
                    "tags": tags,
                    "message": "File uploaded successfully to Walrus",
                }
            ),
            headers={"content-type": "application/json"},
        )


@pytest.fixture
def storage_service() -> FakeStorageService:
    return FakeStorageService()
