from __future__ import annotations

import io
import tarfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import cast

import httpx

from .constants import DEFAULT_HTTP_TIMEOUT_SECONDS
from .outcome import ExecutionOutcome, OutcomeStatus

SKIPPED_DIRS = frozenset({"target", ".git"})

type FilePayload = tuple[str, bytes, str]


def parse_json_response(response: httpx.Response) -> object | None:
    try:
        return cast(object, response.json())
    except ValueError:
        return None


def object_dict(value: object | None) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): inner for key, inner in cast(dict[object, object], value).items()}


def response_error_message(response: httpx.Response, payload: object | None) -> str:
    payload_dict = object_dict(payload)
    if payload_dict is not None:
        error_value = payload_dict.get("error")
        if isinstance(error_value, str):
            return error_value
        if error_value is not None:
            return str(error_value)
        detail_value = payload_dict.get("detail")
        if detail_value is not None:
            return str(detail_value)

    raw_text = response.text.strip()
    if raw_text:
        return raw_text
    return response.reason_phrase or "unknown error"


def raise_for_response_error(response: httpx.Response, payload: object | None) -> None:
    if response.is_error:
        message = response_error_message(response, payload)
        raise RuntimeError(f"Request failed ({response.status_code}): {message}")


def pack_project(path: str | Path) -> bytes:
    """Pack a project directory into a gzip tarball with root-relative names."""
    root = Path(path)
    if not root.is_dir():
        raise FileNotFoundError(f"Project directory not found: {root}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for child in sorted(root.rglob("*")):
            relative = child.relative_to(root)
            if SKIPPED_DIRS.intersection(relative.parts):
                continue
            if child.is_file():
                archive.add(str(child), arcname=relative.as_posix())

    _ = buffer.seek(0)
    return buffer.read()


def outcome_from_response(response: httpx.Response) -> ExecutionOutcome:
    payload = object_dict(parse_json_response(response))
    if payload is None:
        raise_for_response_error(response, None)
        raise RuntimeError(
            f"Request failed ({response.status_code}): invalid JSON response body"
        )

    status_value = payload.get("status")
    try:
        status = OutcomeStatus(str(status_value))
    except ValueError:
        raise_for_response_error(response, payload)
        raise RuntimeError(
            f"Request failed ({response.status_code}): unknown status {status_value!r}"
        ) from None

    text = payload.get("output") if status is OutcomeStatus.SUCCESS else payload.get("error")
    return ExecutionOutcome(
        status=status,
        output=text if isinstance(text, str) else "",
        http_status=response.status_code,
    )


class RunnerClient:
    def __init__(self, url: str, http_client: httpx.AsyncClient) -> None:
        self.base_url: str = url.rstrip("/")
        self.http_client: httpx.AsyncClient = http_client

    async def health(self) -> str:
        response = await self.http_client.get(f"{self.base_url}/health")
        raise_for_response_error(response, parse_json_response(response))
        return response.text

    async def run_files(
        self,
        user_id: str,
        project_id: str,
        files: Mapping[str, FilePayload],
        args: Sequence[str] = (),
    ) -> ExecutionOutcome:
        data = {"args": " ".join(args)} if args else {}
        response = await self.http_client.post(
            f"{self.base_url}/run/{user_id}/{project_id}",
            data=data,
            files=dict(files),
        )
        return outcome_from_response(response)

    async def run_project(
        self,
        user_id: str,
        project_id: str,
        path: str | Path,
        args: Sequence[str] = (),
    ) -> ExecutionOutcome:
        archive = pack_project(path)
        return await self.run_files(
            user_id,
            project_id,
            {"archive": ("project.tar.gz", archive, "application/gzip")},
            args,
        )

    async def upload(
        self,
        data: bytes,
        filename: str,
        description: str = "",
        tags: Sequence[str] = (),
    ) -> dict[str, object]:
        response = await self.http_client.post(
            f"{self.base_url}/walrus/upload",
            data={
                "filename": filename,
                "description": description,
                "tags": ",".join(tags),
            },
            files={"file": (filename, data, "application/gzip")},
        )
        return self.json_object(response)

    async def info(self, blob_id: str) -> dict[str, object]:
        response = await self.http_client.get(f"{self.base_url}/walrus/info/{blob_id}")
        return self.json_object(response)

    async def retrieve(self, blob_id: str, destination: str | Path) -> Path:
        target = Path(destination)
        async with self.http_client.stream(
            "GET",
            f"{self.base_url}/walrus/retrieve/{blob_id}",
        ) as response:
            if response.is_error:
                _ = await response.aread()
                raise_for_response_error(response, parse_json_response(response))
            with target.open("wb") as output_file:
                async for chunk in response.aiter_bytes():
                    _ = output_file.write(chunk)
        return target

    def json_object(self, response: httpx.Response) -> dict[str, object]:
        payload = parse_json_response(response)
        raise_for_response_error(response, payload)
        payload_dict = object_dict(payload)
        if payload_dict is None:
            raise RuntimeError(
                f"Request failed ({response.status_code}): invalid JSON response body"
            )
        return payload_dict

    async def close(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> RunnerClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        del exc_type, exc, traceback
        await self.close()


def connect(
    url: str,
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
) -> RunnerClient:
    return RunnerClient(url, httpx.AsyncClient(timeout=timeout_seconds))
