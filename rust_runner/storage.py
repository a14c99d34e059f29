"""Client for the Walrus blob storage API.

The storage service exposes three endpoints relative to its base URL:

    POST /upload            multipart: tarFile, description, tags
    GET  /retrieve/{blobId} raw blob bytes
    GET  /info/{blobId}     metadata JSON

One client instance is built at startup and shared by every request; it
keeps no per-request state. Failures surface as StorageTransportError
(unreachable, timed out, unreadable body) or StorageRejectedError (the
service answered with an error status).
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from types import TracebackType
from typing import cast

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import Settings
from .errors import InvalidInputError, StorageRejectedError, StorageTransportError
from .logging import log_event

STORAGE_COMPONENT = "storage"
BLOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_BACKOFF_SECONDS = 0.5


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BlobMetadata(WireModel):
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    timestamp: str | None = None
    file_name: str | None = Field(default=None, alias="fileName")


class UploadReceipt(WireModel):
    success: bool = True
    blob_id: str = Field(alias="blobId")
    file_name: str = Field(default="", alias="fileName")
    file_size: int = Field(default=0, alias="fileSize")
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    message: str = ""


class BlobInfo(WireModel):
    success: bool = True
    blob_id: str = Field(alias="blobId")
    metadata: BlobMetadata = Field(default_factory=BlobMetadata)
    file_size: int = Field(default=0, alias="fileSize")
    message: str = ""


@dataclass
class BlobStream:
    """An open streaming response; the caller must aclose() it."""

    blob_id: str
    response: httpx.Response

    @property
    def content_type(self) -> str:
        return self.response.headers.get("content-type", "application/octet-stream")

    @property
    def content_length(self) -> int | None:
        raw = self.response.headers.get("content-length")
        return int(raw) if raw and raw.isdigit() else None

    def chunks(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        await self.response.aclose()


def emit_storage_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=STORAGE_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


def validate_blob_id(blob_id: str) -> str:
    if not BLOB_ID_PATTERN.match(blob_id):
        raise InvalidInputError(f"Invalid blob id: {blob_id!r}")
    return blob_id


def parse_json_response(response: httpx.Response) -> object | None:
    try:
        return cast(object, response.json())
    except (ValueError, UnicodeDecodeError):
        return None


def rejection_from_response(
    response: httpx.Response,
    operation: str,
) -> StorageRejectedError:
    payload = parse_json_response(response)
    error_text = "Unknown error"
    details: str | None = None
    if isinstance(payload, dict):
        payload_dict = cast(dict[str, object], payload)
        error_value = payload_dict.get("error")
        if isinstance(error_value, str) and error_value:
            error_text = error_value
        elif error_value is not None:
            error_text = json.dumps(error_value, ensure_ascii=False)
        details_value = payload_dict.get("details")
        if details_value is not None:
            details = str(details_value)
    else:
        raw_text = response.text.strip()
        if raw_text:
            error_text = raw_text[:500]

    message = f"{operation} failed: {error_text}"
    if details:
        message = f"{message} ({details})"
    return StorageRejectedError(
        message,
        upstream_status=response.status_code,
        error=error_text,
        details=details,
    )


def describe_error(error: Exception) -> str:
    return str(error) or type(error).__name__


def event_prefix(operation: str) -> str:
    return operation.lower().replace(" ", "_")


def is_connect_failure(error: httpx.TransportError) -> bool:
    return isinstance(error, httpx.ConnectError | httpx.ConnectTimeout)


class BlobStoreClient:
    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient,
        *,
        max_retries: int = 0,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.base_url: str = base_url.rstrip("/")
        self.http_client: httpx.AsyncClient = http_client
        self.max_retries: int = max_retries
        self.backoff_seconds: float = backoff_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> BlobStoreClient:
        http_client = httpx.AsyncClient(timeout=settings.storage_timeout_seconds)
        return cls(
            settings.storage_url,
            http_client,
            max_retries=settings.storage_max_retries,
        )

    async def send(
        self,
        operation: str,
        build_request: Callable[[], httpx.Request],
        *,
        idempotent: bool,
        stream: bool = False,
    ) -> httpx.Response:
        """Send one logical request, retrying transport failures.

        Non-idempotent requests are only retried when the connection could
        not be established, i.e. the request never left this process.
        """
        attempt = 0
        while True:
            try:
                return await self.http_client.send(build_request(), stream=stream)
            except httpx.TransportError as error:
                retryable = idempotent or is_connect_failure(error)
                if not retryable or attempt >= self.max_retries:
                    emit_storage_log(
                        f"{event_prefix(operation)}.transport_failed",
                        level="error",
                        attempts=attempt + 1,
                        error=describe_error(error),
                    )
                    raise StorageTransportError(
                        f"{operation} request failed: {describe_error(error)}"
                    ) from error
                delay = self.backoff_seconds * (2**attempt)
                emit_storage_log(
                    f"{event_prefix(operation)}.retry",
                    level="warning",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=describe_error(error),
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def upload(
        self,
        data: bytes,
        filename: str,
        description: str = "",
        tags: Sequence[str] = (),
    ) -> UploadReceipt:
        clean_tags = [tag.strip() for tag in tags if tag.strip()]
        emit_storage_log(
            "upload.start",
            file_name=filename,
            size=len(data),
            tags=clean_tags,
        )

        def build_request() -> httpx.Request:
            return self.http_client.build_request(
                "POST",
                f"{self.base_url}/upload",
                data={"description": description, "tags": ",".join(clean_tags)},
                files={"tarFile": (filename, data, "application/gzip")},
            )

        response = await self.send("Upload", build_request, idempotent=False)
        if not response.is_success:
            raise rejection_from_response(response, "Upload")
        receipt = self.parse_model(response, UploadReceipt, "upload")
        emit_storage_log(
            "upload.complete",
            blob_id=receipt.blob_id,
            size=receipt.file_size,
        )
        return receipt

    async def info(self, blob_id: str) -> BlobInfo:
        blob_id = validate_blob_id(blob_id)
        response = await self.send(
            "Get info",
            lambda: self.http_client.build_request(
                "GET",
                f"{self.base_url}/info/{blob_id}",
            ),
            idempotent=True,
        )
        if not response.is_success:
            raise rejection_from_response(response, "Get info")
        return self.parse_model(response, BlobInfo, "info")

    async def open_blob(self, blob_id: str) -> BlobStream:
        """Start a streaming download without buffering the blob."""
        blob_id = validate_blob_id(blob_id)
        response = await self.send(
            "Retrieve",
            lambda: self.http_client.build_request(
                "GET",
                f"{self.base_url}/retrieve/{blob_id}",
            ),
            idempotent=True,
            stream=True,
        )
        if not response.is_success:
            try:
                _ = await response.aread()
            except httpx.TransportError as error:
                raise StorageTransportError(
                    f"Retrieve request failed: {error}"
                ) from error
            finally:
                await response.aclose()
            raise rejection_from_response(response, "Retrieve")
        emit_storage_log("retrieve.open", blob_id=blob_id)
        return BlobStream(blob_id=blob_id, response=response)

    async def retrieve(self, blob_id: str) -> bytes:
        blob = await self.open_blob(blob_id)
        try:
            return await blob.response.aread()
        except httpx.TransportError as error:
            raise StorageTransportError(
                f"Failed to read response bytes: {error}"
            ) from error
        finally:
            await blob.aclose()

    def parse_model[ModelT: BaseModel](
        self,
        response: httpx.Response,
        model: type[ModelT],
        operation: str,
    ) -> ModelT:
        payload = parse_json_response(response)
        if payload is None:
            raise StorageTransportError(
                f"Failed to parse {operation} response: invalid JSON body"
            )
        try:
            return model.model_validate(payload)
        except ValidationError as error:
            raise StorageTransportError(
                f"Failed to parse {operation} response: {error}"
            ) from error

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> BlobStoreClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        del exc_type, exc, traceback
        await self.aclose()
