from __future__ import annotations

import argparse
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, override
from urllib.parse import quote

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.datastructures import FormData
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.types import Receive, Scope, Send

from .config import Settings
from .constants import HEALTH_MESSAGE
from .errors import RunnerError, http_status_for
from .intake import SubmissionPart
from .layout import safe_basename
from .logging import configure_log_sink, log_event
from .pipeline import RunService
from .storage import BlobStoreClient, BlobStream

SERVER_COMPONENT = "server"


class ServerArgs(argparse.Namespace):
    host: str | None = None
    port: int | None = None


def emit_server_log(
    event: str,
    *,
    message: str = "",
    level: str = "info",
    **fields: object,
) -> None:
    _ = log_event(
        component=SERVER_COMPONENT,
        event=event,
        message=message,
        level=level,
        **fields,
    )


async def form_parts(form: FormData) -> AsyncIterator[SubmissionPart]:
    for name, value in form.multi_items():
        if isinstance(value, StarletteUploadFile):
            yield SubmissionPart(
                name=name,
                data=await value.read(),
                filename=value.filename,
            )
        else:
            yield SubmissionPart(name=name, data=value.encode("utf-8"))


def add_cors(app: FastAPI, settings: Settings) -> None:
    if settings.allow_any_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def attachment_header(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


class BlobResponse(StreamingResponse):
    """Streams an open blob and closes the upstream response however it ends."""

    def __init__(self, blob: BlobStream, *, headers: dict[str, str]) -> None:
        super().__init__(
            blob.chunks(),
            media_type="application/octet-stream",
            headers=headers,
        )
        self.blob: BlobStream = blob

    @override
    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.blob.aclose()


def build_app(
    settings: Settings,
    *,
    service: RunService | None = None,
    storage: BlobStoreClient | None = None,
) -> FastAPI:
    run_service = service if service is not None else RunService(settings)
    owns_storage = storage is None
    blob_store = storage if storage is not None else BlobStoreClient.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        emit_server_log(
            "server.start",
            projects_root=str(settings.projects_root),
            runner=settings.runner_path,
            storage_url=settings.storage_url,
        )
        try:
            yield
        finally:
            if owns_storage:
                await blob_store.aclose()
            emit_server_log("server.stop")

    app = FastAPI(title="Rust Compiler API", lifespan=lifespan)
    add_cors(app, settings)

    async def runner_error_handler(request: Request, error: Exception) -> JSONResponse:
        if not isinstance(error, RunnerError):
            raise error
        status_code = http_status_for(error)
        emit_server_log(
            "request.failed",
            level="error" if status_code >= 500 else "warning",
            path=request.url.path,
            kind=error.kind,
            status_code=status_code,
            error=error.message,
        )
        return JSONResponse(status_code=status_code, content=error.payload())

    async def unexpected_error_handler(request: Request, error: Exception) -> JSONResponse:
        emit_server_log(
            "request.crashed",
            level="error",
            path=request.url.path,
            error_type=type(error).__name__,
            error=str(error),
        )
        return JSONResponse(
            status_code=500,
            content={"status": "internal-error", "error": "Internal server error"},
        )

    async def health_handler() -> PlainTextResponse:
        return PlainTextResponse(HEALTH_MESSAGE)

    async def run_project_handler(
        user_id: str,
        project_id: str,
        request: Request,
    ) -> JSONResponse:
        form = await request.form()
        try:
            outcome = await run_service.run(user_id, project_id, form_parts(form))
        finally:
            await form.close()
        return JSONResponse(
            status_code=outcome.http_status,
            content=outcome.response_body(),
        )

    async def upload_handler(
        file: Annotated[UploadFile, File()],
        filename: Annotated[str | None, Form()] = None,
        description: Annotated[str, Form()] = "",
        tags: Annotated[str, Form()] = "",
    ) -> dict[str, object]:
        data = await file.read()
        name = safe_basename(filename or file.filename or "project.tar.gz")
        receipt = await blob_store.upload(
            data,
            name,
            description=description,
            tags=tags.split(","),
        )
        return receipt.model_dump(by_alias=True)

    async def retrieve_handler(
        blob_id: str,
        filename: str | None = None,
    ) -> BlobResponse:
        download_name = safe_basename(filename or f"{blob_id}.tar.gz")
        blob = await blob_store.open_blob(blob_id)
        headers = {"Content-Disposition": attachment_header(download_name)}
        if blob.content_length is not None:
            headers["Content-Length"] = str(blob.content_length)
        return BlobResponse(blob, headers=headers)

    async def info_handler(blob_id: str) -> dict[str, object]:
        info = await blob_store.info(blob_id)
        return info.model_dump(by_alias=True)

    app.add_exception_handler(RunnerError, runner_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    _ = app.get("/health")(health_handler)
    _ = app.post("/run/{user_id}/{project_id}")(run_project_handler)
    _ = app.post("/walrus/upload")(upload_handler)
    _ = app.get("/walrus/retrieve/{blob_id}")(retrieve_handler)
    _ = app.get("/walrus/info/{blob_id}")(info_handler)

    return app


def with_listen_overrides(
    settings: Settings,
    host: str | None = None,
    port: int | None = None,
) -> Settings:
    overrides: dict[str, object] = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})


def serve(settings: Settings) -> None:
    configure_log_sink(settings.log_sink())
    emit_server_log("server.listen", host=settings.host, port=settings.port)
    app = build_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(prog="python -m rust_runner.server")
    _ = parser.add_argument("--host", default=None)
    _ = parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(namespace=ServerArgs())

    serve(with_listen_overrides(Settings.from_env(), args.host, args.port))


if __name__ == "__main__":
    main()
