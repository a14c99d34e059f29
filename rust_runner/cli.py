from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

from .client import connect
from .config import Settings
from .outcome import ExecutionOutcome
from .server import serve, with_listen_overrides

console = Console()
DEFAULT_SERVER_URL = "http://localhost:3000"

OUTCOME_STYLES = {
    "success": "green",
    "execution-error": "yellow",
    "invalid-input": "yellow",
    "panic": "red",
    "internal-error": "red",
}


def print_outcome(outcome: ExecutionOutcome) -> None:
    style = OUTCOME_STYLES.get(outcome.status.value, "white")
    console.print(
        Panel(
            outcome.output or "(no output)",
            title=f"{outcome.status.value} ({outcome.http_status})",
            border_style=style,
        )
    )


def print_json(payload: dict[str, object]) -> None:
    console.print_json(json.dumps(payload))


async def run_command(args: argparse.Namespace) -> int:
    async with connect(args.url) as client:
        outcome = await client.run_project(
            args.user,
            args.project,
            args.path,
            args.args.split() if args.args else (),
        )
    print_outcome(outcome)
    return 0 if outcome.ok else 1


async def upload_command(args: argparse.Namespace) -> int:
    path = Path(args.path)
    tags = [tag for tag in args.tags.split(",") if tag.strip()]
    async with connect(args.url) as client:
        receipt = await client.upload(
            path.read_bytes(),
            path.name,
            description=args.description,
            tags=tags,
        )
    print_json(receipt)
    return 0


async def retrieve_command(args: argparse.Namespace) -> int:
    destination = args.output or f"{args.blob_id}.tar.gz"
    async with connect(args.url) as client:
        target = await client.retrieve(args.blob_id, destination)
    console.print(f"[green]saved[/green] {target}")
    return 0


async def info_command(args: argparse.Namespace) -> int:
    async with connect(args.url) as client:
        info = await client.info(args.blob_id)
    print_json(info)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rust-runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    _ = serve_parser.add_argument("--host", default=None)
    _ = serve_parser.add_argument("--port", type=int, default=None)

    run_parser = subparsers.add_parser("run", help="Submit a project directory")
    _ = run_parser.add_argument("path", help="Project directory (Cargo.toml + src/)")
    _ = run_parser.add_argument("--user", required=True)
    _ = run_parser.add_argument("--project", required=True)
    _ = run_parser.add_argument("--args", default="", help="Arguments for the program")

    upload_parser = subparsers.add_parser("upload", help="Upload an archive to storage")
    _ = upload_parser.add_argument("path")
    _ = upload_parser.add_argument("--description", default="")
    _ = upload_parser.add_argument("--tags", default="", help="Comma-separated tags")

    retrieve_parser = subparsers.add_parser("retrieve", help="Download a stored archive")
    _ = retrieve_parser.add_argument("blob_id")
    _ = retrieve_parser.add_argument("-o", "--output", default=None)

    info_parser = subparsers.add_parser("info", help="Show stored archive metadata")
    _ = info_parser.add_argument("blob_id")

    for client_parser in (run_parser, upload_parser, retrieve_parser, info_parser):
        _ = client_parser.add_argument("--url", default=DEFAULT_SERVER_URL)

    return parser


COMMANDS = {
    "run": run_command,
    "upload": upload_command,
    "retrieve": retrieve_command,
    "info": info_command,
}


def main(argv: list[str] | None = None) -> None:
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)
    else:
        load_dotenv()
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        serve(with_listen_overrides(Settings.from_env(), args.host, args.port))
        return

    try:
        exit_code = asyncio.run(COMMANDS[args.command](args))
    except (RuntimeError, OSError, httpx.HTTPError) as error:
        console.print(f"[red]error:[/red] {error}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
