from __future__ import annotations

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_STORAGE_URL = "http://localhost:3002"
DEFAULT_PROJECTS_ROOT = "/app/projects"
DEFAULT_RUNNER_PATH = "/app/runner.sh"
DEFAULT_RUN_TIMEOUT_SECONDS = 60
DEFAULT_MAX_CONCURRENT_RUNS = 4
DEFAULT_STORAGE_TIMEOUT_SECONDS = 30
DEFAULT_STORAGE_MAX_RETRIES = 2
DEFAULT_HTTP_TIMEOUT_SECONDS = 120

HEALTH_MESSAGE = "Rust Compiler API is running"

MANIFEST_FILENAME = "Cargo.toml"
SOURCE_DIRNAME = "src"
MAIN_SOURCE_FILENAME = "main.rs"
ENV_FILENAME = "project.env"
SOURCE_SUFFIX = ".rs"
UPLOAD_ARCHIVE_FILENAME = "_upload.tar.gz"

PANIC_EXIT_CODE = 101
PANIC_MARKER = "panicked at"
