"""Local HTTP server exposing worktree creation and terminal launching.

Routes:
    GET  /health           liveness and version
    POST /worktree/create  create a worktree + branch, open a terminal in it
    POST /worktree/open    open a terminal in an existing worktree
    POST /terminal/test    run a terminal template with captured output

Every outcome is mapped to a status and body exactly once, in the handler.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import re
import signal as signal_module
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from io import TextIOWrapper
from pathlib import Path
from types import FrameType
from typing import Annotated, Any, Final
from urllib.parse import urlsplit

import msgspec
from msgspec import Meta, Struct

from . import __version__
from .config import ServerConfig, load_config
from .errors import Failure, Internal, Validation, status_for, to_body
from .events import EventLog
from .git import is_repository, worktree_exists
from .launcher import CaptureResult, LaunchedProcess, ProcessLauncher
from .runtime import LocalRuntime
from .template import EmptyCommandError, TerminalTokens, expand_command
from .worktree import WorktreeResult, build_worktree_path, create_worktree

ALLOWED_ORIGIN_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"^chrome-extension://.+$"),
    re.compile(r"^https://linear\.app$"),
)

DEFAULT_TEST_ISSUE_ID: Final[str] = "TEST-1"
DEFAULT_TEST_BRANCH: Final[str] = "test-branch"

NonEmptyStr = Annotated[str, Meta(min_length=1)]


class CreateRequest(Struct, rename="camel"):
    issue_id: NonEmptyStr
    repo_path: NonEmptyStr
    branch_name: NonEmptyStr
    base_branch: NonEmptyStr
    worktree_root: NonEmptyStr
    terminal_command: NonEmptyStr


class OpenRequest(Struct, rename="camel"):
    directory: NonEmptyStr
    terminal_command: NonEmptyStr
    issue_id: NonEmptyStr
    branch_name: NonEmptyStr


class CommandTestRequest(Struct, rename="camel"):
    """Only terminalCommand is required; empty optionals fall back to defaults."""

    terminal_command: NonEmptyStr
    directory: str | None = None
    issue_id: str | None = None
    branch_name: str | None = None


def is_origin_allowed(origin: str | None) -> bool:
    if not origin:
        return False
    return any(pattern.match(origin) for pattern in ALLOWED_ORIGIN_PATTERNS)


def cors_headers(origin: str | None) -> dict[str, str]:
    """CORS headers for an allowed origin; empty for anyone else."""
    if origin is None or not is_origin_allowed(origin):
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }


def default_directory() -> str:
    return os.environ.get("HOME") or os.environ.get("USERPROFILE") or str(Path.home())


def _decode[T](raw: bytes, request_type: type[T]) -> T | Validation:
    if not raw.strip():
        return Validation("Request body must be a JSON object")
    try:
        return msgspec.json.decode(raw, type=request_type)
    except msgspec.DecodeError as e:
        # ValidationError subclasses DecodeError; both are the caller's fault
        return Validation(str(e))


def _failure(failure: Failure, **extra: Any) -> tuple[int, dict[str, Any]]:
    return status_for(failure), to_body(failure, **extra)


class WorktreeHandler(BaseHTTPRequestHandler):
    server: WorktreeServer
    server_version = f"worktree-server/{__version__}"

    def do_GET(self) -> None:  # noqa: N802
        self._serve("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._serve("POST")

    def do_OPTIONS(self) -> None:  # noqa: N802
        self._serve("OPTIONS")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        # Requests are recorded in the event log by _serve
        pass

    def _serve(self, method: str) -> None:
        start_time = time.monotonic()
        path = urlsplit(self.path).path

        try:
            status, body = self.dispatch(method, path)
        except Exception as e:
            self.server.events.log(
                {"event_type": "internal_error", "method": method, "path": path, "error": repr(e)}
            )
            extra = {"success": False} if path == "/terminal/test" else {}
            status, body = _failure(Internal(), **extra)

        disconnected = False
        try:
            self._send_json(status, body)
        except (BrokenPipeError, ConnectionResetError):
            # Client went away before the response was written
            disconnected = True
            self.close_connection = True

        event: dict[str, Any] = {
            "event_type": "request",
            "method": method,
            "path": path,
            "status": status,
            "duration_ms": int((time.monotonic() - start_time) * 1000),
        }
        if disconnected:
            event["disconnected"] = True
        if body and "error" in body:
            event["error"] = body["error"]
            event["message"] = body.get("message")
        self.server.events.log(event)

    def dispatch(self, method: str, path: str) -> tuple[int, dict[str, Any] | None]:
        match method, path:
            case "OPTIONS", _:
                return 204, None
            case "GET", "/health":
                return 200, {"status": "ok", "version": __version__}
            case "POST", "/worktree/create":
                return self._handle_create(self._read_body())
            case "POST", "/worktree/open":
                return self._handle_open(self._read_body())
            case "POST", "/terminal/test":
                return self._handle_test(self._read_body())
            case _:
                return 404, {"error": "not_found", "message": "Endpoint not found"}

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        if length <= 0:
            return b""
        return self.rfile.read(length)

    def _send_json(self, status: int, body: dict[str, Any] | None) -> None:
        payload = msgspec.json.encode(body) if body is not None else b""
        self.send_response(status)
        for key, value in cors_headers(self.headers.get("Origin")).items():
            self.send_header(key, value)
        if body is not None:
            self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if payload:
            self.wfile.write(payload)

    def _handle_create(self, raw: bytes) -> tuple[int, dict[str, Any]]:
        request = _decode(raw, CreateRequest)
        if isinstance(request, Validation):
            return _failure(request)

        if not Path(request.repo_path).exists():
            return _failure(Validation(f"Repository path does not exist: {request.repo_path}"))
        if not is_repository(request.repo_path):
            return _failure(Validation(f"Not a git repository: {request.repo_path}"))

        directory = build_worktree_path(
            request.worktree_root, request.repo_path, request.branch_name
        )
        tokens = TerminalTokens(
            directory=directory,
            issue_id=request.issue_id,
            branch_name=request.branch_name,
        )

        # Reject an unusable template before anything is created on disk
        try:
            expand_command(request.terminal_command, tokens)
        except EmptyCommandError as e:
            return _failure(Validation(str(e)))

        result = create_worktree(
            request.repo_path, request.branch_name, request.base_branch, directory
        )
        if not isinstance(result, WorktreeResult):
            return _failure(result)

        self.server.events.log(
            {
                "event_type": "worktree_create",
                "issue_id": request.issue_id,
                "repo_path": request.repo_path,
                "directory": result.directory,
                "branch": result.branch_name,
                "base_branch": request.base_branch,
                "head": result.head,
            }
        )

        launched = self.server.launcher.launch(request.terminal_command, tokens)
        if not isinstance(launched, LaunchedProcess):
            return _failure(launched)

        return 200, {"success": True, "directory": result.directory}

    def _handle_open(self, raw: bytes) -> tuple[int, dict[str, Any]]:
        request = _decode(raw, OpenRequest)
        if isinstance(request, Validation):
            return _failure(request)

        if not Path(request.directory).exists():
            return _failure(Validation("Directory does not exist"))
        if not worktree_exists(request.directory).exists:
            return _failure(Validation("Directory is not a valid git worktree"))

        tokens = TerminalTokens(
            directory=request.directory,
            issue_id=request.issue_id,
            branch_name=request.branch_name,
        )
        launched = self.server.launcher.launch(request.terminal_command, tokens)
        if not isinstance(launched, LaunchedProcess):
            return _failure(launched)

        return 200, {"success": True}

    def _handle_test(self, raw: bytes) -> tuple[int, dict[str, Any]]:
        request = _decode(raw, CommandTestRequest)
        if isinstance(request, Validation):
            return _failure(request, success=False)

        tokens = TerminalTokens(
            directory=request.directory or default_directory(),
            issue_id=request.issue_id or DEFAULT_TEST_ISSUE_ID,
            branch_name=request.branch_name or DEFAULT_TEST_BRANCH,
        )
        self.server.events.log(
            {
                "event_type": "terminal_test",
                "command": request.terminal_command,
                "tokens": msgspec.to_builtins(tokens),
            }
        )

        result = self.server.launcher.run_with_capture(
            request.terminal_command, tokens, timeout=self.server.config.test_timeout
        )
        if not isinstance(result, CaptureResult):
            return _failure(result, success=False)

        return 200, {"success": True, **msgspec.to_builtins(result)}


class WorktreeServer(ThreadingHTTPServer):
    """Threaded HTTP server owning the config, event log and launcher.

    Holds an exclusive flock on config.lock_file for its lifetime so only
    one server runs per state directory.
    """

    daemon_threads = True
    allow_reuse_address = True

    config: ServerConfig
    events: EventLog
    launcher: ProcessLauncher
    _lock_fd: TextIOWrapper | None

    def __init__(
        self,
        config: ServerConfig,
        *,
        events: EventLog | None = None,
        launcher: ProcessLauncher | None = None,
    ) -> None:
        self.config = config
        self.events = events or EventLog(config.event_file)
        self.launcher = launcher or ProcessLauncher(self.events)
        self._lock_fd = None

        LocalRuntime().check_capabilities()

        Path(config.home).mkdir(parents=True, exist_ok=True)
        self._acquire_lock()
        try:
            super().__init__((config.host, config.port), WorktreeHandler)
        except OSError:
            self._release_lock()
            raise

        config.pid_file.write_text(str(os.getpid()))
        self.events.log({"event_type": "server_start", "address": self.url, "pid": os.getpid()})

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"

    def _acquire_lock(self) -> None:
        self._lock_fd = self.config.lock_file.open("w")
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as err:
            self._lock_fd.close()
            self._lock_fd = None
            raise RuntimeError("Another server is already running") from err

    def _release_lock(self) -> None:
        if self._lock_fd:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
            self._lock_fd.close()
            self._lock_fd = None
            with contextlib.suppress(OSError):
                self.config.lock_file.unlink(missing_ok=True)

    def server_close(self) -> None:
        super().server_close()
        with contextlib.suppress(OSError):
            self.config.pid_file.unlink(missing_ok=True)
        self._release_lock()
        self.events.log({"event_type": "server_stop", "pid": os.getpid()})


def run_daemon(config: ServerConfig | None = None) -> None:
    server = WorktreeServer(config or load_config())

    def handle_sigterm(_signum: int, _frame: FrameType | None) -> None:
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal_module.signal(signal_module.SIGTERM, handle_sigterm)
    signal_module.signal(signal_module.SIGINT, handle_sigterm)

    print(f"Worktree server v{__version__} listening on {server.url}", file=sys.stderr)
    try:
        server.serve_forever()
    finally:
        server.server_close()


if __name__ == "__main__":
    run_daemon()
