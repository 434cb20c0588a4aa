# src/worktree_server/client.py
"""
Worktree Server control CLI.

start/stop/status/restart manage a background server; serve runs it in
the foreground; test-command previews a terminal template through a
running server.

Kept to the stdlib plus config so `worktree-server status` starts fast.
"""

import argparse
import contextlib
import json
import os
import signal
import sys
import tempfile
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

from .config import ServerConfig, load_config
from .events import EventLog


def request_json(
    config: ServerConfig,
    method: str,
    path: str,
    body: dict[str, Any] | None = None,
    timeout: float = 5.0,
) -> tuple[int, dict[str, Any]]:
    """Send a JSON request to the server and return (status, body).

    HTTP error statuses are returned, not raised. Connection failures
    raise urllib.error.URLError.
    """
    data = json.dumps(body).encode() if body is not None else None
    req = urllib.request.Request(
        config.base_url + path,
        data=data,
        method=method,
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, json.loads(resp.read() or b"{}")
    except urllib.error.HTTPError as err:
        return err.code, json.loads(err.read() or b"{}")


def is_running(config: ServerConfig) -> bool:
    try:
        status, _ = request_json(config, "GET", "/health", timeout=1.0)
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return False
    return status == 200


def read_pid(config: ServerConfig) -> int | None:
    """PID from the pid file if that process is still alive."""
    try:
        pid = int(config.pid_file.read_text().strip())
    except (OSError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        pass
    return pid


def _server_env(config: ServerConfig) -> dict[str, str]:
    return {
        **os.environ,
        "WORKTREE_SERVER_HOST": config.host,
        "WORKTREE_SERVER_PORT": str(config.port),
        "WORKTREE_SERVER_HOME": config.home,
        "WORKTREE_SERVER_TEST_TIMEOUT": str(config.test_timeout),
    }


def spawn_daemon(config: ServerConfig) -> int:
    """
    Spawn the server as a fully detached process using double-fork.

    Returns the server PID once /health answers.

    Raises:
        RuntimeError: If the server crashes or does not answer within
            config.control_timeout seconds.
    """
    with tempfile.NamedTemporaryFile(mode="w+", delete=False, suffix=".stderr") as stderr_file:
        stderr_path = stderr_file.name

    with tempfile.NamedTemporaryFile(mode="w+", delete=False, suffix=".status") as status_file:
        status_path = status_file.name

    def read_stderr() -> str:
        with contextlib.suppress(OSError):
            return Path(stderr_path).read_text().strip()
        return ""

    try:
        pid = os.fork()
        if pid == 0:
            # Intermediate child
            try:
                os.setsid()

                daemon_pid = os.fork()
                if daemon_pid == 0:
                    # Server (grandchild)
                    try:
                        null_fd = os.open(os.devnull, os.O_RDWR)
                        os.dup2(null_fd, 0)
                        os.dup2(null_fd, 1)
                        stderr_fd = os.open(stderr_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
                        os.dup2(stderr_fd, 2)
                        if null_fd > 2:
                            os.close(null_fd)
                        if stderr_fd > 2:
                            os.close(stderr_fd)

                        os.execve(  # noqa: S606
                            sys.executable,
                            [sys.executable, "-m", "worktree_server.daemon"],
                            _server_env(config),
                        )
                    except Exception as e:
                        with contextlib.suppress(Exception):
                            Path(stderr_path).write_text(str(e))
                        os._exit(1)
                else:
                    Path(status_path).write_text(str(daemon_pid))
                    os._exit(0)
            except Exception:
                os._exit(1)
        else:
            _, status = os.waitpid(pid, 0)
            if status != 0:
                raise RuntimeError("Failed to fork server process")

        daemon_pid_str = Path(status_path).read_text().strip()
        if not daemon_pid_str:
            raise RuntimeError("Failed to get server PID")
        daemon_pid = int(daemon_pid_str)

        deadline = time.monotonic() + config.control_timeout
        while time.monotonic() < deadline:
            try:
                os.kill(daemon_pid, 0)
            except OSError as err:
                raise RuntimeError(f"Server crashed on startup: {read_stderr()}") from err

            if is_running(config):
                return daemon_pid
            time.sleep(0.1)

        raise RuntimeError(
            f"Server failed to start (timeout {config.control_timeout:g}s waiting for /health)"
        )
    finally:
        for path in [stderr_path, status_path]:
            with contextlib.suppress(OSError):
                Path(path).unlink(missing_ok=True)


def stop_daemon(config: ServerConfig) -> bool:
    """SIGTERM the server, escalating to SIGKILL. Returns False if it was not running."""
    pid = read_pid(config)
    if pid is None:
        with contextlib.suppress(OSError):
            config.pid_file.unlink(missing_ok=True)
        return False

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + config.control_timeout
    while time.monotonic() < deadline:
        if read_pid(config) is None:
            return True
        time.sleep(0.1)

    with contextlib.suppress(ProcessLookupError):
        os.kill(pid, signal.SIGKILL)
    time.sleep(0.3)
    with contextlib.suppress(OSError):
        config.pid_file.unlink(missing_ok=True)
    return True


def main(argv: list[str] | None = None) -> None:
    """CLI entry point using argparse."""
    parser = argparse.ArgumentParser(
        prog="worktree-server",
        description="Local server that creates git worktrees and opens terminals in them",
    )
    parser.add_argument("--host", help="Bind address (default: $WORKTREE_SERVER_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port (default: $WORKTREE_SERVER_PORT or 21547)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the server in the foreground")
    subparsers.add_parser("start", help="Start the server in the background")
    subparsers.add_parser("stop", help="Stop the background server")
    subparsers.add_parser("restart", help="Restart the background server")

    status = subparsers.add_parser("status", help="Show server health and recent events")
    status.add_argument("--events", type=int, default=10, help="Number of events to show")

    test = subparsers.add_parser(
        "test-command",
        help="Preview a terminal command template",
        description="Expand and run TEMPLATE through the server, printing its output.",
    )
    test.add_argument("template", help="Command template, e.g. \"ghostty -e bash -c 'cd {directory}'\"")
    test.add_argument("--directory")
    test.add_argument("--issue-id")
    test.add_argument("--branch-name")

    args = parser.parse_args(argv)
    config = load_config(host=args.host, port=args.port)

    if args.command == "serve":
        from .daemon import run_daemon

        run_daemon(config)
    elif args.command == "start":
        _cmd_start(config)
    elif args.command == "stop":
        _cmd_stop(config)
    elif args.command == "restart":
        stop_daemon(config)
        _cmd_start(config)
    elif args.command == "status":
        _cmd_status(config, args.events)
    elif args.command == "test-command":
        _cmd_test_command(config, args.template, args.directory, args.issue_id, args.branch_name)


def _cmd_start(config: ServerConfig) -> None:
    pid = read_pid(config)
    if pid is not None:
        print(f"Server is already running (PID: {pid})")
        return
    try:
        pid = spawn_daemon(config)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Server started on {config.base_url} (PID: {pid})")
    print(f"Events: {config.event_file}")


def _cmd_stop(config: ServerConfig) -> None:
    if stop_daemon(config):
        print("Server stopped")
    else:
        print("Server is not running")


def _cmd_status(config: ServerConfig, event_count: int) -> None:
    pid = read_pid(config)
    try:
        _, health = request_json(config, "GET", "/health", timeout=1.0)
    except (urllib.error.URLError, OSError):
        print("Server is not running")
        sys.exit(1)

    print(f"Server is running (PID: {pid if pid is not None else 'unknown'})")
    print(f"URL: {config.base_url}")
    print(f"Health: {json.dumps(health)}")
    for event in EventLog(config.event_file).tail(event_count):
        print(json.dumps(event))


def _cmd_test_command(
    config: ServerConfig,
    template: str,
    directory: str | None,
    issue_id: str | None,
    branch_name: str | None,
) -> None:
    body = {
        "terminalCommand": template,
        "directory": directory,
        "issueId": issue_id,
        "branchName": branch_name,
    }
    try:
        status, response = request_json(
            config,
            "POST",
            "/terminal/test",
            {key: value for key, value in body.items() if value is not None},
            timeout=config.test_timeout + 5.0,
        )
    except (urllib.error.URLError, OSError) as e:
        print(f"Error: server not reachable at {config.base_url}: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(response, indent=2))
    if status != 200:
        sys.exit(1)


if __name__ == "__main__":
    main()
