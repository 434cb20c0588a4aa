# tests/worktree_server/test_daemon.py
"""
Tests for the HTTP server.

Tests cover:
- Health, 404 and CORS handling
- POST /worktree/create (success, validation, collisions)
- POST /worktree/open (genuine worktree required)
- POST /terminal/test (capture, defaults, timeout)
- Request logging, internal errors and single-instance locking
"""

import http.client
import json
import threading
from pathlib import Path
from unittest.mock import patch

import pytest


def send_request(
    server,
    method: str,
    path: str,
    body=None,
    headers: dict | None = None,
    raw: bytes | None = None,
    timeout: float = 15.0,
) -> tuple[int, dict | None, dict]:
    """Send a request to the server; returns (status, json body or None, headers)."""
    host, port = server.server_address[:2]
    conn = http.client.HTTPConnection(host, port, timeout=timeout)
    try:
        payload = raw if raw is not None else (json.dumps(body).encode() if body is not None else None)
        all_headers = {"Content-Type": "application/json", **(headers or {})}
        conn.request(method, path, body=payload, headers=all_headers)
        response = conn.getresponse()
        data = response.read()
        parsed = json.loads(data) if data else None
        return response.status, parsed, {k.lower(): v for k, v in response.getheaders()}
    finally:
        conn.close()


def _create_body(repo, worktree_root, **overrides):
    body = {
        "issueId": "Q-3",
        "repoPath": str(repo),
        "branchName": "Q-3-fix",
        "baseBranch": "main",
        "worktreeRoot": str(worktree_root),
        "terminalCommand": "true",
    }
    body.update(overrides)
    return body


class TestRouting:
    def test_health(self, server):
        from worktree_server import __version__

        status, body, headers = send_request(server, "GET", "/health")

        assert status == 200
        assert body == {"status": "ok", "version": __version__}
        assert headers["content-type"] == "application/json"

    def test_query_string_ignored(self, server):
        status, _, _ = send_request(server, "GET", "/health?verbose=1")

        assert status == 200

    @pytest.mark.parametrize(
        ("method", "path"),
        [("GET", "/nope"), ("POST", "/health"), ("GET", "/worktree/create")],
    )
    def test_unknown_route(self, server, method, path):
        status, body, _ = send_request(server, method, path, body={} if method == "POST" else None)

        assert status == 404
        assert body == {"error": "not_found", "message": "Endpoint not found"}

    def test_requests_are_logged(self, server, wait_for_event):
        send_request(server, "GET", "/nope")

        event = wait_for_event(server.events, "request", path="/nope")

        assert event is not None
        assert event["method"] == "GET"
        assert event["status"] == 404
        assert event["error"] == "not_found"
        assert event["duration_ms"] >= 0


class TestCors:
    @pytest.mark.parametrize("origin", ["chrome-extension://abcdefg", "https://linear.app"])
    def test_allowed_origin(self, server, origin):
        status, _, headers = send_request(server, "GET", "/health", headers={"Origin": origin})

        assert status == 200
        assert headers["access-control-allow-origin"] == origin
        assert headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
        assert headers["access-control-allow-headers"] == "Content-Type"

    @pytest.mark.parametrize(
        "origin", ["https://evil.example", "https://linear.app.evil.example", "chrome-extension://"]
    )
    def test_disallowed_origin(self, server, origin):
        _, _, headers = send_request(server, "GET", "/health", headers={"Origin": origin})

        assert "access-control-allow-origin" not in headers

    def test_preflight(self, server):
        status, body, headers = send_request(
            server,
            "OPTIONS",
            "/worktree/create",
            headers={"Origin": "https://linear.app"},
        )

        assert status == 204
        assert body is None
        assert headers["access-control-allow-origin"] == "https://linear.app"
        assert headers["access-control-max-age"] == "86400"


class TestCreate:
    def test_success(self, server, repo, worktree_root):
        from worktree_server.git import branch_exists, worktree_exists

        status, body, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root)
        )

        directory = f"{worktree_root}/myproject/Q-3-fix"
        assert status == 200
        assert body == {"success": True, "directory": directory}
        assert worktree_exists(directory).exists
        assert branch_exists(str(repo), "Q-3-fix")

    def test_launches_terminal_in_new_worktree(self, server, repo, worktree_root, wait_for_event):
        body = _create_body(
            repo, worktree_root, terminalCommand="sh -c 'cd {directory} && pwd && echo {issueId}'"
        )

        status, _, _ = send_request(server, "POST", "/worktree/create", body)
        launch = wait_for_event(server.events, "launch")
        wait_for_event(server.events, "launch_exit", pid=launch["pid"])

        lines = [
            e["line"]
            for e in server.events.tail(100)
            if e["event_type"] == "launch_output" and e["pid"] == launch["pid"]
        ]
        assert status == 200
        assert Path(lines[0]).resolve() == Path(f"{worktree_root}/myproject/Q-3-fix").resolve()
        assert lines[1] == "Q-3"

    def test_logs_creation(self, server, repo, worktree_root, wait_for_event):
        send_request(server, "POST", "/worktree/create", _create_body(repo, worktree_root))

        event = wait_for_event(server.events, "worktree_create")

        assert event["issue_id"] == "Q-3"
        assert event["branch"] == "Q-3-fix"
        assert event["base_branch"] == "main"

    @pytest.mark.parametrize(
        "field",
        ["issueId", "repoPath", "branchName", "baseBranch", "worktreeRoot", "terminalCommand"],
    )
    def test_missing_field(self, server, repo, worktree_root, field):
        body = _create_body(repo, worktree_root)
        del body[field]

        status, response, _ = send_request(server, "POST", "/worktree/create", body)

        assert status == 400
        assert response["error"] == "validation"
        assert field in response["message"]

    def test_empty_field(self, server, repo, worktree_root):
        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root, branchName="")
        )

        assert status == 400
        assert response["error"] == "validation"

    def test_wrong_type(self, server, repo, worktree_root):
        status, _, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root, issueId=3)
        )

        assert status == 400

    @pytest.mark.parametrize("raw", [b"{not json", b"[1, 2]", b""])
    def test_malformed_body(self, server, raw):
        status, response, _ = send_request(server, "POST", "/worktree/create", raw=raw)

        assert status == 400
        assert response["error"] == "validation"

    def test_repo_path_missing(self, server, tmp_path, worktree_root):
        missing = tmp_path / "missing"

        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(missing, worktree_root)
        )

        assert status == 400
        assert response["message"] == f"Repository path does not exist: {missing}"

    def test_not_a_repository(self, server, tmp_path, worktree_root):
        plain = tmp_path / "plain"
        plain.mkdir()

        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(plain, worktree_root)
        )

        assert status == 400
        assert response["message"] == f"Not a git repository: {plain}"

    def test_missing_base_branch(self, server, repo, worktree_root):
        from worktree_server.git import branch_exists

        status, response, _ = send_request(
            server,
            "POST",
            "/worktree/create",
            _create_body(repo, worktree_root, baseBranch="nonexistent"),
        )

        assert status == 400
        assert response == {
            "error": "validation",
            "message": "Base branch does not exist: nonexistent",
        }
        assert not branch_exists(str(repo), "Q-3-fix")

    def test_worktree_exists(self, server, repo, worktree_root):
        send_request(server, "POST", "/worktree/create", _create_body(repo, worktree_root))

        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root)
        )

        directory = f"{worktree_root}/myproject/Q-3-fix"
        assert status == 409
        assert response == {
            "error": "exists",
            "directory": directory,
            "message": f"Worktree already exists at {directory}",
        }

    def test_branch_exists(self, server, repo, worktree_root, git):
        git(repo, "branch", "Q-3-fix")

        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root)
        )

        assert status == 409
        assert response == {"error": "branch_exists", "message": "Branch Q-3-fix already exists"}

    def test_git_failure(self, server, repo, worktree_root):
        from worktree_server.runtime import ExecutionResult

        failed = ExecutionResult(returncode=128, stdout="", stderr="fatal: disk full\n")
        with patch("worktree_server.worktree.safe_git_exec", return_value=failed):
            status, response, _ = send_request(
                server, "POST", "/worktree/create", _create_body(repo, worktree_root)
            )

        assert status == 500
        assert response["error"] == "git_error"
        assert "fatal: disk full" in response["message"]

    def test_empty_template_rejected_before_creation(self, server, repo, worktree_root):
        from worktree_server.git import branch_exists

        status, response, _ = send_request(
            server, "POST", "/worktree/create", _create_body(repo, worktree_root, terminalCommand="''")
        )

        assert status == 400
        assert response["message"] == "Empty command after parsing"
        assert not branch_exists(str(repo), "Q-3-fix")

    def test_launch_failure_after_creation(self, server, repo, worktree_root):
        from worktree_server.git import worktree_exists

        status, response, _ = send_request(
            server,
            "POST",
            "/worktree/create",
            _create_body(repo, worktree_root, terminalCommand="definitely-not-a-real-program-xyz"),
        )

        assert status == 500
        assert response["error"] == "launch_error"
        assert worktree_exists(f"{worktree_root}/myproject/Q-3-fix").exists

    def test_concurrent_creates_for_same_branch(self, server, repo, worktree_root):
        results: list[int] = []

        def create() -> None:
            status, _, _ = send_request(
                server, "POST", "/worktree/create", _create_body(repo, worktree_root)
            )
            results.append(status)

        threads = [threading.Thread(target=create) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results)[0] == 200
        assert results.count(200) == 1


class TestOpen:
    def _open_body(self, directory, **overrides):
        body = {
            "directory": str(directory),
            "terminalCommand": "true",
            "issueId": "Q-3",
            "branchName": "Q-3-fix",
        }
        body.update(overrides)
        return body

    def test_success(self, server, repo, worktree_root, wait_for_event):
        send_request(server, "POST", "/worktree/create", _create_body(repo, worktree_root))
        directory = f"{worktree_root}/myproject/Q-3-fix"

        status, body, _ = send_request(
            server,
            "POST",
            "/worktree/open",
            self._open_body(directory, terminalCommand="echo {directory} {branchName}"),
        )

        assert status == 200
        assert body == {"success": True}
        output = wait_for_event(server.events, "launch_output", line=f"{directory} Q-3-fix")
        assert output is not None

    def test_directory_missing(self, server, tmp_path):
        status, body, _ = send_request(
            server, "POST", "/worktree/open", self._open_body(tmp_path / "missing")
        )

        assert status == 400
        assert body == {"error": "validation", "message": "Directory does not exist"}

    def test_plain_directory_is_not_a_worktree(self, server, tmp_path):
        folder = tmp_path / "folder"
        folder.mkdir()

        status, body, _ = send_request(server, "POST", "/worktree/open", self._open_body(folder))

        assert status == 400
        assert body == {"error": "validation", "message": "Directory is not a valid git worktree"}

    def test_main_clone_is_not_a_worktree(self, server, repo):
        status, _, _ = send_request(server, "POST", "/worktree/open", self._open_body(repo))

        assert status == 400

    def test_missing_field(self, server, tmp_path):
        body = self._open_body(tmp_path)
        del body["issueId"]

        status, response, _ = send_request(server, "POST", "/worktree/open", body)

        assert status == 400
        assert "issueId" in response["message"]


class TestTerminalTest:
    def test_captures_output(self, server, tmp_path):
        status, body, _ = send_request(
            server,
            "POST",
            "/terminal/test",
            {
                "terminalCommand": "echo {directory} {issueId} {branchName}",
                "directory": str(tmp_path),
                "issueId": "Q-9",
                "branchName": "q-9-x",
            },
        )

        assert status == 200
        assert body == {
            "success": True,
            "expandedCommand": f"echo {tmp_path} Q-9 q-9-x",
            "stdout": f"{tmp_path} Q-9 q-9-x\n",
            "stderr": "",
            "exitCode": 0,
        }

    def test_defaults(self, server, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))

        status, body, _ = send_request(
            server,
            "POST",
            "/terminal/test",
            {"terminalCommand": "echo {directory} {issueId} {branchName}", "issueId": ""},
        )

        assert status == 200
        assert body["stdout"] == f"{tmp_path} TEST-1 test-branch\n"

    def test_non_zero_exit_is_success(self, server):
        status, body, _ = send_request(
            server, "POST", "/terminal/test", {"terminalCommand": "sh -c 'echo no >&2; exit 4'"}
        )

        assert status == 200
        assert body["success"] is True
        assert body["exitCode"] == 4
        assert body["stderr"] == "no\n"

    def test_missing_command(self, server):
        status, body, _ = send_request(server, "POST", "/terminal/test", {"directory": "/tmp"})

        assert status == 400
        assert body["success"] is False
        assert body["error"] == "validation"

    def test_empty_command(self, server):
        status, body, _ = send_request(
            server, "POST", "/terminal/test", {"terminalCommand": "{branchName}", "branchName": " "}
        )

        assert status == 400
        assert body["success"] is False
        assert body["message"] == "Empty command after parsing"

    def test_whitespace_command(self, server):
        status, body, _ = send_request(server, "POST", "/terminal/test", {"terminalCommand": "   "})

        assert status == 400
        assert body == {
            "success": False,
            "error": "validation",
            "message": "Empty command after parsing",
        }

    def test_program_not_found(self, server):
        status, body, _ = send_request(
            server, "POST", "/terminal/test", {"terminalCommand": "definitely-not-a-real-program-xyz"}
        )

        assert status == 500
        assert body["success"] is False
        assert body["error"] == "launch_error"

    def test_timeout(self, tmp_path, server_manager):
        with server_manager(tmp_path / "home", test_timeout=0.5) as running:
            status, body, _ = send_request(
                running, "POST", "/terminal/test", {"terminalCommand": "sleep 30"}
            )

        assert status == 500
        assert body["success"] is False
        assert body["error"] == "timeout"
        assert body["message"] == "Command timed out after 0.5s: sleep 30"


class TestServerLifecycle:
    def test_internal_error_hides_details(self, server, wait_for_event):
        with patch("worktree_server.daemon.is_repository", side_effect=RuntimeError("secret boom")):
            status, body, _ = send_request(
                server, "POST", "/worktree/create", _create_body("/", "/tmp")
            )

        assert status == 500
        assert body == {"error": "internal", "message": "An unexpected error occurred"}
        event = wait_for_event(server.events, "internal_error")
        assert "secret boom" in event["error"]

    def test_internal_error_on_terminal_test_reports_success_false(self, server):
        with patch(
            "worktree_server.launcher.ProcessLauncher.run_with_capture",
            side_effect=RuntimeError("kaboom"),
        ):
            status, body, _ = send_request(
                server, "POST", "/terminal/test", {"terminalCommand": "true"}
            )

        assert status == 500
        assert body["success"] is False
        assert body["error"] == "internal"

    def test_pid_file_written_and_removed(self, tmp_path, server_manager, wait_for_event):
        import os

        home = tmp_path / "home"
        with server_manager(home) as running:
            assert running.config.pid_file.read_text() == str(os.getpid())

        assert not (home / "server.pid").exists()
        assert wait_for_event(running.events, "server_stop") is not None

    def test_client_disconnect_is_still_logged(self, server, wait_for_event):
        with (
            patch(
                "worktree_server.daemon.WorktreeHandler._send_json", side_effect=BrokenPipeError
            ),
            pytest.raises(ConnectionError),
        ):
            send_request(server, "GET", "/health")

        event = wait_for_event(server.events, "request", path="/health", disconnected=True)
        assert event is not None
        assert event["status"] == 200

        status, _, _ = send_request(server, "GET", "/health")
        assert status == 200

    def test_second_server_refused(self, server):
        from worktree_server.config import load_config
        from worktree_server.daemon import WorktreeServer

        with pytest.raises(RuntimeError, match="Another server is already running"):
            WorktreeServer(load_config(home=server.config.home, port=0))

    def test_lock_released_on_close(self, tmp_path, server_manager):
        home = tmp_path / "home"
        with server_manager(home):
            pass

        with server_manager(home) as again:
            status, _, _ = send_request(again, "GET", "/health")

        assert status == 200

    def test_url_reports_bound_port(self, server):
        host, port = server.server_address[:2]

        assert port != 0
        assert server.url == f"http://{host}:{port}"


class TestHelpers:
    def test_is_origin_allowed(self):
        from worktree_server.daemon import is_origin_allowed

        assert is_origin_allowed("chrome-extension://abc")
        assert is_origin_allowed("https://linear.app")
        assert not is_origin_allowed("http://linear.app")
        assert not is_origin_allowed(None)
        assert not is_origin_allowed("")

    def test_cors_headers_empty_for_strangers(self):
        from worktree_server.daemon import cors_headers

        assert cors_headers("https://evil.example") == {}
        assert cors_headers(None) == {}

    def test_default_directory_prefers_home(self, monkeypatch):
        from worktree_server.daemon import default_directory

        monkeypatch.setenv("HOME", "/home/someone")

        assert default_directory() == "/home/someone"

    def test_default_directory_falls_back_to_userprofile(self, monkeypatch):
        from worktree_server.daemon import default_directory

        monkeypatch.delenv("HOME", raising=False)
        monkeypatch.setenv("USERPROFILE", "C:/Users/someone")

        assert default_directory() == "C:/Users/someone"
