"""
Shared pytest fixtures for worktree server tests.

Centralizes git repository setup and in-thread server management so
every test gets an isolated repository, state directory and port.
"""

import subprocess
import threading
import time
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolate_git_config(monkeypatch, tmp_path):
    """Isolate tests from user's global git config.

    Prevents GPG signing, custom hooks, and other user config
    from affecting test execution. The ceiling stops git from finding
    an enclosing repository above tmp_path.
    """
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", "/dev/null")
    monkeypatch.setenv("GIT_CONFIG_SYSTEM", "/dev/null")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))


def _git(cwd: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)


def init_repo(path: Path) -> Path:
    """Create a repository with one commit on `main`."""
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init")
    _git(path, "config", "user.email", "test@test.com")
    _git(path, "config", "user.name", "Test")
    (path / "README.md").write_text("# Project")
    _git(path, "add", "-A")
    _git(path, "commit", "-m", "initial")
    _git(path, "branch", "-M", "main")
    return path


@pytest.fixture
def repo(tmp_path):
    """A git repository named `myproject` with a `main` branch."""
    return init_repo(tmp_path / "myproject")


@pytest.fixture
def worktree_root(tmp_path):
    root = tmp_path / "worktrees"
    root.mkdir()
    return root


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _wait_for_event(events, event_type: str, timeout: float = 5.0, **match) -> dict | None:
    """Poll an EventLog until an event of event_type (and matching fields) appears."""
    found: list[dict] = []

    def check() -> bool:
        for event in events.tail(500):
            if event.get("event_type") == event_type and all(
                event.get(key) == value for key, value in match.items()
            ):
                found.append(event)
                return True
        return False

    _wait_for(check, timeout=timeout)
    return found[0] if found else None


class ServerManager:
    """Context manager for in-thread server lifecycle with proper cleanup."""

    def __init__(self, home: Path, **overrides):
        self.home = home
        self.overrides = overrides
        self.server = None
        self.server_thread = None

    def __enter__(self):
        from worktree_server.config import load_config
        from worktree_server.daemon import WorktreeServer

        config = load_config(home=self.home, port=0, **self.overrides)
        self.server = WorktreeServer(config)
        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()
        return self.server

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.server:
            self.server.shutdown()
            # server_close() releases the lock file and removes the pid file
            self.server.server_close()
        if self.server_thread:
            self.server_thread.join(timeout=2)
        return False


@pytest.fixture
def server(tmp_path):
    """A running WorktreeServer on an OS-assigned port."""
    with ServerManager(tmp_path / "home") as running:
        yield running


@pytest.fixture
def git():
    """Run git in a directory: git(cwd, *args) -> CompletedProcess."""
    return _git


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def wait_for_event():
    """Poll an EventLog: wait_for_event(events, event_type, timeout=5.0, **match)."""
    return _wait_for_event


@pytest.fixture
def server_manager():
    """The ServerManager class, for tests that need their own config overrides."""
    return ServerManager
