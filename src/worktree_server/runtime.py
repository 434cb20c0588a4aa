# src/worktree_server/runtime.py
"""
Runtime abstraction for executing commands on the host.

This module provides:
- Signal decoding for negative return codes
- ExecutionResult for captured command runs
- LocalRuntime for captured execution and detached spawning
"""

import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Protocol


def decode_signal(returncode: int) -> str | None:
    """
    Decode negative return codes to signal names.

    Args:
        returncode: Process return code (negative indicates signal)

    Returns:
        Signal name (e.g., "SIGTERM") or None if not a signal

    Examples:
        decode_signal(-15) -> "SIGTERM"
        decode_signal(-9) -> "SIGKILL"
        decode_signal(0) -> None
        decode_signal(1) -> None
    """
    if returncode >= 0:
        return None

    sig_num = abs(returncode)

    try:
        sig = signal.Signals(sig_num)
        return sig.name
    except ValueError:
        return f"SIG{sig_num}"


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Immutable result of executing a command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Runtime(Protocol):
    """Protocol for command execution engines."""

    def execute(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """
        Execute a command and capture its output.

        Raises:
            subprocess.TimeoutExpired: If the command outlives timeout
            OSError: If the program cannot be started
        """
        ...

    def spawn(
        self,
        command: list[str],
        cwd: str | None = None,
        capture: bool = True,
    ) -> subprocess.Popen[str]:
        """
        Start a command in its own session without waiting for it.

        Raises:
            OSError: If the program cannot be started
        """
        ...

    def check_capabilities(self) -> None:
        """
        Verify required tools are available.

        Raises:
            RuntimeError: If required tools are not available
        """
        ...


class LocalRuntime:
    """Runtime for executing commands directly on the host system."""

    __slots__ = ()

    def execute(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Execute a command locally.

        Args:
            command: Command and arguments to execute
            cwd: Working directory for the command
            env: Environment variables to pass to the command (merged with os.environ)
            timeout: Timeout in seconds (None for no timeout)

        Returns:
            ExecutionResult with returncode, stdout, stderr
        """
        exec_env = {**os.environ, **env} if env else None

        result = subprocess.run(
            command,
            cwd=cwd,
            env=exec_env,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )

        return ExecutionResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def spawn(
        self,
        command: list[str],
        cwd: str | None = None,
        capture: bool = True,
    ) -> subprocess.Popen[str]:
        """Start a command detached from the caller's session.

        The child gets a new session so it survives the server and never
        reads from the server's stdin. With capture=True stdout and stderr
        are pipes the caller must drain; otherwise they go to /dev/null.
        """
        stream = subprocess.PIPE if capture else subprocess.DEVNULL
        return subprocess.Popen(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=stream,
            stderr=stream,
            text=True,
            errors="replace",
            start_new_session=True,
        )

    def check_capabilities(self) -> None:
        """
        Verify git is available.

        Raises:
            RuntimeError: If git is not found in PATH
        """
        try:
            result = subprocess.run(["git", "--version"], capture_output=True)
        except FileNotFoundError as err:
            raise RuntimeError("git not found in PATH") from err
        if result.returncode != 0:
            raise RuntimeError("git not found in PATH")
