"""Launching terminal commands built from user templates.

Two modes share the expansion pipeline:
- launch(): fire-and-forget. The child runs in its own session; daemon
  threads drain its output into the event log and reap it on exit.
- run_with_capture(): waits for the child up to a timeout and returns
  what it printed. Used to preview a template without a real session.

Neither mode runs a shell. Templates that need `cd` or `&&` must name a
shell themselves (e.g. ``bash -c '...'``).
"""

from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import threading
import time
from typing import IO, Final

from msgspec import Struct

from .errors import Failure, LaunchFailure, Timeout, Validation
from .events import TRUNCATE_LIMIT, EventLog, truncate
from .runtime import LocalRuntime, Runtime, decode_signal
from .template import EmptyCommandError, TerminalTokens, expand_command

DEFAULT_CAPTURE_TIMEOUT: Final[float] = 10.0
CAPTURE_LIMIT: Final[int] = 65536

# Upper bound on one read from a child pipe; a newline-free flood is
# consumed in pieces of this size
READ_CHUNK: Final[int] = 8192

# How long capture readers get to hit EOF after the group is killed
_READER_GRACE: Final[float] = 1.0


class LaunchedProcess(Struct, frozen=True):
    pid: int
    argv: list[str]


class CaptureResult(Struct, frozen=True, rename="camel"):
    """Outcome of a captured run. Encodes as expandedCommand/stdout/stderr/exitCode."""

    expanded_command: str
    stdout: str
    stderr: str
    exit_code: int


class ProcessLauncher:
    """Expands terminal templates and starts the resulting programs."""

    __slots__ = ("events", "runtime")

    def __init__(self, events: EventLog, runtime: Runtime | None = None) -> None:
        self.events = events
        self.runtime: Runtime = runtime or LocalRuntime()

    def launch(self, template: str, tokens: TerminalTokens) -> LaunchedProcess | Failure:
        """Start the expanded command and return without waiting for it.

        Only expansion and spawn errors are failures. Whatever the program
        does afterwards (exit codes, closed pipes, floods of output) is
        logged by the drain threads and never reported to the caller.
        """
        try:
            argv = expand_command(template, tokens)
        except EmptyCommandError as e:
            return Validation(str(e))

        try:
            proc = self.runtime.spawn(argv)
        except OSError as e:
            self.events.log({"event_type": "launch_failed", "argv": argv, "error": str(e)})
            return LaunchFailure(f"Failed to start {argv[0]}: {e.strerror or e}")

        self.events.log({"event_type": "launch", "argv": argv, "pid": proc.pid})

        readers = [
            threading.Thread(
                target=self._drain,
                args=(proc.pid, name, stream),
                daemon=True,
                name=f"drain-{proc.pid}-{name}",
            )
            for name, stream in (("stdout", proc.stdout), ("stderr", proc.stderr))
            if stream is not None
        ]
        for reader in readers:
            reader.start()
        threading.Thread(
            target=self._reap,
            args=(proc, readers),
            daemon=True,
            name=f"reap-{proc.pid}",
        ).start()

        return LaunchedProcess(pid=proc.pid, argv=argv)

    def _drain(self, pid: int, name: str, stream: IO[str]) -> None:
        """Read a child stream to EOF, logging up to TRUNCATE_LIMIT chars.

        Reads are capped at READ_CHUNK chars, so a line without a newline
        never accumulates in memory. Output past the limit is read and
        discarded so the child never blocks on a full pipe.
        """
        logged = 0
        try:
            for line in iter(lambda: stream.readline(READ_CHUNK), ""):
                if logged >= TRUNCATE_LIMIT:
                    continue
                self.events.log(
                    {
                        "event_type": "launch_output",
                        "pid": pid,
                        "stream": name,
                        "line": truncate(line.rstrip("\n"), TRUNCATE_LIMIT - logged),
                    }
                )
                logged += len(line)
        except (OSError, ValueError) as e:
            with contextlib.suppress(OSError):
                self.events.log(
                    {"event_type": "launch_drain_error", "pid": pid, "stream": name, "error": str(e)}
                )
        finally:
            with contextlib.suppress(OSError):
                stream.close()

    def _reap(self, proc: subprocess.Popen[str], readers: list[threading.Thread]) -> None:
        returncode = proc.wait()
        for reader in readers:
            reader.join()
        with contextlib.suppress(OSError):
            self.events.log(
                {
                    "event_type": "launch_exit",
                    "pid": proc.pid,
                    "returncode": returncode,
                    "signal_name": decode_signal(returncode),
                }
            )

    def run_with_capture(
        self,
        template: str,
        tokens: TerminalTokens,
        timeout: float = DEFAULT_CAPTURE_TIMEOUT,
    ) -> CaptureResult | Failure:
        """Run the expanded command to completion and capture its output.

        A non-zero exit is a normal result. Each stream keeps at most
        CAPTURE_LIMIT chars; the rest is read, counted and dropped. The run
        ends when the child has exited and both streams reached EOF. If
        that does not happen within timeout, the child's whole process group
        is killed and reaped before Timeout is returned.
        """
        try:
            argv = expand_command(template, tokens)
        except EmptyCommandError as e:
            return Validation(str(e))

        expanded = " ".join(argv)

        try:
            proc = self.runtime.spawn(argv)
        except OSError as e:
            return LaunchFailure(f"Failed to start {argv[0]}: {e.strerror or e}")

        deadline = time.monotonic() + timeout
        stdout, stderr = BoundedCapture(CAPTURE_LIMIT), BoundedCapture(CAPTURE_LIMIT)
        readers = [
            threading.Thread(
                target=capture.fill,
                args=(stream,),
                daemon=True,
                name=f"capture-{proc.pid}-{name}",
            )
            for name, capture, stream in (
                ("stdout", stdout, proc.stdout),
                ("stderr", stderr, proc.stderr),
            )
            if stream is not None
        ]
        for reader in readers:
            reader.start()

        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return self._capture_timeout(proc, readers, argv, timeout, expanded)

        for reader in readers:
            reader.join(max(0.0, deadline - time.monotonic()))
        if any(reader.is_alive() for reader in readers):
            # A background grandchild still holds the pipes open
            return self._capture_timeout(proc, readers, argv, timeout, expanded)

        return CaptureResult(
            expanded_command=expanded,
            stdout=stdout.text(),
            stderr=stderr.text(),
            exit_code=proc.returncode,
        )

    def _capture_timeout(
        self,
        proc: subprocess.Popen[str],
        readers: list[threading.Thread],
        argv: list[str],
        timeout: float,
        expanded: str,
    ) -> Timeout:
        _kill_group(proc)
        for reader in readers:
            reader.join(_READER_GRACE)
        self.events.log({"event_type": "capture_timeout", "argv": argv, "timeout": timeout})
        return Timeout(f"Command timed out after {timeout:g}s: {expanded}")


class BoundedCapture:
    """Keeps the first `limit` chars of a stream and counts the rest."""

    __slots__ = ("limit", "parts", "kept", "dropped")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.parts: list[str] = []
        self.kept = 0
        self.dropped = 0

    def fill(self, stream: IO[str]) -> None:
        """Read stream to EOF in READ_CHUNK pieces, then close it."""
        try:
            for chunk in iter(lambda: stream.readline(READ_CHUNK), ""):
                room = max(0, self.limit - self.kept)
                if room:
                    self.parts.append(chunk[:room])
                    self.kept += min(room, len(chunk))
                self.dropped += max(0, len(chunk) - room)
        finally:
            with contextlib.suppress(OSError):
                stream.close()

    def text(self) -> str:
        kept = "".join(self.parts)
        if self.dropped:
            return kept + f"... [{self.dropped} chars truncated]"
        return kept


def _kill_group(proc: subprocess.Popen[str]) -> None:
    """SIGKILL the child's session and reap it.

    The child leads its own session (start_new_session), so its pid is the
    group id and any grandchildren die with it.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    proc.wait()
