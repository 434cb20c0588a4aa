"""Append-only JSONL event log for the worktree server.

Every request, launch and drained line of child output becomes one JSON
object per line. Appends are atomic via O_APPEND; tail() reads backwards
from the end of the file so `worktree-server status` stays cheap on a
long-lived log.
"""

import json
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

TRUNCATE_LIMIT: Final[int] = 4096


def truncate(text: str, limit: int = TRUNCATE_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} chars truncated]"


class EventLog:
    """Thread-safe JSONL event log with reverse-seek tail."""

    def __init__(self, event_file: Path) -> None:
        self.event_file = Path(event_file)
        self._lock = threading.Lock()

    def log(self, event: dict[str, Any]) -> None:
        """Append an event, stamped with the current UTC time.

        O_APPEND writes under PIPE_BUF are atomic, so concurrent request
        threads and drain threads never interleave within a line.
        """
        stamped = {"ts": datetime.now(UTC).isoformat(), **event}
        line = (json.dumps(stamped, default=str) + "\n").encode("utf-8")

        self.event_file.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(self.event_file, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        try:
            os.write(fd, line)
        finally:
            os.close(fd)

    def tail(self, n: int, max_buffer_bytes: int = 1_048_576) -> list[dict[str, Any]]:
        """Return the last n events, oldest first.

        Args:
            n: Number of events to retrieve
            max_buffer_bytes: Stop reading backwards after this many bytes
                so a corrupt file without newlines cannot exhaust memory.
        """
        if n <= 0 or not self.event_file.exists():
            return []

        with self._lock:
            return self._tail_reverse_seek(n, max_buffer_bytes)

    def _tail_reverse_seek(self, n: int, max_buffer_bytes: int) -> list[dict[str, Any]]:
        block_size = 4096

        with self.event_file.open("rb") as f:
            f.seek(0, os.SEEK_END)
            position = f.tell()

            chunks: list[bytes] = []
            bytes_read = 0
            newline_count = 0

            # n+1 newlines guarantee n complete lines after the split
            while position > 0 and newline_count <= n and bytes_read < max_buffer_bytes:
                read_size = min(block_size, position)
                position -= read_size
                f.seek(position)
                chunk = f.read(read_size)
                chunks.append(chunk)
                bytes_read += read_size
                newline_count += chunk.count(b"\n")

        events: list[dict[str, Any]] = []
        for raw in b"".join(reversed(chunks)).split(b"\n"):
            raw = raw.strip()
            if not raw:
                continue
            try:
                events.append(json.loads(raw.decode("utf-8")))
            except (json.JSONDecodeError, UnicodeDecodeError):
                # Partial first line or a corrupt write
                continue

        return events[-n:]
