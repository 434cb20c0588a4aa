"""Server configuration from WORKTREE_SERVER_* environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Final

import msgspec
from msgspec import Meta, Struct

DEFAULT_HOST: Final[str] = "127.0.0.1"
DEFAULT_PORT: Final[int] = 21547
DEFAULT_TEST_TIMEOUT: Final[float] = 10.0
DEFAULT_CONTROL_TIMEOUT: Final[float] = 5.0

# Port 0 lets the OS pick one (used by tests)
Port = Annotated[int, Meta(ge=0, le=65535)]
Seconds = Annotated[float, Meta(gt=0, le=3600)]


def _get_default_home() -> str:
    return str(Path.home() / ".worktree-server")


class ServerConfig(Struct, frozen=True, forbid_unknown_fields=True):
    """Runtime settings for the server and its control CLI.

    home holds server.pid, server.lock and events.jsonl.
    """

    host: str = DEFAULT_HOST
    port: Port = DEFAULT_PORT
    home: str = msgspec.field(default_factory=_get_default_home)
    test_timeout: Seconds = DEFAULT_TEST_TIMEOUT
    control_timeout: Seconds = DEFAULT_CONTROL_TIMEOUT

    @property
    def pid_file(self) -> Path:
        return Path(self.home) / "server.pid"

    @property
    def lock_file(self) -> Path:
        return Path(self.home) / "server.lock"

    @property
    def event_file(self) -> Path:
        return Path(self.home) / "events.jsonl"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _env_number(name: str, default: float) -> float:
    """Read a numeric env var, falling back to default on garbage."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except (ValueError, TypeError):
        return default


def load_config(**overrides: object) -> ServerConfig:
    """Build a ServerConfig from the environment, then apply overrides.

    Environment variables:
        WORKTREE_SERVER_HOST: Bind address (default 127.0.0.1)
        WORKTREE_SERVER_PORT: Port (default 21547)
        WORKTREE_SERVER_HOME: State directory (default ~/.worktree-server)
        WORKTREE_SERVER_TEST_TIMEOUT: /terminal/test timeout in seconds (default 10)
        WORKTREE_SERVER_TIMEOUT: CLI start/stop wait in seconds (default 5)

    Values are validated by msgspec; an out-of-range value raises
    msgspec.ValidationError.
    """
    raw: dict[str, object] = {
        "host": os.getenv("WORKTREE_SERVER_HOST") or DEFAULT_HOST,
        "port": int(_env_number("WORKTREE_SERVER_PORT", DEFAULT_PORT)),
        "test_timeout": _env_number("WORKTREE_SERVER_TEST_TIMEOUT", DEFAULT_TEST_TIMEOUT),
        "control_timeout": _env_number("WORKTREE_SERVER_TIMEOUT", DEFAULT_CONTROL_TIMEOUT),
    }
    home = os.getenv("WORKTREE_SERVER_HOME")
    if home:
        raw["home"] = home
    raw.update(
        {
            key: str(value) if isinstance(value, Path) else value
            for key, value in overrides.items()
            if value is not None
        }
    )
    return msgspec.convert(raw, ServerConfig, strict=False)
