"""Worktree Server - local git worktree provisioning for issue trackers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("worktree-server")
except PackageNotFoundError:
    # Running from source without install
    __version__ = "0.0.0+dev"
