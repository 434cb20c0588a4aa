"""Failure variants returned by worktree and launch operations.

Operations return one of these tagged structs instead of raising. The
request handler maps each variant to an HTTP status exactly once via
status_for(); the struct itself encodes to the response body, with the
tag written to the ``error`` field.
"""

from __future__ import annotations

from typing import Any, Final

import msgspec
from msgspec import Struct

INTERNAL_MESSAGE: Final[str] = "An unexpected error occurred"


class Validation(Struct, frozen=True, tag_field="error", tag="validation"):
    """Malformed request or a user-correctable precondition."""

    message: str


class WorktreeExists(Struct, frozen=True, tag_field="error", tag="exists"):
    """A worktree already occupies the target directory."""

    directory: str
    message: str

    @classmethod
    def for_directory(cls, directory: str) -> WorktreeExists:
        return cls(directory=directory, message=f"Worktree already exists at {directory}")


class BranchExists(Struct, frozen=True, tag_field="error", tag="branch_exists"):
    message: str

    @classmethod
    def for_branch(cls, branch_name: str) -> BranchExists:
        return cls(message=f"Branch {branch_name} already exists")


class GitOperation(Struct, frozen=True, tag_field="error", tag="git_error"):
    """A mutating git call failed; message carries git's diagnostics."""

    message: str


class LaunchFailure(Struct, frozen=True, tag_field="error", tag="launch_error"):
    message: str


class Timeout(Struct, frozen=True, tag_field="error", tag="timeout"):
    message: str


class Internal(Struct, frozen=True, tag_field="error", tag="internal"):
    message: str = INTERNAL_MESSAGE


type Failure = (
    Validation | WorktreeExists | BranchExists | GitOperation | LaunchFailure | Timeout | Internal
)


def status_for(failure: Failure) -> int:
    """Map a failure variant to its HTTP status code."""
    match failure:
        case Validation():
            return 400
        case WorktreeExists() | BranchExists():
            return 409
        case GitOperation() | LaunchFailure() | Timeout() | Internal():
            return 500


def to_body(failure: Failure, **extra: Any) -> dict[str, Any]:
    """Encode a failure to a JSON-ready dict, tag included."""
    body: dict[str, Any] = msgspec.to_builtins(failure)
    return {**extra, **body}
