"""Git worktree provisioning.

Layout: {worktree_root}/{repo_name}/{branch_name}, one directory per issue
branch, each a linked worktree of the main repository.
"""

from __future__ import annotations

import re
from pathlib import PurePath
from typing import Final

from msgspec import Struct

from .errors import BranchExists, Failure, GitOperation, Validation, WorktreeExists
from .git import branch_exists, get_head_sha, safe_git_exec, worktree_exists

_BRANCH_COLLISION: Final = re.compile(r"a branch named '.+' already exists")
_PATH_COLLISION: Final = re.compile(r"'.+' already exists")


class WorktreeResult(Struct, frozen=True):
    """Result of worktree creation."""

    directory: str
    branch_name: str
    head: str | None = None


def get_repo_name(repo_path: str) -> str:
    return PurePath(repo_path).name


def build_worktree_path(worktree_root: str, repo_path: str, branch_name: str) -> str:
    """Join root, repo name and branch. No normalization, no filesystem access.

    Illegal results (e.g. a branch containing "..") surface later as
    provisioning failures.
    """
    return f"{worktree_root}/{get_repo_name(repo_path)}/{branch_name}"


def _classify_add_failure(stderr: str, branch_name: str, directory: str) -> Failure:
    """Map a failed `git worktree add` onto the collision variants.

    The precondition checks in create_worktree are advisory; if another
    process wins the race, git's own "already exists" is authoritative.
    git reports any occupied path that way, so the path is only a
    collision when a worktree is actually there now.
    """
    if _BRANCH_COLLISION.search(stderr):
        return BranchExists.for_branch(branch_name)
    if _PATH_COLLISION.search(stderr) and worktree_exists(directory).exists:
        return WorktreeExists.for_directory(directory)
    return GitOperation(f"Git command failed: git worktree add: {stderr}")


def create_worktree(
    repo_path: str,
    branch_name: str,
    base_branch: str,
    worktree_directory: str,
) -> WorktreeResult | Failure:
    """Create a worktree at worktree_directory on a new branch off base_branch.

    Checks run cheapest and most specific first, so the caller learns the
    first violated precondition:
        1. a worktree already at worktree_directory -> WorktreeExists
        2. branch_name already exists               -> BranchExists
        3. base_branch missing                      -> Validation

    All checks are read-only; the single `git worktree add -b` call is the
    only mutation, so a failure leaves nothing to roll back.

    Args:
        repo_path: Path to the main repository.
        branch_name: New branch to create.
        base_branch: Existing branch to start from.
        worktree_directory: Where to check the new branch out.

    Returns:
        WorktreeResult on success, otherwise a failure variant.
    """
    if worktree_exists(worktree_directory).exists:
        return WorktreeExists.for_directory(worktree_directory)

    if branch_exists(repo_path, branch_name):
        return BranchExists.for_branch(branch_name)

    if not branch_exists(repo_path, base_branch):
        return Validation(f"Base branch does not exist: {base_branch}")

    try:
        result = safe_git_exec(
            ["worktree", "add", "-b", branch_name, worktree_directory, base_branch],
            repo_path,
        )
    except ValueError as e:
        return Validation(str(e))

    if not result.ok:
        return _classify_add_failure(result.stderr.strip(), branch_name, worktree_directory)

    return WorktreeResult(
        directory=worktree_directory,
        branch_name=branch_name,
        head=get_head_sha(worktree_directory),
    )
