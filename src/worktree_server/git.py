# src/worktree_server/git.py
"""
Read-only git queries delegating to runtime.py.

Probes (is_repository, branch_exists) treat a non-zero exit as "no":
for rev-parse and show-ref that is what a non-zero exit means. Only
listing and mutating calls surface a failing git as an error.
"""

from pathlib import Path
from typing import Final

from msgspec import Struct

from .errors import GitOperation
from .runtime import ExecutionResult, LocalRuntime

_runtime: Final = LocalRuntime()

BRANCH_REF_PREFIX: Final[str] = "refs/heads/"

_DANGEROUS_OPTIONS: Final[frozenset[str]] = frozenset(
    {
        "-c",
        "--config",
        "--upload-pack",
        "--exec",
        "-u",
        "--receive-pack",
    }
)

_DANGEROUS_PREFIXES: Final[tuple[str, ...]] = (
    "-c=",
    "--config=",
    "--upload-pack=",
    "--exec=",
    "--receive-pack=",
)


class WorktreeRecord(Struct, frozen=True):
    """One entry of `git worktree list --porcelain`."""

    path: str
    head: str | None = None
    branch: str | None = None
    bare: bool = False
    detached: bool = False


class WorktreeCheck(Struct, frozen=True):
    exists: bool
    directory: str | None = None


def _validate_git_args(args: list[str]) -> None:
    """Validate git arguments to prevent command injection.

    Raises:
        ValueError: If dangerous options are detected
    """
    for arg in args:
        if arg in _DANGEROUS_OPTIONS:
            raise ValueError(
                f"Dangerous git option '{arg}' is not allowed. "
                "This option could enable command injection."
            )

        for prefix in _DANGEROUS_PREFIXES:
            if arg.startswith(prefix):
                raise ValueError(
                    f"Dangerous git option '{prefix.rstrip('=')}' is not allowed. "
                    "This option could enable command injection."
                )


def safe_git_exec(args: list[str], repo_path: str, timeout: int = 60) -> ExecutionResult:
    """
    Execute `git -C <repo_path> <args>` and capture its output.

    Blocking call is fine because we're in a ThreadingMixIn server.
    Other clients are handled by other threads while we wait.

    Args:
        args: Git command arguments (without 'git' prefix)
        repo_path: Repository the command runs against
        timeout: Command timeout in seconds

    Returns:
        ExecutionResult with returncode, stdout, stderr

    Raises:
        ValueError: If dangerous git options are detected
    """
    _validate_git_args(args)

    return _runtime.execute(["git", "-C", repo_path, *args], timeout=timeout)


def is_repository(path: str) -> bool:
    if not Path(path).exists():
        return False
    return safe_git_exec(["rev-parse", "--git-dir"], path).ok


def branch_exists(repo_path: str, branch_name: str) -> bool:
    """True iff refs/heads/<branch_name> exists. Exact, case-sensitive."""
    result = safe_git_exec(
        ["show-ref", "--verify", "--quiet", f"{BRANCH_REF_PREFIX}{branch_name}"],
        repo_path,
    )
    return result.ok


def worktree_exists(directory: str) -> WorktreeCheck:
    """Check for a linked worktree at directory.

    A linked worktree has a `.git` *file* pointing at the main repository's
    git dir. A `.git` directory (a full clone) or no marker at all is not a
    worktree, even if the directory is occupied.
    """
    path = Path(directory)
    if not path.is_dir():
        return WorktreeCheck(exists=False)

    if (path / ".git").is_file():
        return WorktreeCheck(exists=True, directory=directory)
    return WorktreeCheck(exists=False)


def parse_worktree_list(output: str) -> list[WorktreeRecord]:
    """Parse `git worktree list --porcelain` output.

    Records are separated by blank lines; the last record may lack a
    trailing separator.
    """
    records: list[WorktreeRecord] = []
    current: dict[str, object] = {}

    for line in output.splitlines():
        if line.startswith("worktree "):
            if current:
                records.append(WorktreeRecord(**current))  # type: ignore[arg-type]
            current = {"path": line.removeprefix("worktree ")}
        elif not current:
            continue
        elif line.startswith("HEAD "):
            current["head"] = line.removeprefix("HEAD ")
        elif line.startswith("branch "):
            current["branch"] = line.removeprefix("branch ").removeprefix(BRANCH_REF_PREFIX)
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True
        elif line == "":
            records.append(WorktreeRecord(**current))  # type: ignore[arg-type]
            current = {}

    if current:
        records.append(WorktreeRecord(**current))  # type: ignore[arg-type]

    return records


def list_worktrees(repo_path: str) -> list[WorktreeRecord] | GitOperation:
    """List worktrees of the repository at repo_path. Re-reads git every call."""
    result = safe_git_exec(["worktree", "list", "--porcelain"], repo_path)
    if not result.ok:
        return GitOperation(f"Git command failed: git worktree list: {result.stderr.strip()}")
    return parse_worktree_list(result.stdout)


def get_head_sha(repo_path: str) -> str | None:
    result = safe_git_exec(["rev-parse", "HEAD"], repo_path)
    if result.ok:
        return result.stdout.strip()
    return None
