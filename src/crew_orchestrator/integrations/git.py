"""Git subprocess wrappers for worktree and branch operations.

Every call is synchronous and bounded by a timeout.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 60.0


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False
    is_detached: bool = False


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} could not run: {e}") from e


def worktree_add_detached(
    repo_path: str | Path,
    worktree_path: str | Path,
    ref: str,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Create a worktree with a detached HEAD at `ref`.

    Branches are created inside the worktree afterwards, so the trunk
    branch itself is never checked out twice.
    """
    return run_git(["worktree", "add", "--detach", str(worktree_path), ref], cwd=repo_path, timeout=timeout)


def worktree_list(repo_path: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path, timeout=timeout)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                    is_detached=current.get("detached", False),
                )
            )
            current.clear()

    for line in output.split("\n"):
        if not line:
            flush()
        elif line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["detached"] = True
    flush()

    return worktrees


def worktree_remove(
    repo_path: str | Path,
    worktree_path: str | Path,
    force: bool = False,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path, timeout=timeout)


def worktree_prune(repo_path: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Drop bookkeeping for worktrees whose directories are gone."""
    return run_git(["worktree", "prune"], cwd=repo_path, timeout=timeout)


def branch_exists(repo_path: str | Path, branch: str, timeout: float | None = DEFAULT_TIMEOUT) -> bool:
    """Check if a local branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path, timeout=timeout)
        return True
    except GitError:
        return False


def has_remote(repo_path: str | Path, remote: str = "origin", timeout: float | None = DEFAULT_TIMEOUT) -> bool:
    """Check if a named remote is configured."""
    output = run_git(["remote"], cwd=repo_path, timeout=timeout)
    return remote in output.split()


def fetch(repo_path: str | Path, remote: str = "origin", timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Fetch and prune a remote."""
    return run_git(["fetch", remote, "--prune"], cwd=repo_path, timeout=timeout)


def checkout(cwd: str | Path, branch: str, timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Check out an existing branch."""
    return run_git(["checkout", branch], cwd=cwd, timeout=timeout)


def checkout_new_branch(
    cwd: str | Path, branch: str, start_point: str, timeout: float | None = DEFAULT_TIMEOUT
) -> str:
    """Create a branch at `start_point` and check it out."""
    return run_git(["checkout", "-b", branch, start_point], cwd=cwd, timeout=timeout)


def push(
    cwd: str | Path, branch: str, remote: str = "origin", timeout: float | None = DEFAULT_TIMEOUT
) -> str:
    """Push a branch and set its upstream."""
    return run_git(["push", "-u", remote, branch], cwd=cwd, timeout=timeout)


def get_common_dir(cwd: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> Path:
    """Absolute path of the shared .git directory of a repository or worktree."""
    output = run_git(["rev-parse", "--git-common-dir"], cwd=cwd, timeout=timeout)
    path = Path(output)
    if not path.is_absolute():
        path = Path(cwd) / path
    return path.resolve()


def get_current_branch(cwd: str | Path, timeout: float | None = DEFAULT_TIMEOUT) -> str:
    """Get the current branch name (empty when detached)."""
    return run_git(["branch", "--show-current"], cwd=cwd, timeout=timeout)
