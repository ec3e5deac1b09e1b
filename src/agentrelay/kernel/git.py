from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import RelayError
from .tokens import validate_fix_branch, validate_task_branch

logger = logging.getLogger("agentrelay.git")

_IDENTITY = ["-c", "user.name=agentrelay", "-c", "user.email=agentrelay@localhost"]
_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,127}$")


class GitError(RelayError, RuntimeError):
    pass


def _run_git(args: List[str], *, cwd: Path, timeout: float = 120.0) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return 1, "", str(e)
    return int(p.returncode), (p.stdout or "").strip(), (p.stderr or "").strip()


def _check(args: List[str], *, cwd: Path) -> str:
    code, out, err = _run_git(args, cwd=cwd)
    if code != 0:
        raise GitError(f"git {args[0]} failed: {err or out}")
    return out


def _identity(cwd: Path) -> List[str]:
    code, out, _ = _run_git(["config", "user.email"], cwd=cwd)
    return [] if code == 0 and out else list(_IDENTITY)


def validate_branch(name: str) -> str:
    """Relay only creates task branches and fix branches."""
    if name.startswith("relay/"):
        return validate_task_branch(name)
    return validate_fix_branch(name)


def git_root(path: Path) -> Optional[Path]:
    code, out, _ = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    if code != 0 or not out:
        return None
    return Path(out).resolve()


def is_git_repo(path: Path) -> bool:
    return path.is_dir() and git_root(path) is not None


def current_branch(repo: Path) -> str:
    return _check(["rev-parse", "--abbrev-ref", "HEAD"], cwd=repo)


def is_clean(repo: Path) -> bool:
    code, out, _ = _run_git(["status", "--porcelain"], cwd=repo)
    return code == 0 and not out


def commit_all(cwd: Path, message: str) -> bool:
    """Stage everything and commit. False when there was nothing to commit."""
    _check(["add", "-A"], cwd=cwd)
    code, _, _ = _run_git(["diff", "--cached", "--quiet"], cwd=cwd)
    if code == 0:
        return False
    _check([*_identity(cwd), "commit", "--no-verify", "-m", message], cwd=cwd)
    return True


def worktree_add(repo: Path, path: Path, branch: str) -> None:
    validate_task_branch(branch)
    path.parent.mkdir(parents=True, exist_ok=True)
    _check(["worktree", "add", "-b", branch, str(path), "HEAD"], cwd=repo)


def worktree_remove(repo: Path, path: Path) -> None:
    code, _, err = _run_git(["worktree", "remove", "--force", str(path)], cwd=repo)
    if code != 0:
        logger.warning("worktree remove failed for %s: %s", path, err)
        _run_git(["worktree", "prune"], cwd=repo)


def merge_branch(repo: Path, branch: str, *, message: str = "") -> bool:
    """Fold `branch` into the current branch with a merge commit.

    On conflict the merge is aborted, leaving the repo as it was, and False is
    returned.
    """
    validate_branch(branch)
    args = [*_identity(repo), "merge", "--no-ff", "--no-edit"]
    if message:
        args += ["-m", message]
    code, out, err = _run_git([*args, branch], cwd=repo)
    if code == 0:
        return True
    logger.warning("merge of %s failed: %s", branch, err or out, extra={"branch": branch})
    _run_git(["merge", "--abort"], cwd=repo)
    return False


def create_branch(repo: Path, branch: str) -> None:
    validate_branch(branch)
    _check(["checkout", "-b", branch], cwd=repo)


def checkout(repo: Path, branch: str) -> None:
    if branch.startswith("relay/") or "/auto-" in branch:
        validate_branch(branch)
    elif not _REF_RE.fullmatch(branch) or ".." in branch:
        raise GitError(f"refusing branch name {branch!r}")
    _check(["checkout", branch], cwd=repo)


def delete_branch(repo: Path, branch: str, *, force: bool = False) -> bool:
    validate_branch(branch)
    code, _, err = _run_git(["branch", "-D" if force else "-d", branch], cwd=repo)
    if code != 0:
        logger.warning("branch delete failed for %s: %s", branch, err, extra={"branch": branch})
    return code == 0


def branch_exists(repo: Path, branch: str) -> bool:
    validate_branch(branch)
    code, _, _ = _run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo)
    return code == 0


def discard_changes(repo: Path) -> None:
    """Throw away uncommitted edits and untracked files in the working tree."""
    _check(["reset", "--hard", "-q"], cwd=repo)
    _check(["clean", "-fdq"], cwd=repo)
