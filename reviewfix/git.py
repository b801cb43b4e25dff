# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Thin wrappers around the git command line."""
import logging
import os
import subprocess
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

GIT_IDENTITY_ENV = {
    "GIT_AUTHOR_NAME": "reviewfix",
    "GIT_AUTHOR_EMAIL": "reviewfix@localhost",
    "GIT_COMMITTER_NAME": "reviewfix",
    "GIT_COMMITTER_EMAIL": "reviewfix@localhost",
}


class GitCommandError(RuntimeError):
    """A git invocation exited non-zero."""

    def __init__(self, args: List[str], returncode: int, stderr: str):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__("git {} failed ({}): {}".format(
            " ".join(args), returncode, stderr.strip()[:500],
        ))


def run_git(
    repo_path: str,
    args: List[str],
    env: Optional[Dict[str, str]] = None,
    check: bool = True,
) -> str:
    """Run ``git <args>`` in *repo_path* and return stripped stdout.

    With ``check`` a non-zero exit raises :class:`GitCommandError`; without it
    the empty string is returned instead.
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=repo_path,
            env=full_env,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as e:
        raise GitCommandError(args, 127, "git not found") from e
    if proc.returncode != 0:
        if check:
            raise GitCommandError(args, proc.returncode, proc.stderr)
        logger.debug("git %s exited %d: %s", " ".join(args), proc.returncode, proc.stderr.strip())
        return ""
    return proc.stdout.strip()


def _try_git(repo_path: str, args: List[str]) -> Optional[str]:
    try:
        out = run_git(repo_path, args, check=False)
    except GitCommandError:
        return None
    return out or None


def is_git_repository(path: str) -> bool:
    return _try_git(path, ["rev-parse", "--is-inside-work-tree"]) == "true"


def resolve_head(repo_path: str) -> Optional[str]:
    """SHA of HEAD, or None while HEAD is unborn."""
    return _try_git(repo_path, ["rev-parse", "--verify", "--quiet", "HEAD"])


def has_commits(repo_path: str) -> bool:
    return resolve_head(repo_path) is not None


def get_git_branch(repo_path: str) -> Optional[str]:
    """Current branch name, or None when detached or not a repository."""
    return _try_git(repo_path, ["branch", "--show-current"])


def _upstream_if_ahead(repo_root: str, branch: str) -> Optional[str]:
    upstream = _try_git(repo_root, [
        "rev-parse", "--abbrev-ref", "--symbolic-full-name", "{}@{{upstream}}".format(branch),
    ])
    if not upstream:
        return None
    counts = _try_git(repo_root, ["rev-list", "--left-right", "--count", "{}...{}".format(branch, upstream)])
    if not counts:
        return None
    parts = counts.split()
    try:
        remote_ahead = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        return None
    return upstream if remote_ahead > 0 else None


def merge_base_with_head(repo_path: str, branch: str) -> Optional[str]:
    """Merge-base of HEAD and *branch*.

    Prefers the branch's upstream when the remote is ahead of the local
    branch. Returns None outside a repository, with an unborn HEAD, or when
    the branch does not resolve.
    """
    if not is_git_repository(repo_path):
        return None
    repo_root = _try_git(repo_path, ["rev-parse", "--show-toplevel"])
    if not repo_root:
        return None
    head = resolve_head(repo_root)
    if not head:
        return None
    target = _try_git(repo_root, ["rev-parse", "--verify", "--quiet", branch])
    if not target:
        return None
    upstream = _upstream_if_ahead(repo_root, branch)
    if upstream:
        target = _try_git(repo_root, ["rev-parse", "--verify", "--quiet", upstream]) or target
    return _try_git(repo_root, ["merge-base", head, target])
