# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Pre-fixer checkpoints of the working tree.

Three kinds exist:

* ``clean``: the tree matched HEAD, so rollback is ``reset --hard`` plus
  ``clean -fd``.
* ``ref``: a stash-style commit pair (index commit, working-tree commit)
  stored under ``refs/reviewfix/checkpoints/<id>``. It is built with a
  temporary index so the user's working tree and index are never touched.
* ``snapshot``: the repository has no commits yet, so the tree is archived
  with ``tarfile`` into a private staging directory together with a copy of
  the index.
"""
import logging
import os
import shutil
import tarfile
import tempfile
import uuid
from typing import Literal, Optional

from pydantic import BaseModel

from reviewfix.errors import CheckpointError
from reviewfix.git import GIT_IDENTITY_ENV, GitCommandError, has_commits, run_git

logger = logging.getLogger(__name__)

CHECKPOINT_REF_PREFIX = "refs/reviewfix/checkpoints/"
_SNAPSHOT_ARCHIVE = "tree.tar"
_SNAPSHOT_INDEX = "index"


class GitCheckpoint(BaseModel):
    kind: Literal["clean", "ref", "snapshot"]
    id: str
    label: str
    ref: Optional[str] = None
    snapshot_dir: Optional[str] = None
    has_index: bool = False


def _index_path(repo_path: str) -> str:
    path = run_git(repo_path, ["rev-parse", "--git-path", "index"])
    return path if os.path.isabs(path) else os.path.join(repo_path, path)


# ── Create ────────────────────────────────────────────────────


def _create_snapshot(repo_path: str, checkpoint_id: str, label: str) -> GitCheckpoint:
    staging = tempfile.mkdtemp(prefix="reviewfix-checkpoint-")
    try:
        with tarfile.open(os.path.join(staging, _SNAPSHOT_ARCHIVE), "w") as archive:
            for name in sorted(os.listdir(repo_path)):
                if name == ".git":
                    continue
                archive.add(os.path.join(repo_path, name), arcname=name)
        index = _index_path(repo_path)
        has_index = os.path.isfile(index)
        if has_index:
            shutil.copy2(index, os.path.join(staging, _SNAPSHOT_INDEX))
    except (OSError, tarfile.TarError, GitCommandError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise CheckpointError("Failed to snapshot working tree: {}".format(e)) from e
    logger.debug("Created snapshot checkpoint %s in %s", checkpoint_id, staging)
    return GitCheckpoint(
        kind="snapshot", id=checkpoint_id, label=label,
        snapshot_dir=staging, has_index=has_index,
    )


def _worktree_tree(repo_path: str) -> str:
    """Tree of the working tree including untracked, non-ignored files."""
    scratch = tempfile.mkdtemp(prefix="reviewfix-index-")
    try:
        temp_index = os.path.join(scratch, "index")
        real_index = _index_path(repo_path)
        if os.path.isfile(real_index):
            shutil.copy2(real_index, temp_index)
        env = {"GIT_INDEX_FILE": temp_index}
        run_git(repo_path, ["add", "-A"], env=env)
        return run_git(repo_path, ["write-tree"], env=env)
    finally:
        shutil.rmtree(scratch, ignore_errors=True)


def _create_ref(repo_path: str, checkpoint_id: str, label: str) -> GitCheckpoint:
    try:
        head_tree = run_git(repo_path, ["rev-parse", "HEAD^{tree}"])
        index_tree = run_git(repo_path, ["write-tree"])
        worktree_tree = _worktree_tree(repo_path)
        if index_tree == head_tree and worktree_tree == head_tree:
            logger.debug("Working tree clean, checkpoint %s needs no ref", checkpoint_id)
            return GitCheckpoint(kind="clean", id=checkpoint_id, label=label)

        index_commit = run_git(
            repo_path,
            ["commit-tree", index_tree, "-p", "HEAD", "-m", "index on {}".format(label)],
            env=GIT_IDENTITY_ENV,
        )
        worktree_commit = run_git(
            repo_path,
            ["commit-tree", worktree_tree, "-p", "HEAD", "-p", index_commit, "-m", label],
            env=GIT_IDENTITY_ENV,
        )
        ref = CHECKPOINT_REF_PREFIX + checkpoint_id
        run_git(repo_path, ["update-ref", ref, worktree_commit])
    except GitCommandError as e:
        raise CheckpointError("Failed to record checkpoint: {}".format(e)) from e
    logger.debug("Created checkpoint %s at %s", checkpoint_id, ref)
    return GitCheckpoint(kind="ref", id=checkpoint_id, label=label, ref=ref)


def create_checkpoint(repo_path: str, label: str) -> GitCheckpoint:
    """Capture the working tree and index of *repo_path*.

    Raises:
        CheckpointError: When the state could not be captured.
    """
    checkpoint_id = uuid.uuid4().hex[:12]
    if not has_commits(repo_path):
        return _create_snapshot(repo_path, checkpoint_id, label)
    return _create_ref(repo_path, checkpoint_id, label)


# ── Discard / rollback ────────────────────────────────────────


def discard_checkpoint(repo_path: str, checkpoint: GitCheckpoint) -> None:
    """Release the resources held by *checkpoint*. Safe to call twice."""
    if checkpoint.kind == "ref" and checkpoint.ref:
        try:
            run_git(repo_path, ["update-ref", "-d", checkpoint.ref], check=False)
        except GitCommandError as e:
            raise CheckpointError("Failed to delete {}: {}".format(checkpoint.ref, e)) from e
    elif checkpoint.kind == "snapshot" and checkpoint.snapshot_dir:
        if os.path.isdir(checkpoint.snapshot_dir):
            try:
                shutil.rmtree(checkpoint.snapshot_dir)
            except OSError as e:
                raise CheckpointError("Failed to remove {}: {}".format(checkpoint.snapshot_dir, e)) from e


def _clear_tree(repo_path: str) -> None:
    for name in os.listdir(repo_path):
        if name == ".git":
            continue
        path = os.path.join(repo_path, name)
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)


def _extract(archive_path: str, dest: str) -> None:
    with tarfile.open(archive_path, "r") as archive:
        if hasattr(tarfile, "tar_filter"):
            # Archive written by _create_snapshot: links may point outside the tree.
            archive.extractall(dest, filter="tar")
        else:
            archive.extractall(dest)


def _restore_snapshot(repo_path: str, checkpoint: GitCheckpoint) -> None:
    staging = checkpoint.snapshot_dir or ""
    archive_path = os.path.join(staging, _SNAPSHOT_ARCHIVE)
    if not os.path.isfile(archive_path):
        raise CheckpointError("Snapshot archive missing: {}".format(archive_path))
    # The tree is only cleared once the archive has extracted completely.
    scratch = tempfile.mkdtemp(prefix="restore-", dir=staging)
    try:
        _extract(archive_path, scratch)
        _clear_tree(repo_path)
        for name in os.listdir(scratch):
            shutil.move(os.path.join(scratch, name), os.path.join(repo_path, name))
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
    index = _index_path(repo_path)
    if checkpoint.has_index:
        shutil.copy2(os.path.join(staging, _SNAPSHOT_INDEX), index)
    elif os.path.exists(index):
        os.unlink(index)


def rollback_to_checkpoint(repo_path: str, checkpoint: GitCheckpoint) -> None:
    """Restore the tree and index captured by *checkpoint*, then discard it.

    Raises:
        CheckpointError: When the restore did not complete.
    """
    logger.info("Rolling back to checkpoint %s (%s)", checkpoint.id, checkpoint.kind)
    try:
        if checkpoint.kind == "snapshot":
            _restore_snapshot(repo_path, checkpoint)
        else:
            run_git(repo_path, ["reset", "--hard", "HEAD"])
            run_git(repo_path, ["clean", "-fd"])
            if checkpoint.kind == "ref":
                run_git(repo_path, ["read-tree", "--reset", "-u", "{}^{{tree}}".format(checkpoint.ref)])
                # Second parent of the working-tree commit is the index commit.
                run_git(repo_path, ["read-tree", "{}^2^{{tree}}".format(checkpoint.ref)])
    except (OSError, tarfile.TarError, GitCommandError) as e:
        message = "Rollback to checkpoint {} failed: {}".format(checkpoint.id, e)
        if checkpoint.kind == "snapshot":
            message += ". Snapshot archive kept in {}".format(checkpoint.snapshot_dir)
        raise CheckpointError(message) from e
    discard_checkpoint(repo_path, checkpoint)
