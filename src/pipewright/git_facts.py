# git_facts.py
# Small, focused wrapper around the Git CLI.
# Stands in for the trigger listener on a developer machine: it turns the
# current checkout into the Event a pipeline run starts from.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from .model import Event

UNKNOWN_SHA = "0" * 40


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError if git isn't installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the enclosing Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully-qualified ref of the current branch (refs/heads/<name>).
    A detached HEAD has no branch, so the commit SHA is returned instead.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def event_from_checkout(
    kind: str = "push",
    *,
    cwd: Optional[str | Path] = None,
    ref: Optional[str] = None,
    sha: Optional[str] = None,
) -> Event:
    """
    Build the triggering Event from a local checkout. Explicit ref/sha win;
    outside a git repository the missing parts fall back to placeholders.
    """
    if ref is None or sha is None:
        try:
            sha = sha or head_sha(cwd)
            ref = ref or current_ref(cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            sha = sha or UNKNOWN_SHA
            ref = ref or "refs/heads/local"
    return Event(ref=ref, sha=sha, kind=kind)
