# git.py
# Small wrapper around the Git CLI, used to build trigger events for
# local runs. The rest of the codebase never calls subprocess("git ...").

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises CalledProcessError on a non-zero exit, FileNotFoundError when
    git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Current ref as `refs/heads/<branch>`, or the bare SHA on a detached HEAD.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def get_actor(cwd: Optional[str] = None) -> str:
    """Identity used as the trigger actor: git user.email, then user.name."""
    for key in ("user.email", "user.name"):
        try:
            value = _git(["config", "--get", key], cwd)
        except subprocess.CalledProcessError:
            continue
        if value:
            return value
    return "unknown"

