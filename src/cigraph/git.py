# git.py
# Small, focused wrapper around the Git CLI.
# Used only to derive a default event from the local checkout when the
# caller does not pass an explicit ref.

from __future__ import annotations

import subprocess
from typing import List, Optional

from .model import BRANCH_PREFIX, TAG_PREFIX


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def tags_at_head(cwd: Optional[str] = None) -> List[str]:
    """Tags pointing exactly at HEAD, sorted for a stable pick."""
    out = _git(["tag", "--points-at", "HEAD"], cwd=cwd)
    return sorted(out.splitlines()) if out else []


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Current branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref for the checkout: a tag at HEAD wins over the branch,
    since a tagged commit is what a release push looks like.
    """
    tags = tags_at_head(cwd)
    if tags:
        return TAG_PREFIX + tags[-1]
    branch = current_branch(cwd)
    if branch:
        return BRANCH_PREFIX + branch
    return _git(["rev-parse", "HEAD"], cwd=cwd)
