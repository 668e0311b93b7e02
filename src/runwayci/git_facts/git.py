# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from ..errors import CheckoutError

SHA_RE = re.compile(r"^[0-9a-f]{7,40}$")


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit, which is what
    the local helpers below want: callers decide whether to fall back.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully-qualified ref of the checked-out branch (refs/heads/<name>).
    Falls back to the HEAD SHA when detached.
    """
    try:
        return _git(["symbolic-ref", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


# ----------------------------------------------------------------------
# Checkout (source-control collaborator)
# ----------------------------------------------------------------------

def branch_of(ref: str) -> str:
    """Branch/tag name for --branch, or "" when ref is a SHA or empty."""
    if not ref or SHA_RE.match(ref):
        return ""
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def _local_runner(args: Sequence[str]):
    # Import here to avoid circular import
    from ..executor import run_process

    return run_process(list(args))


def checkout(
    repository: str,
    dest: Union[str, Path],
    *,
    ref: str = "",
    sha: str = "",
    depth: Union[int, str] = "full",
    run: Optional[Callable] = None,
) -> Path:
    """
    Clone `repository` into `dest` and check out `sha` (or `ref`).

    depth="full" fetches complete history; an integer makes a shallow clone
    of the branch named by `ref`, so `sha` must be reachable from its tip.

    Raises:
      CheckoutError on any git failure.
    """
    run = run or _local_runner
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    if any(dest.iterdir()):
        raise CheckoutError(f"checkout destination is not empty: {dest}")

    branch = branch_of(ref)
    args = ["git", "clone", "--no-checkout", "--quiet"]
    if str(depth) != "full":
        try:
            n = int(depth)
        except (TypeError, ValueError):
            raise CheckoutError(f"invalid checkout depth: {depth!r} (use an integer or 'full')") from None
        if n < 1:
            raise CheckoutError(f"invalid checkout depth: {n}")
        args += ["--depth", str(n)]
        # --depth is ignored for plain local paths; file:// honours it
        if os.path.isdir(repository):
            repository = Path(repository).resolve().as_uri()
    if branch:
        args += ["--branch", branch]
    args += [repository, str(dest)]

    _run_git(run, args)
    target = sha or branch or "HEAD"
    _run_git(run, ["git", "-C", str(dest), "checkout", "--quiet", target])
    return dest


def _run_git(run: Callable, args: list[str]) -> None:
    try:
        out = run(args)
    except FileNotFoundError:
        raise CheckoutError("git command not found. Please install Git.") from None
    if out.exit_code != 0:
        verb = args[3] if args[1] == "-C" else args[1]
        raise CheckoutError(f"git {verb} failed (exit={out.exit_code}): {out.stderr.strip()}")
