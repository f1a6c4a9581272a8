# git.py
# Small, focused wrapper around the Git CLI.
# Everything the runner needs to know about the checkout (ref, sha,
# changed files) comes through here; nothing else calls `git` directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from ..model import RunContext


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """Current branch name, or "" on a detached HEAD."""
    try:
        return _git(["symbolic-ref", "--short", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def current_tag(cwd: Optional[str | Path] = None) -> str:
    """Tag pointing exactly at HEAD, or ""."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """refs/heads/<branch>, refs/tags/<tag>, or the HEAD sha when detached."""
    branch = current_branch(cwd)
    if branch:
        return f"refs/heads/{branch}"
    tag = current_tag(cwd)
    if tag:
        return f"refs/tags/{tag}"
    return head_sha(cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def working_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked files of a dirty working tree."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def changed_since(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files the run should consider changed.

    Dirty tree: the working changes. Clean tree: the diff against the
    merge-base with compare_ref, falling back to HEAD~1, and to every
    tracked file on a first commit.
    """
    root = repo_root(cwd)
    if is_dirty(root):
        return working_changes(root)

    try:
        base = merge_base(compare_ref, cwd=root)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=root)
    except subprocess.CalledProcessError:
        return _lines(_git(["ls-files"], cwd=root))


def _parse_ref(ref: str) -> tuple[str, str]:
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):], ""
    if ref.startswith("refs/tags/"):
        return "", ref[len("refs/tags/"):]
    return "", ""


def run_context(
    *,
    event: str = "push",
    ref: Optional[str] = None,
    use_git: bool = True,
    git_diff: bool = False,
    compare_ref: str = "origin/main",
    env: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
    changed: Optional[Sequence[str]] = None,
    cwd: Optional[str | Path] = None,
) -> RunContext:
    """
    Build the RunContext for a local run.

    Facts git cannot provide (outside a repository, git missing) are left
    empty. changed_files stays None unless git_diff is on or `changed` is
    given, which disables paths-based gating.
    """
    sha = ""
    if use_git:
        try:
            sha = head_sha(cwd)
            if ref is None:
                ref = get_current_ref(cwd)
        except (subprocess.CalledProcessError, FileNotFoundError):
            pass

    ref = ref or ""
    branch, tag = _parse_ref(ref)

    changed_files_: Optional[tuple] = None
    if changed is not None:
        changed_files_ = tuple(changed)
    elif git_diff:
        changed_files_ = tuple(changed_since(compare_ref, cwd=cwd))

    return RunContext(
        event=event,
        ref=ref,
        branch=branch,
        tag=tag,
        sha=sha,
        changed_files=changed_files_,
        env=dict(env or {}),
        secrets=dict(secrets or {}),
    )
