"""Thin git wrapper used by the repository monitor.

All operations shell out to the ``git`` executable with ``subprocess``; the
working copy they touch belongs to exactly one session's monitor.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from urllib.parse import quote, urlparse, urlunparse

from pydantic import BaseModel

from lodestar.core.logging import get_logger

logger = get_logger("repository.git")

# Unit separator, never appears in commit metadata.
_FIELD_SEP = "\x1f"


class GitError(Exception):
    """Raised when a git command cannot be completed."""


class CommitInfo(BaseModel):
    sha: str
    author: str = ""
    date: str = ""
    message: str = ""


class FileChange(BaseModel):
    path: str
    insertions: int = 0
    deletions: int = 0
    binary: bool = False

    @property
    def changes(self) -> int:
        return self.insertions + self.deletions


def authenticated_url(url: str, username: str = "", token: str = "") -> str:
    """Embed credentials into an https clone URL.  Other schemes are returned as is."""
    if not token:
        return url
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return url
    user = quote(username or "oauth2", safe="")
    netloc = f"{user}:{quote(token, safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def mask_url(url: str) -> str:
    """Hide any credentials embedded in *url* (for logs and error messages)."""
    parsed = urlparse(url)
    if not parsed.password and not parsed.username:
        return url
    netloc = f"***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def _run_git(args: list[str], cwd: Path | None = None, timeout: int = 300) -> str:
    """Run a git sub-command and return stdout.

    Raises
    ------
    GitError
        If git exits with a non-zero return code, times out or is missing.
    """
    cmd = ["git"] + args
    shown = " ".join(mask_url(a) if "://" in a else a for a in args)
    logger.debug("git | cwd=%s | %s", cwd, shown)
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"git {args[0]} timed out after {timeout}s") from exc
    except FileNotFoundError as exc:
        raise GitError("git executable not found on PATH") from exc

    if result.returncode != 0:
        stderr = result.stderr.strip()
        # git echoes the remote URL in some errors; never leak a token.
        for arg in args:
            if "://" in arg:
                stderr = stderr.replace(arg, mask_url(arg))
        raise GitError(f"git {args[0]} failed (exit {result.returncode}): {stderr[:400]}")
    return result.stdout.strip()


class GitClient:
    """Git operations bound to one working-copy directory."""

    def __init__(self, path: Path, timeout: int = 300) -> None:
        self.path = path
        self.timeout = timeout

    def _git(self, *args: str) -> str:
        return _run_git(list(args), cwd=self.path, timeout=self.timeout)

    def is_repository(self) -> bool:
        return (self.path / ".git").exists()

    def clone(self, url: str, branch: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("git clone %s → %s (branch %s)", mask_url(url), self.path, branch)
        _run_git(["clone", "--branch", branch, url, str(self.path)], timeout=self.timeout)

    def set_remote_url(self, url: str, remote: str = "origin") -> None:
        self._git("remote", "set-url", remote, url)

    def fetch(self, remote: str = "origin") -> None:
        self._git("fetch", remote)

    def discard_local_changes(self) -> None:
        """Throw away every local modification; the working copy is scratch space."""
        self._git("reset", "--hard")
        self._git("clean", "-fd")

    def checkout(self, branch: str, remote: str = "origin") -> None:
        # -B (re)points the local branch at the remote one, so a diverged
        # scratch branch never blocks the update.
        self._git("checkout", "-B", branch, f"{remote}/{branch}")

    def pull(self, branch: str, remote: str = "origin") -> None:
        self._git("pull", "--ff-only", remote, branch)

    def rev_parse(self, ref: str) -> str:
        return self._git("rev-parse", ref)

    def tracked_files(self) -> list[str]:
        out = self._git("ls-files")
        return [line for line in out.splitlines() if line.strip()]

    def log(self, commit_range: str, limit: int = 50) -> list[CommitInfo]:
        fmt = _FIELD_SEP.join(["%H", "%an", "%aI", "%s"])
        out = self._git("log", f"--max-count={limit}", f"--format={fmt}", commit_range)
        commits: list[CommitInfo] = []
        for line in out.splitlines():
            parts = line.split(_FIELD_SEP)
            if len(parts) != 4:
                continue
            sha, author, date, message = parts
            commits.append(CommitInfo(sha=sha, author=author, date=date, message=message))
        return commits

    def diff_numstat(self, commit_range: str) -> list[FileChange]:
        out = self._git("diff", "--numstat", commit_range)
        return parse_numstat(out)


def parse_numstat(output: str) -> list[FileChange]:
    """Parse ``git diff --numstat`` output (``ins<TAB>del<TAB>path`` per line)."""
    changes: list[FileChange] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) != 3:
            continue
        ins, dels, path = parts
        binary = ins == "-" or dels == "-"
        changes.append(FileChange(
            path=path,
            insertions=0 if binary else int(ins),
            deletions=0 if binary else int(dels),
            binary=binary,
        ))
    return changes
