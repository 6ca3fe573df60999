"""Querying git for details about the directory an image is built from."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass

GIT_REPO_REMOTE_URL_UNKNOWN = "<unknown>"
GIT_REPO_HEAD_SHA_NO_COMMITS = "<no commits>"


class GitError(Exception):
    """Raised when git details cannot be determined."""


@dataclass(frozen=True)
class _Result:
    stdout: str
    stderr: str
    error: str | None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class GitRepo:
    """A directory that may be inside a git work tree."""

    dir_path: str

    def _run(self, *args: str) -> _Result:
        # Run with the directory as cwd to avoid --git-dir surprises.
        try:
            proc = subprocess.run(
                ["git", *args], cwd=self.dir_path, capture_output=True, text=True
            )
        except OSError as exc:
            return _Result("", "", str(exc))
        error = None if proc.returncode == 0 else f"exit status {proc.returncode}"
        return _Result(proc.stdout, proc.stderr, error)

    def _error(self, message: str) -> GitError:
        return GitError(
            f"Getting details from git for directory '{self.dir_path}': {message}"
        )

    def remote_url(self) -> str:
        res = self._run("ls-remote", "--get-url")
        if not res.ok:
            # The same message is printed outside of a git repo
            if self.is_valid() and "No remote configured to list refs from" in res.stderr:
                return GIT_REPO_REMOTE_URL_UNKNOWN
            raise self._error(f"Determining remote: {res.error} (stderr '{res.stderr}')")
        return res.stdout.strip()

    def head_sha(self) -> str:
        res = self._run("rev-parse", "HEAD")
        if not res.ok:
            listing = self._run("rev-list", "-n", "1", "--all")
            if listing.ok and not listing.stdout.strip():
                return GIT_REPO_HEAD_SHA_NO_COMMITS
            raise self._error(f"Checking HEAD commit: {res.error} (stderr '{res.stderr}')")
        return res.stdout.strip()

    def head_tags(self) -> list[str]:
        res = self._run("describe", "--tags", "--exact-match", "HEAD")
        if not res.ok:
            if "no tag exactly matches" in res.stderr or "No names found" in res.stderr:
                return []
            raise self._error(f"Checking HEAD tags: {res.error} (stderr '{res.stderr}')")
        return res.stdout.strip().split("\n")

    def is_dirty(self) -> bool:
        res = self._run("status", "--short")
        if not res.ok:
            raise self._error(f"Checking status: {res.error}")
        return bool(res.stdout.strip())

    def is_valid(self) -> bool:
        return self._run("rev-parse", "--git-dir").ok