import os
import subprocess

import pytest

from kbld.git import (
    GIT_REPO_HEAD_SHA_NO_COMMITS,
    GIT_REPO_REMOTE_URL_UNKNOWN,
    GitError,
    GitRepo,
)

_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "tester",
    "GIT_AUTHOR_EMAIL": "tester@example.com",
    "GIT_COMMITTER_NAME": "tester",
    "GIT_COMMITTER_EMAIL": "tester@example.com",
}


def run(directory, *args):
    proc = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", *args],
        cwd=directory,
        capture_output=True,
        text=True,
        env=_ENV,
        check=True,
    )
    return proc.stdout


def test_valid_no_commit(tmp_path):
    run(tmp_path, "init", ".")
    repo = GitRepo(str(tmp_path))
    assert repo.is_valid() is True
    assert repo.remote_url() == GIT_REPO_REMOTE_URL_UNKNOWN
    assert repo.head_sha() == GIT_REPO_HEAD_SHA_NO_COMMITS
    assert repo.head_tags() == []
    assert repo.is_dirty() is False


def test_valid_not_on_branch(tmp_path):
    run(tmp_path, "init", ".")
    run(tmp_path, "commit", "-am", "msg1", "--allow-empty")
    run(tmp_path, "commit", "-am", "msg2", "--allow-empty")
    run(tmp_path, "checkout", "HEAD~1")
    repo = GitRepo(str(tmp_path))
    assert repo.is_valid() is True
    assert repo.remote_url() == GIT_REPO_REMOTE_URL_UNKNOWN
    sha = repo.head_sha()
    assert sha != GIT_REPO_HEAD_SHA_NO_COMMITS and len(sha) >= 20
    assert repo.head_tags() == []
    assert repo.is_dirty() is False


def test_valid_sub_dir(tmp_path):
    run(tmp_path, "init", ".")
    run(tmp_path, "commit", "-am", "msg1", "--allow-empty")
    sub = tmp_path / "sub-dir"
    sub.mkdir()
    repo = GitRepo(str(sub))
    assert repo.is_valid() is True
    assert repo.remote_url() == GIT_REPO_REMOTE_URL_UNKNOWN
    sha = repo.head_sha()
    assert sha != GIT_REPO_HEAD_SHA_NO_COMMITS and len(sha) >= 20
    assert repo.head_tags() == []
    assert repo.is_dirty() is False


def test_non_git(tmp_path):
    repo = GitRepo(str(tmp_path))
    assert repo.is_valid() is False
    for call in (repo.remote_url, repo.head_sha, repo.head_tags, repo.is_dirty):
        with pytest.raises(GitError):
            call()


def test_remote_url(tmp_path):
    run(tmp_path, "init", ".")
    repo = GitRepo(str(tmp_path))
    assert repo.remote_url() == GIT_REPO_REMOTE_URL_UNKNOWN
    run(tmp_path, "remote", "add", "origin", "http://some-remote")
    assert repo.remote_url() == "http://some-remote"


def test_head_sha(tmp_path):
    run(tmp_path, "init", ".")
    repo = GitRepo(str(tmp_path))
    assert repo.head_sha() == GIT_REPO_HEAD_SHA_NO_COMMITS
    run(tmp_path, "commit", "-am", "msg1", "--allow-empty")
    short = run(tmp_path, "log", "-1", "--oneline")[:7]
    assert repo.head_sha().startswith(short)


def test_head_tags(tmp_path):
    run(tmp_path, "init", ".")
    run(tmp_path, "commit", "-am", "msg1", "--allow-empty")
    run(tmp_path, "tag", "v1")
    assert GitRepo(str(tmp_path)).head_tags() == ["v1"]


def test_is_dirty(tmp_path):
    run(tmp_path, "init", ".")
    run(tmp_path, "commit", "-am", "msg1", "--allow-empty")
    repo = GitRepo(str(tmp_path))
    assert repo.is_dirty() is False
    (tmp_path / "file").touch()
    assert repo.is_dirty() is True