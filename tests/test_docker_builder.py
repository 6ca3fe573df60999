import io
import json
import sys

import pytest

from kbld.docker_builder import (
    BuildError,
    Docker,
    DockerBuildOpts,
    PrefixedWriter,
    _run_command,
)

DIGEST = "sha256:" + "a" * 64


class FakeRunner:
    def __init__(self, inspects=(), fail_on=None):
        self.calls = []
        self.inspects = list(inspects)
        self.fail_on = fail_on

    def __call__(self, args, cwd=None, log=None):
        self.calls.append((list(args), cwd))
        if self.fail_on is not None and args[1] == self.fail_on:
            raise BuildError("exit status 1")
        if args[1] == "inspect":
            return json.dumps(self.inspects.pop(0)), ""
        return "", ""


def test_prefixed_writer_prefixes_every_line():
    out = io.StringIO()
    writer = PrefixedWriter("p | ", out)
    writer.write("a\nb\n")
    assert out.getvalue() == "p | a\np | b\n"


def test_prefixed_writer_continues_partial_lines():
    out = io.StringIO()
    writer = PrefixedWriter("p | ", out)
    writer.write("ab")
    writer.write("c\nd")
    assert out.getvalue() == "p | abc\np | d"


def test_run_command_captures_both_streams():
    out = io.StringIO()
    stdout, stderr = _run_command(
        [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
        log=PrefixedWriter("x | ", out),
    )
    assert stdout == "out\n"
    assert stderr == "err\n"
    assert "x | out\n" in out.getvalue()
    assert "x | err\n" in out.getvalue()


def test_run_command_reports_exit_status():
    with pytest.raises(BuildError, match="exit status 3"):
        _run_command([sys.executable, "-c", "raise SystemExit(3)"])


def test_build_requires_existing_directory(tmp_path):
    docker = Docker(stream=io.StringIO(), runner=FakeRunner())
    with pytest.raises(BuildError, match="Checking if path"):
        docker.build("app", str(tmp_path / "missing"), DockerBuildOpts())


def test_build_requires_directory_not_file(tmp_path):
    path = tmp_path / "file"
    path.write_text("x")
    docker = Docker(stream=io.StringIO(), runner=FakeRunner())
    with pytest.raises(BuildError, match="to be a directory, but was not"):
        docker.build("app", str(path), DockerBuildOpts())


def test_build_runs_docker_and_retags(tmp_path):
    runner = FakeRunner(inspects=[[{"Id": "sha256:abc", "RepoDigests": []}]])
    log = io.StringIO()
    docker = Docker(stream=log, runner=runner)
    opts = DockerBuildOpts(target="t", pull=True, no_cache=True, file="Df", raw_options=["--x"])

    result = docker.build("app", str(tmp_path), opts)

    assert result == "kbld:app-sha256-abc"
    build_args, build_cwd = runner.calls[0]
    assert build_cwd == str(tmp_path)
    tmp_ref = build_args[-2]
    assert tmp_ref.startswith("kbld:rand-")
    assert build_args[:2] == ["docker", "build"]
    assert build_args[2:] == [
        "--target", "t", "--pull", "--no-cache", "--file", "Df", "--x", "--tag", tmp_ref, ".",
    ]
    assert runner.calls[1][0] == ["docker", "inspect", tmp_ref]
    assert runner.calls[2][0] == ["docker", "tag", tmp_ref, result]
    assert runner.calls[3][0] == ["docker", "rmi", tmp_ref]
    assert "finished build (using Docker)" in log.getvalue()


def test_build_failure_is_logged(tmp_path):
    log = io.StringIO()
    docker = Docker(stream=log, runner=FakeRunner(fail_on="build"))
    with pytest.raises(BuildError):
        docker.build("app", str(tmp_path), DockerBuildOpts())
    assert "app | error: exit status 1" in log.getvalue()
    assert "finished build (using Docker)" in log.getvalue()


def test_retag_stable_skips_untag_for_digest_refs():
    runner = FakeRunner()
    docker = Docker(stream=io.StringIO(), runner=runner)
    log = PrefixedWriter("app | ", io.StringIO())
    result = docker.retag_stable("sha256:abc", "app", "sha256:abc", log)
    assert result == "kbld:app-sha256-abc"
    assert [call[0][1] for call in runner.calls] == ["tag"]


def test_retag_stable_rejects_long_image_id():
    docker = Docker(stream=io.StringIO(), runner=FakeRunner())
    log = PrefixedWriter("app | ", io.StringIO())
    with pytest.raises(ValueError):
        docker.retag_stable("kbld:tmp", "app", "x" * 73, log)


def test_push_returns_repo_digest():
    data = {"Id": "sha256:abc", "RepoDigests": ["docker.io/library/app@" + DIGEST]}
    runner = FakeRunner(inspects=[data, data])
    docker = Docker(stream=io.StringIO(), runner=runner)

    assert docker.push("kbld:tmp", "docker.io/library/app") == DIGEST

    tag_args = runner.calls[1][0]
    assert tag_args[:3] == ["docker", "tag", "kbld:tmp"]
    assert tag_args[3].startswith("index.docker.io/library/app:kbld-rand-")
    assert runner.calls[2][0] == ["docker", "push", tag_args[3]]


def test_push_rejects_mismatched_repo_digests():
    other = "sha256:" + "b" * 64
    data = {"Id": "sha256:abc", "RepoDigests": ["app@" + DIGEST, "app@" + other]}
    docker = Docker(stream=io.StringIO(), runner=FakeRunner(inspects=[data, data]))
    with pytest.raises(BuildError, match="Expected to find same repo digest"):
        docker.push("kbld:tmp", "app")


def test_push_requires_repo_digest():
    data = {"Id": "sha256:abc", "RepoDigests": []}
    docker = Docker(stream=io.StringIO(), runner=FakeRunner(inspects=[data, data]))
    with pytest.raises(BuildError, match="at least one repo digest"):
        docker.push("kbld:tmp", "app")


def test_push_detects_changed_image():
    before = {"Id": "sha256:abc", "RepoDigests": ["app@" + DIGEST]}
    after = {"Id": "sha256:def", "RepoDigests": ["app@" + DIGEST]}
    docker = Docker(stream=io.StringIO(), runner=FakeRunner(inspects=[before, after]))
    with pytest.raises(BuildError):
        docker.push("kbld:tmp", "app")


def test_inspect_requires_exactly_one_image(tmp_path):
    runner = FakeRunner(inspects=[[{"Id": "a"}, {"Id": "b"}]])
    docker = Docker(stream=io.StringIO(), runner=runner)
    with pytest.raises(BuildError, match="exactly one image, but found 2"):
        docker.build("app", str(tmp_path), DockerBuildOpts())