import io

import pytest

from kbld.buildkit_builder import KubectlBuildkit, find_manifest_digest
from kbld.config import ImageDestination, SourceKubectlBuildkitBuildOpts
from kbld.docker_builder import BuildError

MANIFEST_HEX = "55d863c4231ec285b88516942fd5d636216c36b6a686a20bf28d1aa5125c16b7"
BUILD_OUTPUT = (
    "#10 exporting layers done\n"
    f"#10 exporting manifest sha256:{MANIFEST_HEX} 0.0s done\n"
    "#10 exporting config sha256:aa1fce99c57c864cc8d98f7ff4a54bc3b9b7e3f63a741de926a3393bc76f5986 0.0s done\n"
)


class FakeRunner:
    def __init__(self, stderr=BUILD_OUTPUT, fail=False):
        self.calls = []
        self.stderr = stderr
        self.fail = fail

    def __call__(self, args, cwd=None, log=None):
        self.calls.append((list(args), cwd))
        if self.fail:
            raise BuildError("exit status 1")
        return "", self.stderr


def test_find_manifest_digest_from_build_output():
    assert find_manifest_digest(BUILD_OUTPUT) == MANIFEST_HEX


def test_find_manifest_digest_with_done_suffix():
    assert find_manifest_digest(f"exporting manifest sha256:{MANIFEST_HEX} done") == MANIFEST_HEX


def test_find_manifest_digest_missing():
    with pytest.raises(BuildError, match="Expected to find image digest"):
        find_manifest_digest("#10 exporting layers done\n")


def test_build_without_destination_returns_tag_ref():
    runner = FakeRunner()
    builder = KubectlBuildkit(stream=io.StringIO(), runner=runner)
    opts = SourceKubectlBuildkitBuildOpts(target="t", platform="linux/amd64", pull=True)

    result = builder.build_and_push("app", "/src", None, opts)

    assert result.startswith("kbld:rand-")
    assert result.endswith("-app")
    args, cwd = runner.calls[0]
    assert cwd == "/src"
    assert args == [
        "kubectl", "buildkit", "build", "--progress=plain",
        "--target", "t", "--platform", "linux/amd64", "--pull",
        "--tag", result, ".",
    ]


def test_build_with_destination_returns_digest_ref():
    runner = FakeRunner()
    log = io.StringIO()
    builder = KubectlBuildkit(stream=log, runner=runner)
    dst = ImageDestination(image="app", new_image="registry.example.com/app")

    result = builder.build_and_push("app", "/src", dst, SourceKubectlBuildkitBuildOpts())

    assert result == "registry.example.com/app@sha256:" + MANIFEST_HEX
    args, _ = runner.calls[0]
    assert "--push" in args
    assert args[-2].startswith("registry.example.com/app:rand-")
    assert "finished build (using kubectl buildkit)" in log.getvalue()


def test_build_without_digest_in_output_fails():
    builder = KubectlBuildkit(stream=io.StringIO(), runner=FakeRunner(stderr="done\n"))
    with pytest.raises(BuildError, match="image digest"):
        builder.build_and_push("app", "/src", None, SourceKubectlBuildkitBuildOpts())


def test_invalid_destination_is_rejected():
    runner = FakeRunner()
    builder = KubectlBuildkit(stream=io.StringIO(), runner=runner)
    dst = ImageDestination(image="app", new_image="Bad Image!")
    with pytest.raises(BuildError, match="Validating destination tag ref"):
        builder.build_and_push("app", "/src", dst, SourceKubectlBuildkitBuildOpts())
    assert runner.calls == []


def test_build_failure_is_logged():
    log = io.StringIO()
    builder = KubectlBuildkit(stream=log, runner=FakeRunner(fail=True))
    with pytest.raises(BuildError):
        builder.build_and_push("app", "/src", None, SourceKubectlBuildkitBuildOpts())
    assert "app | error: exit status 1" in log.getvalue()