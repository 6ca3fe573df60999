"""Building, retagging and pushing images with the Docker CLI."""

from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import IO, TextIO

from .reference import ReferenceError, parse_digest, parse_tag
from .tag_builder import check_len, check_tag_len128, clean_str, random_str50, trim_str


class BuildError(Exception):
    """Raised when building or pushing an image fails."""


class PrefixedWriter:
    """Writes text to a stream, starting every line with a fixed prefix."""

    def __init__(self, prefix: str, stream: TextIO | None = None) -> None:
        self.prefix = prefix
        self._stream = stream
        self._at_line_start = True
        self._lock = threading.Lock()

    def write(self, text: str) -> int:
        stream = self._stream if self._stream is not None else sys.stderr
        with self._lock:
            pieces = []
            for line in text.splitlines(keepends=True):
                if self._at_line_start:
                    pieces.append(self.prefix)
                pieces.append(line)
                self._at_line_start = line.endswith("\n")
            stream.write("".join(pieces))
            stream.flush()
        return len(text)


Runner = Callable[..., "tuple[str, str]"]


def _pump(pipe: IO[str], sink: list[str], log: PrefixedWriter | None) -> None:
    for line in pipe:
        sink.append(line)
        if log is not None:
            log.write(line)


def _run_command(
    args: Sequence[str], cwd: str | None = None, log: PrefixedWriter | None = None
) -> tuple[str, str]:
    """Run a command, echoing its output to ``log``; return (stdout, stderr)."""
    try:
        proc = subprocess.Popen(
            list(args),
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        raise BuildError(str(exc)) from exc

    out: list[str] = []
    err: list[str] = []
    threads = [
        threading.Thread(target=_pump, args=(proc.stdout, out, log)),
        threading.Thread(target=_pump, args=(proc.stderr, err, log)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    code = proc.wait()
    if code != 0:
        raise BuildError(f"exit status {code}")
    return "".join(out), "".join(err)


@dataclass
class DockerBuildOpts:
    """Options passed to ``docker build``."""

    target: str | None = None
    pull: bool | None = None
    no_cache: bool | None = None
    file: str | None = None
    raw_options: list[str] | None = None


@dataclass(frozen=True)
class _InspectData:
    id: str
    repo_digests: list[str] = field(default_factory=list)


def _ensure_directory(directory: str) -> None:
    try:
        is_dir = os.path.isdir(directory)
        os.stat(directory)
    except OSError as exc:
        raise BuildError(f"Checking if path '{directory}' is a directory: {exc}") from exc
    # Explicit check, since the docker CLI reports this confusingly.
    if not is_dir:
        raise BuildError(f"Expected path '{directory}' to be a directory, but was not")


@dataclass
class Docker:
    """Builds and pushes images through the ``docker`` command."""

    stream: TextIO | None = None
    runner: Runner = _run_command

    def _writer(self, prefix: str) -> PrefixedWriter:
        return PrefixedWriter(prefix, self.stream)

    def _run_logged(
        self, args: list[str], log: PrefixedWriter, label: str, cwd: str | None = None
    ) -> tuple[str, str]:
        try:
            return self.runner(args, cwd=cwd, log=log)
        except BuildError as exc:
            log.write(f"{label}: {exc}\n")
            raise

    def build(self, image: str, directory: str, opts: DockerBuildOpts | None = None) -> str:
        """Build ``directory`` and return a stable local reference to the image."""
        opts = opts or DockerBuildOpts()
        _ensure_directory(directory)

        tmp_ref = "kbld:" + check_tag_len128(
            f"{random_str50()}-{trim_str(clean_str(image), 50)}"
        )

        log = self._writer(image + " | ")
        log.write(f"starting build (using Docker): {directory} -> {tmp_ref}\n")
        try:
            args = ["docker", "build"]
            if opts.target is not None:
                args += ["--target", opts.target]
            if opts.pull:
                args.append("--pull")
            if opts.no_cache:
                args.append("--no-cache")
            if opts.file is not None:
                # Docker runs inside the directory, so the file path is used as is
                args += ["--file", opts.file]
            if opts.raw_options is not None:
                args += opts.raw_options
            args += ["--tag", tmp_ref, "."]

            self._run_logged(args, log, "error", cwd=directory)

            try:
                data = self._inspect(tmp_ref)
            except BuildError as exc:
                log.write(f"inspect error: {exc}\n")
                raise

            return self.retag_stable(tmp_ref, image, data.id, log)
        finally:
            log.write("finished build (using Docker)\n")

    def retag_stable(
        self, tmp_ref: str, image: str, image_id: str, log: PrefixedWriter
    ) -> str:
        """Tag the image by its ID so identical builds give identical references."""
        # Docker does not accept kbld@sha256:... for local images; the image
        # hint goes first for easier sorting.
        stable_ref = "kbld:" + check_tag_len128(
            f"{trim_str(clean_str(image), 50)}-{check_len(clean_str(image_id), 72)}"
        )

        self._run_logged(["docker", "tag", tmp_ref, stable_ref], log, "tag error")

        # Drop the temporary tag; a digest reference has nothing to untag.
        if not tmp_ref.startswith("sha256:"):
            self._run_logged(["docker", "rmi", tmp_ref], log, "untag error")

        return stable_ref

    def push(self, tmp_ref: str, image_dst: str) -> str:
        """Push a local image to ``image_dst`` and return its repository digest."""
        log = self._writer(image_dst + " | ")

        # The digest is unknown beforehand, so a random tag is pushed.
        try:
            parse_tag(image_dst)
        except ReferenceError as exc:
            raise BuildError(f"Parsing image dst '{image_dst}': {exc}") from exc
        dst_tag = f"kbld-{random_str50()}"
        try:
            tagged = parse_tag(f"{image_dst}:{dst_tag}")
        except ReferenceError as exc:
            raise BuildError(f"Generating image dst tag '{image_dst}': {exc}") from exc
        image_dst = tagged.name

        log.write(f"starting push (using Docker): {tmp_ref} -> {image_dst}\n")
        try:
            try:
                prev = self._inspect(tmp_ref)
            except BuildError as exc:
                log.write(f"inspect error: {exc}\n")
                raise

            self._run_logged(["docker", "tag", tmp_ref, image_dst], log, "tag error")
            self._run_logged(["docker", "push", image_dst], log, "push error")

            try:
                curr = self._inspect(image_dst)
            except BuildError as exc:
                log.write(f"inspect error: {exc}\n")
                raise

            # Concurrent Docker commands could have retagged in the meantime.
            if prev.id != curr.id:
                message = (
                    f"Expected pushed image '{image_dst}' to be '{prev.id}' "
                    f"but was '{curr.id}'"
                )
                log.write(f"push race error: {message}\n")
                raise BuildError(message)

            return self._repo_digest(curr, log)
        finally:
            log.write("finished push (using Docker)\n")

    def _repo_digest(self, data: _InspectData, log: PrefixedWriter) -> str:
        if not data.repo_digests:
            log.write("missing repo digest\n")
            raise BuildError("Expected to find at least one repo digest")

        digests = set()
        for repo_digest in data.repo_digests:
            try:
                digests.add(parse_digest(repo_digest).digest_str)
            except ReferenceError as exc:
                raise BuildError(
                    f"Extracting reference digest from '{repo_digest}': {exc}"
                ) from exc

        if len(digests) != 1:
            log.write("repo digests mismatch\n")
            raise BuildError(
                f"Expected to find same repo digest, but found {data.repo_digests!r}"
            )
        return digests.pop()

    def _inspect(self, ref: str) -> _InspectData:
        stdout, _ = self.runner(["docker", "inspect", ref], cwd=None, log=None)
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise BuildError(f"Parsing inspect output: {exc}") from exc
        if not isinstance(data, list):
            raise BuildError("Expected inspect output to be a list")
        if len(data) != 1:
            raise BuildError(f"Expected to find exactly one image, but found {len(data)}")
        entry = data[0] if isinstance(data[0], dict) else {}
        lowered = {str(k).lower(): v for k, v in entry.items()}
        return _InspectData(
            id=str(lowered.get("id") or ""),
            repo_digests=list(lowered.get("repodigests") or []),
        )