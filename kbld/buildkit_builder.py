"""Building images with the kubectl buildkit plugin."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TextIO

from .config import ImageDestination, SourceKubectlBuildkitBuildOpts
from .docker_builder import BuildError, PrefixedWriter, Runner, _run_command
from .reference import ReferenceError, parse_digest, parse_tag
from .tag_builder import check_tag_len128, clean_str, random_str50, trim_str

# Build output holds e.g. "#10 exporting manifest sha256:55d8... 0.0s done"
_MANIFEST_DIGEST_RE = re.compile(r"exporting manifest (sha256:)?([0-9a-z]+) ")


def find_manifest_digest(output: str) -> str:
    """Return the hex manifest digest found in buildkit output."""
    match = _MANIFEST_DIGEST_RE.search(output)
    if match is None:
        raise BuildError("Expected to find image digest in build output but did not")
    return match.group(2)


@dataclass
class KubectlBuildkit:
    """Builds (and optionally pushes) images with ``kubectl buildkit``."""

    stream: TextIO | None = None
    runner: Runner = _run_command

    def build_and_push(
        self,
        image: str,
        directory: str,
        img_dst: ImageDestination | None,
        opts: SourceKubectlBuildkitBuildOpts | None = None,
    ) -> str:
        """Build ``directory``; return a digest ref if pushed, else the tag ref."""
        opts = opts or SourceKubectlBuildkitBuildOpts()
        tag_ref = self._tag_ref(image, img_dst)

        log = PrefixedWriter(image + " | ", self.stream)
        log.write(f"starting build (using kubectl buildkit): {directory} -> {tag_ref}\n")
        try:
            args = ["kubectl", "buildkit", "build", "--progress=plain"]
            if opts.target is not None:
                args += ["--target", opts.target]
            if opts.platform is not None:
                args += ["--platform", opts.platform]
            if opts.pull:
                args.append("--pull")
            if opts.no_cache:
                args.append("--no-cache")
            if opts.file is not None:
                args += ["--file", opts.file]
            if opts.raw_options is not None:
                args += opts.raw_options
            if img_dst is not None:
                # The registry secret is picked up by naming it after the builder
                args.append("--push")
            args += ["--tag", tag_ref, "."]

            try:
                _, stderr = self.runner(args, cwd=directory, log=log)
            except BuildError as exc:
                log.write(f"error: {exc}\n")
                raise

            # Look for the digest even when not pushing
            digest_hex = find_manifest_digest(stderr)

            # Docker daemons cannot use digests for locally loaded images,
            # so a digest reference is only returned after a push.
            if img_dst is not None:
                digest_ref = f"{img_dst.new_image}@sha256:{digest_hex}"
                try:
                    return parse_digest(digest_ref).name
                except ReferenceError as exc:
                    raise BuildError(
                        f"Validating destination digest ref '{digest_ref}': {exc}"
                    ) from exc

            return tag_ref
        finally:
            log.write("finished build (using kubectl buildkit)\n")

    def _tag_ref(self, image: str, img_dst: ImageDestination | None) -> str:
        tag = check_tag_len128(f"{random_str50()}-{trim_str(clean_str(image), 50)}")
        if img_dst is None:
            return "kbld:" + tag
        tag_ref = f"{img_dst.new_image}:{tag}"
        try:
            parse_tag(tag_ref)
        except ReferenceError as exc:
            raise BuildError(f"Validating destination tag ref '{tag_ref}': {exc}") from exc
        return tag_ref