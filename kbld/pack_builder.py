"""Building images with Cloud Native Buildpacks' ``pack`` command."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .docker_builder import BuildError, Docker, PrefixedWriter

# pack prints e.g. "[exporter] *** Image ID: 2be6..." when run with --verbose
_PACK_IMAGE_ID_RE = re.compile(r"Image ID: (sha256:)?([0-9a-z]+)")


def find_image_id(output: str) -> str:
    """Return the ``sha256:`` image ID that pack reported in ``output``."""
    match = _PACK_IMAGE_ID_RE.search(output)
    if match is None:
        raise BuildError("Expected to find image ID in pack output but did not")
    return "sha256:" + match.group(2)


@dataclass
class PackBuildOpts:
    """Options passed to ``pack build``."""

    builder: str | None = None
    buildpacks: list[str] | None = None
    clear_cache: bool | None = None
    raw_options: list[str] | None = None


@dataclass
class Pack:
    """Builds images with pack and pushes them with Docker."""

    docker: Docker

    def build(self, image: str, directory: str, opts: PackBuildOpts | None = None) -> str:
        """Build ``directory`` and return a stable local reference to the image."""
        opts = opts or PackBuildOpts()
        log = PrefixedWriter(image + " | ", self.docker.stream)

        log.write(f"starting build (using pack): {directory}\n")
        try:
            # --verbose makes pack print the image ID
            args = ["pack", "build", "--verbose", image, "--path", "."]
            if opts.builder is None:
                raise BuildError("Expected builder to be specified, but was not")
            args += ["--builder", opts.builder]
            for buildpack in opts.buildpacks or []:
                args += ["--buildpack", buildpack]
            if opts.clear_cache:
                args.append("--clear-cache")
            if opts.raw_options is not None:
                args += opts.raw_options

            try:
                stdout, _ = self.docker.runner(args, cwd=directory, log=log)
            except BuildError as exc:
                log.write(f"error: {exc}\n")
                raise

            image_id = find_image_id(stdout)
            return self.docker.retag_stable(image_id, image, image_id, log)
        finally:
            log.write("finished build (using pack)\n")

    def push(self, tmp_ref: str, image_dst: str) -> str:
        """Push a built image with Docker and return its repository digest."""
        return self.docker.push(tmp_ref, image_dst)