"""Images that are built from local sources before being referenced."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .buildkit_builder import KubectlBuildkit
from .config import ImageDestination, Source, SourceDockerBuildOpts
from .docker_builder import Docker, DockerBuildOpts
from .git import GitRepo
from .images import digested_image_from_parts
from .matcher import url_repo
from .pack_builder import Pack, PackBuildOpts


@dataclass
class BuiltImageSourceGit:
    """Git details of the directory an image was built from."""

    type: str
    remote_url: str = ""
    sha: str = ""
    dirty: bool = False
    tags: list[str] = field(default_factory=list)


@dataclass
class BuiltImageSourceLocal:
    """The local directory an image was built from."""

    type: str
    path: str


@dataclass
class BuiltImage:
    """An image built with Docker, pack or kubectl buildkit, then optionally pushed."""

    url: str
    build_source: Source
    img_dst: ImageDestination | None
    docker: Docker
    pack: Pack
    kubectl_buildkit: KubectlBuildkit

    def resolve(self) -> tuple[str, list]:
        metas = self.sources()
        repo, _ = url_repo(self.url)
        src = self.build_source

        if src.pack is not None:
            opts = PackBuildOpts(
                builder=src.pack.builder,
                buildpacks=src.pack.buildpacks,
                clear_cache=src.pack.clear_cache,
                raw_options=src.pack.raw_options,
            )
            tmp_ref = self.pack.build(repo, src.path, opts)
            return self._optional_push(tmp_ref, metas)

        if src.kubectl_buildkit is not None:
            url = self.kubectl_buildkit.build_and_push(
                repo, src.path, self.img_dst, src.kubectl_buildkit
            )
            return url, metas

        docker_opts = src.docker if src.docker is not None else SourceDockerBuildOpts()
        opts = DockerBuildOpts(
            target=docker_opts.target,
            pull=docker_opts.pull,
            no_cache=docker_opts.no_cache,
            file=docker_opts.file,
            raw_options=docker_opts.raw_options,
        )
        tmp_ref = self.docker.build(repo, src.path, opts)
        return self._optional_push(tmp_ref, metas)

    def _optional_push(self, tmp_ref: str, metas: list) -> tuple[str, list]:
        if self.img_dst is None:
            return tmp_ref, metas
        digest = self.docker.push(tmp_ref, self.img_dst.new_image)
        url, pushed_metas = digested_image_from_parts(self.img_dst.new_image, digest).resolve()
        return url, [*metas, *pushed_metas]

    def sources(self) -> list:
        """Describe where the image is built from: the directory and, if any, its git state."""
        abs_path = os.path.abspath(self.build_source.path)
        metas: list = [BuiltImageSourceLocal(type="local", path=abs_path)]

        repo = GitRepo(abs_path)
        if repo.is_valid():
            metas.append(
                BuiltImageSourceGit(
                    type="git",
                    remote_url=repo.remote_url(),
                    sha=repo.head_sha(),
                    dirty=repo.is_dirty(),
                    tags=repo.head_tags(),
                )
            )
        return metas