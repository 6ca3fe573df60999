"""Parsing of container image references (repositories, tags and digests)."""

from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"
_LEGACY_REGISTRY = "docker.io"

_REPO_RE = re.compile(r"[a-z0-9_\-./]+")
_TAG_RE = re.compile(r"[A-Za-z0-9_.\-]{1,127}")
_DIGEST_RE = re.compile(r"sha256:[0-9a-f]{64}")
_REGISTRY_RE = re.compile(r"[A-Za-z0-9.\-:\[\]]+")


class ReferenceError(ValueError):
    """Raised when an image reference cannot be parsed."""


@dataclass(frozen=True)
class Repository:
    """An image repository within a registry."""

    registry: str
    repository: str

    @property
    def registry_name(self) -> str:
        return self.registry or DEFAULT_REGISTRY

    @property
    def repository_str(self) -> str:
        if self.registry_name == DEFAULT_REGISTRY and "/" not in self.repository:
            return f"library/{self.repository}"
        return self.repository

    @property
    def name(self) -> str:
        return f"{self.registry_name}/{self.repository_str}"

    def tag(self, tag: str) -> Tag:
        """Return a tag reference to ``tag`` in this repository."""
        _check_tag(tag)
        return Tag(self, tag)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Tag:
    """A tagged image reference."""

    repository: Repository
    tag: str

    @property
    def name(self) -> str:
        return f"{self.repository.name}:{self.tag}"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Digest:
    """An image reference pinned to a content digest."""

    repository: Repository
    digest: str

    @property
    def digest_str(self) -> str:
        return self.digest

    @property
    def name(self) -> str:
        return f"{self.repository.name}@{self.digest}"

    def __str__(self) -> str:
        return self.name


def _check_tag(tag: str) -> None:
    if not _TAG_RE.fullmatch(tag):
        raise ReferenceError(f"tag '{tag}' is invalid")


def parse_repository(ref: str, strict: bool = False) -> Repository:
    """Parse ``ref`` as a repository; strict parsing requires an explicit registry."""
    registry = ""
    repo = ref
    parts = ref.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, repo = parts
    if not registry:
        if strict:
            raise ReferenceError(
                f"strict validation requires the registry to be explicitly defined: '{ref}'"
            )
    elif not _REGISTRY_RE.fullmatch(registry):
        raise ReferenceError(f"registry '{registry}' is invalid")
    if registry == _LEGACY_REGISTRY:
        registry = DEFAULT_REGISTRY
    if not repo or not _REPO_RE.fullmatch(repo) or any(not p for p in repo.split("/")):
        raise ReferenceError(f"repository '{repo}' is invalid")
    return Repository(registry, repo)


def parse_tag(ref: str, strict: bool = False) -> Tag:
    """Parse ``ref`` as a tag reference, defaulting the tag unless ``strict``."""
    base, tag = ref, ""
    parts = ref.split(":")
    if len(parts) > 1 and "/" not in parts[-1]:
        base, tag = ":".join(parts[:-1]), parts[-1]
    if not tag:
        if strict:
            raise ReferenceError(
                f"strict validation requires the tag to be explicitly defined: '{ref}'"
            )
        tag = DEFAULT_TAG
    _check_tag(tag)
    return Tag(parse_repository(base, strict), tag)


def parse_digest(ref: str, strict: bool = False) -> Digest:
    """Parse ``ref`` of the form ``repository[:tag]@sha256:...``."""
    parts = ref.split("@")
    if len(parts) != 2:
        raise ReferenceError(
            "a digest must contain exactly one '@' separator "
            f"(e.g. registry/repository@digest) saw: {ref}"
        )
    base, digest = parts
    if not _DIGEST_RE.fullmatch(digest):
        raise ReferenceError(f"digest '{digest}' is invalid")
    try:
        base = parse_tag(base, strict).repository.name
    except ReferenceError:
        pass
    return Digest(parse_repository(base, strict), digest)