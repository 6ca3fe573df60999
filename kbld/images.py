"""Images that resolve to digest references in various ways."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import semver

from .config import ImageDestination
from .reference import (
    Digest,
    ReferenceError,
    Repository,
    Tag,
    parse_digest,
    parse_repository,
    parse_tag,
)

DIGEST_SEP = "@"


class ImageError(Exception):
    """Raised when an image cannot be resolved."""


class Registry(Protocol):
    """The registry operations images need."""

    def generic(self, ref: Tag) -> str:
        """Return the digest the reference currently points to."""
        ...

    def list_tags(self, repo: Repository) -> list[str]:
        """Return all tags of the repository."""
        ...

    def write_tag(self, tag_ref: Tag, src_ref: Digest) -> None:
        """Point ``tag_ref`` at the image ``src_ref``."""
        ...


@dataclass(frozen=True)
class PreresolvedImageSourceURL:
    type: str
    url: str


@dataclass(frozen=True)
class ResolvedImageSourceURL:
    type: str
    url: str
    tag: str


@dataclass(frozen=True)
class TaggedImageMeta:
    type: str
    tags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DigestedImage:
    """An image already given by digest; resolving fails if it was malformed."""

    digest: Digest | None
    parse_error: str | None = None

    def resolve(self) -> tuple[str, list]:
        if self.parse_error is not None or self.digest is None:
            raise ImageError(self.parse_error)
        return self.digest.name, []


def maybe_digested_image(url: str) -> DigestedImage | None:
    """Return a digested image for ``url``, or None if it carries no digest."""
    try:
        return DigestedImage(parse_digest(url))
    except ReferenceError as exc:
        if DIGEST_SEP in url:
            return DigestedImage(
                None, f"Expected valid digest reference, but found '{url}', reason: {exc}"
            )
        return None


def digested_image_from_parts(url: str, digest: str) -> DigestedImage:
    ref = url + DIGEST_SEP + digest
    try:
        return DigestedImage(parse_digest(ref))
    except ReferenceError as exc:
        return DigestedImage(
            None, f"Expected digest reference, but found '{ref}', reason: {exc}"
        )


@dataclass(frozen=True)
class PreresolvedImage:
    """An image whose final URL is already known."""

    url: str

    def resolve(self) -> tuple[str, list]:
        return self.url, [PreresolvedImageSourceURL(type="preresolved", url=self.url)]


@dataclass(frozen=True)
class ResolvedImage:
    """An image resolved to url+digest by asking the registry."""

    url: str
    registry: Registry

    def resolve(self) -> tuple[str, list]:
        try:
            tag = parse_tag(self.url)
        except ReferenceError as exc:
            raise ImageError(str(exc)) from exc
        first = self.registry.generic(tag)
        # Some older registries return a different digest on every request.
        second = self.registry.generic(tag)
        if first != second:
            raise ImageError(
                "Expected digest resolution to be consistent over two separate requests"
            )
        url, metas = digested_image_from_parts(tag.repository.name, first).resolve()
        return url, [*metas, ResolvedImageSourceURL(type="resolved", url=self.url, tag=tag.tag)]


def _lookup(data: Mapping, key: str) -> Any:
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == key.lower():
            return value
    return None


def _parse_semver(tag: str) -> semver.Version | None:
    try:
        return semver.Version.parse(tag[1:] if tag.startswith("v") else tag)
    except ValueError:
        return None


def _satisfies(version: semver.Version, constraints: str) -> bool:
    for alternative in constraints.split("||"):
        conditions = alternative.split()
        if not conditions:
            raise ImageError(f"Selecting versions: invalid constraint '{constraints}'")
        ok = True
        for cond in conditions:
            op = cond.rstrip("0123456789.-+abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
            target = cond[len(op):]
            op = {"": "==", "=": "=="}.get(op, op)
            try:
                if not version.match(op + target):
                    ok = False
            except ValueError as exc:
                raise ImageError(f"Selecting versions: {exc}") from exc
        if ok:
            return True
    return False


def select_semver_tag(
    tags: list[str], prereleases: list[str] | None, constraints: str
) -> str:
    """Pick the highest semver tag allowed by the prerelease filter and constraints."""
    candidates = []
    for tag in tags:
        version = _parse_semver(tag)
        if version is None:
            continue
        if version.prerelease:
            if prereleases is None:
                continue
            if prereleases:
                idents = version.prerelease.split(".")
                if not any(i in idents for i in prereleases):
                    continue
        candidates.append((version, tag))
    if constraints:
        candidates = [(v, t) for v, t in candidates if _satisfies(v, constraints)]
    if not candidates:
        raise ImageError("Expected to find at least one version, but did not")
    return max(candidates, key=lambda pair: pair[0])[1]


@dataclass(frozen=True)
class TagSelectedImage:
    """An image whose tag is chosen from the registry's tags, then resolved."""

    url: str
    selection: Mapping[str, Any]
    registry: Registry

    def resolve(self) -> tuple[str, list]:
        try:
            repo = parse_repository(self.url)
        except ReferenceError as exc:
            raise ImageError(str(exc)) from exc
        spec = _lookup(self.selection, "semver")
        if spec is None:
            raise ImageError("Unknown tag selection strategy")
        spec = spec or {}
        pre = _lookup(spec, "prereleases")
        identifiers = None if pre is None else list(_lookup(pre, "identifiers") or [])
        tag = select_semver_tag(
            self.registry.list_tags(repo), identifiers, _lookup(spec, "constraints") or ""
        )
        return ResolvedImage(f"{self.url}:{tag}", self.registry).resolve()


@dataclass(frozen=True)
class TaggedImage:
    """An image that receives extra tags in the registry once resolved."""

    image: Any
    img_dst: ImageDestination
    registry: Registry

    def resolve(self) -> tuple[str, list]:
        url, metas = self.image.resolve()
        metas = list(metas)
        if self.img_dst.tags:
            try:
                src_ref = parse_digest(url)
                for tag in self.img_dst.tags:
                    self.registry.write_tag(src_ref.repository.tag(tag), src_ref)
            except ReferenceError as exc:
                raise ImageError(str(exc)) from exc
            metas.append(TaggedImageMeta(type="tagged", tags=list(self.img_dst.tags)))
        return url, metas