"""Choosing how an image URL gets resolved, based on the configuration."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, TextIO, TypeVar

from .buildkit_builder import KubectlBuildkit
from .built import BuiltImage
from .conf import Conf
from .config import ImageRef
from .docker_builder import Docker
from .images import (
    PreresolvedImage,
    Registry,
    ResolvedImage,
    TaggedImage,
    TagSelectedImage,
    maybe_digested_image,
)
from .matcher import Matcher
from .pack_builder import Pack

_R = TypeVar("_R", bound=ImageRef)


def _first_match(refs: Iterable[_R], url: str) -> _R | None:
    matcher = Matcher(url)
    return next((ref for ref in refs if matcher.matches(ref)), None)


@dataclass
class Factory:
    """Creates the right kind of image for a URL."""

    conf: Conf
    registry: Registry
    stream: TextIO | None = None

    def new(self, url: str) -> Any:
        override = _first_match(self.conf.image_overrides(), url)
        if override is not None:
            url = override.new_image
            if override.preresolved:
                return PreresolvedImage(url)
            if override.tag_selection is not None:
                return TagSelectedImage(url, override.tag_selection, self.registry)

        source = _first_match(self.conf.sources(), url)
        if source is not None:
            destination = _first_match(self.conf.image_destinations(), url)
            docker = Docker(stream=self.stream)
            built = BuiltImage(
                url,
                source,
                destination,
                docker,
                Pack(docker),
                KubectlBuildkit(stream=self.stream),
            )
            if destination is not None:
                return TaggedImage(built, destination, self.registry)
            return built

        digested = maybe_digested_image(url)
        if digested is not None:
            return digested

        return ResolvedImage(url, self.registry)