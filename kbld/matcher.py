"""Matching image URLs against configured image references."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .config import ImageRef

_APPROXIMATE_REF_RE = re.compile(r"(.+?)(:[A-Za-z0-9_\-.]+)?(@.+:.+)?")


def url_repo(url: str) -> tuple[str, bool]:
    """Return the repository part of ``url`` exactly as written, and whether it parsed."""
    # Deliberately no normalization (e.g. of Docker Hub names) so matching is exact.
    match = _APPROXIMATE_REF_RE.fullmatch(url)
    if match:
        return match.group(1), True
    return url, False


@dataclass(frozen=True)
class Matcher:
    """Checks whether an image URL is selected by an image reference."""

    url: str

    def matches(self, ref: ImageRef) -> bool:
        if ref.image:
            return ref.image == self.url
        if ref.image_repo:
            repo, _ = url_repo(self.url)
            return ref.image_repo == repo
        raise ValueError("Missing image or imageRepo configuration")