"""Collecting image URLs and resolving them concurrently."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from .config import ConfigError
from .docker_builder import BuildError
from .git import GitError
from .images import ImageError
from .resource_images import Image

_RESOLVE_ERRORS = (ImageError, BuildError, GitError, ConfigError, OSError, ValueError)


class ResolveError(Exception):
    """Raised when one or more images could not be resolved."""


def error_from_errors(errors: Iterable[BaseException]) -> ResolveError | None:
    """Combine errors into one listing each on its own line, or None if there are none."""
    messages = [str(err) for err in errors]
    if not messages:
        return None
    return ResolveError("\n- " + "\n- ".join(messages))


class UnprocessedImageURLs:
    """A set of image URLs found in resources."""

    def __init__(self, urls: Iterable[str] = ()) -> None:
        self._urls = set(urls)

    def add(self, url: str) -> None:
        self._urls.add(url)

    def all(self) -> list[str]:
        return sorted(self._urls)

    def __len__(self) -> int:
        return len(self._urls)


@dataclass(frozen=True)
class ProcessedImageItem:
    """An original image URL with the image it resolved to."""

    url: str
    image: Image


class ProcessedImages:
    """Thread-safe mapping of original URLs to resolved images."""

    def __init__(self) -> None:
        self._images: dict[str, Image] = {}
        self._lock = threading.Lock()

    def add(self, url: str, image: Image) -> None:
        with self._lock:
            self._images[url] = image

    def find_by_url(self, url: str) -> Image | None:
        with self._lock:
            return self._images.get(url)

    def all(self) -> list[ProcessedImageItem]:
        with self._lock:
            return [ProcessedImageItem(url, img) for url, img in sorted(self._images.items())]


class _ImageFactory(Protocol):
    def new(self, url: str) -> Any: ...


class ImageQueue:
    """Resolves images with a pool of workers."""

    def __init__(self, factory: _ImageFactory) -> None:
        self.factory = factory

    def run(self, urls: UnprocessedImageURLs, num_workers: int) -> ProcessedImages:
        if num_workers < 1:
            raise ValueError(f"Expected at least one worker, but got {num_workers}")
        output = ProcessedImages()
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            results = list(pool.map(partial(self._work, output), urls.all()))
        error = error_from_errors(err for err in results if err is not None)
        if error is not None:
            raise error
        return output

    def _work(self, output: ProcessedImages, url: str) -> ResolveError | None:
        try:
            img_url, metas = self.factory.new(url).resolve()
        except _RESOLVE_ERRORS as exc:
            return ResolveError(f"Resolving image '{url}': {exc}")
        output.add(url, Image(url=img_url, metas=list(metas)))
        return None