"""Recording resolved images in a resource's annotations."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any

import yaml

from .built import BuiltImageSourceGit

IMAGES_ANN_KEY = "kbld.k14s.io/images"

_META_KEYS = {
    "type": "Type",
    "url": "URL",
    "tag": "Tag",
    "tags": "Tags",
    "path": "Path",
    "remote_url": "RemoteURL",
    "sha": "SHA",
    "dirty": "Dirty",
}

_OMIT_EMPTY: dict[type, frozenset[str]] = {
    BuiltImageSourceGit: frozenset({"remote_url", "tags"}),
}


def _dump(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=True, default_flow_style=False)


def _meta_to_dict(meta: Any) -> dict[str, Any]:
    if isinstance(meta, Mapping):
        return dict(meta)
    if not is_dataclass(meta):
        raise TypeError(f"Unsupported image metadata: {meta!r}")
    omit = _OMIT_EMPTY.get(type(meta), frozenset())
    out: dict[str, Any] = {}
    for f in fields(meta):
        value = getattr(meta, f.name)
        if f.name in omit and not value:
            continue
        out[_META_KEYS.get(f.name, f.name)] = list(value) if isinstance(value, list) else value
    return out


@dataclass
class Image:
    """A resolved image URL with metadata describing where it came from."""

    url: str
    metas: list = field(default_factory=list)
    metas_raw: list | None = None

    def description(self) -> str:
        """YAML description of the metadata read back from an annotation."""
        try:
            return _dump(self.metas_raw).strip()
        except yaml.YAMLError:
            return "[]"


def find_image(images: list[Image], url: str) -> Image | None:
    """Return the first image with ``url``, or None."""
    return next((img for img in images if img.url == url), None)


def image_structs(images: list[Image]) -> list[dict[str, Any]]:
    """Serializable form of images, skipping those without metadata and duplicates."""
    result: list[dict[str, Any]] = []
    for img in images:
        metas = [_meta_to_dict(meta) for meta in img.metas]
        # No metadata means the image was already a digest; nothing worth noting
        if not metas:
            continue
        struct = {"URL": img.url, "Metas": metas}
        if struct not in result:
            result.append(struct)
    return result


def _lookup(data: Mapping, key: str) -> Any:
    if key in data:
        return data[key]
    return next(
        (v for k, v in data.items() if isinstance(k, str) and k.lower() == key.lower()), None
    )


@dataclass
class ResourceWithImages:
    """A resource together with the images resolved for it."""

    contents: dict[str, Any]
    resolved: list[Image] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Sorted by URL so the annotation does not change needlessly
        self.resolved = sorted(self.resolved, key=lambda img: img.url)

    def to_yaml(self) -> str:
        contents = copy.deepcopy(self.contents)
        if self.resolved:
            structs = image_structs(self.resolved)
            metadata = contents.get("metadata")
            if not isinstance(metadata, dict):
                metadata = {}
                contents["metadata"] = metadata
            annotations = metadata.get("annotations")
            annotations = dict(annotations) if isinstance(annotations, Mapping) else {}
            annotations[IMAGES_ANN_KEY] = _dump(structs or None)
            metadata["annotations"] = annotations
        return _dump(contents)

    def images(self) -> list[Image]:
        """Images recorded in the resource's annotation."""
        metadata = self.contents.get("metadata")
        annotations = metadata.get("annotations") if isinstance(metadata, Mapping) else None
        if not isinstance(annotations, Mapping):
            return []

        raw = annotations.get(IMAGES_ANN_KEY) or ""
        try:
            structs = yaml.safe_load(raw) if raw else None
        except yaml.YAMLError as exc:
            raise ValueError(f"Parsing images annotation: {exc}") from exc
        if structs is None:
            return []
        if not isinstance(structs, list):
            raise ValueError("Expected images annotation to hold a list")

        result = []
        for struct in structs:
            if not isinstance(struct, Mapping):
                raise ValueError("Expected images annotation entries to be maps")
            url = _lookup(struct, "URL") or ""
            result.append(Image(url=str(url), metas_raw=_lookup(struct, "Metas")))
        return result