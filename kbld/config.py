"""Configuration documents understood by kbld and the images lock format."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import yaml
from packaging.version import InvalidVersion, Version

CONFIG_API_VERSION = "kbld.k14s.io/v1alpha1"
CONFIG_KIND = "Config"
SOURCES_KIND = "Sources"
IMAGE_OVERRIDES_KIND = "ImageOverrides"
IMAGE_DESTINATIONS_KIND = "ImageDestinations"
IMAGE_KEYS_KIND = "ImageKeys"

CONFIG_KINDS = frozenset(
    (CONFIG_API_VERSION, kind)
    for kind in (
        CONFIG_KIND,
        SOURCES_KIND,
        IMAGE_OVERRIDES_KIND,
        IMAGE_DESTINATIONS_KIND,
        IMAGE_KEYS_KIND,
    )
)

IMAGES_LOCK_API_VERSION = "imgpkg.carvel.dev/v1alpha1"
IMAGES_LOCK_KIND = "ImagesLock"
IMAGES_LOCK_KBLD_ID = "kbld.carvel.dev/id"


class ConfigError(Exception):
    """Raised when a configuration cannot be parsed, validated or written."""


# --- parsing helpers -------------------------------------------------------


def _lookup(data: Mapping, key: str) -> Any:
    """Find ``key`` in ``data``, preferring an exact match, then ignoring case."""
    if key in data:
        return data[key]
    lowered = key.lower()
    for name, value in data.items():
        if isinstance(name, str) and name.lower() == lowered:
            return value
    return None


def _as_mapping(value: Any, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {what} to be a map, but was {type(value).__name__}")
    return value


def _as_list(value: Any, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Expected {what} to be a list, but was {type(value).__name__}")
    return value


def _as_str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"Expected {what} to be a string, but was {type(value).__name__}")
    return value


def _as_bool(value: Any, what: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigError(f"Expected {what} to be a boolean, but was {type(value).__name__}")
    return value


def _as_str_list(value: Any, what: str) -> list[str]:
    return [_as_str(item, f"{what} item") for item in _as_list(value, what)]


def _optional(value: Any, what: str, kind: type) -> Any:
    if value is None:
        return None
    if kind is bool:
        return _as_bool(value, what)
    if kind is list:
        return _as_str_list(value, what)
    return _as_str(value, what)


# --- build options ---------------------------------------------------------


def _opt(key: str, kind: type) -> Any:
    return field(default=None, metadata={"key": key, "kind": kind})


@dataclass
class SourceDockerBuildOpts:
    """Options for building an image with Docker."""

    target: str | None = _opt("Target", str)
    pull: bool | None = _opt("Pull", bool)
    no_cache: bool | None = _opt("noCache", bool)
    file: str | None = _opt("File", str)
    raw_options: list[str] | None = _opt("rawOptions", list)


@dataclass
class SourceKubectlBuildkitBuildOpts:
    """Options for building an image with kubectl buildkit."""

    target: str | None = _opt("Target", str)
    platform: str | None = _opt("Platform", str)
    pull: bool | None = _opt("Pull", bool)
    no_cache: bool | None = _opt("noCache", bool)
    file: str | None = _opt("File", str)
    raw_options: list[str] | None = _opt("rawOptions", list)


@dataclass
class SourcePackBuildOpts:
    """Options for building an image with pack."""

    builder: str | None = _opt("Builder", str)
    buildpacks: list[str] | None = _opt("Buildpacks", list)
    clear_cache: bool | None = _opt("clearCache", bool)
    raw_options: list[str] | None = _opt("rawOptions", list)


def _build_opts_from_dict(cls: type, data: Any, what: str) -> Any:
    if data is None:
        return None
    build = _as_mapping(_lookup(_as_mapping(data, what), "Build"), f"{what}.Build")
    values = {
        f.name: _optional(_lookup(build, f.metadata["key"]), f.metadata["key"], f.metadata["kind"])
        for f in fields(cls)
    }
    return cls(**values)


def _build_opts_to_dict(opts: Any) -> dict | None:
    if opts is None:
        return None
    return {"Build": {f.metadata["key"]: getattr(opts, f.name) for f in fields(opts)}}


# --- image references ------------------------------------------------------


@dataclass
class ImageRef:
    """Selects images either by exact image or by image repository."""

    image: str = ""
    image_repo: str = ""

    def validate(self) -> None:
        if not self.image and not self.image_repo:
            raise ConfigError("Expected Image or ImageRepo to be non-empty")


def _ref_from_dict(data: Mapping) -> dict[str, str]:
    return {
        "image": _as_str(_lookup(data, "image"), "image"),
        "image_repo": _as_str(_lookup(data, "imageRepo"), "imageRepo"),
    }


def _ref_to_dict(ref: ImageRef) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if ref.image:
        out["image"] = ref.image
    if ref.image_repo:
        out["imageRepo"] = ref.image_repo
    return out


@dataclass
class Source(ImageRef):
    """A local directory from which matching images are built."""

    path: str = ""
    docker: SourceDockerBuildOpts | None = None
    pack: SourcePackBuildOpts | None = None
    kubectl_buildkit: SourceKubectlBuildkitBuildOpts | None = None

    def validate(self) -> None:
        super().validate()
        if not self.path:
            raise ConfigError("Expected Path to be non-empty")


def _source_from_dict(data: Any) -> Source:
    data = _as_mapping(data, "source")
    return Source(
        **_ref_from_dict(data),
        path=_as_str(_lookup(data, "Path"), "Path"),
        docker=_build_opts_from_dict(SourceDockerBuildOpts, _lookup(data, "Docker"), "Docker"),
        pack=_build_opts_from_dict(SourcePackBuildOpts, _lookup(data, "Pack"), "Pack"),
        kubectl_buildkit=_build_opts_from_dict(
            SourceKubectlBuildkitBuildOpts, _lookup(data, "KubectlBuildkit"), "KubectlBuildkit"
        ),
    )


def _source_to_dict(src: Source) -> dict[str, Any]:
    out = _ref_to_dict(src)
    out["Path"] = src.path
    out["Docker"] = _build_opts_to_dict(src.docker)
    out["Pack"] = _build_opts_to_dict(src.pack)
    out["KubectlBuildkit"] = _build_opts_to_dict(src.kubectl_buildkit)
    return out


@dataclass
class ImageOverride(ImageRef):
    """Replaces matching images with another image."""

    new_image: str = ""
    preresolved: bool = False
    tag_selection: dict[str, Any] | None = None

    def validate(self) -> None:
        super().validate()
        if not self.new_image:
            raise ConfigError("Expected NewImage to be non-empty")


def _override_from_dict(data: Any) -> ImageOverride:
    data = _as_mapping(data, "override")
    selection = _lookup(data, "tagSelection")
    return ImageOverride(
        **_ref_from_dict(data),
        new_image=_as_str(_lookup(data, "newImage"), "newImage"),
        preresolved=_as_bool(_lookup(data, "preresolved"), "preresolved"),
        tag_selection=None if selection is None else dict(_as_mapping(selection, "tagSelection")),
    )


def _override_to_dict(override: ImageOverride) -> dict[str, Any]:
    out = _ref_to_dict(override)
    out["newImage"] = override.new_image
    if override.preresolved:
        out["preresolved"] = True
    if override.tag_selection is not None:
        out["tagSelection"] = override.tag_selection
    return out


@dataclass
class ImageDestination(ImageRef):
    """Where built images are pushed, and with which extra tags."""

    new_image: str = ""
    tags: list[str] = field(default_factory=list)

    def validate(self) -> None:
        super().validate()


def _destination_from_dict(data: Any) -> ImageDestination:
    data = _as_mapping(data, "destination")
    return ImageDestination(
        **_ref_from_dict(data),
        new_image=_as_str(_lookup(data, "newImage"), "newImage"),
        tags=_as_str_list(_lookup(data, "tags"), "tags"),
    )


def _destination_to_dict(dst: ImageDestination) -> dict[str, Any]:
    out = _ref_to_dict(dst)
    out["newImage"] = dst.new_image
    out["tags"] = list(dst.tags) if dst.tags else None
    return out


# --- search rules ----------------------------------------------------------


@dataclass
class SearchRuleKeyMatcher:
    """Matches values by the key they are stored under."""

    name: str = ""
    path: list = field(default_factory=list)


@dataclass
class SearchRuleValueMatcher:
    """Matches values by the image they hold."""

    image: str = ""
    image_repo: str = ""


@dataclass
class SearchRuleUpdateStrategy:
    """How a matched value gets rewritten."""

    none: bool = False
    entire_string: bool = False
    json_search_rules: list[SearchRule] | None = None
    yaml_search_rules: list[SearchRule] | None = None


def _strategy_from_dict(data: Any) -> SearchRuleUpdateStrategy:
    data = _as_mapping(data, "updateStrategy")

    def nested(key: str) -> list[SearchRule] | None:
        value = _lookup(data, key)
        if value is None:
            return None
        rules = _lookup(_as_mapping(value, key), "searchRules")
        return [SearchRule.from_dict(rule) for rule in _as_list(rules, "searchRules")]

    return SearchRuleUpdateStrategy(
        none=_lookup(data, "none") is not None,
        entire_string=_lookup(data, "entireValue") is not None,
        json_search_rules=nested("json"),
        yaml_search_rules=nested("yaml"),
    )


def _strategy_to_dict(strategy: SearchRuleUpdateStrategy) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if strategy.none:
        out["none"] = {}
    if strategy.entire_string:
        out["entireValue"] = {}
    for key, rules in (("json", strategy.json_search_rules), ("yaml", strategy.yaml_search_rules)):
        if rules is not None:
            out[key] = {"searchRules": [r.to_dict() for r in rules]} if rules else {}
    return out


@dataclass
class SearchRule:
    """Describes where images are found inside resources."""

    key_matcher: SearchRuleKeyMatcher | None = None
    value_matcher: SearchRuleValueMatcher | None = None
    update_strategy: SearchRuleUpdateStrategy | None = None

    def validate(self) -> None:
        if self.key_matcher is None and self.value_matcher is None:
            raise ConfigError("Expected KeyMatcher or ValueMatcher to be non-empty")
        if self.key_matcher is not None:
            if not self.key_matcher.name and not self.key_matcher.path:
                raise ConfigError("Expected KeyMatcher.Name or KeyMatcher.Path to be non-empty")
        if self.value_matcher is not None:
            if not self.value_matcher.image and not self.value_matcher.image_repo:
                raise ConfigError(
                    "Expected ValueMatcher.Image or ValueMatcher.ImageRepo to be non-empty"
                )

    def update_strategy_with_defaults(self) -> SearchRuleUpdateStrategy:
        """Return the configured strategy, replacing the entire value by default."""
        if self.update_strategy is not None:
            return self.update_strategy
        return SearchRuleUpdateStrategy(entire_string=True)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.key_matcher is not None:
            km: dict[str, Any] = {}
            if self.key_matcher.name:
                km["name"] = self.key_matcher.name
            if self.key_matcher.path:
                km["path"] = list(self.key_matcher.path)
            out["keyMatcher"] = km
        if self.value_matcher is not None:
            vm: dict[str, Any] = {}
            if self.value_matcher.image:
                vm["image"] = self.value_matcher.image
            if self.value_matcher.image_repo:
                vm["imageRepo"] = self.value_matcher.image_repo
            out["valueMatcher"] = vm
        if self.update_strategy is not None:
            out["updateStrategy"] = _strategy_to_dict(self.update_strategy)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> SearchRule:
        data = _as_mapping(data, "search rule")
        km = _lookup(data, "keyMatcher")
        vm = _lookup(data, "valueMatcher")
        us = _lookup(data, "updateStrategy")
        key_matcher = None
        if km is not None:
            km = _as_mapping(km, "keyMatcher")
            key_matcher = SearchRuleKeyMatcher(
                name=_as_str(_lookup(km, "name"), "name"),
                path=list(_as_list(_lookup(km, "path"), "path")),
            )
        value_matcher = None
        if vm is not None:
            vm = _as_mapping(vm, "valueMatcher")
            value_matcher = SearchRuleValueMatcher(
                image=_as_str(_lookup(vm, "image"), "image"),
                image_repo=_as_str(_lookup(vm, "imageRepo"), "imageRepo"),
            )
        return cls(
            key_matcher=key_matcher,
            value_matcher=value_matcher,
            update_strategy=None if us is None else _strategy_from_dict(us),
        )


# --- version checks --------------------------------------------------------


def _satisfies_minimum(actual: Version, required: Version) -> bool:
    # A constraint without a prerelease excludes prerelease versions; with one,
    # only prereleases of the same release are considered.
    if actual.is_prerelease:
        if not required.is_prerelease:
            return False
        if actual.release != required.release:
            return False
    return actual >= required


def _check_minimum_version(minimum: str, current: str | None) -> None:
    if minimum.startswith("v"):
        raise ConfigError("Validating minimum version: Must not have prefix 'v' (e.g. '0.8.0')")
    try:
        required = Version(minimum)
    except InvalidVersion as exc:
        raise ConfigError(f"Parsing minimum version constraint: {exc}") from exc
    if current is None:
        return
    try:
        actual = Version(current)
    except InvalidVersion as exc:
        raise ConfigError(f"Parsing version constraint: {exc}") from exc
    if not _satisfies_minimum(actual, required):
        raise ConfigError(
            f"kbld version '{current}' does not meet the minimum required version '{minimum}'"
        )


def _write_private(path: str | os.PathLike, text: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(text)


def _dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=True, default_flow_style=False)


# --- config ----------------------------------------------------------------


@dataclass
class Config:
    """A kbld configuration document."""

    api_version: str = CONFIG_API_VERSION
    kind: str = CONFIG_KIND
    minimum_required_version: str = ""
    sources: list[Source] = field(default_factory=list)
    overrides: list[ImageOverride] = field(default_factory=list)
    destinations: list[ImageDestination] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    search_rules: list[SearchRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        data = _as_mapping(data, "config")
        return cls(
            api_version=_as_str(_lookup(data, "apiVersion"), "apiVersion"),
            kind=_as_str(_lookup(data, "kind"), "kind"),
            minimum_required_version=_as_str(
                _lookup(data, "minimumRequiredVersion"), "minimumRequiredVersion"
            ),
            sources=[_source_from_dict(s) for s in _as_list(_lookup(data, "sources"), "sources")],
            overrides=[
                _override_from_dict(o) for o in _as_list(_lookup(data, "overrides"), "overrides")
            ],
            destinations=[
                _destination_from_dict(d)
                for d in _as_list(_lookup(data, "destinations"), "destinations")
            ],
            keys=_as_str_list(_lookup(data, "keys"), "keys"),
            search_rules=[
                SearchRule.from_dict(r)
                for r in _as_list(_lookup(data, "searchRules"), "searchRules")
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"apiVersion": self.api_version}
        if self.kind:
            out["kind"] = self.kind
        if self.minimum_required_version:
            out["minimumRequiredVersion"] = self.minimum_required_version
        if self.sources:
            out["sources"] = [_source_to_dict(s) for s in self.sources]
        if self.overrides:
            out["overrides"] = [_override_to_dict(o) for o in self.overrides]
        if self.destinations:
            out["destinations"] = [_destination_to_dict(d) for d in self.destinations]
        if self.keys:
            out["keys"] = list(self.keys)
        if self.search_rules:
            out["searchRules"] = [r.to_dict() for r in self.search_rules]
        return out

    def validate(self, current_version: str | None = None) -> None:
        """Check the config; the minimum version is compared with ``current_version`` if given."""
        if self.minimum_required_version:
            _check_minimum_version(self.minimum_required_version, current_version)

        sections = (
            ("Sources", self.sources),
            ("Overrides", self.overrides),
            ("Destinations", self.destinations),
        )
        for name, items in sections:
            for i, item in enumerate(items):
                try:
                    item.validate()
                except ConfigError as exc:
                    raise ConfigError(f"Validating {name}[{i}]: {exc}") from exc

        for i, key in enumerate(self.keys):
            if not key:
                raise ConfigError(f"Validating Destinations[{i}]: Expected to be non-empty")

        for i, rule in enumerate(self.search_rules):
            try:
                rule.validate()
            except ConfigError as exc:
                raise ConfigError(f"Validating SearchRules[{i}]: {exc}") from exc

    def as_yaml(self) -> str:
        try:
            return _dump_yaml(self.to_dict())
        except yaml.YAMLError as exc:
            raise ConfigError(f"Marshaling config: {exc}") from exc

    def write_to_file(self, path: str | os.PathLike) -> None:
        text = self.as_yaml()
        try:
            _write_private(path, text)
        except OSError as exc:
            raise ConfigError(f"Writing lock config: {exc}") from exc


def new_config() -> Config:
    """Return an empty config with kbld's API version and kind."""
    return Config(api_version=CONFIG_API_VERSION, kind=CONFIG_KIND)


# --- images lock -----------------------------------------------------------


@dataclass
class ImagesLockEntry:
    """One resolved image in an images lock."""

    image: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ImagesLock:
    """An imgpkg images lock document."""

    api_version: str = IMAGES_LOCK_API_VERSION
    kind: str = IMAGES_LOCK_KIND
    images: list[ImagesLockEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ImagesLock:
        data = _as_mapping(data, "images lock")
        spec = _as_mapping(_lookup(data, "spec"), "spec")
        images = []
        for entry in _as_list(_lookup(spec, "images"), "images"):
            entry = _as_mapping(entry, "image entry")
            annotations = _as_mapping(_lookup(entry, "annotations"), "annotations")
            images.append(
                ImagesLockEntry(
                    image=_as_str(_lookup(entry, "image"), "image"),
                    annotations={
                        _as_str(k, "annotation key"): _as_str(v, "annotation value")
                        for k, v in annotations.items()
                    },
                )
            )
        return cls(
            api_version=_as_str(_lookup(data, "apiVersion"), "apiVersion"),
            kind=_as_str(_lookup(data, "kind"), "kind"),
            images=images,
        )

    def to_dict(self) -> dict[str, Any]:
        images = [
            {"image": e.image, "annotations": dict(e.annotations)} for e in self.images
        ]
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "spec": {"images": images or None},
        }

    def write_to_file(self, path: str | os.PathLike) -> None:
        text = _dump_yaml(self.to_dict())
        try:
            _write_private(path, text)
        except OSError as exc:
            raise ConfigError(f"Writing ImagesLock: {exc}") from exc


# --- construction from resources -------------------------------------------


def config_from_dict(
    data: Any, description: str, current_version: str | None = None
) -> Config:
    """Parse and validate a config document; ``description`` names it in errors."""
    try:
        config = Config.from_dict(data)
    except ConfigError as exc:
        raise ConfigError(f"Unmarshaling {description}: {exc}") from exc
    try:
        config.validate(current_version)
    except ConfigError as exc:
        raise ConfigError(f"Validating {description}: {exc}") from exc

    for dst in config.destinations:
        if not dst.new_image:
            dst.new_image = dst.image
    return config


def config_from_images_lock(
    data: Any, description: str, current_version: str | None = None
) -> Config:
    """Turn an images lock document into a config of preresolved overrides."""
    try:
        lock = ImagesLock.from_dict(data)
    except ConfigError as exc:
        raise ConfigError(f"Unmarshaling {description}: {exc}") from exc

    config = new_config()
    config.overrides = [
        ImageOverride(
            image=entry.annotations.get(IMAGES_LOCK_KBLD_ID, ""),
            new_image=entry.image,
            preresolved=True,
        )
        for entry in lock.images
    ]
    try:
        config.validate(current_version)
    except ConfigError as exc:
        raise ConfigError(f"Validating {description}: {exc}") from exc
    return config


def matches_config_kind(api_version: str, kind: str) -> bool:
    """Tell whether a document with this API version and kind is a kbld config."""
    return (api_version, kind) in CONFIG_KINDS


def unique_image_overrides(overrides: list[ImageOverride]) -> list[ImageOverride]:
    """Drop repeated overrides, keeping the first occurrence of each."""
    result: list[ImageOverride] = []
    for override in overrides:
        if override not in result:
            result.append(override)
    return result