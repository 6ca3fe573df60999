"""The combined configuration collected from all config documents."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .config import (
    IMAGES_LOCK_API_VERSION,
    IMAGES_LOCK_KIND,
    Config,
    ImageDestination,
    ImageOverride,
    SearchRule,
    SearchRuleKeyMatcher,
    Source,
    config_from_dict,
    config_from_images_lock,
    matches_config_kind,
)


def _dedup(rules: Iterable[SearchRule]) -> list[SearchRule]:
    result: list[SearchRule] = []
    for rule in rules:
        if rule not in result:
            result.append(rule)
    return result


@dataclass(frozen=True)
class Conf:
    """An ordered collection of kbld configs."""

    configs: tuple[Config, ...] = ()

    def with_additional_config(self, config: Config) -> Conf:
        return Conf((*self.configs, config))

    def sources(self) -> list[Source]:
        return [src for config in self.configs for src in config.sources]

    def image_overrides(self) -> list[ImageOverride]:
        return [o for config in self.configs for o in config.overrides]

    def image_destinations(self) -> list[ImageDestination]:
        return [d for config in self.configs for d in config.destinations]

    def search_rules(self) -> list[SearchRule]:
        """Configured rules followed by the default rule for the ``image`` key."""
        # Default rule goes last so other rules get a chance to match image keys
        default = SearchRule(key_matcher=SearchRuleKeyMatcher(name="image"))
        return _dedup([*self.search_rules_without_defaults(), default])

    def search_rules_without_defaults(self) -> list[SearchRule]:
        key_rules = (
            SearchRule(key_matcher=SearchRuleKeyMatcher(name=key))
            for config in self.configs
            for key in config.keys
        )
        explicit = (rule for config in self.configs for rule in config.search_rules)
        return _dedup([*key_rules, *explicit])


def _describe(document: Mapping[str, Any]) -> str:
    metadata = document.get("metadata")
    name = namespace = ""
    if isinstance(metadata, Mapping):
        name = metadata.get("name") or ""
        namespace = metadata.get("namespace") or ""
    prefix = f"{namespace}/" if namespace else ""
    return f"{document.get('kind', '')}/{prefix}{name} ({document.get('apiVersion', '')})"


def conf_from_documents(
    documents: Iterable[Mapping[str, Any]], current_version: str | None = None
) -> tuple[list[Mapping[str, Any]], Conf]:
    """Split documents into regular resources and the configuration they carry."""
    resources: list[Mapping[str, Any]] = []
    configs: list[Config] = []

    for document in documents:
        api_version = document.get("apiVersion", "")
        kind = document.get("kind", "")
        if matches_config_kind(api_version, kind):
            configs.append(config_from_dict(document, _describe(document), current_version))
        elif api_version == IMAGES_LOCK_API_VERSION and kind == IMAGES_LOCK_KIND:
            configs.append(
                config_from_images_lock(document, _describe(document), current_version)
            )
        else:
            resources.append(document)

    return resources, Conf(tuple(configs))