import pytest

from kbld.built import BuiltImage
from kbld.conf import Conf
from kbld.config import Config, ImageDestination, ImageOverride, Source
from kbld.factory import Factory
from kbld.images import (
    DigestedImage,
    ImageError,
    PreresolvedImageSourceURL,
    ResolvedImage,
    ResolvedImageSourceURL,
    TaggedImage,
)
from kbld.reference import DEFAULT_TAG, parse_digest

REGISTRY_DIGEST = "sha256:" + "c" * 64


class FakeRegistry:
    def __init__(self, tags=()):
        self.tags = list(tags)

    def generic(self, ref):
        return REGISTRY_DIGEST

    def list_tags(self, repo):
        return list(self.tags)

    def write_tag(self, tag_ref, src_ref):
        pass


def factory_for(config, registry=None):
    return Factory(Conf((config,)), registry or FakeRegistry())


def test_preresolved_override():
    new = "registry.example.com/app@sha256:" + "a" * 64
    factory = factory_for(
        Config(overrides=[ImageOverride(image="app", new_image=new, preresolved=True)])
    )

    url, metas = factory.new("app").resolve()

    assert url == new
    assert metas == [PreresolvedImageSourceURL(type="preresolved", url=new)]


def test_override_is_resolved_through_registry():
    factory = factory_for(Config(overrides=[ImageOverride(image="app", new_image="other:1.0")]))

    img = factory.new("app")
    url, metas = img.resolve()

    assert isinstance(img, ResolvedImage) and img.url == "other:1.0"
    assert url == parse_digest("other@" + REGISTRY_DIGEST).name
    assert metas[-1] == ResolvedImageSourceURL(type="resolved", url="other:1.0", tag="1.0")


def test_tag_selection_override():
    override = ImageOverride(
        image="app",
        new_image="other",
        tag_selection={"semver": {"constraints": ">=1.0.0"}},
    )
    registry = FakeRegistry(["1.0.0", "1.2.0", "2.0.0-rc.1", "junk"])
    factory = factory_for(Config(overrides=[override]), registry)

    _, metas = factory.new("app").resolve()

    assert metas[-1].tag == "1.2.0"


def test_unknown_tag_selection_strategy():
    override = ImageOverride(image="app", new_image="other", tag_selection={"other": {}})
    factory = factory_for(Config(overrides=[override]))

    with pytest.raises(ImageError, match="Unknown tag selection strategy"):
        factory.new("app").resolve()


def test_digest_reference_is_used_as_is():
    url = "registry.example.com/app@sha256:" + "b" * 64
    img = factory_for(Config()).new(url)

    assert isinstance(img, DigestedImage)
    assert img.resolve() == (parse_digest(url).name, [])


def test_invalid_digest_reference_fails_on_resolve():
    img = factory_for(Config()).new("app@sha256:nothex")

    with pytest.raises(ImageError, match="Expected valid digest reference"):
        img.resolve()


def test_plain_reference_is_resolved():
    img = factory_for(Config()).new("nginx")

    _, metas = img.resolve()

    assert metas[-1] == ResolvedImageSourceURL(type="resolved", url="nginx", tag=DEFAULT_TAG)


def test_source_gives_built_image():
    factory = factory_for(Config(sources=[Source(image="app", path="src")]))

    img = factory.new("app")

    assert isinstance(img, BuiltImage)
    assert img.build_source.path == "src"
    assert img.img_dst is None


def test_source_with_destination_gives_tagged_image():
    dst = ImageDestination(image="app", new_image="registry.example.com/app", tags=["t1"])
    factory = factory_for(
        Config(sources=[Source(image="app", path="src")], destinations=[dst])
    )

    img = factory.new("app")

    assert isinstance(img, TaggedImage)
    assert img.img_dst == dst
    assert img.image.img_dst == dst