# kbld

`kbld` is a library for working with the container image references found
in Kubernetes configuration. It reads kbld configuration documents, decides
how each image URL should be resolved, resolves URLs to immutable
`image@digest` references, and can build images from local sources with
Docker, pack or kubectl buildkit. It also records the results as resource
annotations and lock files.

## What it provides

- **Configuration** (`kbld.config`, `kbld.conf`). kbld configuration
  documents (`kbld.k14s.io/v1alpha1`, kinds `Config`, `Sources`,
  `ImageOverrides`, `ImageDestinations` and `ImageKeys`) can declare:
  - `sources`: images to build from local directories;
  - `overrides`: replacement image URLs, which may be preresolved or picked
    by semver tag selection;
  - `destinations`: where built images are pushed, with extra tags;
  - `keys` and `searchRules`: where image references are looked for.

  `conf_from_documents` takes parsed YAML documents, separates the config
  documents from the other resources and returns `(resources, Conf)`. An
  imgpkg `ImagesLock` document (`imgpkg.carvel.dev/v1alpha1`) is read as a
  set of preresolved overrides. `Config.validate(current_version)` checks a
  config. It compares `minimumRequiredVersion` with `current_version` only
  when `current_version` is given.
- **References** (`kbld.reference`). `parse_repository`, `parse_tag` and
  `parse_digest` parse image references into `Repository`, `Tag` and
  `Digest` values.
- **Matching** (`kbld.matcher`). `Matcher(url).matches(ref)` compares a URL
  with an `ImageRef`, either by exact image or by repository. `url_repo`
  returns the repository part of a URL exactly as it was written.
- **Image kinds** (`kbld.images`, `kbld.built`, `kbld.factory`).
  `Factory(conf, registry).new(url)` returns one of these:
  - `PreresolvedImage`;
  - `TagSelectedImage`;
  - `BuiltImage`, wrapped in `TaggedImage` when a destination is configured;
  - `DigestedImage`;
  - `ResolvedImage`.

  Each has `resolve()`, which returns `(url, metas)`: the final URL and
  metadata describing where the image came from.
- **Builders** (`kbld.docker_builder`, `kbld.pack_builder`,
  `kbld.buildkit_builder`). `Docker`, `Pack` and `KubectlBuildkit` run the
  `docker`, `pack` and `kubectl buildkit` commands. Their output is echoed
  through a `PrefixedWriter`, which goes to stderr by default.
- **Git details** (`kbld.git`). `GitRepo` reports the remote URL, the HEAD
  SHA, the HEAD tags and whether the work tree is dirty. `BuiltImage` uses
  it to describe the source of a build.
- **Concurrent resolution** (`kbld.processed`).
  `ImageQueue(factory).run(urls, num_workers)` resolves an
  `UnprocessedImageURLs` set with a thread pool and returns
  `ProcessedImages`. If any image fails, all the failures are gathered into
  one `ResolveError`.
- **Annotations** (`kbld.resource_images`). `ResourceWithImages` writes the
  `kbld.k14s.io/images` annotation onto a resource (`to_yaml()`) and reads it
  back (`images()`).
- **Lock files**. `Config.write_to_file` and `ImagesLock.write_to_file`
  write YAML files with mode `0600`.

Image builds need `docker`, `pack` or `kubectl` on `PATH`, and the git
details need `git`.

## Examples

Matching a URL against an image reference or an image repository:

```python
from kbld.config import ImageRef
from kbld.matcher import Matcher

Matcher("docker.io/img:tag").matches(ImageRef(image_repo="docker.io/img"))  # True
Matcher("docker.io/img").matches(ImageRef(image_repo="index.docker.io/img"))  # False
```

Cleaning and trimming strings used in temporary image tags:

```python
from kbld.tag_builder import clean_str, trim_str

clean_str("docker.io/my_app")  # "docker-io-my-app"
trim_str("abc-def", 4)         # "abce"
```

Removing duplicate overrides:

```python
from kbld.config import ImageOverride, unique_image_overrides

override = ImageOverride(
    image="nginx",
    new_image="nginx@sha256:" + "0" * 64,
    preresolved=True,
)
unique_image_overrides([override, override])  # [override]
```

## Errors

Errors are raised as exceptions:

- `ConfigError`, for invalid configuration;
- `ReferenceError`, for references that cannot be parsed;
- `ImageError`, for images that cannot be resolved;
- `BuildError`, for failed builds or pushes;
- `GitError`, for git failures;
- `ResolveError`, which gathers failures from many images into one message.

## What it does not do

- **No command-line program.** The package is a library only.
- **No registry client.** `Registry` is a protocol with `generic`,
  `list_tags` and `write_tag`. The caller supplies an object that talks to
  an actual registry.
- **No search of resources.** Search rules and image keys are parsed and
  returned by `Conf.search_rules()`, but nothing in the package walks
  resources to find or rewrite image references. The caller collects the
  URLs and replaces them.
- **No reading of files or URLs.** Resources are not loaded from disk or
  over the network.
- **No image packaging.** Images are not exported to tarballs or relocated
  between registries.