"""Builder image catalog.

Catalog files are YAML documents with a top-level ``images`` list::

    images:
      - name: falcosecurity/driverkit-builder:centos-x86_64_gcc4.8.5-latest
        target: centos
        arch: x86_64
        tag: latest
        gcc_versions:
          - 4.8.5

Every GCC version of an entry becomes one :class:`Image`.  Entries for another
architecture or tag, with an unknown target, without a name or without GCC
versions are dropped at load time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

import yaml

from errors import ImageNotFoundError, InputError
from kernelrelease import format_version, host_architecture, parse_version_tolerant

LOG = logging.getLogger("driverkit.images")

ANY_TARGET = "any"
DEFAULT_TAG = "latest"
DEFAULT_BUILDER_REPO = "docker.io/falcosecurity/driverkit-builder"

DEFAULT_CATALOG = f"""
images:
  - name: {DEFAULT_BUILDER_REPO}:centos-x86_64_gcc4.8.5-latest
    target: centos
    arch: x86_64
    tag: latest
    gcc_versions: ["4.8.5"]
  - name: {DEFAULT_BUILDER_REPO}:any-x86_64_gcc8.0.0_gcc6.0.0_gcc5.0.0_gcc4.9.0_gcc4.8.0-latest
    target: any
    arch: x86_64
    tag: latest
    gcc_versions: ["8.0.0", "6.0.0", "5.0.0", "4.9.0", "4.8.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-x86_64_gcc10.0.0_gcc9.0.0-latest
    target: any
    arch: x86_64
    tag: latest
    gcc_versions: ["10.0.0", "9.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-x86_64_gcc12.0.0_gcc11.0.0-latest
    target: any
    arch: x86_64
    tag: latest
    gcc_versions: ["12.0.0", "11.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-x86_64_gcc13.0.0-latest
    target: any
    arch: x86_64
    tag: latest
    gcc_versions: ["13.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-aarch64_gcc8.0.0_gcc6.0.0_gcc5.0.0-latest
    target: any
    arch: aarch64
    tag: latest
    gcc_versions: ["8.0.0", "6.0.0", "5.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-aarch64_gcc10.0.0_gcc9.0.0-latest
    target: any
    arch: aarch64
    tag: latest
    gcc_versions: ["10.0.0", "9.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-aarch64_gcc12.0.0_gcc11.0.0-latest
    target: any
    arch: aarch64
    tag: latest
    gcc_versions: ["12.0.0", "11.0.0"]
  - name: {DEFAULT_BUILDER_REPO}:any-aarch64_gcc13.0.0-latest
    target: any
    arch: aarch64
    tag: latest
    gcc_versions: ["13.0.0"]
"""


@dataclass(frozen=True)
class Image:
    """A builder image able to compile with one GCC version."""

    target: str
    gcc_version: str
    name: str

    @property
    def gcc_tuple(self) -> tuple[int, int, int]:
        return parse_version_tolerant(self.gcc_version)


def normalize_gcc(version: str) -> str:
    """Return *version* as ``major.minor.patch`` (``"8"`` becomes ``"8.0.0"``)."""

    return format_version(parse_version_tolerant(version))


def _parse_entries(text: str, source: str) -> list[dict]:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        LOG.warning("Unable to parse builder repo file %s: %s", source, exc)
        return []
    if not isinstance(document, dict):
        LOG.warning("Builder repo file %s has no images list", source)
        return []
    entries = document.get("images") or []
    if not isinstance(entries, list):
        LOG.warning("Builder repo file %s: 'images' is not a list", source)
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


class ImageCatalog:
    """Builder images keyed by ``(target, gcc_version)``."""

    def __init__(self, images: Iterable[Image] = ()) -> None:
        self._images: dict[tuple[str, str], Image] = {}
        self.extend(images)

    def extend(self, images: Iterable[Image]) -> None:
        """Add *images*; a key already present keeps its first image."""

        for image in images:
            self._images.setdefault((image.target, image.gcc_version), image)

    @classmethod
    def from_yaml(
        cls,
        text: str,
        arch: str | None = None,
        target_names: Iterable[str] | None = None,
        tag: str = DEFAULT_TAG,
        *,
        source: str = "<string>",
    ) -> "ImageCatalog":
        """Build a catalog from YAML *text*, keeping entries for *arch* and *tag*.

        *arch* uses the ``x86_64``/``aarch64`` spelling and defaults to the
        host.  When *target_names* is given, entries naming another target than
        one of those (or ``any``) are dropped.
        """

        arch = arch or host_architecture().to_non_deb()
        known = set(target_names) if target_names is not None else None
        images = []
        for entry in _parse_entries(text, source):
            name = str(entry.get("name") or "")
            target = str(entry.get("target") or "")
            gcc_versions = entry.get("gcc_versions") or []
            if str(entry.get("arch") or host_architecture().to_non_deb()) != arch:
                LOG.debug("Skipping wrong-arch image %s", name)
                continue
            if str(entry.get("tag") or DEFAULT_TAG) != tag:
                LOG.debug("Skipping wrong-tag image %s", name)
                continue
            if not target or (known is not None and target != ANY_TARGET and target not in known):
                LOG.debug("Skipping image %s with unknown target '%s'", name, target)
                continue
            if not name:
                LOG.debug("Skipping image without a name in %s", source)
                continue
            if not isinstance(gcc_versions, list) or not gcc_versions:
                LOG.debug("Skipping image %s: expected at least 1 gcc version", name)
                continue
            for gcc in gcc_versions:
                try:
                    images.append(Image(target=target, gcc_version=normalize_gcc(str(gcc)), name=name))
                except InputError:
                    LOG.debug("Skipping invalid gcc version '%s' of image %s", gcc, name)
        return cls(images)

    @classmethod
    def load(
        cls,
        paths: Iterable[str | Path],
        arch: str | None = None,
        target_names: Iterable[str] | None = None,
        tag: str = DEFAULT_TAG,
    ) -> "ImageCatalog":
        """Merge the catalogs in *paths*; earlier files win on conflicting keys.

        Without any path the built-in catalog of the public builder images is
        used.
        """

        target_names = list(target_names) if target_names is not None else None
        catalog = cls()
        paths = list(paths)
        if not paths:
            return cls.from_yaml(DEFAULT_CATALOG, arch, target_names, tag, source="built-in catalog")
        for path in paths:
            path = Path(path).expanduser()
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                LOG.warning("Unable to read builder repo file %s: %s", path, exc)
                continue
            catalog.extend(cls.from_yaml(text, arch, target_names, tag, source=str(path)))
        return catalog

    def __iter__(self) -> Iterator[Image]:
        return iter(sorted(self._images.values(), key=lambda image: (image.target, image.gcc_tuple)))

    def __len__(self) -> int:
        return len(self._images)

    def pick(self, target: str, gcc_version: str, *, exact: bool = False) -> Image:
        """Return the image for *target* and *gcc_version*.

        Exact matches on the target win over ``any`` images.  Without an
        exact match the newest GCC not above the requested one is used, else
        the oldest GCC above it; with *exact* set :class:`ImageNotFoundError`
        is raised instead.
        """

        wanted = normalize_gcc(gcc_version)
        for key in ((target, wanted), (ANY_TARGET, wanted)):
            if key in self._images:
                return self._images[key]
        if exact:
            raise ImageNotFoundError(target, wanted)

        requested = parse_version_tolerant(wanted)
        candidates = [image for image in self._images.values() if image.target in (target, ANY_TARGET)]
        lower = [image for image in candidates if image.gcc_tuple <= requested]
        if lower:
            image = max(lower, key=lambda image: (image.gcc_tuple, image.target == target))
        else:
            higher = [image for image in candidates if image.gcc_tuple > requested]
            if not higher:
                raise ImageNotFoundError(target, gcc_version)
            image = min(higher, key=lambda image: (image.gcc_tuple, image.target != target))
        LOG.info("No builder image for gcc %s; falling back to gcc %s (%s)", wanted, image.gcc_version, image.name)
        return image
