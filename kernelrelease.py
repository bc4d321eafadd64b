"""Kernel release parsing and architecture helpers.

A kernel release is the string printed by ``uname -r`` (for example
``5.15.0-1004-intel-iotg``).  :func:`parse_kernel_release` splits it into the
numeric version triple and the distribution specific *extraversion* suffix,
which every target uses to compose package names and download URLs.

The module also hosts the toolchain heuristics that only depend on the kernel
version: which architectures can build the kernel module or the eBPF probe,
and which GCC/LLVM versions a builder should use by default.
"""

from __future__ import annotations

import logging
import platform
import re
from dataclasses import dataclass, replace

from errors import InputError

LOG = logging.getLogger("driverkit.kernelrelease")

_RELEASE_RE = re.compile(
    r"^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?P<fullextra>[-.](?P<extra>0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
    r"(\.(0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-_]*))*)?"
    r"(\+[0-9A-Za-z-]+(\.[0-9A-Za-z-]+)*)?$"
)


@dataclass(frozen=True)
class Architecture:
    """A supported CPU architecture with its two common spellings."""

    name: str
    non_deb: str

    def to_non_deb(self) -> str:
        return self.non_deb

    def __str__(self) -> str:
        return self.name


AMD64 = Architecture("amd64", "x86_64")
ARM64 = Architecture("arm64", "aarch64")

SUPPORTED_ARCHITECTURES: dict[str, Architecture] = {
    "amd64": AMD64,
    "x86_64": AMD64,
    "arm64": ARM64,
    "aarch64": ARM64,
}

# Minimum kernel versions able to build each artifact, per architecture.
MODULE_MIN_VERSION: dict[str, tuple[int, int, int]] = {
    "amd64": (2, 6, 0),
    "arm64": (3, 4, 0),
}
PROBE_MIN_VERSION: dict[str, tuple[int, int, int]] = {
    "amd64": (4, 14, 0),
    "arm64": (4, 17, 0),
}


def parse_architecture(value: str) -> Architecture:
    """Return the :class:`Architecture` for *value* (debian or uname spelling)."""

    try:
        return SUPPORTED_ARCHITECTURES[value.strip().lower()]
    except KeyError:
        supported = ", ".join(sorted({arch.name for arch in SUPPORTED_ARCHITECTURES.values()}))
        raise InputError(f"unsupported architecture '{value}', expected one of: {supported}") from None


def host_architecture() -> Architecture:
    """Return the architecture of the running host, defaulting to amd64."""

    machine = platform.machine().lower()
    arch = SUPPORTED_ARCHITECTURES.get(machine)
    if arch is None:
        LOG.debug("Unknown host machine '%s'; assuming amd64", machine)
        return AMD64
    return arch


@dataclass(frozen=True)
class KernelRelease:
    """Structured view over a kernel release string."""

    major: int
    minor: int
    patch: int
    fullversion: str
    extraversion: str = ""
    fullextraversion: str = ""
    architecture: Architecture = AMD64
    kernel_version: str = ""

    @property
    def version(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def with_architecture(self, architecture: Architecture) -> "KernelRelease":
        return replace(self, architecture=architecture)

    def with_kernel_version(self, kernel_version: str) -> "KernelRelease":
        return replace(self, kernel_version=kernel_version)

    def is_rc(self) -> bool:
        return "rc" in self.extraversion

    def supports_module(self) -> bool:
        return supports_module(self, self.architecture)

    def supports_probe(self) -> bool:
        return supports_probe(self, self.architecture)

    def __str__(self) -> str:
        return f"{self.fullversion}{self.fullextraversion}"


def parse_kernel_release(
    release: str,
    architecture: Architecture = AMD64,
    kernel_version: str = "",
) -> KernelRelease:
    """Parse *release* into a :class:`KernelRelease`.

    Raises :class:`InputError` when *release* does not follow the
    ``V.P.S[-E|.E]`` grammar.
    """

    match = _RELEASE_RE.match(release.strip())
    if not match:
        raise InputError(f"invalid release '{release}'")

    major, minor, patch = (int(match.group(name)) for name in ("major", "minor", "patch"))
    extra = match.group("extra") or ""
    return KernelRelease(
        major=major,
        minor=minor,
        patch=patch,
        fullversion=f"{major}.{minor}.{patch}",
        extraversion=extra,
        fullextraversion=match.group("fullextra") if extra else "",
        architecture=architecture,
        kernel_version=kernel_version,
    )


def supports_module(kr: KernelRelease, architecture: Architecture | None = None) -> bool:
    """Return ``True`` if the kernel module can be built for *kr*."""

    arch = architecture or kr.architecture
    minimum = MODULE_MIN_VERSION.get(arch.name)
    return minimum is not None and kr.version >= minimum


def supports_probe(kr: KernelRelease, architecture: Architecture | None = None) -> bool:
    """Return ``True`` if the eBPF probe can be built for *kr*."""

    arch = architecture or kr.architecture
    minimum = PROBE_MIN_VERSION.get(arch.name)
    return minimum is not None and kr.version >= minimum


def parse_version_tolerant(value: str) -> tuple[int, int, int]:
    """Return a ``(major, minor, patch)`` tuple for loose strings like ``4.9``."""

    match = re.match(r"^\s*v?(\d+)(?:\.(\d+))?(?:\.(\d+))?", str(value))
    if not match:
        raise InputError(f"invalid version '{value}'")
    return tuple(int(part) if part else 0 for part in match.groups())  # type: ignore[return-value]


def format_version(version: tuple[int, int, int]) -> str:
    return ".".join(str(part) for part in version)


def default_gcc_version(kr: KernelRelease) -> str:
    """Return the GCC version most builder images pair with *kr*."""

    if kr.major == 6:
        return "13" if kr.minor >= 6 else "12"
    if kr.major == 5:
        return "12" if kr.minor >= 15 else "11"
    if kr.major == 4:
        return "8"
    if kr.major == 3:
        return "5" if kr.minor >= 18 else "4.9"
    if kr.major == 2:
        return "4.8"
    return "13"


def llvm_version(kr: KernelRelease) -> str:
    """Return the clang/llc major version used to build the eBPF probe."""

    return "7" if kr.major == 4 else "12"
