"""Debian family targets.

Ubuntu packages are addressed directly: the candidate file names are derived
from the release and the ABI number passed as ``--kernelversion``.  Debian
kernels need the pool index to be scraped, since the package revision is not
part of ``uname -r``.
"""

from __future__ import annotations

import logging
import re
from textwrap import dedent

import scripts
from buildconfig import Config
from cancellation import BuildContext
from errors import HeadersNotFoundError
from kernelrelease import ARM64, KernelRelease
from resolver import fetch_text, resolve_urls
from scripts import CommonTemplateData, TemplateData
from targets import DEB_EXTRACT, Target

LOG = logging.getLogger("driverkit.targets_deb")

UBUNTU_AMD64_BASE_URLS = (
    "https://mirrors.edge.kernel.org/ubuntu/pool/main/l",
    "http://security.ubuntu.com/ubuntu/pool/main/l",
)
UBUNTU_ARM64_BASE_URLS = ("http://ports.ubuntu.com/ubuntu-ports/pool/main/l",)
UBUNTU_DEFAULT_FLAVOR = "generic"

# "<abi>[-<flavor>][-<major>.<minor>]", e.g. "24-lowlatency-hwe-5.15".
_UBUNTU_EXTRA_RE = re.compile(r"^(?P<first>\d+)(?:-(?P<flavor>[A-Za-z][A-Za-z0-9-]*?))?(?:-\d+\.\d+)?$")

DEBIAN_BASE_URLS = (
    "http://security-cdn.debian.org/pool/main/l/linux/",
    "http://security-cdn.debian.org/pool/updates/main/l/linux/",
    "https://mirrors.edge.kernel.org/debian/pool/main/l/linux/",
)
DEBIAN_KBUILD_URL = "http://mirrors.kernel.org/debian/pool/main/l/linux/"
DEBIAN_LEGACY_KBUILD_URL = "http://mirrors.kernel.org/debian/pool/main/l/linux-tools/"


def parse_ubuntu_extraversion(extraversion: str) -> tuple[str, str]:
    """Split an Ubuntu extraversion into its ABI number and kernel flavor.

    >>> parse_ubuntu_extraversion("1004-intel-iotg")
    ('1004', 'intel-iotg')
    """

    extraversion = extraversion.lstrip("-")
    match = _UBUNTU_EXTRA_RE.match(extraversion)
    if match:
        return match.group("first"), match.group("flavor") or UBUNTU_DEFAULT_FLAVOR
    first = extraversion.split("-", 1)[0]
    LOG.debug("Unrecognised Ubuntu extraversion '%s'; assuming the generic flavor", extraversion)
    return first, UBUNTU_DEFAULT_FLAVOR


def ubuntu_candidate_urls(base_url: str, kr: KernelRelease) -> list[str]:
    """Return the header package names worth probing under *base_url*."""

    first, flavor = parse_ubuntu_extraversion(kr.extraversion)
    full, extra, arch = kr.fullversion, kr.fullextraversion, kr.architecture.name
    version = f"{full}-{first}.{kr.kernel_version}"
    subdirs = (
        "linux",
        f"linux-{flavor}",
        f"linux-{flavor}-{kr.major}.{kr.minor}",
    )

    urls = []
    for subdir in subdirs:
        prefix = f"{base_url}/{subdir}"
        urls.append(f"{prefix}/linux-headers-{full}-{first}-{flavor}_{version}_{arch}.deb")
        urls.append(f"{prefix}/linux-{flavor}-headers-{full}-{first}_{version}_all.deb")
        if extra != f"-{first}-{flavor}":
            urls.append(f"{prefix}/linux-headers-{full}{extra}_{version}_{arch}.deb")
        if flavor == UBUNTU_DEFAULT_FLAVOR:
            urls.append(f"{prefix}/linux-headers-{full}-{first}_{version}_all.deb")
    return urls


class DebTarget(Target):
    """Targets unpacking one or more ``.deb`` header packages."""

    def headers_pattern(self, kr: KernelRelease) -> str:
        raise NotImplementedError

    def template_data(
        self,
        config: Config,
        kr: KernelRelease,
        urls: list[str],
        common: CommonTemplateData,
    ) -> TemplateData:
        return TemplateData(
            common=common,
            kernel_download_urls=tuple(urls),
            kernel_local_version=kr.fullextraversion,
            kernel_headers_pattern=self.headers_pattern(kr),
        )

    def headers_script(self, data: TemplateData) -> str:
        download = scripts.download_packages(data.kernel_download_urls, DEB_EXTRACT)
        return download + dedent(
            f"""
            sourcedir=$(find . -type d -name "{data.kernel_headers_pattern}" | head -n 1 | xargs readlink -f)
            test -n "$sourcedir"
            export KERNELDIR=$sourcedir
            """
        ).lstrip("\n")


class Ubuntu(DebTarget):
    name = "ubuntu"
    minimum_urls = 2

    def base_urls(self, kr: KernelRelease) -> tuple[str, ...]:
        if kr.architecture == ARM64:
            return UBUNTU_ARM64_BASE_URLS
        return UBUNTU_AMD64_BASE_URLS

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        urls = []
        for base_url in self.base_urls(kr):
            urls.extend(ubuntu_candidate_urls(base_url, kr))
        return urls

    def resolve(self, config: Config, kr: KernelRelease, context: BuildContext | None = None) -> list[str]:
        """Return the packages of the first mirror publishing both halves of the headers."""

        for base_url in self.base_urls(kr):
            try:
                return resolve_urls(ubuntu_candidate_urls(base_url, kr), self.minimum_urls, context=context)
            except HeadersNotFoundError as exc:
                LOG.debug("%s: %s", base_url, exc)
        raise HeadersNotFoundError("kernel headers not found")

    def gcc_version(self, kr: KernelRelease) -> str | None:
        if kr.major == 3:
            return "4.8" if kr.minor in (2, 13) else "6"
        if kr.major == 5:
            if 11 <= kr.minor < 18:
                return "11"
            if kr.minor >= 18:
                return "12"
        if kr.major >= 6:
            return "13"
        return "8"

    def headers_pattern(self, kr: KernelRelease) -> str:
        _, flavor = parse_ubuntu_extraversion(kr.extraversion)
        return f"linux-headers-*{flavor}*"


def _debian_header_patterns(kr: KernelRelease, group: str, partial: str) -> tuple[str, str]:
    arch = kr.architecture.name
    major, minor, patch = kr.version
    return (
        rf'href="(linux-headers-{major}\.{minor}\.{patch}{re.escape(partial)}-({group})_.*({arch}|all)\.deb)"',
        rf'href="(linux-headers-[0-9]+\.[0-9]+\.[0-9]+-[0-9]+-({group})_{major}\.{minor}\.{patch}'
        rf'{re.escape(partial)}_({arch}|all)\.deb)"',
    )


def _first_match(body: str, patterns: tuple[str, str]) -> str | None:
    for pattern in patterns:
        match = re.search(pattern, body)
        if match:
            return match.group(1)
    return None


def debian_headers_urls(base_url: str, kr: KernelRelease) -> list[str]:
    """Return the arch specific and ``common`` header packages listed at *base_url*."""

    arch = kr.architecture.name
    partial = kr.fullextraversion
    if partial.endswith(f"-{arch}"):
        partial = partial[: -len(arch) - 1]
    group = arch
    if "-cloud" in kr.fullextraversion:
        if partial.endswith("-cloud"):
            partial = partial[: -len("-cloud")]
        group = f"cloud-{arch}"

    body = fetch_text(base_url)
    headers = _first_match(body, _debian_header_patterns(kr, group, partial))
    if headers is None:
        raise HeadersNotFoundError("kernel headers not found")
    common = _first_match(body, _debian_header_patterns(kr, "common", partial))
    if common is None:
        raise HeadersNotFoundError("kernel headers common not found")
    return [base_url + headers, base_url + common]


def debian_kbuild_url(kr: KernelRelease) -> str:
    """Return the ``linux-kbuild`` package matching the kernel series of *kr*."""

    base_url = DEBIAN_LEGACY_KBUILD_URL if kr.major == 3 else DEBIAN_KBUILD_URL
    pattern = rf'href="(linux-kbuild-{kr.major}\.{kr.minor}.*{kr.architecture.name}\.deb)"'
    match = re.search(pattern, fetch_text(base_url))
    if not match:
        raise HeadersNotFoundError("kbuild not found")
    return base_url + match.group(1)


class Debian(DebTarget):
    name = "debian"
    minimum_urls = 3

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        kbuild = debian_kbuild_url(kr)
        for base_url in DEBIAN_BASE_URLS:
            try:
                headers = debian_headers_urls(base_url, kr)
            except HeadersNotFoundError as exc:
                LOG.debug("%s: %s", base_url, exc)
                continue
            return headers + [kbuild]
        raise HeadersNotFoundError("kernel headers not found")

    def headers_pattern(self, kr: KernelRelease) -> str:
        if kr.extraversion.endswith("pve"):
            return "linux-headers-*pve"
        return f"linux-headers-*{kr.architecture.name}"


DEB_TARGETS = (Ubuntu(), Debian())
