"""Targets building against an upstream kernel tree.

``vanilla`` downloads the kernel.org sources for the release and prepares
them with the user supplied kernel config.  Bottlerocket, Talos, Minikube and
Flatcar run stock kernels and reuse it; Arch Linux ships proper header
packages in its archive and LinuxKit ships them inside its kernel image.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from textwrap import dedent

import scripts
from buildconfig import Config
from errors import HeadersNotFoundError, InputError
from kernelrelease import KernelRelease, parse_kernel_release
from resolver import fetch_text, resolve_urls
from scripts import CommonTemplateData, TemplateData
from targets import Target

LOG = logging.getLogger("driverkit.targets_vanilla")

FLATCAR_CHANNELS = ("stable", "beta", "alpha")
FLATCAR_PACKAGES_URL = "https://{channel}.release.flatcar-linux.net/{arch}-usr/{version}/flatcar_production_image_packages.txt"
FLATCAR_MIN_MAJOR = 1500

ARCH_COMPRESSIONS = ("xz", "zst")
ARCH_ARCHIVE_URL = "https://archive.archlinux.org/packages/l"
ARCH_ARM_ARCHIVE_URL = "http://tardis.tiny-vps.com/aarm/packages/l/linux-aarch64-headers/"
LINUXKIT_TAGS_URL = "https://hub.docker.com/v2/repositories/linuxkit/kernel/tags"
LINUXKIT_KERNEL_DEV = "/kernel-dev.tar"


def vanilla_kernel_url(kr: KernelRelease) -> str:
    """Return the kernel.org source tarball of *kr* (git snapshots for rc kernels)."""

    if kr.is_rc():
        return (
            "https://git.kernel.org/pub/scm/linux/kernel/git/torvalds/linux.git/snapshot/"
            f"linux-{kr.fullversion}{kr.fullextraversion}.tar.gz"
        )
    return f"https://cdn.kernel.org/pub/linux/kernel/v{kr.major}.x/linux-{kr.fullversion}.tar.xz"


class Vanilla(Target):
    name = "vanilla"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        return [vanilla_kernel_url(kr)]

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
            is_tar_gz=urls[0].endswith(".tar.gz"),
        )

    def headers_script(self, data: TemplateData) -> str:
        flags = "-xzf" if data.is_tar_gz else "-xJf"
        return dedent(
            f"""
            rm -Rf {scripts.KERNEL_DIR}
            mkdir -p {scripts.KERNEL_DIR}
            curl --silent -SL {data.kernel_download_url} | tar {flags} - -C {scripts.KERNEL_DIR} --strip-components 1
            cd {scripts.KERNEL_DIR}
            cp {data.common.ancillary_dir}/kernel.config .config

            # Match the running kernel's release string
            sed -i 's/^CONFIG_LOCALVERSION=.*$/CONFIG_LOCALVERSION="{data.kernel_local_version}"/' .config
            make olddefconfig
            make modules_prepare
            export KERNELDIR={scripts.KERNEL_DIR}
            """
        ).lstrip("\n")


class Bottlerocket(Vanilla):
    name = "bottlerocket"


class Talos(Vanilla):
    name = "talos"


class Minikube(Vanilla):
    name = "minikube"

    def gcc_version(self, kr: KernelRelease) -> str | None:
        if kr.major == 5:
            return "10"
        if kr.major == 4:
            return "8"
        return "12"


@dataclass(frozen=True)
class FlatcarRelease:
    """Build information published with a Flatcar release."""

    channel: str
    gcc_version: str
    kernel_version: str


def parse_flatcar_packages(text: str) -> tuple[str, str]:
    """Return the GCC and kernel versions listed in a Flatcar package list."""

    gcc_version = kernel_version = ""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("sys-devel/gcc-"):
            gcc_version = line[len("sys-devel/gcc-") :].split("::", 1)[0].split("-", 1)[0]
        elif line.startswith("sys-kernel/coreos-kernel-"):
            kernel_version = line[len("sys-kernel/coreos-kernel-") :].split("::", 1)[0].split("-", 1)[0]
    return gcc_version, kernel_version


@functools.lru_cache(maxsize=None)
def fetch_flatcar_release(version: str, architecture: str) -> FlatcarRelease:
    """Locate the channel publishing Flatcar *version* and read its package list."""

    candidates = [
        FLATCAR_PACKAGES_URL.format(channel=channel, arch=architecture, version=version)
        for channel in FLATCAR_CHANNELS
    ]
    url = resolve_urls(candidates)[0]
    channel = url[len("https://") :].split(".", 1)[0]
    text = fetch_text(url)
    if not text:
        raise HeadersNotFoundError(f"missing package list for {version}")
    gcc_version, kernel_version = parse_flatcar_packages(text)
    if not gcc_version or not kernel_version:
        raise HeadersNotFoundError(f"package list of Flatcar {version} does not name gcc and kernel")
    LOG.info("Flatcar %s (%s) ships kernel %s built with gcc %s", version, channel, kernel_version, gcc_version)
    return FlatcarRelease(channel=channel, gcc_version=gcc_version, kernel_version=kernel_version)


class Flatcar(Vanilla):
    name = "flatcar"

    def release(self, kr: KernelRelease) -> FlatcarRelease:
        if kr.extraversion:
            raise InputError(f"unexpected extraversion: {kr.extraversion}")
        if kr.major < FLATCAR_MIN_MAJOR:
            raise InputError(f"not a valid flatcar release version: {kr.major}")
        return fetch_flatcar_release(kr.fullversion, kr.architecture.name)

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        kernel = parse_kernel_release(self.release(kr).kernel_version, kr.architecture)
        return [vanilla_kernel_url(kernel)]

    def gcc_version(self, kr: KernelRelease) -> str | None:
        major = int(self.release(kr).gcc_version.split(".", 1)[0])
        if major >= 8:
            return "8"
        if major == 7:
            return "6"
        return str(major)

    def template_data(
        self,
        config: Config,
        kr: KernelRelease,
        urls: list[str],
        common: CommonTemplateData,
    ) -> TemplateData:
        release = self.release(kr)
        return TemplateData(
            common=common,
            kernel_download_urls=tuple(urls),
            is_tar_gz=urls[0].endswith(".tar.gz"),
            flatcar_version=kr.fullversion,
            flatcar_channel=release.channel,
        )

    def headers_script(self, data: TemplateData) -> str:
        banner = f"echo 'Preparing kernel sources for Flatcar {data.flatcar_version} ({data.flatcar_channel})'\n"
        return banner + super().headers_script(data)


class ArchLinux(Target):
    name = "archlinux"

    def package(self, kr: KernelRelease) -> str:
        extra = kr.fullextraversion
        if "arch" in extra:
            return "linux-headers"
        if "hardened" in extra or ".a-1" in extra:
            return "linux-hardened-headers"
        if "zen" in extra:
            return "linux-zen-headers"
        return "linux-lts-headers"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        arch = kr.architecture.to_non_deb()
        if arch == "x86_64":
            package = self.package(kr)
            base_url = f"{ARCH_ARCHIVE_URL}/{package}"
        else:
            package = "linux-aarch64-headers"
            base_url = ARCH_ARM_ARCHIVE_URL
        return [
            f"{base_url.rstrip('/')}/{package}-{kr.fullversion}{kr.fullextraversion}-{arch}.pkg.tar.{compression}"
            for compression in ARCH_COMPRESSIONS
        ]

    def headers_script(self, data: TemplateData) -> str:
        download = scripts.download_packages(data.kernel_download_urls[:1], "tar -xf $pkg")
        return download + dedent(
            f"""
            export KERNELDIR=$(find {scripts.KERNEL_DOWNLOAD_DIR}/usr/lib/modules -mindepth 2 -maxdepth 2 -type d -name build | head -n 1)
            test -n "$KERNELDIR"
            """
        ).lstrip("\n")


class LinuxKit(Target):
    """LinuxKit kernels, whose headers ship as a tarball inside the kernel image.

    The builder image has to be built from ``linuxkit/kernel:<release>`` so
    that the tarball is present; the registry tag only proves the release
    exists.
    """

    name = "linuxkit"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        return [f"{LINUXKIT_TAGS_URL}/{kr.fullversion}-{kr.architecture.name}"]

    def headers_script(self, data: TemplateData) -> str:
        return dedent(
            f"""
            rm -Rf {scripts.KERNEL_DIR}
            mkdir -p {scripts.KERNEL_DIR}
            tar --strip-components=3 -xf {LINUXKIT_KERNEL_DEV} --directory {scripts.KERNEL_DIR}
            export KERNELDIR={scripts.KERNEL_DIR}
            """
        ).lstrip("\n")


VANILLA_TARGETS = (Vanilla(), Bottlerocket(), Talos(), Minikube(), Flatcar(), ArchLinux(), LinuxKit())
