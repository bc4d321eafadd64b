"""Targets whose headers ship as rpm packages on well known mirrors.

Most of these compose a static list of candidate URLs from the release
string; the resolver keeps the ones that answer.  ``redhat``, ``sle`` and
``sles`` cannot be downloaded anonymously and install the headers from the
repositories configured in the builder image instead.
"""

from __future__ import annotations

from textwrap import dedent

import scripts
from buildconfig import Config
from cancellation import BuildContext
from errors import HeadersNotFoundError
from kernelrelease import KernelRelease
from scripts import CommonTemplateData, TemplateData
from targets import RPM_EXTRACT, RpmTarget, Target, expand, rpm_name

CENTOS_EDGE_RELEASES = ("6/os", "6/updates", "7/os", "7/updates")
CENTOS_STREAM_RELEASES = ("8-stream/BaseOS", "8.0.1905/BaseOS")
CENTOS_VAULT_RELEASES = tuple(
    f"{release}/{repo}"
    for release in (
        "6.0",
        "6.1",
        "6.2",
        "6.3",
        "6.4",
        "6.5",
        "6.6",
        "6.7",
        "6.8",
        "6.9",
        "6.10",
        "7.0.1406",
        "7.1.1503",
        "7.2.1511",
        "7.3.1611",
        "7.4.1708",
        "7.5.1804",
        "7.6.1810",
        "7.7.1908",
        "8.0.1905",
        "8.1.1911",
    )
    for repo in ("os", "updates")
)

ALMA_RELEASES = ("8", "8.6", "9", "9.0")
ROCKY_PUB_RELEASES = ("8", "8.7", "9", "9.1")
ROCKY_VAULT_RELEASES = ("8.3", "8.4", "8.5", "8.6", "9.1")
ORACLE_UEK_RELEASES = ("R3", "R4", "R5", "R6", "R7")
PHOTON_RELEASES = ("3.0", "4.0", "5.0")
PHOTON_REPO_PREFIXES = ("photon_", "photon_release_", "photon_updates_")

OPENSUSE_BASE_URLS = (
    "https://mirrors.edge.kernel.org/opensuse/distribution",
    "http://download.opensuse.org/distribution",
    "https://download.opensuse.org/repositories/Kernel:",
    "http://download.opensuse.org",
)
OPENSUSE_RELEASES = ("43.2", "15.0", "15.1", "15.2", "15.3", "HEAD", "stable", "tumbleweed")
# "{arch}" entries hold kernel-default-devel, "noarch" ones the kernel-devel sources.
OPENSUSE_PATHS = (
    ("leap/{release}/repo/oss/{arch}", "default"),
    ("leap/{release}/repo/oss/noarch", "noarch"),
    ("{release}/repo/oss/{arch}", "default"),
    ("{release}/repo/oss/noarch", "noarch"),
    ("openSUSE-{release}/Submit/standard/{arch}", "default"),
    ("openSUSE-{release}/standard/{arch}", "default"),
    ("openSUSE-{release}:/Submit/standard/{arch}", "default"),
    ("openSUSE-{release}:/standard/{arch}", "default"),
    ("{release}/Submit/standard/{arch}", "default"),
    ("{release}/standard/{arch}", "default"),
    ("openSUSE-{release}/Submit/standard/noarch", "noarch"),
    ("openSUSE-{release}/standard/noarch", "noarch"),
    ("openSUSE-{release}:/Submit/standard/noarch", "noarch"),
    ("openSUSE-{release}:/standard/noarch", "noarch"),
    ("{release}/Submit/standard/noarch", "noarch"),
    ("{release}/standard/noarch", "noarch"),
)


class CentOS(RpmTarget):
    name = "centos"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        package = rpm_name(kr)
        urls = [f"https://mirrors.edge.kernel.org/centos/{r}/x86_64/Packages/{package}" for r in CENTOS_EDGE_RELEASES]
        urls += [
            f"https://mirrors.edge.kernel.org/centos/{r}/x86_64/os/Packages/{package}" for r in CENTOS_STREAM_RELEASES
        ]
        urls += [f"http://vault.centos.org/{r}/x86_64/Packages/{package}" for r in CENTOS_VAULT_RELEASES]
        return urls

    def gcc_version(self, kr: KernelRelease) -> str | None:
        if kr.major == 3:
            # CentOS 7 kernels are built with the system compiler.
            return "4.8.5" if kr.minor == 10 else "5"
        if kr.major == 2:
            return "4.8"
        return "8"


class AlmaLinux(RpmTarget):
    name = "almalinux"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        urls = []
        for release in ALMA_RELEASES:
            repo = "AppStream" if release >= "9" else "BaseOS"
            urls.append(
                f"https://repo.almalinux.org/almalinux/{release}/{repo}/"
                f"{kr.architecture.to_non_deb()}/os/Packages/{rpm_name(kr)}"
            )
        return urls


class Rocky(RpmTarget):
    name = "rocky"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        urls = []
        for area, releases in (("pub", ROCKY_PUB_RELEASES), ("vault", ROCKY_VAULT_RELEASES)):
            for release in releases:
                repo = "AppStream" if release >= "9" else "BaseOS"
                urls.append(
                    f"https://download.rockylinux.org/{area}/rocky/{release}/{repo}/"
                    f"{kr.architecture.to_non_deb()}/os/Packages/k/{rpm_name(kr)}"
                )
        return urls


def oracle_version(kr: KernelRelease) -> str:
    """Return the Oracle Linux major version encoded in *kr*.

    ``-2047.510.5.5.el7uek.x86_64`` gives ``7``; ``.el8_6`` style fields are
    cut at the underscore.
    """

    fields = kr.fullextraversion.split(".")
    if len(fields) < 2:
        raise HeadersNotFoundError(f"cannot infer the Oracle Linux version from '{kr}'")
    version = fields[-2].strip("el").strip("uek")
    return version.split("_", 1)[0]


class OracleLinux(RpmTarget):
    name = "ol"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        version = oracle_version(kr)
        arch = kr.architecture.to_non_deb()
        base = f"http://yum.oracle.com/repo/OracleLinux/OL{version}"
        urls = expand(
            [
                "{base}/latest/{arch}/getPackage/{package}",
                "{base}/baseos/latest/{arch}/getPackage/{package}",
                "{base}/appstream/{arch}/getPackage/{package}",
                "{base}/MODRHCK/{arch}/getPackage/{package}",
            ],
            base=base,
            arch=arch,
            package=rpm_name(kr),
        )
        uek_package = rpm_name(kr, "kernel-uek-devel")
        urls += [f"{base}/UEK{uek}/{arch}/getPackage/{uek_package}" for uek in ORACLE_UEK_RELEASES]
        return urls


class Fedora(RpmTarget):
    name = "fedora"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        fields = kr.fullextraversion.split(".")
        if len(fields) < 2:
            raise HeadersNotFoundError(f"cannot infer the Fedora version from '{kr}'")
        version = fields[1].strip("fc")
        return expand(
            [
                "https://mirrors.kernel.org/fedora/updates/{version}/Everything/{arch}/Packages/k/{package}",
                "https://mirrors.kernel.org/fedora/releases/{version}/Everything/{arch}/os/Packages/k/{package}",
                "https://mirrors.kernel.org/fedora/development/{version}/Everything/{arch}/os/Packages/k/{package}",
            ],
            version=version,
            arch=kr.architecture.to_non_deb(),
            package=rpm_name(kr),
        )


class Photon(RpmTarget):
    name = "photon"

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        arch = kr.architecture.to_non_deb()
        package = rpm_name(kr, "linux-devel", ".x86_64.rpm")
        return [
            f"https://packages.vmware.com/photon/{release}/{prefix}{release}_{arch}/{arch}/{package}"
            for release in PHOTON_RELEASES
            for prefix in PHOTON_REPO_PREFIXES
        ]

    def headers_script(self, data: TemplateData) -> str:
        download = scripts.download_packages(data.kernel_download_urls[:1], RPM_EXTRACT)
        return download + dedent(
            f"""
            rm -Rf {scripts.KERNEL_DIR}
            mkdir -p {scripts.KERNEL_DIR}
            mv usr/src/linux-headers-*/* {scripts.KERNEL_DIR}
            export KERNELDIR={scripts.KERNEL_DIR}
            """
        ).lstrip("\n")


class OpenSUSE(Target):
    name = "opensuse"
    minimum_urls = 2

    def packages(self, kr: KernelRelease) -> tuple[str, str]:
        """Return the ``kernel-default-devel`` and noarch ``kernel-devel`` file names."""

        default = rpm_name(kr, "kernel-default-devel")
        noarch = rpm_name(kr).replace(kr.architecture.to_non_deb(), "noarch")
        return default, noarch

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        default, noarch = self.packages(kr)
        arch = kr.architecture.to_non_deb()
        urls = []
        for release in OPENSUSE_RELEASES:
            for base in OPENSUSE_BASE_URLS:
                for path, kind in OPENSUSE_PATHS:
                    package = default if kind == "default" else noarch
                    urls.append(f"{base}/{path.format(release=release, arch=arch)}/{package}")
        return urls

    def resolve(self, config: Config, kr: KernelRelease, context: BuildContext | None = None) -> list[str]:
        urls = super().resolve(config, kr, context)
        default, noarch = self.packages(kr)
        if not (any(default in url for url in urls) and any(noarch in url for url in urls)):
            raise HeadersNotFoundError(
                "missing one of the required package types: [ kernel-default-devel, kernel-devel*noarch ]: "
                + ", ".join(urls)
            )
        return urls

    def headers_script(self, data: TemplateData) -> str:
        download = scripts.download_packages(data.kernel_download_urls, RPM_EXTRACT)
        return download + dedent(
            f"""
            export KERNELDIR=$(find {scripts.KERNEL_DOWNLOAD_DIR}/usr/src -maxdepth 3 -type d -path '*-obj/{data.common.architecture_non_deb}/default' | head -n 1)
            test -n "$KERNELDIR"
            """
        ).lstrip("\n")


class AliyunLinux(RpmTarget):
    releases: tuple[str, ...] = ()

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        return [
            f"http://mirrors.aliyun.com/alinux/{release}/os/{kr.architecture.to_non_deb()}/Packages/{rpm_name(kr)}"
            for release in self.releases
        ]


class AliyunLinux2(AliyunLinux):
    name = "aliyunlinux2"
    releases = ("2", "2.1903")


class AliyunLinux3(AliyunLinux):
    name = "aliyunlinux3"
    releases = ("3",)


class EntitledTarget(Target):
    """Targets installing ``kernel_package`` through the builder image's own repositories."""

    minimum_urls = 0

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        return []

    def template_data(
        self,
        config: Config,
        kr: KernelRelease,
        urls: list[str],
        common: CommonTemplateData,
    ) -> TemplateData:
        return TemplateData(common=common, kernel_package=str(kr))


class RedHat(EntitledTarget):
    name = "redhat"

    def headers_script(self, data: TemplateData) -> str:
        return dedent(
            f"""
            yum install -y kernel-devel-{data.kernel_package}
            export KERNELDIR=/usr/src/kernels/{data.kernel_package}
            """
        ).lstrip("\n")


class SLE(EntitledTarget):
    name = "sle"

    def headers_script(self, data: TemplateData) -> str:
        version, _, flavor = data.kernel_package.rpartition("-")
        if not version:
            version, flavor = data.kernel_package, "default"
        return dedent(
            f"""
            zypper --non-interactive install kernel-{flavor}-devel-{version}
            export KERNELDIR=/usr/src/linux-{version}-obj/{data.common.architecture_non_deb}/{flavor}
            """
        ).lstrip("\n")


class SLES(SLE):
    name = "sles"
    # SUSEConnect credentials of the host are needed to reach the update repositories.
    builder_image_net_mode = "host"


RPM_TARGETS = (
    CentOS(),
    AlmaLinux(),
    Rocky(),
    OracleLinux(),
    Fedora(),
    Photon(),
    OpenSUSE(),
    AliyunLinux2(),
    AliyunLinux3(),
    RedHat(),
    SLE(),
    SLES(),
)
