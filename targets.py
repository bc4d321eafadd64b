"""Base class for distribution targets.

A target knows how to find the kernel header packages of its distribution,
which record its build script needs, and how to install those headers inside
the builder image.  Concrete targets live in the ``targets_*`` modules and are
collected by :mod:`registry`.
"""

from __future__ import annotations

import logging
from textwrap import dedent

import scripts
from buildconfig import Config
from cancellation import BuildContext
from kernelrelease import KernelRelease
from resolver import resolve_urls
from scripts import CommonTemplateData, TemplateData

LOG = logging.getLogger("driverkit.targets")

RPM_EXTRACT = "rpm2cpio $pkg | cpio --extract --make-directories"
DEB_EXTRACT = "ar x $pkg && tar -xf data.tar.* && rm -f data.tar.* control.tar.* debian-binary"


class Target:
    """A distribution family whose kernels can be built for."""

    name = ""
    minimum_urls = 1
    builder_image_net_mode = ""

    def urls(self, config: Config, kr: KernelRelease) -> list[str]:
        """Return candidate header package URLs for *kr*, most likely first."""

        raise NotImplementedError

    def template_data(
        self,
        config: Config,
        kr: KernelRelease,
        urls: list[str],
        common: CommonTemplateData,
    ) -> TemplateData:
        return TemplateData(common=common, kernel_download_urls=tuple(urls))

    def gcc_version(self, kr: KernelRelease) -> str | None:
        """Return a distribution specific GCC, or ``None`` for the default."""

        return None

    def resolve(self, config: Config, kr: KernelRelease, context: BuildContext | None = None) -> list[str]:
        """Return the candidate URLs of *kr* that actually answer."""

        candidates = self.urls(config, kr)
        if not candidates and self.minimum_urls == 0:
            LOG.debug("%s installs its headers from the builder image repositories", self.name)
            return []
        return resolve_urls(candidates, self.minimum_urls, context=context)

    def headers_script(self, data: TemplateData) -> str:
        """Return the shell fragment installing headers and exporting ``KERNELDIR``."""

        raise NotImplementedError

    def template_script(self, data: TemplateData) -> str:
        return scripts.compose(self.headers_script(data), data.common)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class RpmTarget(Target):
    """Targets shipping headers as a ``kernel-devel`` rpm under ``usr/src/kernels``."""

    def headers_script(self, data: TemplateData) -> str:
        # Only the first resolved package is needed.
        download = scripts.download_packages(data.kernel_download_urls[:1], RPM_EXTRACT)
        return download + dedent(
            f"""
            rm -Rf {scripts.KERNEL_DIR}
            mkdir -p {scripts.KERNEL_DIR}
            mv usr/src/kernels/*/* {scripts.KERNEL_DIR}
            export KERNELDIR={scripts.KERNEL_DIR}
            """
        ).lstrip("\n")


def rpm_name(kr: KernelRelease, package: str = "kernel-devel", suffix: str = ".rpm") -> str:
    """Return ``<package>-<fullversion><fullextraversion><suffix>``."""

    return f"{package}-{kr.fullversion}{kr.fullextraversion}{suffix}"


def expand(formats: list[str], **values: str) -> list[str]:
    """Format each template in *formats* with *values*, keeping the order."""

    return [template.format(**values) for template in formats]
