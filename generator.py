"""Turn a :class:`~buildconfig.Build` into the shell script a processor runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import scripts
from buildconfig import Build
from cancellation import BuildContext
from errors import HeadersNotFoundError, InputError
from images import ImageCatalog, normalize_gcc
from kernelrelease import KernelRelease, default_gcc_version, llvm_version
from registry import get_target, target_names
from resolver import resolve_urls
from scripts import CommonTemplateData, TemplateData
from targets import Target

LOG = logging.getLogger("driverkit.generator")

DRIVER_BUILD_DIR = "/tmp/driver"
OUTPUT_DIR = "/tmp/module"
PROBE_FULL_PATH = f"{OUTPUT_DIR}/probe.o"
DOCKER_ANCILLARY_DIR = "/driverkit"
KUBERNETES_ANCILLARY_DIR = "/module-builder"


@dataclass(frozen=True)
class GeneratedScript:
    """The rendered build script plus the choices made while rendering it."""

    script: str
    image: str
    gcc_version: str
    target: str
    kernel_release: KernelRelease
    net_mode: str = ""


def module_full_path(driver_name: str) -> str:
    return f"{OUTPUT_DIR}/{driver_name}.ko"


def check_support(build: Build, kr: KernelRelease) -> None:
    """Refuse artifacts the kernel of *kr* cannot build."""

    if build.module_file_path and not kr.supports_module():
        raise InputError("module not supported on this kernel")
    if build.probe_file_path and not kr.supports_probe():
        raise InputError("probe not supported on this kernel")


def validate_build(build: Build) -> tuple[Target, KernelRelease]:
    """Check everything that can be checked without network or subprocess work."""

    target = get_target(build.target_type)
    kr = build.kernel_release_object()
    build.decoded_kernel_config()
    check_support(build, kr)
    return target, kr


def resolve_kernel_urls(
    build: Build,
    target: Target,
    kr: KernelRelease,
    *,
    context: BuildContext | None = None,
) -> list[str]:
    """Return the header packages to use, from ``--kernelurls`` or the target."""

    config = build.to_config()
    try:
        if build.kernel_urls:
            return resolve_urls(build.kernel_urls, target.minimum_urls, context=context)
        return target.resolve(config, kr, context)
    except HeadersNotFoundError as exc:
        raise HeadersNotFoundError(f"kernel headers not found for {target.name} {kr}: {exc}") from exc


def target_gcc_version(build: Build, target: Target, kr: KernelRelease) -> str:
    """Return the GCC requested for the build before consulting the catalog."""

    if build.gcc_version:
        return build.gcc_version
    return target.gcc_version(kr) or default_gcc_version(kr)


def select_image(
    build: Build,
    target: Target,
    kr: KernelRelease,
    catalog: ImageCatalog | None,
) -> tuple[str, str]:
    """Return ``(image, gcc_version)`` for the build.

    A GCC pinned with ``--gccversion`` is kept as is and needs an image
    providing it; only the target or default GCC may fall back to the
    nearest version the catalog offers.
    """

    gcc = target_gcc_version(build, target, kr)
    if build.has_custom_builder_image():
        return build.custom_builder_image, normalize_gcc(gcc)
    if catalog is None:
        catalog = ImageCatalog.load(
            build.builder_repos,
            arch=kr.architecture.to_non_deb(),
            target_names=target_names(),
            tag=build.builder_image_tag(),
        )
    image = catalog.pick(target.name, gcc, exact=bool(build.gcc_version))
    return image.name, image.gcc_version


def common_template_data(
    build: Build,
    kr: KernelRelease,
    gcc_version: str,
    ancillary_dir: str,
) -> CommonTemplateData:
    config = build.to_config()
    return CommonTemplateData(
        driver_build_dir=DRIVER_BUILD_DIR,
        output_dir=OUTPUT_DIR,
        module_download_url=config.module_download_url,
        module_driver_name=config.driver_name,
        module_full_path=module_full_path(config.driver_name),
        probe_full_path=PROBE_FULL_PATH,
        build_module=bool(build.module_file_path),
        build_probe=bool(build.probe_file_path),
        gcc_version=gcc_version,
        llvm_version=llvm_version(kr),
        architecture=kr.architecture.name,
        architecture_non_deb=kr.architecture.to_non_deb(),
        ancillary_dir=ancillary_dir,
    )


def template_data(
    build: Build,
    *,
    gcc_version: str = "",
    ancillary_dir: str = DOCKER_ANCILLARY_DIR,
    context: BuildContext | None = None,
) -> tuple[Target, KernelRelease, TemplateData]:
    """Resolve the headers of *build* and return the target's template record."""

    target, kr = validate_build(build)
    urls = resolve_kernel_urls(build, target, kr, context=context)
    if not gcc_version:
        gcc_version = target_gcc_version(build, target, kr)
    common = common_template_data(build, kr, gcc_version, ancillary_dir)
    return target, kr, target.template_data(build.to_config(), kr, urls, common)


def generate_script(
    build: Build,
    catalog: ImageCatalog | None = None,
    *,
    ancillary_dir: str = DOCKER_ANCILLARY_DIR,
    context: BuildContext | None = None,
) -> GeneratedScript:
    """Render the build script for *build*.

    Support for the requested artifacts is checked before any header
    package is looked up.
    """

    target, kr = validate_build(build)
    urls = resolve_kernel_urls(build, target, kr, context=context)
    image, gcc = select_image(build, target, kr, catalog)
    LOG.info("Using builder image %s (gcc %s) for %s %s", image, gcc, target.name, kr)

    common = common_template_data(build, kr, gcc, ancillary_dir)
    data = target.template_data(build.to_config(), kr, urls, common)
    return GeneratedScript(
        script=target.template_script(data),
        image=image,
        gcc_version=gcc,
        target=target.name,
        kernel_release=kr,
        net_mode=target.builder_image_net_mode,
    )


def kernel_download_script(
    build: Build,
    *,
    ancillary_dir: str = DOCKER_ANCILLARY_DIR,
    context: BuildContext | None = None,
) -> str:
    """Return a script installing only the headers of *build* and printing ``KERNELDIR``.

    Targets configuring a kernel tree read ``kernel.config`` from *ancillary_dir*.
    """

    target, _, data = template_data(build, ancillary_dir=ancillary_dir, context=context)
    return scripts.kernel_download_script(target.headers_script(data))
