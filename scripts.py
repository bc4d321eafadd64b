"""Shell fragments shared by every target's build script.

Each target only contributes the part that installs the kernel headers and
exports ``KERNELDIR``; this module wraps it with fetching the driver sources,
selecting the compiler and running kbuild for the module and the probe.
"""

from __future__ import annotations

from dataclasses import dataclass
from textwrap import dedent

SHEBANG = "#!/bin/bash"
STRICT_MODE = "set -xeuo pipefail"
KERNEL_DOWNLOAD_DIR = "/tmp/kernel-download"
KERNEL_DIR = "/tmp/kernel"


@dataclass(frozen=True)
class CommonTemplateData:
    """Values every target's build script needs."""

    driver_build_dir: str
    output_dir: str
    module_download_url: str
    module_driver_name: str
    module_full_path: str
    probe_full_path: str
    build_module: bool
    build_probe: bool
    gcc_version: str
    llvm_version: str
    architecture: str
    architecture_non_deb: str
    ancillary_dir: str


@dataclass(frozen=True)
class TemplateData:
    """Per-target record rendered into the build script."""

    common: CommonTemplateData
    kernel_download_urls: tuple[str, ...] = ()
    kernel_local_version: str = ""
    kernel_headers_pattern: str = ""
    kernel_package: str = ""
    is_tar_gz: bool = False
    flatcar_version: str = ""
    flatcar_channel: str = ""

    @property
    def kernel_download_url(self) -> str:
        return self.kernel_download_urls[0] if self.kernel_download_urls else ""


def _section(text: str) -> str:
    return dedent(text).strip("\n") + "\n"


def driver_sources(common: CommonTemplateData) -> str:
    """Fetch the driver archive and drop the ancillary files next to it."""

    return _section(
        f"""
        rm -Rf {common.driver_build_dir}
        mkdir {common.driver_build_dir}
        rm -Rf /tmp/module-download
        mkdir -p /tmp/module-download
        mkdir -p {common.output_dir}

        curl --silent -SL {common.module_download_url} | tar -xzf - -C /tmp/module-download
        mv /tmp/module-download/*/driver/* {common.driver_build_dir}

        cp {common.ancillary_dir}/module-Makefile {common.driver_build_dir}/Makefile
        cp {common.ancillary_dir}/module-driver-config.h {common.driver_build_dir}/driver_config.h
        """
    )


def module_steps(common: CommonTemplateData) -> str:
    return _section(
        f"""
        # Build the module
        cd {common.driver_build_dir}
        make KERNELDIR=$KERNELDIR CC=/usr/bin/gcc
        mv {common.module_driver_name}.ko {common.module_full_path}
        strip -g {common.module_full_path}
        # Print results
        modinfo {common.module_full_path}
        """
    )


def select_llvm(llvm_version: str) -> str:
    """Pick the versioned ``llc``/``clang`` when installed, the default ones otherwise."""

    return _section(
        f"""
        if [[ -x /usr/bin/llc-{llvm_version} ]]; then
          LLC_BIN=/usr/bin/llc-{llvm_version}
        else
          LLC_BIN=/usr/bin/llc
        fi
        if [[ -x /usr/bin/clang-{llvm_version} ]]; then
          CLANG_BIN=/usr/bin/clang-{llvm_version}
        else
          CLANG_BIN=/usr/bin/clang
        fi
        """
    )


def probe_steps(common: CommonTemplateData) -> str:
    return (
        "# Build the eBPF probe\n"
        + f"cd {common.driver_build_dir}/bpf\n"
        + select_llvm(common.llvm_version)
        + _section(
            f"""
            make LLC=$LLC_BIN CLANG=$CLANG_BIN CC=/usr/bin/gcc KERNELDIR=$KERNELDIR
            mv probe.o {common.probe_full_path}
            ls -l {common.probe_full_path}
            """
        )
    )


def select_gcc(common: CommonTemplateData) -> str:
    return _section(
        f"""
        # Change current gcc
        ln -sf /usr/bin/gcc-{common.gcc_version} /usr/bin/gcc
        """
    )


def compose(headers: str, common: CommonTemplateData) -> str:
    """Return the complete build script around the *headers* fragment."""

    parts = [
        f"{SHEBANG}\n{STRICT_MODE}\n",
        driver_sources(common),
        "# Fetch the kernel headers\n" + _section(headers),
        select_gcc(common),
    ]
    if common.build_module:
        parts.append(module_steps(common))
    if common.build_probe:
        parts.append(probe_steps(common))
    return "\n".join(parts)


def kernel_download_script(headers: str) -> str:
    """Return a script that only installs the headers and prints ``KERNELDIR``."""

    return f"{SHEBANG}\n{STRICT_MODE}\n\n{_section(headers)}echo $KERNELDIR\n"


def download_packages(urls: list[str] | tuple[str, ...], extract: str) -> str:
    """Download every URL into the kernel download dir and run *extract* on each.

    *extract* receives the downloaded file name through ``$pkg``.
    """

    lines = [f"rm -Rf {KERNEL_DOWNLOAD_DIR}", f"mkdir -p {KERNEL_DOWNLOAD_DIR}", f"cd {KERNEL_DOWNLOAD_DIR}"]
    for index, url in enumerate(urls):
        name = url.rsplit("/", 1)[-1] or f"package-{index}"
        lines.append(f"pkg={name}")
        lines.append(f"curl --silent -o $pkg -SL {url}")
        lines.append(extract)
    return "\n".join(lines) + "\n"


def dkms_module_steps(common: CommonTemplateData, driver_version: str, kernel_release: str) -> str:
    """Register the sources with DKMS and build them for *kernel_release*."""

    name = common.module_driver_name
    source_dir = f"/usr/src/{name}-{driver_version}"
    return _section(
        f"""
        # Build the module with DKMS
        rm -Rf {source_dir}
        mkdir -p {source_dir}
        cp -r {common.driver_build_dir}/* {source_dir}
        cat > {source_dir}/dkms.conf <<'EOF'
        PACKAGE_NAME="{name}"
        PACKAGE_VERSION="{driver_version}"
        BUILT_MODULE_NAME[0]="{name}"
        MAKE[0]="make -C ${{kernel_source_dir}} M=${{dkms_tree}}/{name}/{driver_version}/build CC={common.gcc_version} modules"
        CLEAN="make -C ${{kernel_source_dir}} M=${{dkms_tree}}/{name}/{driver_version}/build clean"
        DEST_MODULE_LOCATION[0]="/kernel/extra"
        AUTOINSTALL="yes"
        EOF
        dkms remove -m {name} -v {driver_version} -k {kernel_release} || true
        if [[ -n "${{KERNELDIR:-}}" ]]; then
          dkms install -m {name} -v {driver_version} -k {kernel_release} --kernelsourcedir "$KERNELDIR"
        else
          dkms install -m {name} -v {driver_version} -k {kernel_release}
        fi
        """
    )


def local_module_steps(common: CommonTemplateData, kernel_release: str, *, move: bool) -> str:
    """Build the module in place with the compiler at ``common.gcc_version``."""

    lines = [
        "# Build the module",
        f"cd {common.driver_build_dir}",
        f"make CC={common.gcc_version} KERNELDIR=${{KERNELDIR:-/lib/modules/{kernel_release}/build}}",
    ]
    if move:
        lines.append(f"mkdir -p {common.output_dir}")
        lines.append(f"mv {common.module_driver_name}.ko {common.module_full_path}")
    return "\n".join(lines) + "\n"


def local_probe_steps(common: CommonTemplateData, kernel_release: str, *, move: bool) -> str:
    lines = ["# Build the eBPF probe", f"cd {common.driver_build_dir}/bpf", select_llvm(common.llvm_version).rstrip()]
    lines.append(f"make LLC=$LLC_BIN CLANG=$CLANG_BIN KERNELDIR=${{KERNELDIR:-/lib/modules/{kernel_release}/build}}")
    if move:
        lines.append(f"mkdir -p {common.output_dir}")
        lines.append(f"mv probe.o {common.probe_full_path}")
    return "\n".join(lines) + "\n"


def compose_local(
    common: CommonTemplateData,
    *,
    driver_version: str,
    kernel_release: str,
    use_dkms: bool = False,
    move_artifacts: bool = True,
) -> str:
    """Return the script building on the current host from ``common.driver_build_dir``.

    Nothing is downloaded: the sources are expected in place and the headers
    come from ``$KERNELDIR`` or ``/lib/modules/<release>/build``.
    """

    parts = [f"{SHEBANG}\n{STRICT_MODE}\n"]
    if common.build_module:
        if use_dkms:
            parts.append(dkms_module_steps(common, driver_version, kernel_release))
        else:
            parts.append(local_module_steps(common, kernel_release, move=move_artifacts))
    if common.build_probe:
        parts.append(local_probe_steps(common, kernel_release, move=move_artifacts))
    return "\n".join(parts)
