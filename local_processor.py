"""Build on the current host, trying every installed GCC until one works."""

from __future__ import annotations

import dataclasses
import glob
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Mapping

import ancillary
import generator
import scripts
from buildconfig import Build
from errors import ArtifactError, BuildInterrupted, DriverkitError, InputError
from kernelrelease import KernelRelease
from processors import (
    DEFAULT_TIMEOUT,
    DIR_MODE,
    KERNEL_CONFIG_FILE,
    BuildProcessor,
    copy_artifact,
    run_command,
)
from progress import format_progress_message
from resolver import download_with_progress

LOG = logging.getLogger("driverkit.local_processor")

UNUSED_GCC = "UNUSED"
KERNELDIR_ENV = "KERNELDIR"
DKMS_TREE = "/var/lib/dkms"


def discover_gccs() -> list[str]:
    """Return the GCC compiler drivers installed next to ``gcc`` on ``PATH``.

    ``gcc-ar``, ``gcc-nm`` and friends share the prefix but do not answer
    ``-print-search-dirs``.
    """

    gcc = shutil.which("gcc")
    if gcc is None:
        raise InputError("gcc not found in PATH")
    compilers = []
    for candidate in sorted(glob.glob(os.path.join(os.path.dirname(gcc), "gcc*"))):
        try:
            completed = subprocess.run(
                [candidate, "-print-search-dirs"],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                check=False,
            )
        except OSError as exc:
            LOG.debug("Skipping %s: %s", candidate, exc)
            continue
        if "install:" in completed.stdout:
            compilers.append(candidate)
    LOG.info("Found compilers: %s", ", ".join(compilers) or "none")
    return compilers


def _member_path(name: str) -> PurePosixPath | None:
    """Return the path of archive member *name* below its ``driver/`` directory."""

    parts = PurePosixPath(name).parts
    if len(parts) < 3 or parts[1] != "driver" or ".." in parts or parts[0].startswith("/"):
        return None
    return PurePosixPath(*parts[2:])


def extract_driver_sources(archive_path: Path, destination: Path) -> int:
    """Extract the ``<top>/driver`` tree of the source archive into *destination*."""

    count = 0
    with tarfile.open(archive_path, mode="r:*") as archive:
        for member in archive:
            relative = _member_path(member.name)
            if relative is None or not (member.isfile() or member.isdir()):
                continue
            target = destination / relative
            if member.isdir():
                target.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
                continue
            target.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            handle = archive.extractfile(member)
            if handle is None:
                continue
            with handle, target.open("wb") as file_obj:
                shutil.copyfileobj(handle, file_obj)
            os.chmod(target, member.mode & 0o777 or 0o644)
            count += 1
    return count


def _read_optional(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except FileNotFoundError:
        return None


class LocalProcessor(BuildProcessor):
    """Runs the build directly on this machine."""

    name = "local"

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        *,
        use_dkms: bool = False,
        download_headers: bool = False,
        src_dir: str = "",
        env: Mapping[str, str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(timeout, **kwargs)
        self.use_dkms = use_dkms
        self.download_headers = download_headers
        self.src_dir = src_dir
        self.env = dict(env or {})

    def build_dir(self) -> Path:
        return Path(self.src_dir) if self.src_dir else Path(generator.DRIVER_BUILD_DIR)

    def module_path(self, build: Build, kr: KernelRelease) -> str:
        """Return where the module shows up; a glob pattern when using DKMS."""

        name = build.module_driver_name
        if self.use_dkms:
            return f"{DKMS_TREE}/{name}/{build.driver_version}/{kr}/{kr.architecture.to_non_deb()}/module/{name}.*"
        if self.src_dir:
            return str(Path(self.src_dir) / f"{name}.ko")
        return generator.module_full_path(name)

    def probe_path(self) -> str:
        if self.src_dir:
            return str(Path(self.src_dir) / "bpf" / "probe.o")
        return generator.PROBE_FULL_PATH

    def start(self, build: Build) -> None:
        try:
            self._build(build)
        finally:
            self.context.run_cleanups()

    def _build(self, build: Build) -> None:
        if self.use_dkms and os.geteuid() != 0:
            raise InputError("must be run as root for DKMS build")
        kr = build.kernel_release_object()
        generator.check_support(build, kr)

        overlay = dict(self.env)
        if self.download_headers:
            kernel_dir = self._download_headers(build)
            if kernel_dir:
                overlay[KERNELDIR_ENV] = kernel_dir

        if not self.src_dir:
            build_dir = self.build_dir()
            self.context.add_cleanup(f"remove {build_dir}", lambda: shutil.rmtree(build_dir, ignore_errors=True))
            self._fetch_sources(build, build_dir)

        gccs = discover_gccs() if build.module_file_path else [UNUSED_GCC]
        module_pending = bool(build.module_file_path)
        probe_pending = bool(build.probe_file_path)
        module_path = self.module_path(build, kr)
        probe_path = self.probe_path()
        if not self.use_dkms and not self.src_dir:
            for stale in (module_path, probe_path):
                Path(stale).unlink(missing_ok=True)

        env = {**os.environ, **overlay}
        common = generator.common_template_data(build, kr, "", "")
        common = dataclasses.replace(common, driver_build_dir=str(self.build_dir()))
        for gcc in gccs:
            if module_pending:
                LOG.info("Trying to build the kernel module with %s", gcc)
            if probe_pending:
                LOG.info("Trying to build the eBPF probe")
            script = scripts.compose_local(
                dataclasses.replace(common, gcc_version=gcc, build_module=module_pending, build_probe=probe_pending),
                driver_version=build.driver_version,
                kernel_release=str(kr),
                use_dkms=self.use_dkms,
                move_artifacts=not self.src_dir,
            )
            try:
                run_command(["/bin/bash", "-c", script], env=env, context=self.context)
            except subprocess.CalledProcessError as exc:
                LOG.warning("Build script exited with status %d", exc.returncode)

            if probe_pending and Path(probe_path).exists():
                copy_artifact(probe_path, build.probe_file_path)
                LOG.info("eBPF probe available at %s", build.probe_file_path)
                probe_pending = False

            if module_pending:
                matches = sorted(glob.glob(module_path))
                if matches:
                    copy_artifact(matches[0], build.module_file_path)
                    LOG.info("Kernel module available at %s", build.module_file_path)
                    module_pending = False
                    break
                if self.use_dkms:
                    self._dump_dkms_log(build)

        if module_pending:
            raise ArtifactError("failed to find kernel module .ko file")
        if probe_pending:
            raise ArtifactError("failed to find eBPF probe.o file")

    def _download_headers(self, build: Build) -> str:
        """Install the headers of the build's target and return their ``KERNELDIR``."""

        LOG.info("Trying automatic kernel headers download")
        ancillary_dir = self._write_kernel_config(build)
        try:
            script = generator.kernel_download_script(build, ancillary_dir=ancillary_dir, context=self.context)
            result = run_command(["/bin/bash", "-c", script], context=self.context, quiet=True)
        except BuildInterrupted:
            raise
        except (DriverkitError, subprocess.CalledProcessError) as exc:
            LOG.warning("Failed to download headers: %s", exc)
            return ""
        lines = result.output.strip().splitlines()
        kernel_dir = lines[-1].strip() if lines else ""
        if not kernel_dir:
            LOG.warning("Header download did not report a KERNELDIR")
            return ""
        LOG.info("Setting KERNELDIR to %s", kernel_dir)

        def remove_headers() -> None:
            shutil.rmtree(scripts.KERNEL_DOWNLOAD_DIR, ignore_errors=True)
            shutil.rmtree(kernel_dir, ignore_errors=True)

        self.context.add_cleanup("remove downloaded headers", remove_headers)
        return kernel_dir

    def _write_kernel_config(self, build: Build) -> str:
        """Write the build's kernel config where the header scripts look for it."""

        ancillary_dir = tempfile.mkdtemp(prefix="driverkit-")
        self.context.add_cleanup(f"remove {ancillary_dir}", lambda: shutil.rmtree(ancillary_dir, ignore_errors=True))
        (Path(ancillary_dir) / KERNEL_CONFIG_FILE).write_bytes(build.decoded_kernel_config())
        return ancillary_dir

    def _fetch_sources(self, build: Build, build_dir: Path) -> None:
        """Download the driver archive into *build_dir* and add the ancillary files."""

        config = build.to_config()
        LOG.info("Downloading driver sources from %s", config.module_download_url)
        shutil.rmtree(build_dir, ignore_errors=True)
        build_dir.mkdir(mode=DIR_MODE, parents=True)
        with tempfile.TemporaryDirectory(prefix="driverkit-") as tmp:
            archive_path = Path(tmp) / "driver.tar.gz"
            download_with_progress(
                config.module_download_url,
                archive_path,
                lambda update: LOG.info(format_progress_message(update)),
                context=self.context,
            )
            count = extract_driver_sources(archive_path, build_dir)
        if not count:
            raise ArtifactError(f"no driver sources found in {config.module_download_url}")
        LOG.debug("Extracted %d driver source files to %s", count, build_dir)

        (build_dir / "Makefile").write_text(
            ancillary.render_makefile(config.driver_name, str(build_dir)), encoding="utf-8"
        )
        (build_dir / "driver_config.h").write_text(
            ancillary.render_driver_config(
                config.driver_version,
                config.driver_name,
                config.device_name,
                api_version=_read_optional(build_dir / "API_VERSION"),
                schema_version=_read_optional(build_dir / "SCHEMA_VERSION"),
            ),
            encoding="utf-8",
        )

    def _dump_dkms_log(self, build: Build) -> None:
        log_file = Path(DKMS_TREE) / build.module_driver_name / build.driver_version / "build" / "make.log"
        try:
            lines = log_file.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            LOG.warning("DKMS build failed and no log was found at %s", log_file)
            return
        LOG.warning("DKMS build failed; dumping %s", log_file)
        for line in lines:
            LOG.info(line)
