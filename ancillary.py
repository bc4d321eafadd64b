"""Small text assets shipped next to every generated build script.

The kernel module is compiled with an out-of-tree kbuild ``Makefile`` and a
``driver_config.h`` header that pins the driver version and naming.  The
cluster processor additionally needs a couple of shell snippets so the pod
keeps running until the artifacts have been streamed out.
"""

from __future__ import annotations

from textwrap import dedent

MODULE_OBJECTS = (
    "main.o",
    "dynamic_params_table.o",
    "fillers_table.o",
    "flags_table.o",
    "ppm_events.o",
    "ppm_fillers.o",
    "event_table.o",
    "syscall_table.o",
    "ppm_cputime.o",
)

MODULE_LOCK_FILE = "/tmp/module.lock"
PROBE_LOCK_FILE = "/tmp/probe.lock"
DOWNLOAD_LOCK_FILE = "/tmp/download.lock"

# Keeps the build container alive until the caller has fetched the artifacts.
WAIT_FOR_DOWNLOAD_LOCK = dedent(
    f"""
    touch {DOWNLOAD_LOCK_FILE}
    while true; do
      if [ -f {DOWNLOAD_LOCK_FILE} ]; then
        echo "Lock not released yet - waiting for 5 seconds"
        sleep 5
        continue
      fi
      echo "download lock was released, we can exit now"
      break
    done
    """
).lstrip("\n")

RELEASE_DOWNLOAD_LOCK = f"rm -f {DOWNLOAD_LOCK_FILE}\n"

# Anything but the file content on stdout would corrupt the download.
DOWNLOADER_SCRIPT = dedent(
    """
    while true; do
      if [ -f "$2" ]; then
        sleep 10 1>&/dev/null
        continue
      fi
      break
    done
    cat "$1"
    """
).lstrip("\n")


def render_makefile(module_name: str, module_build_dir: str) -> str:
    """Return the kbuild Makefile building *module_name* from *module_build_dir*."""

    objects = " ".join(MODULE_OBJECTS)
    return dedent(
        f"""
        {module_name}-y += {objects}
        obj-m += {module_name}.o
        KERNELDIR ?= /lib/modules/$(shell uname -r)/build

        all:
        \t$(MAKE) -C $(KERNELDIR) M={module_build_dir} modules

        clean:
        \t$(MAKE) -C $(KERNELDIR) M={module_build_dir} clean

        install: all
        \t$(MAKE) -C $(KERNELDIR) M={module_build_dir} modules_install
        """
    ).lstrip("\n")


def _version_triplet(raw: str) -> tuple[str, str, str]:
    parts = (raw.strip().split(".") + ["0", "0", "0"])[:3]
    return parts[0] or "0", parts[1] or "0", parts[2] or "0"


def render_driver_config(
    driver_version: str,
    driver_name: str,
    device_name: str,
    *,
    api_version: str | None = None,
    schema_version: str | None = None,
) -> str:
    """Return ``driver_config.h`` for the given driver identity.

    *api_version* and *schema_version* are the contents of the ``API_VERSION``
    and ``SCHEMA_VERSION`` files of the driver archive.  When present they are
    exposed as the ``PPM_*_CURRENT_VERSION_*`` macros.
    """

    lines = [
        "#pragma once",
        "",
        f'#define PROBE_VERSION "{driver_version}"',
        "",
        f'#define PROBE_NAME "{driver_name}"',
        "",
        f'#define PROBE_DEVICE_NAME "{device_name}"',
    ]
    for prefix, raw in (("PPM_API_CURRENT_VERSION", api_version), ("PPM_SCHEMA_CURRENT_VERSION", schema_version)):
        if not raw:
            continue
        major, minor, patch = _version_triplet(raw)
        lines.extend(
            [
                "",
                f"#define {prefix}_MAJOR {major}",
                f"#define {prefix}_MINOR {minor}",
                f"#define {prefix}_PATCH {patch}",
            ]
        )
    return "\n".join(lines) + "\n"


def add_artifact_locks(script: str, lock_files: list[str]) -> str:
    """Wrap *script* so each lock in *lock_files* exists until the build ends."""

    if not lock_files:
        return script + WAIT_FOR_DOWNLOAD_LOCK
    header, _, body = script.partition("\n")
    if not header.startswith("#!"):
        header, body = "", script
    touch = "".join(f"touch {lock}\n" for lock in lock_files)
    release = "".join(f"rm -f {lock}\n" for lock in lock_files)
    prefix = f"{header}\n" if header else ""
    return f"{prefix}{touch}{body}\n{release}{WAIT_FOR_DOWNLOAD_LOCK}"
