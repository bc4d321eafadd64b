"""Pieces shared by the docker, kubernetes and local build processors."""

from __future__ import annotations

import io
import logging
import os
import subprocess
import tarfile
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import ancillary
from buildconfig import Build
from cancellation import BuildContext
from errors import ArtifactError, BuildInterrupted, ExecutionError
from generator import DRIVER_BUILD_DIR, PROBE_FULL_PATH, module_full_path
from progress import ProgressUpdate, format_progress_message, get_progress_parser

LOG = logging.getLogger("driverkit.processors")

DEFAULT_TIMEOUT = 60
MIN_TIMEOUT = 30
LOG_TAIL_LINES = 40
POLL_INTERVAL = 0.5

KERNEL_CONFIG_FILE = "kernel.config"
MAKEFILE_FILE = "module-Makefile"
DRIVER_CONFIG_FILE = "module-driver-config.h"

DIR_MODE = 0o755
FILE_MODE = 0o644


@dataclass
class CommandResult:
    """Light-weight wrapper representing the output of ``run_command``."""

    args: list[str]
    returncode: int
    output: str = ""
    tail: list[str] = field(default_factory=list)


def _iter_output_segments(text: str) -> list[str]:
    """Return sanitized output *text* split into logical display segments."""

    if not text:
        return []
    return text.replace("\r", "\n").splitlines()


def _watch(process: subprocess.Popen, context: BuildContext) -> None:
    while process.poll() is None:
        if context.sleep(POLL_INTERVAL):
            LOG.warning("Stopping %s: %s", process.args[0], context.reason)
            process.terminate()
            return


def run_command(
    command: list[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    context: BuildContext | None = None,
    quiet: bool = False,
) -> CommandResult:
    """Run *command* while mirroring its output to the logger line by line.

    The last lines of output are kept in :attr:`CommandResult.tail`.  A
    non-zero exit raises :class:`subprocess.CalledProcessError` when *check*
    is set; cancellation of *context* terminates the process and raises
    :class:`BuildInterrupted`.
    """

    parser, prepared_command = get_progress_parser(list(command))
    LOG.info("$ %s", " ".join(prepared_command))

    output_lines: list[str] = []
    tail: deque[str] = deque(maxlen=LOG_TAIL_LINES)

    def emit_line(message: str) -> None:
        if not quiet:
            LOG.info(message)
        output_lines.append(message + "\n")
        tail.append(message)

    def emit_progress(update: ProgressUpdate) -> None:
        LOG.info(format_progress_message(update))

    if context is not None:
        context.check()

    process = subprocess.Popen(
        prepared_command,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        text=True,
        errors="replace",
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )
    assert process.stdout is not None  # For type-checkers.

    watcher = None
    if context is not None:
        watcher = threading.Thread(target=_watch, args=(process, context), daemon=True)
        watcher.start()

    for raw_line in process.stdout:
        for segment in _iter_output_segments(raw_line):
            emit_line(segment.rstrip())
            if parser:
                for update in parser.parse(segment):
                    emit_progress(update)

    process.stdout.close()
    returncode = process.wait()
    if watcher is not None:
        watcher.join()

    if context is not None and context.cancelled:
        raise BuildInterrupted(context.reason, list(tail))
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, prepared_command, output="".join(output_lines))

    return CommandResult(prepared_command, returncode, "".join(output_lines), list(tail))


def run_binary(
    command: list[str],
    *,
    input_bytes: bytes | None = None,
    context: BuildContext | None = None,
) -> bytes:
    """Run *command* feeding *input_bytes* and return its raw stdout.

    A non-zero exit raises :class:`subprocess.CalledProcessError`; cancelling
    *context* while the command runs terminates it and raises
    :class:`BuildInterrupted`.
    """

    LOG.debug("$ %s", " ".join(command))
    if context is not None:
        context.check()

    process = subprocess.Popen(
        command,
        stdin=subprocess.PIPE if input_bytes is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    watcher = None
    if context is not None:
        watcher = threading.Thread(target=_watch, args=(process, context), daemon=True)
        watcher.start()

    stdout, stderr = process.communicate(input_bytes)
    if watcher is not None:
        watcher.join()

    if context is not None and context.cancelled:
        raise BuildInterrupted(context.reason)
    if process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, command, output=stdout, stderr=stderr)
    return stdout


def stderr_text(exc: subprocess.CalledProcessError) -> str:
    """Return the most useful message carried by *exc*."""

    for stream in (exc.stderr, exc.output):
        if not stream:
            continue
        if isinstance(stream, bytes):
            stream = stream.decode("utf-8", errors="replace")
        return stream.strip().splitlines()[-1]
    return f"exit status {exc.returncode}"


def ancillary_files(build: Build, *, api_version: str | None = None, schema_version: str | None = None) -> dict[str, bytes]:
    """Return the files shipped next to every build script, keyed by name."""

    config = build.to_config()
    return {
        KERNEL_CONFIG_FILE: build.decoded_kernel_config(),
        MAKEFILE_FILE: ancillary.render_makefile(config.driver_name, DRIVER_BUILD_DIR).encode(),
        DRIVER_CONFIG_FILE: ancillary.render_driver_config(
            config.driver_version,
            config.driver_name,
            config.device_name,
            api_version=api_version,
            schema_version=schema_version,
        ).encode(),
    }


def requested_artifacts(build: Build) -> list[tuple[str, str]]:
    """Return ``(path in the build environment, host path)`` for each requested output."""

    artifacts = []
    if build.module_file_path:
        artifacts.append((module_full_path(build.module_driver_name), build.module_file_path))
    if build.probe_file_path:
        artifacts.append((PROBE_FULL_PATH, build.probe_file_path))
    return artifacts


def build_tar(files: Mapping[str, bytes], *, mode: int = FILE_MODE) -> bytes:
    """Return an uncompressed tar archive holding *files* (path -> content)."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in files.items():
            info = tarfile.TarInfo(name.lstrip("/"))
            info.size = len(content)
            info.mode = mode
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def extract_single_file(tar_bytes: bytes) -> bytes:
    """Return the content of the first regular file in *tar_bytes*."""

    with tarfile.open(fileobj=io.BytesIO(tar_bytes), mode="r:*") as archive:
        for member in archive:
            if member.isfile():
                handle = archive.extractfile(member)
                if handle is not None:
                    return handle.read()
    raise ArtifactError("archive holds no regular file")


def write_artifact(destination: str | Path, content: bytes) -> Path:
    """Write *content* to *destination* with the artifact permissions."""

    destination = Path(destination)
    destination.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    destination.write_bytes(content)
    os.chmod(destination, FILE_MODE)
    return destination


def copy_artifact(source: str | Path, destination: str | Path) -> Path:
    try:
        content = Path(source).read_bytes()
    except OSError as exc:
        raise ArtifactError(f"build succeeded but artifact {source} not produced") from exc
    LOG.info("Copying %s to %s", source, destination)
    return write_artifact(destination, content)


class BuildProcessor:
    """Runs a :class:`Build` somewhere and brings its artifacts back."""

    name = ""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, *, proxy: str = "", context: BuildContext | None = None) -> None:
        self.timeout = timeout
        self.proxy = proxy
        self.context = context or BuildContext(timeout)

    def start(self, build: Build) -> None:
        raise NotImplementedError

    def proxy_env(self) -> dict[str, str]:
        if not self.proxy:
            return {}
        return {"http_proxy": self.proxy, "https_proxy": self.proxy}

    def execution_error(self, message: str, exc: subprocess.CalledProcessError) -> ExecutionError:
        tail = _iter_output_segments(exc.output or "")[-LOG_TAIL_LINES:]
        return ExecutionError(message, tail)

    def __str__(self) -> str:
        return self.name
