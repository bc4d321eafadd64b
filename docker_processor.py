"""Build inside a throw-away container of the local docker daemon."""

from __future__ import annotations

import logging
import subprocess
import uuid

from buildconfig import Build
from errors import ArtifactError, DriverkitError
from generator import DOCKER_ANCILLARY_DIR, generate_script
from images import ImageCatalog
from processors import (
    DEFAULT_TIMEOUT,
    BuildProcessor,
    ancillary_files,
    build_tar,
    extract_single_file,
    requested_artifacts,
    run_binary,
    run_command,
    stderr_text,
    write_artifact,
)

LOG = logging.getLogger("driverkit.docker_processor")

DEFAULT_NETWORK = "default"
SCRIPT_NAME = "driverkit.sh"
STOP_GRACE_SECONDS = 1


class DockerProcessor(BuildProcessor):
    """Runs the generated script with ``docker exec`` in a sleeping container."""

    name = "docker"

    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        *,
        catalog: ImageCatalog | None = None,
        docker: str = "docker",
        **kwargs,
    ) -> None:
        super().__init__(timeout, **kwargs)
        self.catalog = catalog
        self.docker = docker

    def start(self, build: Build) -> None:
        generated = generate_script(build, self.catalog, ancillary_dir=DOCKER_ANCILLARY_DIR, context=self.context)
        self.context.check()

        self._pull(generated.image)
        container = self._create(generated.image, generated.net_mode or DEFAULT_NETWORK)
        stop = self._stopper(container)
        self.context.add_cleanup(f"stop container {container}", stop)
        try:
            self._run([self.docker, "start", container], "unable to start container")
            self._copy_in(container, build, generated.script)
            self._exec(container)
            for source, destination in requested_artifacts(build):
                self._copy_out(container, source, destination)
        finally:
            stop()

    def _run(self, command: list[str], message: str, *, quiet: bool = False) -> str:
        try:
            return run_command(command, context=self.context, quiet=quiet).output
        except subprocess.CalledProcessError as exc:
            raise DriverkitError(f"{message}: {stderr_text(exc)}") from exc

    def _pull(self, image: str) -> None:
        self._run([self.docker, "pull", image], f"unable to pull builder image {image}")

    def _create(self, image: str, network: str) -> str:
        name = f"driverkit-{uuid.uuid4()}"
        output = self._run(
            [
                self.docker,
                "create",
                "--rm",
                "--name",
                name,
                "--network",
                network,
                image,
                "/bin/sleep",
                str(self.timeout),
            ],
            "unable to create container",
            quiet=True,
        )
        lines = output.strip().splitlines()
        container = lines[-1].strip() if lines else name
        LOG.info("Created container %s (%s)", name, container[:12])
        return container

    def _stopper(self, container: str):
        stopped = []

        def stop() -> None:
            if stopped:
                return
            stopped.append(container)
            LOG.debug("Stopping container %s", container[:12])
            try:
                subprocess.run(
                    [self.docker, "stop", "--time", str(STOP_GRACE_SECONDS), container],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                    check=True,
                )
            except subprocess.CalledProcessError as exc:
                # The container is created with --rm and may already be gone.
                LOG.debug("docker stop %s: %s", container[:12], stderr_text(exc))

        return stop

    def _copy_in(self, container: str, build: Build, script: str) -> None:
        files = {f"{DOCKER_ANCILLARY_DIR}/{SCRIPT_NAME}": script.encode()}
        for name, content in ancillary_files(build).items():
            files[f"{DOCKER_ANCILLARY_DIR}/{name}"] = content
        try:
            run_binary([self.docker, "cp", "-", f"{container}:/"], input_bytes=build_tar(files), context=self.context)
        except subprocess.CalledProcessError as exc:
            raise DriverkitError(f"unable to copy the build files into {container[:12]}: {stderr_text(exc)}") from exc

    def _exec(self, container: str) -> None:
        command = [self.docker, "exec"]
        for key, value in self.proxy_env().items():
            command.extend(["-e", f"{key}={value}"])
        command.extend([container, "/bin/bash", f"{DOCKER_ANCILLARY_DIR}/{SCRIPT_NAME}"])
        try:
            run_command(command, context=self.context)
        except subprocess.CalledProcessError as exc:
            raise self.execution_error(f"build script failed with exit status {exc.returncode}", exc) from exc

    def _copy_out(self, container: str, source: str, destination: str) -> None:
        try:
            archive = run_binary([self.docker, "cp", f"{container}:{source}", "-"], context=self.context)
        except subprocess.CalledProcessError as exc:
            raise ArtifactError(f"build succeeded but artifact {source} not produced") from exc
        write_artifact(destination, extract_single_file(archive))
        LOG.info("Copied %s to %s", source, destination)
