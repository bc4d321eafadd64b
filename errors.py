"""Error types raised by the driverkit build core."""

from __future__ import annotations


class DriverkitError(RuntimeError):
    """Base class for every failure reported to the command line."""


class InputError(DriverkitError):
    """Invalid or unsupported user input detected before any work starts."""


class HeadersNotFoundError(DriverkitError):
    """No kernel header package could be located for the requested kernel."""


class ImageNotFoundError(DriverkitError):
    """The image catalog holds no builder image for the requested target."""

    def __init__(self, target: str, gcc_version: str) -> None:
        super().__init__(f"no builder image for target {target} gcc {gcc_version}")
        self.target = target
        self.gcc_version = gcc_version


class ExecutionError(DriverkitError):
    """The build environment failed to run the generated script."""

    def __init__(self, message: str, log_tail: list[str] | None = None) -> None:
        self.log_tail = list(log_tail or [])
        if self.log_tail:
            message = message + "\n" + "\n".join(self.log_tail)
        super().__init__(message)


class BuildInterrupted(ExecutionError):
    """The build was cancelled by a signal or ran past its deadline."""

    def __init__(self, reason: str = "interrupted", log_tail: list[str] | None = None) -> None:
        super().__init__(reason, log_tail)
        self.reason = reason


class DownloadError(DriverkitError):
    """A file needed by the build could not be downloaded."""


class ArtifactError(DriverkitError):
    """The build finished but an expected artifact could not be retrieved."""
